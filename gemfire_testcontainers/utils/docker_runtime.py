"""Functionality for running containers with the `docker` CLI.

Only the primitives needed for disposable cluster members are implemented:

* creating and removing networks
* creating, starting, stopping and removing containers
* copying files into (even not yet started) containers
* executing commands, looking up published ports and reading logs
"""

import dataclasses
import io
import logging
import pathlib as pl
import subprocess
import tarfile
import threading
import time
import typing as tp

from gemfire_testcontainers.utils import configuration
from gemfire_testcontainers.utils import helpers

LOGGER = logging.getLogger(__name__)

STOP_TIMEOUT = 10


class DockerError(Exception):
    pass


class CLIOut(tp.NamedTuple):
    stdout: bytes
    stderr: bytes
    returncode: int


@dataclasses.dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """Return combined stdout and stderr."""
        return f"{self.stdout}{self.stderr}"


@dataclasses.dataclass(frozen=True, order=True)
class BindSpec:
    host_path: str
    container_path: str
    read_only: bool = True

    def as_arg(self) -> str:
        mode = "ro" if self.read_only else "rw"
        return f"{self.host_path}:{self.container_path}:{mode}"


@dataclasses.dataclass
class ContainerSpec:
    """Everything needed to create a container.

    `exposed_ports` are published to ephemeral host ports chosen by the engine,
    `port_bindings` are fixed `host:container` bindings.
    """

    image: str
    name: str = ""
    network: str = ""
    network_aliases: list[str] = dataclasses.field(default_factory=list)
    env: dict[str, str] = dataclasses.field(default_factory=dict)
    entrypoint: str = ""
    command: list[str] = dataclasses.field(default_factory=list)
    exposed_ports: list[int] = dataclasses.field(default_factory=list)
    port_bindings: list[str] = dataclasses.field(default_factory=list)
    binds: list[BindSpec] = dataclasses.field(default_factory=list)
    labels: dict[str, str] = dataclasses.field(default_factory=dict)

    def create_args(self) -> list[str]:
        """Return arguments for the `docker create` command."""
        args = ["create"]
        if self.name:
            args.extend(["--name", self.name])
        if self.network:
            args.extend(["--network", self.network])
        args.extend(helpers.prepend_flag("--network-alias", self.network_aliases))
        args.extend(helpers.prepend_flag("--env", [f"{k}={v}" for k, v in self.env.items()]))
        args.extend(helpers.prepend_flag("--label", [f"{k}={v}" for k, v in self.labels.items()]))
        args.extend(helpers.prepend_flag("--publish", self.exposed_ports))
        args.extend(helpers.prepend_flag("--publish", self.port_bindings))
        args.extend(helpers.prepend_flag("--volume", [b.as_arg() for b in self.binds]))
        if self.entrypoint:
            args.extend(["--entrypoint", self.entrypoint])
        args.append(self.image)
        args.extend(self.command)
        return args


class LogFollower:
    """Feed lines of `docker logs --follow` to a callback in a background thread.

    The `on_close` callback is called once the log stream ends, i.e. when the container exits
    or the follower is stopped.
    """

    def __init__(
        self,
        cmd: list[str],
        *,
        on_line: tp.Callable[[str], None],
        on_close: tp.Callable[[], None] | None = None,
    ) -> None:
        self._on_line = on_line
        self._on_close = on_close
        self._proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
        self._thread = threading.Thread(target=self._pump, name=f"logs-{cmd[-1]}", daemon=True)
        self._thread.start()

    def _pump(self) -> None:
        try:
            if self._proc.stdout is not None:
                for line in self._proc.stdout:
                    self._on_line(line.rstrip("\r\n"))
        finally:
            self._proc.wait()
            if self._on_close is not None:
                self._on_close()

    def stop(self) -> None:
        if self._proc.poll() is None:
            self._proc.terminate()
        self._thread.join(timeout=STOP_TIMEOUT)
        if self._proc.stdout is not None:
            self._proc.stdout.close()


class DockerRuntime:
    """Container runtime driven by the `docker` CLI."""

    def __init__(self, docker_bin: str = "") -> None:
        self.docker_bin = docker_bin or configuration.DOCKER_BIN

    def run(
        self, args: list[str], *, input_data: bytes | None = None, ignore_fail: bool = False
    ) -> CLIOut:
        """Run the `docker` command."""
        cmd = [self.docker_bin, *args]
        cmd_str = " ".join(cmd)
        LOGGER.debug("Running `%s`", cmd_str)

        try:
            with subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL if input_data is None else subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            ) as p:
                stdout, stderr = p.communicate(input=input_data)
                retcode = p.returncode
        except OSError as exc:
            msg = f"Failed to run `{cmd_str}`: {exc}"
            raise DockerError(msg) from exc

        if not ignore_fail and retcode != 0:
            err_dec = stderr.decode() or stdout.decode()
            msg = f"An error occurred while running `{cmd_str}`: {err_dec}"
            raise DockerError(msg)

        return CLIOut(stdout or b"", stderr or b"", retcode)

    def create_network(self, name: str) -> None:
        self.run(["network", "create", name])

    def remove_network(self, name: str) -> None:
        self.run(["network", "rm", name])

    def create(self, spec: ContainerSpec) -> str:
        """Create container and return its ID."""
        return self.run(spec.create_args()).stdout.decode().strip()

    def start(self, container_id: str) -> None:
        self.run(["start", container_id])

    def stop(self, container_id: str) -> None:
        self.run(["stop", "--time", str(STOP_TIMEOUT), container_id], ignore_fail=True)

    def remove(self, container_id: str) -> None:
        self.run(["rm", "--force", "--volumes", container_id])

    def copy_to(self, container_id: str, *, content: bytes, path: str, mode: int = 0o666) -> None:
        """Copy content to a file in the container.

        The file is transferred as a single tar archive, so it appears in the container fully
        written.
        """
        dest = pl.PurePosixPath(path)
        tar_stream = io.BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            tarinfo = tarfile.TarInfo(name=dest.name)
            tarinfo.size = len(content)
            tarinfo.mode = mode
            tarinfo.mtime = int(time.time())
            tar.addfile(tarinfo, io.BytesIO(content))

        self.run(
            ["cp", "-", f"{container_id}:{dest.parent}"], input_data=tar_stream.getvalue()
        )

    def exec(self, container_id: str, cmd: list[str]) -> ExecResult:
        """Execute command in a running container, non-zero exit code is not an error here."""
        out = self.run(["exec", container_id, *cmd], ignore_fail=True)
        return ExecResult(
            exit_code=out.returncode,
            stdout=out.stdout.decode(errors="replace"),
            stderr=out.stderr.decode(errors="replace"),
        )

    def mapped_port(self, container_id: str, port: int) -> int:
        """Return host port the container `port` is published on."""
        out = self.run(["port", container_id, f"{port}/tcp"]).stdout.decode().strip()
        # E.g. "0.0.0.0:49153" and "[::]:49153" on separate lines
        for line in out.splitlines():
            host_port = line.rpartition(":")[2]
            if host_port.isdigit():
                return int(host_port)

        msg = f"Port {port} of container '{container_id}' is not published."
        raise DockerError(msg)

    def logs(self, container_id: str) -> str:
        out = self.run(["logs", container_id], ignore_fail=True)
        return f"{out.stdout.decode(errors='replace')}{out.stderr.decode(errors='replace')}"

    def follow_logs(
        self,
        container_id: str,
        *,
        on_line: tp.Callable[[str], None],
        on_close: tp.Callable[[], None] | None = None,
    ) -> LogFollower:
        return LogFollower(
            [self.docker_bin, "logs", "--follow", container_id],
            on_line=on_line,
            on_close=on_close,
        )


class Container:
    """A single container created from `ContainerSpec`."""

    def __init__(self, spec: ContainerSpec, *, runtime: DockerRuntime) -> None:
        self.spec = spec
        self.runtime = runtime
        self.container_id = ""
        self._followers: list[LogFollower] = []
        self._stopped = False

    @property
    def is_created(self) -> bool:
        return bool(self.container_id)

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def _check_created(self) -> str:
        if not self.container_id:
            msg = f"Container '{self.spec.name}' was not created yet."
            raise DockerError(msg)
        return self.container_id

    def create(self) -> str:
        if self.container_id:
            return self.container_id
        self.container_id = self.runtime.create(self.spec)
        LOGGER.debug(f"Created container '{self.spec.name}' ({self.container_id[:12]}).")
        return self.container_id

    def start(self) -> None:
        self.runtime.start(self._check_created())

    def stop(self) -> None:
        """Stop and remove the container, repeated calls do nothing."""
        if not self.container_id or self._stopped:
            return
        self._stopped = True
        self.runtime.stop(self.container_id)
        for follower in self._followers:
            follower.stop()
        self.runtime.remove(self.container_id)
        LOGGER.debug(f"Removed container '{self.spec.name}'.")

    def copy_file_to_container(self, content: bytes, path: str, *, mode: int = 0o666) -> None:
        self.runtime.copy_to(self._check_created(), content=content, path=path, mode=mode)

    def exec_in_container(self, *cmd: str) -> ExecResult:
        return self.runtime.exec(self._check_created(), list(cmd))

    def get_mapped_port(self, port: int) -> int:
        return self.runtime.mapped_port(self._check_created(), port)

    def logs(self) -> str:
        return self.runtime.logs(self._check_created())

    def follow_logs(
        self,
        on_line: tp.Callable[[str], None],
        *,
        on_close: tp.Callable[[], None] | None = None,
    ) -> LogFollower:
        follower = self.runtime.follow_logs(
            self._check_created(), on_line=on_line, on_close=on_close
        )
        self._followers.append(follower)
        return follower
