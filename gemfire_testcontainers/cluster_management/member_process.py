"""Locator and server processes, each running in its own container.

A member is ready once its log contains the role specific startup message. The log is followed
in a background thread that fires a one-shot `ReadinessSignal`.
"""

import abc
import collections
import logging
import pathlib as pl
import threading
import typing as tp

from gemfire_testcontainers.cluster_management import errors
from gemfire_testcontainers.cluster_management import members as cmembers
from gemfire_testcontainers.utils import configuration
from gemfire_testcontainers.utils import docker_runtime
from gemfire_testcontainers.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

LOG_TAIL_LINES = 50
DEFAULT_HOSTNAME_FOR_CLIENTS = "localhost"


class ReadinessSignal:
    """One-shot signal set by the log follower thread and awaited by the orchestrating thread.

    Setting the signal before anybody waits for it is not lost. The signal can also be closed,
    which releases the waiting thread without firing the signal.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._fired = False
        self._closed = False

    def set(self) -> bool:
        """Fire the signal, return False if it was already fired."""
        with self._cond:
            if self._fired:
                return False
            self._fired = True
            self._cond.notify_all()
            return True

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def is_set(self) -> bool:
        with self._cond:
            return self._fired

    @property
    def is_closed(self) -> bool:
        with self._cond:
            return self._closed

    def wait(self, timeout: float | None = None) -> bool:
        """Wait until the signal fires or is closed, return True if it fired."""
        with self._cond:
            self._cond.wait_for(lambda: self._fired or self._closed, timeout=timeout)
            return self._fired


class MemberProcess(abc.ABC):
    """Base class for cluster members."""

    ROLE: tp.ClassVar[cmembers.Role]
    DEFAULT_ARGS: tp.ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        record: cmembers.MemberRecord,
        *,
        image: str,
        runtime: docker_runtime.DockerRuntime,
        network: str,
        locator_addresses: str,
        log_echo: bool = False,
        startup_timeout: float = configuration.STARTUP_TIMEOUT,
    ) -> None:
        self.record = record
        self.image = image
        self.runtime = runtime
        self.network = network
        self.locator_addresses = locator_addresses
        self.log_echo = log_echo
        self.startup_timeout = startup_timeout
        self.hostname_for_clients = DEFAULT_HOSTNAME_FOR_CLIENTS

        self.signal = ReadinessSignal()
        self.log_consumers: list[ttypes.LogConsumer] = []
        self.copy_files: list[cmembers.CopyFile] = []
        self._log_tail: collections.deque[str] = collections.deque(maxlen=LOG_TAIL_LINES)
        self._tail_lock = threading.Lock()
        self._spec: docker_runtime.ContainerSpec | None = None
        self.container: docker_runtime.Container | None = None

    @property
    def member_name(self) -> str:
        return self.record.member_name

    @property
    def spec(self) -> docker_runtime.ContainerSpec:
        if self._spec is None:
            self._spec = self.build_spec()
        return self._spec

    @abc.abstractmethod
    def startup_message(self) -> str:
        """Return log message the member prints once it is ready."""

    @abc.abstractmethod
    def _identity_args(self) -> list[str]:
        """Return arguments naming the member and its ports."""

    def _apply_config(self, spec: docker_runtime.ContainerSpec, args: list[str]) -> list[str]:
        """Interpret configuration mutations, return container paths of classpath mounts."""
        classpath = []
        for mutation in self.record.config_hooks:
            if isinstance(mutation, cmembers.SetEnv):
                spec.env[mutation.name] = mutation.value
            elif isinstance(mutation, cmembers.AppendArg):
                args.append(mutation.arg)
            elif isinstance(mutation, cmembers.BindMount):
                spec.binds.append(
                    docker_runtime.BindSpec(
                        host_path=mutation.host_path, container_path=mutation.container_path
                    )
                )
                if mutation.classpath:
                    classpath.append(mutation.container_path)
            elif isinstance(mutation, cmembers.PortBinding):
                spec.port_bindings.append(f"{mutation.host_port}:{mutation.container_port}")
            elif isinstance(mutation, cmembers.SubscribeLogs):
                self.log_consumers.append(mutation.consumer)
            elif isinstance(mutation, cmembers.SetStartupTimeout):
                self.startup_timeout = mutation.seconds
            elif isinstance(mutation, cmembers.SetHostnameForClients):
                self.hostname_for_clients = mutation.hostname
            elif isinstance(mutation, cmembers.Customize):
                mutation.func(spec)
            elif isinstance(mutation, cmembers.PinPort):
                # Already reflected in the record's external port
                continue
            elif isinstance(mutation, cmembers.CopyFile):
                self.copy_files.append(mutation)
            else:
                msg = f"Unsupported configuration of member '{self.member_name}': {mutation}"
                raise TypeError(msg)
        return classpath

    def build_spec(self) -> docker_runtime.ContainerSpec:
        """Build container specification out of role defaults and member configuration."""
        spec = docker_runtime.ContainerSpec(
            image=self.image,
            name=self.record.hostname,
            network=self.network,
            network_aliases=[self.member_name],
            labels={"gemfire-testcontainers.member": self.member_name},
        )
        self.log_consumers = []
        self.copy_files = []
        args = list(self.DEFAULT_ARGS)
        classpath = self._apply_config(spec=spec, args=args)
        args.extend(self._identity_args())
        if classpath:
            args.append(f"--classpath={':'.join(classpath)}")

        spec.command = ["gfsh", "start", str(self.ROLE), *args]
        return spec

    def _on_log_line(self, line: str) -> None:
        with self._tail_lock:
            self._log_tail.append(line)

        if self.log_echo:
            print(f"[{self.member_name}] {line}", flush=True)

        for consumer in self.log_consumers:
            try:
                consumer(self.member_name, line)
            except Exception:
                LOGGER.exception(f"Log consumer of member '{self.member_name}' failed.")

        # Stop scanning once the signal fired
        if not self.signal.is_set() and self.startup_message() in line:
            self.signal.set()

    def start(self) -> None:
        """Create the container, run pre-start configuration and start the process."""
        self.container = docker_runtime.Container(self.spec, runtime=self.runtime)
        self.container.create()
        self.record.container = self

        for mutation in [*self.copy_files, *self.record.pre_start_hooks]:
            if not isinstance(mutation, cmembers.CopyFile):
                msg = f"Unsupported pre-start configuration of '{self.member_name}': {mutation}"
                raise TypeError(msg)
            self.container.copy_file_to_container(
                mutation.content, mutation.path, mode=mutation.mode
            )

        LOGGER.info(
            f"Starting GemFire {self.ROLE}: {self.member_name}:{self.record.external_port}"
        )
        self.container.start()
        self.container.follow_logs(self._on_log_line, on_close=self.signal.close)

    def log_tail(self) -> str:
        with self._tail_lock:
            return "\n".join(self._log_tail)

    def _dump_logs(self) -> None:
        LOGGER.error(f"Logs of member '{self.member_name}':\n{self.logs()}")

    def wait_to_start(self, timeout: float | None = None) -> None:
        """Block until the member reports successful startup."""
        timeout = self.startup_timeout if timeout is None else timeout
        if self.signal.wait(timeout=timeout):
            LOGGER.info(f"Member '{self.member_name}' started.")
            return

        self._dump_logs()
        if self.signal.is_closed:
            msg = f"Member '{self.member_name}' exited before reporting successful startup."
            raise errors.StartupError(
                msg, member_name=self.member_name, log_tail=self.log_tail()
            )

        msg = f"Member '{self.member_name}' didn't start in {timeout} seconds."
        raise errors.StartupTimeoutError(
            msg, member_name=self.member_name, log_tail=self.log_tail()
        )

    def stop(self) -> None:
        if self.container is None:
            return
        self.signal.close()
        self.container.stop()

    def logs(self) -> str:
        if self.container is None or not self.container.is_created:
            return ""
        return self.container.logs()

    def save_logs(self, dest_dir: pl.Path) -> pl.Path:
        logfile = dest_dir / f"{self.member_name}.log"
        logfile.write_text(self.logs(), encoding="utf-8")
        return logfile

    def exec_in_container(self, *cmd: str) -> docker_runtime.ExecResult:
        if self.container is None:
            msg = f"Member '{self.member_name}' was not created yet."
            raise errors.ClusterStateError(msg)
        return self.container.exec_in_container(*cmd)

    def copy_file_to_container(self, content: bytes, path: str, *, mode: int = 0o666) -> None:
        if self.container is None:
            msg = f"Member '{self.member_name}' was not created yet."
            raise errors.ClusterStateError(msg)
        self.container.copy_file_to_container(content, path, mode=mode)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.member_name})"


class LocatorProcess(MemberProcess):
    ROLE = cmembers.Role.LOCATOR
    DEFAULT_ARGS = (
        "--J=-Dgemfire.use-cluster-configuration=true",
        "--J=-Dgemfire.jmx-manager-start=true",
    )

    def startup_message(self) -> str:
        return "Locator started on"

    def _identity_args(self) -> list[str]:
        return [
            f"--name={self.member_name}",
            f"--port={self.record.external_port}",
            f"--locators={self.locator_addresses}",
            f"--J=-Dgemfire.http-service-port={self.record.external_http_port}",
            f"--hostname-for-clients={self.hostname_for_clients}",
        ]


class ServerProcess(MemberProcess):
    ROLE = cmembers.Role.SERVER
    DEFAULT_ARGS = (
        "--J=-Dgemfire.use-cluster-configuration=true",
        "--J=-Dgemfire.locator-wait-time=120",
    )

    def startup_message(self) -> str:
        return f"Server {self.member_name} startup completed"

    def _identity_args(self) -> list[str]:
        return [
            f"--name={self.member_name}",
            f"--server-port={self.record.external_port}",
            f"--locators={self.locator_addresses}",
            f"--J=-Dgemfire.http-service-port={self.record.external_http_port}",
            f"--hostname-for-clients={self.hostname_for_clients}",
        ]


def get_process_class(role: cmembers.Role) -> type[MemberProcess]:
    if role == cmembers.Role.LOCATOR:
        return LocatorProcess
    return ServerProcess
