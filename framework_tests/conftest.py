import dataclasses
import typing as tp

import pytest

from gemfire_testcontainers.cluster_management import cluster as ccluster
from gemfire_testcontainers.utils import docker_runtime

MAPPED_PORT_OFFSET = 30000


@dataclasses.dataclass
class FakeContainer:
    spec: docker_runtime.ContainerSpec
    running: bool = False
    exited: bool = False
    removed: bool = False
    lines: list[str] = dataclasses.field(default_factory=list)
    files: dict[str, tuple[bytes, int]] = dataclasses.field(default_factory=dict)

    @property
    def member_name(self) -> str:
        for arg in self.spec.command:
            if arg.startswith("--name="):
                return arg.split("=", 1)[1]
        return ""

    @property
    def role(self) -> str:
        return self.spec.command[2] if self.spec.command[:1] == ["gfsh"] else ""


class FakeFollower:
    def __init__(self) -> None:
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeRuntime:
    """In-memory stand-in for `docker_runtime.DockerRuntime`.

    Started members log their startup message right away, unless listed in `silent`
    (never ready) or `exit_early` (container exits before it is ready).
    """

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.networks: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.silent: set[str] = set()
        self.exit_early: set[str] = set()
        self.require_license = False
        self.fail_on: set[tuple[str, str]] = set()
        self.exec_results: list[docker_runtime.ExecResult] = []
        self.exec_scripts: list[str] = []

    def _record(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        if (operation, name) in self.fail_on:
            msg = f"Fake failure of `{operation}` on '{name}'"
            raise docker_runtime.DockerError(msg)

    def by_name(self, name: str) -> FakeContainer:
        for container in self.containers.values():
            if name in (container.spec.name, container.member_name):
                return container
        msg = f"No container '{name}'"
        raise KeyError(msg)

    def create_network(self, name: str) -> None:
        self._record("network_create", name)
        self.networks.add(name)

    def remove_network(self, name: str) -> None:
        self._record("network_rm", name)
        self.networks.discard(name)

    def create(self, spec: docker_runtime.ContainerSpec) -> str:
        self._record("create", spec.name)
        container_id = f"fake{len(self.containers):04d}"
        self.containers[container_id] = FakeContainer(spec=spec)
        return container_id

    def start(self, container_id: str) -> None:
        container = self.containers[container_id]
        self._record("start", container.member_name or container.spec.name)
        container.running = True

        if not container.role:
            return

        name = container.member_name
        container.lines.append(f"Starting {container.role} {name}")
        if self.require_license and container.spec.env.get("ACCEPT_TERMS") != "y":
            container.lines.append("License terms were not accepted, exiting.")
            container.exited = True
        elif name in self.exit_early:
            container.lines.append("Exception in thread main, exiting.")
            container.exited = True
        elif name not in self.silent:
            if container.role == "locator":
                container.lines.append("Locator started on 0.0.0.0[10334]")
            else:
                container.lines.append(f"Server {name} startup completed in 1234 ms")
            # Later lines must not affect readiness
            container.lines.append("Locator started on 0.0.0.0[10334]")

    def stop(self, container_id: str) -> None:
        container = self.containers[container_id]
        self._record("stop", container.member_name or container.spec.name)
        container.running = False

    def remove(self, container_id: str) -> None:
        container = self.containers[container_id]
        self._record("remove", container.member_name or container.spec.name)
        container.removed = True

    def copy_to(self, container_id: str, *, content: bytes, path: str, mode: int = 0o666) -> None:
        container = self.containers[container_id]
        self._record("copy", f"{container.member_name or container.spec.name}:{path}")
        container.files[path] = (content, mode)

    def exec(self, container_id: str, cmd: list[str]) -> docker_runtime.ExecResult:
        container = self.containers[container_id]
        self._record("exec", container.member_name)
        self.exec_scripts.append(container.files["/script.gfsh"][0].decode())
        if self.exec_results:
            return self.exec_results.pop(0)
        return docker_runtime.ExecResult(exit_code=0, stdout=f"ran {' '.join(cmd)}\n", stderr="")

    def mapped_port(self, container_id: str, port: int) -> int:
        container = self.containers[container_id]
        if port not in container.spec.exposed_ports:
            msg = f"Port {port} is not published"
            raise docker_runtime.DockerError(msg)
        return MAPPED_PORT_OFFSET + port

    def logs(self, container_id: str) -> str:
        return "\n".join(self.containers[container_id].lines)

    def follow_logs(
        self,
        container_id: str,
        *,
        on_line: tp.Callable[[str], None],
        on_close: tp.Callable[[], None] | None = None,
    ) -> FakeFollower:
        container = self.containers[container_id]
        for line in container.lines:
            on_line(line)
        if container.exited and on_close is not None:
            on_close()
        return FakeFollower()


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def cluster_config() -> ccluster.ClusterConfig:
    return ccluster.ClusterConfig(
        image="gemfire/gemfire:test",
        bridge_image="alpine/socat:test",
        log_echo=False,
        startup_timeout=5,
    )


@pytest.fixture
def make_cluster(
    fake_runtime: FakeRuntime, cluster_config: ccluster.ClusterConfig
) -> tp.Callable[..., ccluster.GemFireCluster]:
    def _make(locator_count: int = 1, server_count: int = 2) -> ccluster.GemFireCluster:
        return ccluster.GemFireCluster(
            locator_count=locator_count,
            server_count=server_count,
            config=cluster_config,
            runtime=fake_runtime,  # type: ignore[arg-type]
        )

    return _make
