"""Disposable GemFire cluster made of locator and server containers.

Startup of the cluster is strictly sequential:

* the private network and the port bridge are created and the bridge is started
* all locators are started and waited for
* gfsh commands configured by `with_pdx` are run
* all servers are started and waited for
* gfsh commands configured by `with_gfsh` are run

When `start` fails, the members that were already started are left running, so their state can be
inspected. Call `close` to remove them, `close` is safe to call in any state.

The exception is the context manager: when `start` fails on entering the `with` block, the
cluster is closed before the error propagates, as `__exit__` is never called in that case. Logs of
the member that failed to start are written to the log before the cluster is closed.
"""

import dataclasses
import enum
import logging
import pathlib as pl
import typing as tp

from gemfire_testcontainers.cluster_management import errors
from gemfire_testcontainers.cluster_management import gfsh as cgfsh
from gemfire_testcontainers.cluster_management import member_process
from gemfire_testcontainers.cluster_management import members as cmembers
from gemfire_testcontainers.cluster_management import port_bridge
from gemfire_testcontainers.utils import configuration
from gemfire_testcontainers.utils import docker_runtime
from gemfire_testcontainers.utils import helpers
from gemfire_testcontainers.utils import http_client
from gemfire_testcontainers.utils import types as ttypes

LOGGER = logging.getLogger(__name__)

CLUSTER_SUFFIX_LEN = 6
CLASSPATH_DIR = "/classpath"
CACHE_XML_FILE = "/cache.xml"
PING_ENDPOINT = "/management/v1/ping"


class ClusterState(enum.StrEnum):
    UNSTARTED = "unstarted"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclasses.dataclass(frozen=True)
class ClusterConfig:
    image: str = configuration.GEMFIRE_IMAGE
    bridge_image: str = configuration.BRIDGE_IMAGE
    log_echo: bool = configuration.LOG_ECHO
    startup_timeout: float = configuration.STARTUP_TIMEOUT
    docker_bin: str = configuration.DOCKER_BIN


@dataclasses.dataclass(frozen=True)
class GfshAction:
    log_output: bool
    commands: tuple[str, ...]


class GemFireCluster:
    """Cluster of `locator_count` locators and `server_count` servers.

    Members are named `locator-0`, `locator-1`, ..., `server-0`, `server-1`, ... Configuration
    methods select members by these names, using globs or the `ALL`, `ALL_LOCATORS` and
    `ALL_SERVERS` selectors. Configuration methods must be called before `start`, later calls
    have no effect.
    """

    def __init__(
        self,
        locator_count: int = 1,
        server_count: int = 2,
        *,
        config: ClusterConfig | None = None,
        runtime: docker_runtime.DockerRuntime | None = None,
    ) -> None:
        if locator_count < 1:
            msg = f"At least one locator is needed, got {locator_count}."
            raise ValueError(msg)
        if server_count < 1:
            msg = f"At least one server is needed, got {server_count}."
            raise ValueError(msg)

        self.config = config or ClusterConfig()
        self.runtime = runtime or docker_runtime.DockerRuntime(docker_bin=self.config.docker_bin)
        self.suffix = helpers.get_rand_str(CLUSTER_SUFFIX_LEN)
        self.registry = cmembers.MemberRegistry(
            locator_count=locator_count, server_count=server_count, suffix=self.suffix
        )
        self.network = f"gemfire-{self.suffix}"
        self.bridge: port_bridge.PortBridge | None = None

        self._state = ClusterState.UNSTARTED
        self._network_created = False
        self._processes: dict[str, member_process.MemberProcess] = {}
        self._after_locators: GfshAction | None = None
        self._after_startup: GfshAction | None = None

    @property
    def state(self) -> ClusterState:
        return self._state

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(network={self.network}, state={self._state})"

    def __enter__(self) -> "GemFireCluster":
        """Start the cluster, close it when the start fails."""
        if self._state == ClusterState.UNSTARTED:
            try:
                self.start()
            except Exception:
                self.close()
                raise
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # Configuration

    def _is_configurable(self, what: str) -> bool:
        if self._state != ClusterState.UNSTARTED:
            LOGGER.debug(f"Ignoring `{what}` on cluster in state '{self._state}'.")
            return False
        return True

    def with_configuration(
        self, selector: str, *mutations: cmembers.Mutation
    ) -> "GemFireCluster":
        """Add configuration applied when containers of the selected members are built."""
        records = self.registry.resolve(selector)
        if not self._is_configurable("with_configuration"):
            return self
        for record in records:
            for mutation in mutations:
                record.add_config(mutation)
        return self

    def with_pre_start(self, selector: str, *mutations: cmembers.CopyFile) -> "GemFireCluster":
        """Add files copied to containers of the selected members before they are started."""
        for mutation in mutations:
            if not isinstance(mutation, cmembers.CopyFile):
                msg = f"Only `CopyFile` can be applied before start, got {mutation}."
                raise TypeError(msg)

        records = self.registry.resolve(selector)
        if not self._is_configurable("with_pre_start"):
            return self
        for record in records:
            for mutation in mutations:
                record.add_pre_start(mutation)
        return self

    def with_gemfire_property(self, selector: str, name: str, value: str) -> "GemFireCluster":
        return self.with_configuration(
            selector, cmembers.AppendArg(f"--J=-Dgemfire.{name}={value}")
        )

    def with_classpath(self, selector: str, *paths: ttypes.FileType) -> "GemFireCluster":
        """Mount local directories or jar files and add them to members' classpath."""
        mounts = []
        for idx, path in enumerate(paths):
            host_path = pl.Path(path).expanduser().absolute()
            if not host_path.exists():
                msg = f"Unable to locate resource: {path}"
                raise errors.ResourceReadError(msg)
            mounts.append(
                cmembers.BindMount(
                    host_path=str(host_path),
                    container_path=f"{CLASSPATH_DIR}/{idx}",
                    classpath=True,
                )
            )
        return self.with_configuration(selector, *mounts)

    def with_debug_port(self, selector: str, base_port: int) -> "GemFireCluster":
        """Make the selected members wait for a debugger on `base_port`, `base_port + 1`, ...

        Every such member suspends its startup until a debugger attaches.
        """
        records = self.registry.resolve(selector)
        if not self._is_configurable("with_debug_port"):
            return self
        for port, record in enumerate(records, start=base_port):
            record.add_config(cmembers.PortBinding(host_port=port, container_port=port))
            record.add_config(
                cmembers.AppendArg(
                    "--J=-agentlib:jdwp=transport=dt_socket,server=y,suspend=y,"
                    f"address=0.0.0.0:{port}"
                )
            )
            LOGGER.warning(
                f"Member '{record.member_name}': waiting for debugger to connect on port {port}"
            )
        return self

    def with_ports(self, selector: str, *ports: int) -> "GemFireCluster":
        """Pin external ports of the selected members, one port per member."""
        records = self.registry.resolve(selector)
        if len(records) != len(ports):
            raise errors.PortCountMismatchError(
                selector=selector, members_count=len(records), ports_count=len(ports)
            )
        if not self._is_configurable("with_ports"):
            return self
        for record, port in zip(records, ports):
            record.add_config(cmembers.PinPort(port))
        return self

    def with_pdx(self, pattern: str, read_serialized: bool = False) -> "GemFireCluster":
        """Configure PDX serialization after locators started and before servers start."""
        if not self._is_configurable("with_pdx"):
            return self
        command = (
            "configure pdx --disk-store=DEFAULT "
            f"--read-serialized={str(read_serialized).lower()} "
            f"--auto-serializable-classes={pattern}"
        )
        self._after_locators = GfshAction(log_output=True, commands=(command,))
        return self

    def with_gfsh(self, log_output: bool, *commands: str) -> "GemFireCluster":
        """Run gfsh commands after the whole cluster started."""
        if not self._is_configurable("with_gfsh"):
            return self
        self._after_startup = GfshAction(log_output=log_output, commands=commands)
        return self

    def accept_license(self) -> "GemFireCluster":
        return self.with_configuration(cmembers.ALL, cmembers.SetEnv("ACCEPT_TERMS", "y"))

    def with_log_consumer(
        self, selector: str, consumer: ttypes.LogConsumer
    ) -> "GemFireCluster":
        """Call `consumer(member_name, line)` for every log line of the selected members."""
        return self.with_configuration(selector, cmembers.SubscribeLogs(consumer))

    def with_startup_timeout(self, selector: str, seconds: float) -> "GemFireCluster":
        if seconds <= 0:
            msg = f"Startup timeout must be > 0, got {seconds}."
            raise ValueError(msg)
        return self.with_configuration(selector, cmembers.SetStartupTimeout(seconds))

    def with_hostname_for_clients(self, selector: str, hostname: str) -> "GemFireCluster":
        return self.with_configuration(selector, cmembers.SetHostnameForClients(hostname))

    def with_cache_xml(self, selector: str, cache_xml: ttypes.FileOrBytes) -> "GemFireCluster":
        """Initialize the selected members' cache from the given cache XML."""
        content = helpers.read_resource(cache_xml)
        self.with_pre_start(selector, cmembers.CopyFile(content=content, path=CACHE_XML_FILE))
        return self.with_configuration(
            selector, cmembers.AppendArg(f"--J=-Dgemfire.cache-xml-file={CACHE_XML_FILE}")
        )

    # Lifecycle

    def _create_member(
        self, record: cmembers.MemberRecord, locator_addresses: str
    ) -> member_process.MemberProcess:
        process_cls = member_process.get_process_class(record.role)
        process = process_cls(
            record,
            image=self.config.image,
            runtime=self.runtime,
            network=self.network,
            locator_addresses=locator_addresses,
            log_echo=self.config.log_echo,
            startup_timeout=self.config.startup_timeout,
        )
        self._processes[record.member_name] = process
        process.start()
        return process

    def _run_action(self, action: GfshAction | None) -> None:
        if action is None:
            return
        self.gfsh(action.log_output, *action.commands)

    def start(self) -> "GemFireCluster":
        """Start the cluster and wait until all members are ready."""
        if self._state != ClusterState.UNSTARTED:
            msg = f"Cluster in state '{self._state}' cannot be started."
            raise errors.ClusterStateError(msg)
        self._state = ClusterState.STARTING

        LOGGER.info(
            f"Starting GemFire cluster '{self.network}' with {len(self.registry.locators)} "
            f"locators and {len(self.registry.servers)} servers."
        )

        self.runtime.create_network(self.network)
        self._network_created = True

        self.bridge = port_bridge.PortBridge(
            self.registry.members,
            image=self.config.bridge_image,
            runtime=self.runtime,
            network=self.network,
            name=f"gemfire-proxy-{self.suffix}",
        )
        self.bridge.allocate()
        self.bridge.start()

        # Every member needs to know all the locators at launch
        locator_addresses = ",".join(r.address for r in self.registry.locators)

        locators = [self._create_member(r, locator_addresses) for r in self.registry.locators]
        for locator in locators:
            locator.wait_to_start()

        self._run_action(self._after_locators)

        servers = [self._create_member(r, locator_addresses) for r in self.registry.servers]
        for server in servers:
            server.wait_to_start()

        self._run_action(self._after_startup)

        self._state = ClusterState.RUNNING
        LOGGER.info(
            f"GemFire cluster '{self.network}' is running, locator port {self.locator_port}."
        )
        return self

    def _stop_step(self, func: tp.Callable[[], None], what: str) -> None:
        try:
            func()
        except Exception as err:
            LOGGER.warning(f"Failed to stop {what}: {err}")

    def stop_bridge(self) -> None:
        if self.bridge is not None:
            self.bridge.stop()

    def close(self) -> None:
        """Stop and remove all containers and the network.

        Every step is attempted even when the previous one failed.
        """
        if self._state in (ClusterState.UNSTARTED, ClusterState.STOPPED):
            return

        LOGGER.info(f"Stopping GemFire cluster '{self.network}'.")
        self._stop_step(self.stop_bridge, "port bridge")
        for record in [*self.registry.servers, *self.registry.locators]:
            process = self._processes.get(record.member_name)
            if process is not None:
                self._stop_step(process.stop, f"member '{record.member_name}'")
        if self._network_created:
            self._stop_step(
                lambda: self.runtime.remove_network(self.network), f"network '{self.network}'"
            )
        self._state = ClusterState.STOPPED

    stop = close

    # Accessors

    @property
    def containers(self) -> dict[str, member_process.MemberProcess]:
        """Return member processes mapped by member name."""
        return {
            r.member_name: self._processes[r.member_name]
            for r in self.registry.members
            if r.member_name in self._processes
        }

    @property
    def locator_port(self) -> int:
        return self.registry.locators[0].external_port

    @property
    def locator_ports(self) -> list[int]:
        return [r.external_port for r in self.registry.locators]

    @property
    def server_ports(self) -> list[int]:
        return [r.external_port for r in self.registry.servers]

    @property
    def http_ports(self) -> list[int]:
        """Return ports for connecting `gfsh` over HTTP, one per locator."""
        return [r.external_http_port for r in self.registry.locators]

    def get_http_ports(self, selector: str) -> list[int]:
        return [r.external_http_port for r in self.registry.resolve(selector)]

    def ping_http(self, selector: str = cmembers.ALL_LOCATORS) -> list[int]:
        """Return HTTP status codes of the management ping endpoint of the selected members."""
        return [
            http_client.get_status(f"http://localhost:{port}{PING_ENDPOINT}")
            for port in self.get_http_ports(selector)
        ]

    # Administration

    def gfsh_builder(self) -> cgfsh.GfshBuilder:
        """Return builder of `gfsh` sessions connected through the first locator."""
        locator_name = self.registry.locators[0].member_name
        locator = self._processes.get(locator_name)
        if locator is None or locator.container is None:
            msg = f"Locator '{locator_name}' is not running."
            raise errors.ClusterStateError(msg)
        return cgfsh.GfshBuilder(locator)

    def gfsh(self, log_output: bool, *commands: str) -> str:
        """Run `gfsh` commands and return their output."""
        return self.gfsh_builder().with_logging(log_output).build().run(*commands)
