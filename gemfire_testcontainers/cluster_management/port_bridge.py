"""Port bridge relaying host-visible ports to cluster members.

Every member advertises an internal port to its peers. The port must stay the same no matter on
which host port the engine publishes it. The bridge container exposes one relay port per member
and port kind (primary and HTTP). The engine maps each relay port to an ephemeral host port.
Members then listen on these host port numbers and the bridge relays its own internal ports to
them.

The bridge container waits until the relay script appears in its filesystem. The script can be
rendered only after the bridge itself runs and its ports are mapped.
"""

import logging

from gemfire_testcontainers.cluster_management import errors
from gemfire_testcontainers.cluster_management import members as cmembers
from gemfire_testcontainers.utils import docker_runtime

LOGGER = logging.getLogger(__name__)

BASE_PORT = 2000
STARTER_SCRIPT = "/gemfire_proxy_start.sh"
STARTER_CMD = f"while [ ! -f {STARTER_SCRIPT} ]; do sleep 0.1; done; {STARTER_SCRIPT}"


class PortBridge:
    """Auxiliary container exposing relay ports for all cluster members."""

    def __init__(
        self,
        members: list[cmembers.MemberRecord],
        *,
        image: str,
        runtime: docker_runtime.DockerRuntime,
        network: str,
        name: str,
    ) -> None:
        self.members = members
        self.image = image
        self.runtime = runtime
        self.network = network
        self.name = name
        self.container: docker_runtime.Container | None = None
        self._allocated = False

    def allocate(self) -> docker_runtime.ContainerSpec:
        """Assign internal relay ports to members and declare exposed ports of the bridge."""
        if self._allocated:
            msg = f"Ports of bridge '{self.name}' were already allocated."
            raise errors.PortAllocationError(msg)

        spec = docker_runtime.ContainerSpec(
            image=self.image,
            name=self.name,
            network=self.network,
            entrypoint="/bin/sh",
            command=["-c", STARTER_CMD],
        )

        port = BASE_PORT
        for member in self.members:
            member.internal_port = port
            member.internal_http_port = port + 1
            port += 2

            if member.pinned_port:
                spec.port_bindings.append(f"{member.pinned_port}:{member.internal_port}")
            else:
                spec.exposed_ports.append(member.internal_port)
            spec.exposed_ports.append(member.internal_http_port)

        self.container = docker_runtime.Container(spec, runtime=self.runtime)
        self._allocated = True
        LOGGER.debug(f"Allocated relay ports {BASE_PORT}-{port - 1} on bridge '{self.name}'.")
        return spec

    def _read_mapped_ports(self) -> None:
        assert self.container
        for member in self.members:
            port = member.pinned_port or self.container.get_mapped_port(member.internal_port)
            http_port = self.container.get_mapped_port(member.internal_http_port)
            member.assign_external_ports(port=port, http_port=http_port)

    def relay_commands(self) -> list[str]:
        """Return one `socat` command per member and port kind."""
        commands = []
        for member in self.members:
            commands.append(
                f"socat TCP-LISTEN:{member.internal_port},fork,reuseaddr "
                f"TCP:{member.hostname}:{member.external_port}"
            )
            commands.append(
                f"socat TCP-LISTEN:{member.internal_http_port},fork,reuseaddr "
                f"TCP:{member.hostname}:{member.external_http_port}"
            )
        return commands

    def render_script(self) -> str:
        return "#!/bin/sh\n" + " & ".join(self.relay_commands())

    def start(self) -> None:
        """Start the bridge, read back mapped ports and write the relay script."""
        if not self._allocated:
            self.allocate()
        assert self.container

        try:
            self.container.create()
            self.container.start()
        except docker_runtime.DockerError as exc:
            msg = f"Failed to start bridge '{self.name}': {exc}"
            raise errors.PortAllocationError(msg) from exc

        self._read_mapped_ports()

        for line in self.relay_commands():
            LOGGER.info(f"Bridge '{self.name}': {line}")

        self.container.copy_file_to_container(
            self.render_script().encode(), STARTER_SCRIPT, mode=0o777
        )

    def stop(self) -> None:
        if self.container is None:
            return
        self.container.stop()
