"""Cluster member records and selection of members by name globs.

Every member of a cluster is described by a `MemberRecord`. Configuration of a member is recorded
as an ordered list of declarative mutations (see the `SetEnv`, `AppendArg`, ... classes below),
which are interpreted only when the member's container is being built. The mutations can be
inspected and tested without creating any container.

Members are selected by a restricted glob:

* `*` matches any (also empty) run of characters
* `?` matches exactly one character
* everything else matches literally, the whole member name must match, case-sensitive
"""

import dataclasses
import enum
import logging
import re
import typing as tp

from gemfire_testcontainers.cluster_management import errors
from gemfire_testcontainers.utils import types as ttypes

if tp.TYPE_CHECKING:
    from gemfire_testcontainers.utils import docker_runtime

LOGGER = logging.getLogger(__name__)

ALL = "all"
ALL_LOCATORS = "all locators"
ALL_SERVERS = "all servers"

BUILTIN_SELECTORS = {
    ALL: "*",
    ALL_LOCATORS: "locator-*",
    ALL_SERVERS: "server-*",
}


class Role(enum.StrEnum):
    LOCATOR = "locator"
    SERVER = "server"


@dataclasses.dataclass(frozen=True)
class SetEnv:
    name: str
    value: str


@dataclasses.dataclass(frozen=True)
class AppendArg:
    arg: str


@dataclasses.dataclass(frozen=True)
class BindMount:
    """Read-only bind mount, `classpath` mounts are added to the `--classpath` flag."""

    host_path: str
    container_path: str
    classpath: bool = False


@dataclasses.dataclass(frozen=True)
class PortBinding:
    host_port: int
    container_port: int


@dataclasses.dataclass(frozen=True)
class PinPort:
    port: int


@dataclasses.dataclass(frozen=True)
class SubscribeLogs:
    consumer: ttypes.LogConsumer


@dataclasses.dataclass(frozen=True)
class SetStartupTimeout:
    seconds: float


@dataclasses.dataclass(frozen=True)
class SetHostnameForClients:
    hostname: str


@dataclasses.dataclass(frozen=True)
class CopyFile:
    """Copy file to the container after it was created and before it is started."""

    content: bytes
    path: str
    mode: int = 0o666


@dataclasses.dataclass(frozen=True)
class Customize:
    """Escape hatch, the function is called with the `ContainerSpec` being built."""

    func: tp.Callable[["docker_runtime.ContainerSpec"], None]


Mutation = (
    SetEnv
    | AppendArg
    | BindMount
    | PortBinding
    | PinPort
    | SubscribeLogs
    | SetStartupTimeout
    | SetHostnameForClients
    | CopyFile
    | Customize
)


@dataclasses.dataclass
class MemberRecord:
    role: Role
    index: int
    cluster_suffix: str
    internal_port: int = 0
    internal_http_port: int = 0
    external_port: int = 0
    external_http_port: int = 0
    config_hooks: list[Mutation] = dataclasses.field(default_factory=list)
    pre_start_hooks: list[Mutation] = dataclasses.field(default_factory=list)
    container: tp.Any = None
    _ports_assigned: bool = dataclasses.field(default=False, repr=False)

    @property
    def member_name(self) -> str:
        return f"{self.role}-{self.index}"

    @property
    def hostname(self) -> str:
        return f"{self.member_name}-{self.cluster_suffix}"

    @property
    def address(self) -> str:
        """Address peers use to reach the member, the member listens on its external port."""
        return f"{self.hostname}[{self.external_port}]"

    @property
    def pinned_port(self) -> int:
        """Return the last pinned external port, 0 when the port was not pinned."""
        pinned = [m.port for m in self.config_hooks if isinstance(m, PinPort)]
        return pinned[-1] if pinned else 0

    @property
    def is_bound(self) -> bool:
        return self.container is not None

    def _can_mutate(self, mutation: Mutation) -> bool:
        if self.is_bound:
            LOGGER.debug(f"Ignoring {mutation} for already created member '{self.member_name}'.")
            return False
        return True

    def add_config(self, mutation: Mutation) -> None:
        if not self._can_mutate(mutation):
            return
        self.config_hooks.append(mutation)
        if isinstance(mutation, PinPort):
            self.external_port = mutation.port

    def add_pre_start(self, mutation: Mutation) -> None:
        if self._can_mutate(mutation):
            self.pre_start_hooks.append(mutation)

    def assign_external_ports(self, *, port: int, http_port: int) -> None:
        """Store host ports the bridge relay ports were mapped to.

        The primary port of a member with a pinned port is not changed.
        """
        if self._ports_assigned:
            msg = f"External ports of member '{self.member_name}' were already assigned."
            raise errors.PortAllocationError(msg)
        self._ports_assigned = True

        if not self.pinned_port:
            self.external_port = port
        self.external_http_port = http_port


def glob_to_regex(glob: str) -> str:
    """Convert selector glob to anchored regular expression.

    >>> glob_to_regex("a?b*")
    '^a.b.*$'
    """
    parts = []
    for char in glob:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return f"^{''.join(parts)}$"


class MemberRegistry:
    """Records of all cluster members, locators first."""

    def __init__(self, locator_count: int, server_count: int, suffix: str) -> None:
        self.suffix = suffix
        self.locators = [
            MemberRecord(role=Role.LOCATOR, index=i, cluster_suffix=suffix)
            for i in range(locator_count)
        ]
        self.servers = [
            MemberRecord(role=Role.SERVER, index=i, cluster_suffix=suffix)
            for i in range(server_count)
        ]

    @property
    def members(self) -> list[MemberRecord]:
        return [*self.locators, *self.servers]

    @property
    def member_names(self) -> list[str]:
        return [m.member_name for m in self.members]

    def resolve(self, selector: str) -> list[MemberRecord]:
        """Return members matching the selector, locators first, both ordered by index."""
        glob = BUILTIN_SELECTORS.get(selector, selector)
        pattern = re.compile(glob_to_regex(glob))
        matching = [m for m in self.members if pattern.fullmatch(m.member_name)]
        if not matching:
            raise errors.SelectorNoMatchError(selector)
        return matching

    def get(self, member_name: str) -> MemberRecord:
        for member in self.members:
            if member.member_name == member_name:
                return member
        raise errors.SelectorNoMatchError(member_name)
