"""Exceptions raised while configuring, starting and administering a cluster.

Configuration-time errors (bad selector, mismatched port count, unreadable resource) are raised
immediately by the call that caused them. Startup-time errors abort `GemFireCluster.start`.
"""


class GemFireClusterError(Exception):
    pass


class SelectorNoMatchError(GemFireClusterError, ValueError):
    """No cluster member matches the given selector."""

    def __init__(self, selector: str) -> None:
        self.selector = selector
        super().__init__(f"No members matching '{selector}' found")


class PortCountMismatchError(GemFireClusterError, ValueError):
    """Number of pinned ports doesn't match the number of selected members."""

    def __init__(self, selector: str, members_count: int, ports_count: int) -> None:
        self.selector = selector
        self.members_count = members_count
        self.ports_count = ports_count
        super().__init__(
            f"Found {members_count} members matching '{selector}' but supplied {ports_count} "
            "ports. They must be the same."
        )


class ResourceReadError(GemFireClusterError):
    pass


class PortAllocationError(GemFireClusterError):
    pass


class ClusterStateError(GemFireClusterError):
    pass


class StartupError(GemFireClusterError):
    """A member failed to start.

    Carries the name of the member and the tail of its log.
    """

    def __init__(self, msg: str, *, member_name: str = "", log_tail: str = "") -> None:
        self.member_name = member_name
        self.log_tail = log_tail
        if log_tail:
            msg = f"{msg}\nLast log lines of '{member_name}':\n{log_tail}"
        super().__init__(msg)


class StartupTimeoutError(StartupError):
    pass


class AdministrativeCommandError(GemFireClusterError):
    """A batch of gfsh commands finished with non-zero exit code."""

    def __init__(
        self, msg: str, *, output: str, exit_code: int, commands: tuple[str, ...] = ()
    ) -> None:
        self.output = output
        self.exit_code = exit_code
        self.commands = commands
        super().__init__(f"{msg}\nReturn code: {exit_code}\n{output}")
