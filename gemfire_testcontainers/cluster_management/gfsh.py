"""Running batches of `gfsh` commands in a locator container."""

import datetime
import logging
import typing as tp

from gemfire_testcontainers.cluster_management import errors
from gemfire_testcontainers.utils import helpers
from gemfire_testcontainers.utils import types as ttypes

if tp.TYPE_CHECKING:
    from gemfire_testcontainers.cluster_management import member_process

LOGGER = logging.getLogger(__name__)

JMX_PORT = 1099
SCRIPT_FILE = "/script.gfsh"
KEY_STORE_FILE = "/key-store"
TRUST_STORE_FILE = "/trust-store"
SECURITY_PROPERTIES_FILE = "/security.properties"
CONNECT_COMMAND = f"connect --jmx-manager=localhost[{JMX_PORT}] "


def _escape_unicode(value: str) -> str:
    """Escape characters outside of printable ASCII as `\\uXXXX`.

    Java reads properties files as ISO-8859-1, characters outside of the BMP are written as
    UTF-16 surrogate pairs.

    >>> _escape_unicode("päss")
    'p\\\\u00E4ss'
    """
    chars = []
    for char in value:
        if 0x20 <= ord(char) <= 0x7E:
            chars.append(char)
            continue
        utf16 = char.encode("utf-16-be")
        for idx in range(0, len(utf16), 2):
            chars.append(f"\\u{int.from_bytes(utf16[idx : idx + 2], 'big'):04X}")
    return "".join(chars)


def _escape_property(value: str, *, is_key: bool = False) -> str:
    """Escape key or value for Java properties file."""
    value = (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    if is_key:
        for char in "=: #!":
            value = value.replace(char, f"\\{char}")
    elif value.startswith(" "):
        value = f"\\{value}"
    return _escape_unicode(value)


def format_properties(properties: tp.Mapping[str, str], comment: str = "") -> str:
    """Format mapping as a Java properties file."""
    lines = []
    if comment:
        lines.append(f"#{comment}")
    lines.append(f"#{datetime.datetime.now(tz=datetime.UTC).strftime('%a %b %d %H:%M:%S %Z %Y')}")
    lines.extend(
        f"{_escape_property(str(k), is_key=True)}={_escape_property(str(v))}"
        for k, v in properties.items()
    )
    return "\n".join(lines) + "\n"


class Gfsh:
    """Session for running batches of commands through a connected `gfsh`."""

    def __init__(
        self,
        locator: "member_process.MemberProcess",
        connect_command: str,
        *,
        log_output: bool = False,
    ) -> None:
        self.locator = locator
        self.connect_command = connect_command
        self.log_output = log_output

    def script(self, commands: tp.Iterable[str]) -> str:
        return "\n".join([self.connect_command, *commands])

    def run(self, *commands: str) -> str:
        """Run commands and return combined stdout and stderr of `gfsh`.

        Raises:
            AdministrativeCommandError: `gfsh` returned non-zero exit code.
        """
        self.locator.copy_file_to_container(
            self.script(commands).encode(), SCRIPT_FILE, mode=0o666
        )
        result = self.locator.exec_in_container("gfsh", "-e", f"run --file={SCRIPT_FILE}")
        output = result.output

        failed = result.exit_code != 0
        if self.log_output or failed:
            log_func = LOGGER.error if failed else LOGGER.info
            for line in output.splitlines():
                log_func(line)

        if failed:
            msg = f"Error executing gfsh commands: {list(commands)}"
            raise errors.AdministrativeCommandError(
                msg, output=output, exit_code=result.exit_code, commands=tuple(commands)
            )

        return output


class GfshBuilder:
    """Builder of `Gfsh` sessions.

    Store files are copied into the locator container right away. Options are ignored when
    `with_connect` or `with_security_properties` is used to finish the builder.
    """

    def __init__(self, locator: "member_process.MemberProcess") -> None:
        self.locator = locator
        self.log_output = False
        self.options: dict[str, str] = {}

    def _copy(self, content: bytes, path: str) -> None:
        self.locator.copy_file_to_container(content, path, mode=0o666)

    def with_credentials(self, username: str, password: str) -> "GfshBuilder":
        self.options["--username"] = username
        self.options["--password"] = password
        return self

    def with_key_store(self, key_store: ttypes.FileOrBytes, password: str) -> "GfshBuilder":
        self._copy(helpers.read_resource(key_store), KEY_STORE_FILE)
        self.options["--key-store"] = KEY_STORE_FILE
        self.options["--key-store-password"] = password
        return self

    def with_trust_store(self, trust_store: ttypes.FileOrBytes, password: str) -> "GfshBuilder":
        self._copy(helpers.read_resource(trust_store), TRUST_STORE_FILE)
        self.options["--trust-store"] = TRUST_STORE_FILE
        self.options["--trust-store-password"] = password
        return self

    def with_ciphers(self, ciphers: str) -> "GfshBuilder":
        self.options["--ciphers"] = ciphers
        return self

    def with_protocols(self, protocols: str) -> "GfshBuilder":
        self.options["--protocols"] = protocols
        return self

    def with_logging(self, log_output: bool) -> "GfshBuilder":
        self.log_output = log_output
        return self

    def with_security_properties(
        self, security_properties: ttypes.FileOrBytes | tp.Mapping[str, str]
    ) -> Gfsh:
        """Connect using a security properties file, given as a file or as a mapping."""
        if isinstance(security_properties, tp.Mapping):
            content = format_properties(security_properties, "Security Properties").encode()
        else:
            content = helpers.read_resource(security_properties)

        self._copy(content, SECURITY_PROPERTIES_FILE)
        return self.with_connect([f"--security-properties-file={SECURITY_PROPERTIES_FILE}"])

    def with_connect(self, connect_options: tp.Iterable[str]) -> Gfsh:
        """Connect using explicit options of the `connect` command."""
        connect_command = CONNECT_COMMAND + " ".join(connect_options)
        return Gfsh(self.locator, connect_command, log_output=self.log_output)

    def build(self) -> Gfsh:
        connect_command = CONNECT_COMMAND + "".join(
            f"{k}={v} " for k, v in self.options.items()
        )
        return Gfsh(self.locator, connect_command, log_output=self.log_output)
