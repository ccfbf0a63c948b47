import itertools
import pathlib as pl
import random
import string
import typing as tp

from gemfire_testcontainers.cluster_management import errors
from gemfire_testcontainers.utils import types as ttypes


def get_rand_str(length: int = 8) -> str:
    """Return random lowercase string usable in container and network names."""
    if length < 1:
        return ""
    return "".join(random.choices(string.ascii_lowercase, k=length))


def prepend_flag(flag: str, contents: tp.Iterable) -> list[str]:
    """Return `docker` CLI arguments repeating the flag before every value.

    >>> prepend_flag("--publish", [2000, "5005:5005"])
    ['--publish', '2000', '--publish', '5005:5005']
    """
    return list(itertools.chain.from_iterable([flag, str(x)] for x in contents))


def read_resource(resource: ttypes.FileOrBytes) -> bytes:
    """Return content of a file that is needed for cluster configuration.

    Raw bytes are returned as they are. The file is read right away, so a missing file is
    reported when the cluster is being configured and not later during startup.
    """
    if isinstance(resource, bytes):
        return resource

    fpath = pl.Path(resource).expanduser()
    if not fpath.is_file():
        msg = f"Unable to locate resource: {resource}"
        raise errors.ResourceReadError(msg)

    try:
        return fpath.read_bytes()
    except OSError as exc:
        msg = f"Unable to read resource: {resource}"
        raise errors.ResourceReadError(msg) from exc
