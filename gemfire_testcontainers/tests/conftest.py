import logging
import shutil
import subprocess

import pytest

from gemfire_testcontainers.utils import configuration

LOGGER = logging.getLogger(__name__)


def _docker_available() -> bool:
    if not shutil.which(configuration.DOCKER_BIN):
        return False
    try:
        subprocess.run(
            [configuration.DOCKER_BIN, "info"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
            timeout=30,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        LOGGER.warning(f"Docker is not usable: {exc}")
        return False
    return True


def pytest_collection_modifyitems(
    config: pytest.Config,  # noqa: ARG001
    items: list[pytest.Item],
) -> None:
    docker_items = [i for i in items if i.get_closest_marker("docker")]
    if not docker_items or _docker_available():
        return

    skip_docker = pytest.mark.skip(reason="docker is not available")
    for item in docker_items:
        item.add_marker(skip_docker)
