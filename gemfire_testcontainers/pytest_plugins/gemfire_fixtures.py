"""Pytest fixtures providing disposable GemFire clusters.

Enable the plugin with
`pytest_plugins = ("gemfire_testcontainers.pytest_plugins.gemfire_fixtures",)`, it is also
registered as a `pytest11` entry point of the installed package.
Size of the cluster can be changed with the `gemfire_cluster(locators=..., servers=...)` marker.
"""

import dataclasses
import logging
import typing as tp

import pytest
from _pytest.fixtures import FixtureRequest
from _pytest.tmpdir import TempPathFactory

from gemfire_testcontainers.cluster_management import cluster as ccluster
from gemfire_testcontainers.utils import artifacts
from gemfire_testcontainers.utils import configuration

LOGGER = logging.getLogger(__name__)

IMAGE_ARG = "--gemfire-image"
CLUSTER_MARKER = "gemfire_cluster"


def pytest_addoption(parser: tp.Any) -> None:
    parser.addoption(
        IMAGE_ARG,
        action="store",
        default=configuration.GEMFIRE_IMAGE,
        help="GemFire image used for cluster members",
    )


def pytest_configure(config: tp.Any) -> None:
    config.addinivalue_line(
        "markers",
        f"{CLUSTER_MARKER}(locators=1, servers=2): size of the cluster used by the test",
    )


def _get_cluster_config(request: FixtureRequest) -> ccluster.ClusterConfig:
    return dataclasses.replace(ccluster.ClusterConfig(), image=request.config.getoption(IMAGE_ARG))


@pytest.fixture
def gemfire_cluster_factory(
    request: FixtureRequest,
    tmp_path_factory: TempPathFactory,
) -> tp.Generator[tp.Callable[..., ccluster.GemFireCluster], None, None]:
    """Return factory of unstarted clusters, all created clusters are closed on teardown."""
    created: list[ccluster.GemFireCluster] = []

    def _factory(locator_count: int = 1, server_count: int = 2) -> ccluster.GemFireCluster:
        cluster_obj = ccluster.GemFireCluster(
            locator_count=locator_count,
            server_count=server_count,
            config=_get_cluster_config(request),
        )
        created.append(cluster_obj)
        return cluster_obj

    yield _factory

    for cluster_obj in created:
        if cluster_obj.containers:
            artifacts.save_member_logs(
                cluster_obj=cluster_obj, save_dir=tmp_path_factory.getbasetemp()
            )
        cluster_obj.close()


@pytest.fixture
def gemfire_cluster(
    request: FixtureRequest,
    gemfire_cluster_factory: tp.Callable[..., ccluster.GemFireCluster],
) -> ccluster.GemFireCluster:
    """Return started cluster with accepted license."""
    marker = request.node.get_closest_marker(CLUSTER_MARKER)
    kwargs = marker.kwargs if marker else {}

    cluster_obj = gemfire_cluster_factory(
        locator_count=kwargs.get("locators", 1), server_count=kwargs.get("servers", 2)
    )
    cluster_obj.accept_license()
    return cluster_obj.start()
