"""Functionality for collecting testing artifacts."""

import logging
import pathlib as pl
import typing as tp

import allure

from gemfire_testcontainers.utils import helpers

if tp.TYPE_CHECKING:
    from gemfire_testcontainers.cluster_management import cluster as ccluster

LOGGER = logging.getLogger(__name__)


def save_member_logs(*, cluster_obj: "ccluster.GemFireCluster", save_dir: pl.Path) -> pl.Path:
    """Save logs of all cluster members and attach them to the Allure report."""
    destdir = (
        save_dir / "cluster_artifacts" / f"{cluster_obj.network}_{helpers.get_rand_str(8)}"
    )
    destdir.mkdir(parents=True)

    for member_name, process in cluster_obj.containers.items():
        try:
            logfile = process.save_logs(destdir)
        except Exception as err:
            LOGGER.warning(f"Failed to save logs of member '{member_name}': {err}")
            continue
        allure.attach.file(
            str(logfile), name=logfile.name, attachment_type=allure.attachment_type.TEXT
        )

    LOGGER.info(f"Cluster artifacts saved to '{destdir}'.")
    return destdir
