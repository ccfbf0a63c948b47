"""Cluster and test environment configuration."""

import os

# Default GemFire image used for locators and servers
GEMFIRE_IMAGE = os.environ.get("GEMFIRE_IMAGE") or "gemfire/gemfire:10.1"

# Image used for the port bridge container, it needs `socat` and `/bin/sh`
BRIDGE_IMAGE = os.environ.get("GEMFIRE_BRIDGE_IMAGE") or "alpine/socat:1.7.4.4"

# Echo container logs of all cluster members to stdout
LOG_ECHO = bool(os.environ.get("GEMFIRE_LOG_ECHO"))

# Seconds to wait for a single member to report successful startup
STARTUP_TIMEOUT = int(os.environ.get("GEMFIRE_STARTUP_TIMEOUT") or 120)
if STARTUP_TIMEOUT <= 0:
    msg = f"Invalid GEMFIRE_STARTUP_TIMEOUT '{STARTUP_TIMEOUT}': must be > 0"
    raise RuntimeError(msg)

DOCKER_BIN = os.environ.get("DOCKER_BIN") or "docker"
