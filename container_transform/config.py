#!/usr/bin/env python3
"""
Configuration for container transformation.

TransformConfig carries the command line surface; IsuladDaemonConfig is
loaded from the iSulad daemon configuration file. Both are built once
and passed explicitly to the orchestrator and everything below it.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List

from container_transform.errors import ConfigError, TransformError
from container_transform.utils.file_utils import check_file_valid

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = "/var/log/isula-kits/transform.log"
DEFAULT_ISULAD_CONFIG_FILE = "/etc/isulad/daemon.json"
DEFAULT_DOCKER_GRAPH = "/var/lib/docker"
DEFAULT_DOCKER_STATE = "/var/run/docker"

DEFAULT_ISULAD_GRAPH = "/var/lib/isulad"
DEFAULT_ISULAD_STATE = "/var/run/isulad"
DEFAULT_RUNTIME = "lcr"
DEFAULT_STORAGE_DRIVER = "overlay2"

SUPPORTED_RUNTIMES = ["lcr"]
SUPPORTED_STORAGE_DRIVERS = ["overlay2", "devicemapper"]


@dataclass
class TransformConfig:
    """Options of one transformation run."""
    container_ids: List[str] = field(default_factory=list)
    all_containers: bool = False
    container_type: str = "docker"
    log_file: str = DEFAULT_LOG_FILE
    log_level: str = "info"
    isulad_config_file: str = DEFAULT_ISULAD_CONFIG_FILE
    docker_graph: str = DEFAULT_DOCKER_GRAPH
    docker_state: str = DEFAULT_DOCKER_STATE


@dataclass
class IsuladDaemonConfig:
    """Subset of the iSulad daemon.json used by the transformation."""
    graph: str = DEFAULT_ISULAD_GRAPH
    state: str = DEFAULT_ISULAD_STATE
    runtime: str = DEFAULT_RUNTIME
    log_level: str = "info"
    log_driver: str = ""
    storage_driver: str = DEFAULT_STORAGE_DRIVER
    storage_opts: List[str] = field(default_factory=list)
    image_layer_check: bool = False

    def validate(self):
        """Reject runtimes and storage drivers the transformation cannot handle."""
        if self.runtime not in SUPPORTED_RUNTIMES:
            raise ConfigError(f"not support runtime: {self.runtime}")
        if self.storage_driver not in SUPPORTED_STORAGE_DRIVERS:
            raise ConfigError(f"not support storage driver: {self.storage_driver}")


def load_daemon_config(config_path: str) -> IsuladDaemonConfig:
    """
    Load and validate the iSulad daemon configuration.

    Missing or empty keys fall back to iSulad's defaults.

    Args:
        config_path: Path to daemon.json

    Returns:
        IsuladDaemonConfig: Parsed configuration

    Raises:
        ConfigError: If the file is invalid or names an unsupported setup
    """
    try:
        check_file_valid(config_path)
    except TransformError as e:
        raise ConfigError(f"check isulad daemon config failed: {e}") from e

    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"read isulad daemon config failed: {e}, file path: {config_path}")
        raise ConfigError(f"read isulad daemon config failed: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"isulad daemon config {config_path} is not a JSON object")

    config = IsuladDaemonConfig(
        graph=data.get("graph") or DEFAULT_ISULAD_GRAPH,
        state=data.get("state") or DEFAULT_ISULAD_STATE,
        runtime=data.get("default-runtime") or DEFAULT_RUNTIME,
        log_level=data.get("log-level") or "info",
        log_driver=data.get("log-driver") or "",
        storage_driver=data.get("storage-driver") or DEFAULT_STORAGE_DRIVER,
        storage_opts=list(data.get("storage-opts") or []),
        image_layer_check=bool(data.get("image-layer-check", False))
    )
    logger.debug(f"isulad daemon config: {config}")

    config.validate()
    return config
