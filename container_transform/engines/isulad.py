#!/usr/bin/env python3
"""
iSulad side of the transformation.

IsuladTool knows the layout of iSulad's runtime directory and writes the
per-container bundle: configuration files, network files, the shared
memory mount and the low-level runtime artifacts.
"""

import json
import logging
import os
import shutil
import subprocess
from typing import Any, Optional

import psutil

from container_transform.config import IsuladDaemonConfig
from container_transform.engines.lcr import LcrRuntime
from container_transform.errors import TransformError
from container_transform.utils.file_utils import ensure_directory

ROOT_DIR_MODE = 0o750
MOUNTS_DIR_MODE = 0o700
CFG_FILE_MODE = 0o640
NETWORK_FILE_MODE = 0o644

HOST_CONFIG_FILE = "hostconfig.json"
V2_CONFIG_FILE = "config.v2.json"
OCI_CONFIG_FILE = "config.json"

HOSTNAME_FILE = "hostname"
HOSTS_FILE = "hosts"
RESOLV_FILE = "resolv.conf"
NETWORK_FILES = [HOSTNAME_FILE, HOSTS_FILE, RESOLV_FILE]


def marshal_indent(data: Any) -> bytes:
    return json.dumps(data, indent="\t").encode()


def is_mounted(path: str) -> bool:
    """Check whether path is currently a mount point."""
    target = os.path.realpath(path)
    for partition in psutil.disk_partitions(all=True):
        if os.path.realpath(partition.mountpoint) == target:
            return True
    return False


class IsuladTool:
    """Writes container bundles in iSulad's on-disk format."""

    def __init__(self, daemon_config: IsuladDaemonConfig, lcr: Optional[LcrRuntime] = None):
        """
        Initialize iSulad tool.

        Args:
            daemon_config: Validated iSulad daemon configuration
            lcr: Low-level runtime binding, created on demand if omitted
        """
        self.graph = daemon_config.graph
        self.runtime = daemon_config.runtime
        self.lcr = lcr or LcrRuntime()
        self.logger = logging.getLogger(__name__)

    @property
    def runtime_path(self) -> str:
        return os.path.join(self.graph, "engines", self.runtime)

    def bundle_path(self, container_id: str) -> str:
        return os.path.join(self.runtime_path, container_id)

    def host_config_path(self, container_id: str) -> str:
        return os.path.join(self.bundle_path(container_id), HOST_CONFIG_FILE)

    def v2_config_path(self, container_id: str) -> str:
        return os.path.join(self.bundle_path(container_id), V2_CONFIG_FILE)

    def oci_config_path(self, container_id: str) -> str:
        return os.path.join(self.bundle_path(container_id), OCI_CONFIG_FILE)

    def network_file_path(self, container_id: str, name: str) -> str:
        return os.path.join(self.bundle_path(container_id), name)

    def prepare_bundle_dir(self, container_id: str):
        """Create the bundle directory; an existing one means another transform got there first."""
        path = self.bundle_path(container_id)
        if os.path.lexists(path):
            raise TransformError(
                f"directory {path} already exists, container has been or is being transformed"
            )
        os.makedirs(path, mode=ROOT_DIR_MODE)

    def save_config(self, path: str, data: Any):
        """
        Serialize data to path, refusing to overwrite an existing file.

        Args:
            path: Destination file inside a bundle
            data: JSON-serializable structure

        Raises:
            TransformError: If the file exists or cannot be written
        """
        if os.path.lexists(path):
            raise TransformError(f"{path} already exist")

        content = marshal_indent(data)
        mode = NETWORK_FILE_MODE if os.path.basename(path) in NETWORK_FILES else CFG_FILE_MODE
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
            with os.fdopen(fd, 'wb') as f:
                f.write(content)
        except OSError as e:
            self.logger.error(f"write data to file {path} failed: {e}")
            raise TransformError(f"write {path}: {e}") from e

    def cleanup(self, container_id: str):
        """Remove the bundle directory tree of the container."""
        path = self.bundle_path(container_id)
        if os.path.lexists(path):
            shutil.rmtree(path)

    def prepare_shm(self, path: str, size: int):
        """
        Create and mount the container's shared memory tmpfs.

        Args:
            path: Mount point inside the bundle
            size: Size limit in bytes
        """
        ensure_directory(path, MOUNTS_DIR_MODE)
        options = f"mode=1777,size={size},nosuid,nodev,noexec"
        result = subprocess.run(
            ["mount", "-t", "tmpfs", "-o", options, "shm", path],
            capture_output=True,
            text=True
        )
        if result.returncode != 0:
            raise TransformError(f"mount shm on {path}: {result.stderr.strip()}")

    def umount_shm(self, path: str):
        """Lazily detach the shm mount; a path that is not mounted is left alone."""
        if not is_mounted(path):
            self.logger.debug(f"{path} is not mounted, skip umount")
            return
        result = subprocess.run(["umount", "-l", path], capture_output=True, text=True)
        if result.returncode != 0:
            raise TransformError(f"umount {path}: {result.stderr.strip()}")

    def lcr_create(self, container_id: str, spec: bytes):
        self.lcr.create(container_id, self.runtime_path, spec)
