#!/usr/bin/env python3
"""
Storage drivers that move a container's read-write layer to the new rootfs.

OverlayDriver copies the whole writable diff directory; the overlay2
backend keeps it self-contained. DeviceMapperDriver has no such
directory, so it asks the source engine for the changed paths and
replays only those.
"""

import logging
import os
from typing import Dict, List

from container_transform.engines.docker import DockerClient
from container_transform.errors import TransformError
from container_transform.storage.diff_trie import Change, ChangeKind, filter_changes
from container_transform.storage.image_service import ImageServiceError, RootfsOperations
from container_transform.utils.file_utils import copy_archive, ensure_directory, remove_path

OVERLAY2 = "overlay2"
DEVICEMAPPER = "devicemapper"

MERGED_SUFFIX = "/merged"


def _trim_merged(path: str) -> str:
    path = path.rstrip("/")
    if path.endswith(MERGED_SUFFIX):
        return path[:-len(MERGED_SUFFIX)]
    return path


def _common_config(v2_config: Dict) -> Dict:
    return v2_config.get("CommonConfig") or {}


class OverlayDriver:
    """Full-copy driver for the overlay2 backend."""

    name = OVERLAY2

    def __init__(self, rootfs: RootfsOperations):
        self.rootfs = rootfs
        self.logger = logging.getLogger(__name__)

    def generate_rootfs(self, container_id: str, image: str) -> str:
        return self.rootfs.generate_rootfs(container_id, image)

    def transform_rw_layer(self, v2_config: Dict, old_rootfs: str):
        """Copy <old>/diff into the new layer directory."""
        common = _common_config(v2_config)
        src_root = _trim_merged(old_rootfs)
        dest_root = _trim_merged(common.get("BaseFs", ""))
        if not dest_root:
            raise TransformError("new rootfs of container is empty")
        self.logger.info(f"overlay driver copy {src_root}/diff to {dest_root}")
        copy_archive(os.path.join(src_root, "diff"), dest_root)

    def cleanup(self, container_id: str):
        self.rootfs.cleanup_rootfs(container_id)


class DeviceMapperDriver:
    """Differential driver for the devicemapper backend."""

    name = DEVICEMAPPER

    def __init__(self, rootfs: RootfsOperations, client: DockerClient):
        self.rootfs = rootfs
        self.client = client
        self.logger = logging.getLogger(__name__)

    def generate_rootfs(self, container_id: str, image: str) -> str:
        return self.rootfs.generate_rootfs(container_id, image)

    def changes_filter(self, changes: List[Change], mounts: Dict) -> List[Change]:
        return filter_changes(changes, mounts or {})

    def transform_rw_layer(self, v2_config: Dict, old_rootfs: str):
        """
        Replay the container's changes from the old rootfs onto the new one.

        The new rootfs is mounted for the duration of the copy and always
        unmounted afterwards; an unmount failure is only logged.
        """
        common = _common_config(v2_config)
        container_id = common.get("id", "")
        new_rootfs = common.get("BaseFs", "")
        image = common.get("Image", "")

        self.rootfs.mount_rootfs(container_id, image)
        try:
            diff = self.client.diff(container_id)
            changes = self.changes_filter(diff, common.get("MountPoints"))
            self.logger.info(f"device mapper driver get diff from docker: {diff}, filter: {changes}")
            for change in changes:
                self._apply(change, old_rootfs, new_rootfs)
        finally:
            try:
                self.rootfs.umount_rootfs(container_id, image)
            except ImageServiceError as e:
                self.logger.info(f"device mapper umount rootfs failed: {e}")

    def _apply(self, change: Change, old_rootfs: str, new_rootfs: str):
        src = old_rootfs + change.path
        dest = new_rootfs + change.path
        if change.kind in (ChangeKind.ADD, ChangeKind.CHANGE):
            dest_parent = os.path.dirname(dest)
            ensure_directory(dest_parent)
            try:
                copy_archive(src, dest_parent)
            except TransformError:
                self.logger.error(f"device mapper copy {src} to {dest} failed")
                raise
        elif change.kind == ChangeKind.DELETE:
            try:
                remove_path(dest)
            except OSError as e:
                self.logger.error(f"device mapper remove {dest} failed: {e}")
                raise TransformError(f"remove {dest}: {e}") from e

    def cleanup(self, container_id: str):
        self.rootfs.cleanup_rootfs(container_id)


def create_storage_driver(storage_type: str, rootfs: RootfsOperations, client: DockerClient):
    """
    Select the storage driver for the configured backend.

    Raises:
        TransformError: If the backend is not supported
    """
    if storage_type == OVERLAY2:
        return OverlayDriver(rootfs)
    if storage_type == DEVICEMAPPER:
        return DeviceMapperDriver(rootfs, client)
    raise TransformError(f"unsupported storage driver type: {storage_type}")
