#!/usr/bin/env python3
"""
Per-container transformation pipeline.

Moves one paused Docker container into an iSulad bundle, one step at a
time. Every step that creates something registers its undo with the
container's Rollback; a failing step or a cancelled run unwinds them.
"""

import json
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from container_transform.engines.docker import DockerClient, DockerStateReader
from container_transform.engines.isulad import NETWORK_FILES, IsuladTool
from container_transform.errors import DockerCommandError, TransformCancelled, TransformError
from container_transform.transform import reconcile
from container_transform.transform.rollback import CancelToken, Rollback
from container_transform.utils.file_utils import copy_archive


class PipelineState(Enum):
    """Last step a pipeline completed."""
    PENDING = "pending"
    PAUSED = "paused"
    BUNDLE_PREPARED = "bundle_prepared"
    HOST_CONFIG_WRITTEN = "host_config_written"
    V2_CONFIG_WRITTEN = "v2_config_written"
    SHM_PREPARED = "shm_prepared"
    NETWORK_FILES_COPIED = "network_files_copied"
    OCI_CONFIG_WRITTEN = "oci_config_written"
    RW_LAYER_MIGRATED = "rw_layer_migrated"
    FINALIZED = "finalized"


class ContainerPipeline:
    """Transforms a single container; not reusable."""

    def __init__(self, container_id: str, docker: DockerClient, reader: DockerStateReader,
                 isulad: IsuladTool, storage_driver, token: CancelToken):
        """
        Initialize container pipeline.

        Args:
            container_id: Full ID of a claimed container
            docker: Client used to pause the container
            reader: Loader of Docker's configuration files
            isulad: Writer of the iSulad bundle
            storage_driver: Driver migrating the rootfs and rw layer
            token: Cancellation token of the run
        """
        self.container_id = container_id
        self.docker = docker
        self.reader = reader
        self.isulad = isulad
        self.storage_driver = storage_driver
        self.token = token
        self.logger = logging.getLogger(__name__)

        self.state = PipelineState.PENDING
        self.rollback = Rollback(token, container_id[:12])

        self.host_config: Optional[Dict] = None
        self.log_config: Optional[Dict] = None
        self.v2_config: Optional[Dict] = None
        self.oci_config: Optional[Dict] = None
        self.old_rootfs = ""
        self._origin_network_files: Dict[str, str] = {}
        self._docker_cgroup_parent = ""

    def _steps(self) -> List[Tuple[str, Callable[[], None], PipelineState]]:
        return [
            ("pause container", self._pause, PipelineState.PAUSED),
            ("prepare root dir", self._prepare_bundle, PipelineState.BUNDLE_PREPARED),
            ("transform hostconfig", self._transform_host_config, PipelineState.HOST_CONFIG_WRITTEN),
            ("transform configV2", self._transform_v2_config, PipelineState.V2_CONFIG_WRITTEN),
            ("prepare share shm", self._prepare_shm, PipelineState.SHM_PREPARED),
            ("copy network files", self._copy_network_files, PipelineState.NETWORK_FILES_COPIED),
            ("transform oci spec", self._transform_oci_config, PipelineState.OCI_CONFIG_WRITTEN),
            ("transform RWLayer", self._transform_rw_layer, PipelineState.RW_LAYER_MIGRATED),
            ("lcr create", self._lcr_create, PipelineState.FINALIZED),
        ]

    def _checkpoint(self):
        if self.token.cancelled:
            raise TransformCancelled("transform cancelled")

    def run(self):
        """
        Run every step in order.

        Raises:
            TransformError: First error of the run, prefixed with the failed
                step; TransformCancelled if the run was interrupted
        """
        self.logger.info(f"start to transform {self.container_id}")
        self.rollback.wait()
        try:
            try:
                for name, step, state in self._steps():
                    self._checkpoint()
                    try:
                        with self.rollback.step():
                            step()
                    except TransformCancelled:
                        raise
                    except Exception as e:
                        self.logger.error(f"{name} of {self.container_id} failed: {e}")
                        raise TransformError(f"{name}: {e}") from e
                    self.state = state
                # cancelled while the last step was running
                self._checkpoint()
            except Exception:
                self.rollback.run()
                self.rollback.close()
                raise

            if self.rollback.close():
                raise TransformCancelled("transform cancelled")
        finally:
            self.rollback.join()
        self.logger.info(f"transform {self.container_id} successfully")

    def _pause(self):
        try:
            self.docker.pause(self.container_id)
        except DockerCommandError as e:
            if "already paused" not in str(e):
                raise
            self.logger.info(f"container {self.container_id} is already paused")

    def _prepare_bundle(self):
        container_id = self.container_id
        self.isulad.prepare_bundle_dir(container_id)

        def cleanup_bundle():
            self.logger.info(f"rollback: clean up bundle dir of container {container_id}")
            self.isulad.cleanup(container_id)
        self.rollback.register(cleanup_bundle)

    def _transform_host_config(self):
        docker_host = self.reader.load_host_config(self.container_id)
        host, log_config = reconcile.convert_host_config(docker_host)
        reconcile.reconcile_host_config(host, self.isulad.runtime)
        self.isulad.save_config(self.isulad.host_config_path(self.container_id), host)
        self.host_config = host
        self.log_config = log_config
        self._docker_cgroup_parent = host.get("CgroupParent", "")

    def _transform_v2_config(self):
        container_id = self.container_id
        docker_v2 = self.reader.load_v2_config(container_id)
        v2 = reconcile.convert_v2_config(docker_v2)

        base_path = self.isulad.bundle_path(container_id)
        image = (docker_v2.get("Config") or {}).get("Image", "")
        cgroup_parent = docker_v2.get("CgroupParent") or self._docker_cgroup_parent
        opts = reconcile.v2_opts_from_host_config(self.host_config)
        opts.append(reconcile.v2_config_with_log_config(self.log_config, base_path))
        opts.append(reconcile.v2_config_with_image(image))
        opts.append(reconcile.v2_config_with_cgroup_parent(cgroup_parent))
        self._origin_network_files = reconcile.reconcile_v2_config(v2, base_path, opts)

        common = v2["CommonConfig"]
        common["BaseFs"] = self.storage_driver.generate_rootfs(container_id, common.get("Image", ""))

        def cleanup_storage():
            self.logger.info(f"rollback: clean up storage register of container {container_id}")
            self.storage_driver.cleanup(container_id)
        self.rollback.register(cleanup_storage)

        self.isulad.save_config(self.isulad.v2_config_path(container_id), v2)
        self.v2_config = v2

    def _prepare_shm(self):
        shm_path = self.v2_config["CommonConfig"]["ShmPath"]
        self.isulad.prepare_shm(shm_path, self.host_config.get("ShmSize", 0))

        def umount_shm():
            self.logger.info(f"rollback: umount share shm of container {self.container_id} path {shm_path}")
            self.isulad.umount_shm(shm_path)
        self.rollback.register(umount_shm)

    def _copy_network_files(self):
        for name in NETWORK_FILES:
            src = self._origin_network_files.get(name, "")
            dest = self.isulad.network_file_path(self.container_id, name)
            copy_archive(src, dest)

    def _transform_oci_config(self):
        spec = self.reader.load_oci_config(self.container_id)
        self.old_rootfs = (spec.get("root") or {}).get("path", "")
        reconcile.reconcile_oci_config(spec, self.v2_config["CommonConfig"], self.host_config)
        self.isulad.save_config(self.isulad.oci_config_path(self.container_id), spec)
        self.oci_config = spec

    def _transform_rw_layer(self):
        self.storage_driver.transform_rw_layer(self.v2_config, self.old_rootfs)

    def _lcr_create(self):
        self.isulad.lcr_create(self.container_id, json.dumps(self.oci_config).encode())
