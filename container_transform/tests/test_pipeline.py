#!/usr/bin/env python3
"""
Tests for the per-container transformation pipeline.
"""

import json
import os
import shutil
import tempfile
import time
import unittest
from unittest.mock import Mock

from container_transform.config import IsuladDaemonConfig
from container_transform.engines.docker import DockerStateReader
from container_transform.engines.isulad import IsuladTool
from container_transform.errors import DockerCommandError, TransformCancelled, TransformError
from container_transform.storage.diff_trie import Change, ChangeKind
from container_transform.storage.drivers import DeviceMapperDriver
from container_transform.storage.image_service import RootfsOperations
from container_transform.transform.pipeline import ContainerPipeline, PipelineState
from container_transform.transform.rollback import CancelToken
from container_transform.utils.file_utils import ensure_directory

CONTAINER_ID = "e8d6a5a1b6f4c0f3b2d7a9c1e5f4b3a2d1c0b9a8f7e6d5c4b3a2f1e0d9c8b7a6"
FIXTURES = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fixtures")
OLD_ROOTFS = "/var/lib/docker/overlay2/4f1c9a7d2e/merged"


def make_docker_container(temp_dir, container_id=CONTAINER_ID):
    """
    Lay out a Docker container's on-disk state under temp_dir.

    Returns:
        DockerStateReader pointing at the fake graph and state roots
    """
    reader = DockerStateReader(os.path.join(temp_dir, "docker", "lib"), os.path.join(temp_dir, "docker", "run"))
    container_dir = os.path.dirname(reader.v2_config_path(container_id))
    os.makedirs(container_dir)
    os.makedirs(os.path.dirname(reader.oci_config_path(container_id)))

    with open(os.path.join(FIXTURES, "config.v2.json")) as f:
        v2 = json.load(f)
    v2["ID"] = container_id
    for key, name in (("HostnamePath", "hostname"), ("HostsPath", "hosts"), ("ResolvConfPath", "resolv.conf")):
        v2[key] = os.path.join(container_dir, name)
        with open(v2[key], "w") as f:
            f.write(f"{name} of {container_id[:12]}\n")
    with open(reader.v2_config_path(container_id), "w") as f:
        json.dump(v2, f)

    shutil.copy(os.path.join(FIXTURES, "hostconfig.json"), reader.host_config_path(container_id))
    shutil.copy(os.path.join(FIXTURES, "config.json"), reader.oci_config_path(container_id))
    return reader


class TestContainerPipeline(unittest.TestCase):
    """Test cases for ContainerPipeline."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.reader = make_docker_container(self.temp_dir)
        self.token = CancelToken()

        self.docker = Mock()
        self.lcr = Mock()
        self.isulad = IsuladTool(IsuladDaemonConfig(graph=os.path.join(self.temp_dir, "isulad")), self.lcr)
        self.isulad.prepare_shm = Mock(side_effect=lambda path, size: os.makedirs(path))
        self.isulad.umount_shm = Mock()

        self.new_rootfs = os.path.join(self.temp_dir, "isulad", "storage", "overlay", "abc", "merged")
        self.driver = Mock()
        self.driver.generate_rootfs.return_value = self.new_rootfs

        self.pipeline = ContainerPipeline(CONTAINER_ID, self.docker, self.reader,
                                          self.isulad, self.driver, self.token)
        self.bundle = self.isulad.bundle_path(CONTAINER_ID)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _load(self, name):
        with open(os.path.join(self.bundle, name)) as f:
            return json.load(f)

    def test_round_trip(self):
        self.pipeline.run()

        self.assertEqual(self.pipeline.state, PipelineState.FINALIZED)
        self.docker.pause.assert_called_once_with(CONTAINER_ID)

        host = self._load("hostconfig.json")
        self.assertEqual(host["Runtime"], "lcr")
        self.assertEqual(host["RestartPolicy"]["Name"], "always")

        v2 = self._load("config.v2.json")
        self.assertEqual(v2["CommonConfig"]["BaseFs"], self.new_rootfs)
        self.assertEqual(v2["CommonConfig"]["HostsPath"], os.path.join(self.bundle, "hosts"))
        self.assertEqual(v2["CommonConfig"]["Config"]["Annotations"]["proc.oom_score_adj"], "100")
        self.driver.generate_rootfs.assert_called_once_with(CONTAINER_ID, "busybox")

        with open(os.path.join(self.bundle, "hosts")) as f:
            self.assertEqual(f.read(), f"hosts of {CONTAINER_ID[:12]}\n")

        spec = self._load("config.json")
        self.assertEqual(spec["root"]["path"], self.new_rootfs)
        self.assertEqual(spec["linux"]["cgroupsPath"], "/isulad/" + CONTAINER_ID)

        self.driver.transform_rw_layer.assert_called_once()
        self.assertEqual(self.driver.transform_rw_layer.call_args[0][1], OLD_ROOTFS)
        lcr_args = self.lcr.create.call_args[0]
        self.assertEqual(lcr_args[0], CONTAINER_ID)
        self.assertEqual(json.loads(lcr_args[2])["root"]["path"], self.new_rootfs)

        self.driver.cleanup.assert_not_called()
        self.isulad.umount_shm.assert_not_called()

    def test_already_paused_is_accepted(self):
        self.docker.pause.side_effect = DockerCommandError(
            f"Error response from daemon: Container {CONTAINER_ID} is already paused"
        )
        self.pipeline.run()
        self.assertEqual(self.pipeline.state, PipelineState.FINALIZED)

    def test_pause_failure(self):
        self.docker.pause.side_effect = DockerCommandError("No such container")
        with self.assertRaises(TransformError) as ctx:
            self.pipeline.run()
        self.assertEqual(str(ctx.exception), "pause container: No such container")
        self.assertFalse(os.path.exists(self.bundle))

    def test_existing_bundle_is_left_alone(self):
        os.makedirs(self.bundle)
        marker = os.path.join(self.bundle, "marker")
        open(marker, "w").close()

        with self.assertRaises(TransformError) as ctx:
            self.pipeline.run()

        self.assertTrue(str(ctx.exception).startswith("prepare root dir:"))
        self.assertTrue(os.path.exists(marker))

    def test_failure_rolls_back(self):
        self.lcr.create.side_effect = TransformError("lcr create failed")

        with self.assertRaises(TransformError) as ctx:
            self.pipeline.run()

        self.assertEqual(str(ctx.exception), "lcr create: lcr create failed")
        self.assertEqual(self.pipeline.state, PipelineState.RW_LAYER_MIGRATED)
        self.assertFalse(os.path.exists(self.bundle))
        self.driver.cleanup.assert_called_once_with(CONTAINER_ID)
        self.isulad.umount_shm.assert_called_once_with(os.path.join(self.bundle, "mounts", "shm"))

    def test_failure_before_rootfs_skips_storage_cleanup(self):
        os.remove(self.reader.v2_config_path(CONTAINER_ID))

        with self.assertRaises(TransformError) as ctx:
            self.pipeline.run()

        self.assertTrue(str(ctx.exception).startswith("transform configV2:"))
        self.assertFalse(os.path.exists(self.bundle))
        self.driver.generate_rootfs.assert_not_called()
        self.driver.cleanup.assert_not_called()
        self.isulad.umount_shm.assert_not_called()

    def test_cancel_before_start(self):
        self.token.cancel()
        with self.assertRaises(TransformCancelled):
            self.pipeline.run()
        self.docker.pause.assert_not_called()
        self.assertEqual(self.pipeline.state, PipelineState.PENDING)

    def test_cancel_mid_flight_rolls_back(self):
        """An interrupt during the rw layer copy undoes every completed step."""
        self.driver.transform_rw_layer.side_effect = lambda v2, old: self.token.cancel()

        with self.assertRaises(TransformCancelled):
            self.pipeline.run()

        self.assertTrue(self.pipeline.rollback.executed)
        self.assertFalse(os.path.exists(self.bundle))
        self.driver.cleanup.assert_called_once_with(CONTAINER_ID)
        self.isulad.umount_shm.assert_called_once()
        self.lcr.create.assert_not_called()

    def test_cancel_during_last_step_reports_failure(self):
        """An interrupt while the last step runs unwinds once that step has finished."""
        in_step_executed = []

        def interrupted_create(*args):
            self.token.cancel()
            time.sleep(0.1)
            in_step_executed.append(self.pipeline.rollback.executed)
        self.lcr.create.side_effect = interrupted_create

        with self.assertRaises(TransformCancelled):
            self.pipeline.run()

        self.assertEqual(in_step_executed, [False])
        self.assertEqual(self.pipeline.state, PipelineState.FINALIZED)
        self.assertTrue(self.pipeline.rollback.executed)
        self.assertFalse(os.path.exists(self.bundle))
        self.driver.cleanup.assert_called_once_with(CONTAINER_ID)

    def test_cancel_during_differential_copy_leaves_no_rootfs(self):
        """Rollback waits for the rw layer copy, so the copied tree is removed with the rootfs."""
        old_rootfs = os.path.join(self.temp_dir, "old")
        for path in ("etc/a", "usr/b"):
            os.makedirs(os.path.dirname(os.path.join(old_rootfs, path)), exist_ok=True)
            with open(os.path.join(old_rootfs, path), "w") as f:
                f.write(path)
        spec_path = self.reader.oci_config_path(CONTAINER_ID)
        with open(spec_path) as f:
            spec = json.load(f)
        spec["root"]["path"] = old_rootfs
        with open(spec_path, "w") as f:
            json.dump(spec, f)

        rootfs = Mock(spec=RootfsOperations)
        rootfs.generate_rootfs.side_effect = lambda cid, image: str(ensure_directory(self.new_rootfs))
        rootfs.cleanup_rootfs.side_effect = lambda cid: shutil.rmtree(self.new_rootfs)
        self.docker.diff.return_value = [Change("/etc/a", ChangeKind.ADD), Change("/usr/b", ChangeKind.ADD)]
        driver = DeviceMapperDriver(rootfs, self.docker)

        apply_change = driver._apply

        def apply_then_interrupt(change, old, new):
            apply_change(change, old, new)
            if not self.token.cancelled:
                self.token.cancel()
                time.sleep(0.1)
        driver._apply = apply_then_interrupt

        pipeline = ContainerPipeline(CONTAINER_ID, self.docker, self.reader,
                                     self.isulad, driver, self.token)
        with self.assertRaises(TransformCancelled):
            pipeline.run()

        self.assertTrue(pipeline.rollback.executed)
        rootfs.cleanup_rootfs.assert_called_once_with(CONTAINER_ID)
        rootfs.umount_rootfs.assert_called_once()
        self.assertFalse(os.path.exists(self.new_rootfs))
        self.assertFalse(os.path.exists(self.bundle))
        self.lcr.create.assert_not_called()


if __name__ == '__main__':
    unittest.main()
