#!/usr/bin/env python3
"""
Docker side of the transformation.

DockerClient drives the docker CLI for the two live operations the
transformation needs (pause and diff); DockerStateReader loads the
container's configuration files from Docker's graph and state roots.
"""

import json
import logging
import os
import subprocess
from typing import Dict, List, Optional

from container_transform.errors import DockerCommandError, TransformError
from container_transform.storage.diff_trie import Change, ChangeKind
from container_transform.utils.file_utils import check_file_valid

CONTAINERD_RUNTIME = "io.containerd.runtime.v1.linux"
CONTAINERD_NAMESPACE = "moby"
CONTAINER_ID_LEN = 64
DOCKER_CLIENT_TIMEOUT = 20  # seconds, availability probe only

HOST_CONFIG_FILE = "hostconfig.json"
V2_CONFIG_FILE = "config.v2.json"
OCI_CONFIG_FILE = "config.json"

_DIFF_KINDS = {
    "C": ChangeKind.CHANGE,
    "A": ChangeKind.ADD,
    "D": ChangeKind.DELETE,
}


class DockerClient:
    """Runs docker CLI commands against the local daemon."""

    def __init__(self, docker_binary: str = "docker"):
        self.docker_binary = docker_binary
        self.logger = logging.getLogger(__name__)

    def _run(self, args: List[str], timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        cmd = [self.docker_binary] + args
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise DockerCommandError(f"{' '.join(cmd)}: {e}") from e

    def check_available(self):
        """Make sure the docker daemon answers; raises DockerCommandError otherwise."""
        result = self._run(["version", "--format", "{{.Server.Version}}"], timeout=DOCKER_CLIENT_TIMEOUT)
        if result.returncode != 0:
            raise DockerCommandError(f"create docker client failed: {result.stderr.strip()}")
        self.logger.debug(f"docker server version: {result.stdout.strip()}")

    def pause(self, container_id: str):
        """
        Pause all processes of a container.

        Raises:
            DockerCommandError: With the daemon's message, including the
                "already paused" case which callers may accept
        """
        result = self._run(["pause", container_id])
        if result.returncode != 0:
            raise DockerCommandError(result.stderr.strip() or f"docker pause exited with {result.returncode}")

    def diff(self, container_id: str) -> List[Change]:
        """
        List changes of the container's read-write layer.

        Returns:
            List of Change records, one per reported path
        """
        result = self._run(["diff", container_id])
        if result.returncode != 0:
            raise DockerCommandError(f"docker diff {container_id}: {result.stderr.strip()}")

        changes = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            parts = line.split(" ", 1)
            kind = _DIFF_KINDS.get(parts[0])
            if kind is None or len(parts) != 2:
                self.logger.warning(f"skip unknown docker diff line: {line}")
                continue
            changes.append(Change(path=parts[1], kind=kind))
        return changes


class DockerStateReader:
    """Locates and parses a Docker container's configuration files."""

    def __init__(self, graph_root: str, state_root: str):
        """
        Initialize state reader.

        Args:
            graph_root: Docker data root, e.g. /var/lib/docker
            state_root: Docker exec root, e.g. /var/run/docker
        """
        self.graph_root = graph_root
        self.state_root = state_root
        self.logger = logging.getLogger(__name__)

    @property
    def running_containers_root(self) -> str:
        # e.g. /var/run/docker/containerd/daemon/io.containerd.runtime.v1.linux/moby
        return os.path.join(self.state_root, "containerd", "daemon",
                            CONTAINERD_RUNTIME, CONTAINERD_NAMESPACE)

    def host_config_path(self, container_id: str) -> str:
        return os.path.join(self.graph_root, "containers", container_id, HOST_CONFIG_FILE)

    def v2_config_path(self, container_id: str) -> str:
        return os.path.join(self.graph_root, "containers", container_id, V2_CONFIG_FILE)

    def oci_config_path(self, container_id: str) -> str:
        return os.path.join(self.running_containers_root, container_id, OCI_CONFIG_FILE)

    def _load_json(self, path: str, name: str) -> Dict:
        try:
            check_file_valid(path)
        except TransformError as e:
            self.logger.error(f"check docker {name} failed: {e}")
            raise TransformError(f"check docker {name}: {e}") from e

        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except OSError as e:
            self.logger.error(f"read {path} failed: {e}")
            raise TransformError(f"read {name}: {e}") from e
        except ValueError as e:
            self.logger.error(f"unmarshal {path} failed: {e}")
            raise TransformError(f"unmarshal {name}: {e}") from e

        if not isinstance(data, dict):
            raise TransformError(f"unmarshal {name}: not a JSON object")
        return data

    def load_host_config(self, container_id: str) -> Dict:
        return self._load_json(self.host_config_path(container_id), HOST_CONFIG_FILE)

    def load_v2_config(self, container_id: str) -> Dict:
        return self._load_json(self.v2_config_path(container_id), V2_CONFIG_FILE)

    def load_oci_config(self, container_id: str) -> Dict:
        return self._load_json(self.oci_config_path(container_id), OCI_CONFIG_FILE)
