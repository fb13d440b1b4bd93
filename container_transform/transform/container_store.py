#!/usr/bin/env python3
"""
Tracks which discovered containers have been claimed for transformation.

Claim-on-read: the first lookup that finds a container in NEEDS_TRANSFORM
flips it to ALREADY_TRANSFORMED and is the only caller that ever sees
NEEDS_TRANSFORM for it. A claim is about "attempted", not "succeeded";
rollback never resets it.
"""

import logging
import os
import threading
from enum import Enum
from typing import Dict, List, Tuple

from container_transform.engines.docker import CONTAINER_ID_LEN
from container_transform.errors import TransformError


class ContainerStatus(Enum):
    """Transform status of a container in the current run."""
    NOT_FOUND = "not_found"
    ALREADY_TRANSFORMED = "already_transformed"
    NEEDS_TRANSFORM = "needs_transform"


class ContainerStore:
    """Thread-safe claim map of running source-engine containers."""

    def __init__(self, running_root: str):
        """
        Args:
            running_root: Directory holding one sub-directory per running container
        """
        self.running_root = running_root
        self.logger = logging.getLogger(__name__)
        self._claimed: Dict[str, bool] = {}
        self._lock = threading.Lock()

    def initialize(self):
        """
        Discover containers; entries that do not look like an ID are skipped.

        Raises:
            TransformError: If the running-container directory cannot be listed
        """
        try:
            entries = os.listdir(self.running_root)
        except OSError as e:
            raise TransformError(f"init docker container store failed: {e}") from e

        discovered = {}
        for name in entries:
            if len(name) != CONTAINER_ID_LEN:
                continue
            if not os.path.isdir(os.path.join(self.running_root, name)):
                continue
            discovered[name] = False

        with self._lock:
            self._claimed = discovered
        self.logger.info(f"found {len(discovered)} containers in {self.running_root}")

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._claimed)

    def _claim_locked(self, full_id: str) -> ContainerStatus:
        if self._claimed[full_id]:
            return ContainerStatus.ALREADY_TRANSFORMED
        self._claimed[full_id] = True
        return ContainerStatus.NEEDS_TRANSFORM

    def match(self, id_or_prefix: str) -> Tuple[str, ContainerStatus]:
        """
        Resolve a unique ID prefix and claim the container.

        Args:
            id_or_prefix: Full container ID or an unambiguous prefix

        Returns:
            Tuple of (full_id, status before this call); ("", NOT_FOUND)
            when nothing or more than one container matches
        """
        if not id_or_prefix:
            return "", ContainerStatus.NOT_FOUND

        with self._lock:
            matches = [cid for cid in self._claimed if cid.startswith(id_or_prefix)]
            if len(matches) != 1:
                if len(matches) > 1:
                    self.logger.warning(f"container id prefix {id_or_prefix} is ambiguous: {len(matches)} matches")
                return "", ContainerStatus.NOT_FOUND
            full_id = matches[0]
            return full_id, self._claim_locked(full_id)

    def claim(self, full_id: str) -> Tuple[str, ContainerStatus]:
        """Claim a container by its exact ID."""
        with self._lock:
            if full_id not in self._claimed:
                return "", ContainerStatus.NOT_FOUND
            return full_id, self._claim_locked(full_id)
