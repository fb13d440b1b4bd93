#!/usr/bin/env python3
"""
Transformation orchestrator.

Resolves the requested container IDs, runs one pipeline per container
concurrently and reports exactly one result per requested ID.
"""

import logging
import queue
import signal
import threading
from dataclasses import dataclass
from typing import Iterator, List, Optional

from container_transform.config import IsuladDaemonConfig, TransformConfig
from container_transform.engines.docker import DockerClient, DockerStateReader
from container_transform.engines.isulad import IsuladTool
from container_transform.errors import ConfigError, TransformError
from container_transform.storage.drivers import create_storage_driver
from container_transform.storage.image_service import ImageServiceClient, RootfsOperations
from container_transform.transform.container_store import ContainerStatus, ContainerStore
from container_transform.transform.pipeline import ContainerPipeline
from container_transform.transform.rollback import CancelToken

MAX_CONCURRENT_TRANSFORM = 128

DOCKER_CONTAINER_TYPE = "docker"
SUPPORTED_CONTAINER_TYPES = [DOCKER_CONTAINER_TYPE]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformResult:
    """Outcome of one requested container."""
    message: str
    ok: bool


def handle_signals(token: CancelToken):
    """Cancel the run on SIGHUP, SIGINT or SIGTERM; must be called from the main thread."""
    def signal_handler(signum, frame):
        logger.info(f"transform: receive signal: {signal.Signals(signum).name}")
        token.cancel()

    signal.signal(signal.SIGHUP, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


class TransformOrchestrator:
    """Drives the transformation of Docker containers to iSulad."""

    def __init__(self, config: TransformConfig, daemon_config: IsuladDaemonConfig,
                 token: Optional[CancelToken] = None):
        """
        Initialize transform orchestrator.

        Args:
            config: Options of this run
            daemon_config: Validated iSulad daemon configuration
            token: Cancellation token shared by every pipeline of the run
        """
        self.config = config
        self.daemon_config = daemon_config
        self.token = token or CancelToken()
        self.logger = logging.getLogger(__name__)

        self.docker: Optional[DockerClient] = None
        self.reader: Optional[DockerStateReader] = None
        self.isulad: Optional[IsuladTool] = None
        self.storage_driver = None
        self.store: Optional[ContainerStore] = None

    def initialize(self, isulad: Optional[IsuladTool] = None):
        """
        Build the collaborators of the run.

        Raises:
            TransformError: If anything needed by every pipeline is unavailable
        """
        if self.config.container_type not in SUPPORTED_CONTAINER_TYPES:
            raise ConfigError(f"not support container type: {self.config.container_type}")

        self.docker = DockerClient()
        self.docker.check_available()

        image_client = ImageServiceClient(self.daemon_config)
        image_client.init_module()

        self.storage_driver = create_storage_driver(
            self.daemon_config.storage_driver,
            RootfsOperations(image_client),
            self.docker
        )
        self.isulad = isulad or IsuladTool(self.daemon_config)
        self.reader = DockerStateReader(self.config.docker_graph, self.config.docker_state)

        self.store = ContainerStore(self.reader.running_containers_root)
        self.store.initialize()
        self.logger.info(
            f"transformer initialized: storage driver {self.storage_driver.name}, "
            f"runtime {self.daemon_config.runtime}"
        )

    def _transform_one(self, requested: str, all_containers: bool) -> TransformResult:
        if all_containers:
            container_id, status = self.store.claim(requested)
        else:
            container_id, status = self.store.match(requested)

        if status == ContainerStatus.NOT_FOUND:
            return TransformResult(f"transform {requested}: container was not found", False)
        if status == ContainerStatus.ALREADY_TRANSFORMED:
            return TransformResult(f"transform {requested}: container has been transformed", True)

        pipeline = ContainerPipeline(container_id, self.docker, self.reader,
                                     self.isulad, self.storage_driver, self.token)
        try:
            pipeline.run()
        except Exception as e:
            return TransformResult(f"transform {requested}: {e}", False)
        return TransformResult(f"transform {requested}: success", True)

    def _worker(self, requested: str, all_containers: bool, results: queue.Queue):
        try:
            result = self._transform_one(requested, all_containers)
        except Exception as e:
            self.logger.error(f"transform {requested} failed unexpectedly: {e}")
            result = TransformResult(f"transform {requested}: {e}", False)
        results.put(result)

    def transform(self, ids: List[str], all_containers: bool, results: queue.Queue):
        """
        Transform every requested container and close results with None.

        Args:
            ids: Container IDs or unique prefixes; ignored with all_containers
            all_containers: Transform every discovered container
            results: Queue receiving one TransformResult per container
        """
        if self.store is None:
            raise TransformError("transformer is not initialized")
        targets = self.store.ids() if all_containers else list(ids)

        workers = []
        for requested in targets:
            worker = threading.Thread(
                target=self._worker,
                args=(requested, all_containers, results),
                name=f"transform-{requested[:12]}"
            )
            worker.start()
            workers.append(worker)

        for worker in workers:
            worker.join()
        results.put(None)

    def run(self, ids: List[str], all_containers: bool = False) -> Iterator[TransformResult]:
        """Transform containers on a background thread and yield results as they arrive."""
        if self.store is None:
            raise TransformError("transformer is not initialized")
        results: queue.Queue = queue.Queue(maxsize=MAX_CONCURRENT_TRANSFORM)
        producer = threading.Thread(
            target=self.transform,
            args=(ids, all_containers, results),
            name="transform-producer",
            daemon=True
        )
        producer.start()
        while True:
            result = results.get()
            if result is None:
                break
            yield result
        producer.join()
