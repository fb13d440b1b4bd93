#!/usr/bin/env python3
"""
Image service access for container root filesystems.

The target engine's image/layer service is the libisulad_img library.
It is initialized once per run with iSulad's graph, state and storage
driver; afterwards each container operation returns a mount point
(prepare) or a return code (remove, mount, umount) where nonzero means
failure.
"""

import ctypes
import logging
import threading
from typing import List

from container_transform.config import IsuladDaemonConfig
from container_transform.errors import ImageServiceError

ISULAD_IMG_LIBRARY = "libisulad_img.so"
IMAGE_TYPE_OCI = "oci"


class ImageServiceClient:
    """Lazily loaded handle to libisulad_img; calls into the library are serialized."""

    def __init__(self, daemon_config: IsuladDaemonConfig, library: str = ISULAD_IMG_LIBRARY):
        """
        Initialize image service client.

        Args:
            daemon_config: iSulad daemon configuration
            library: Name or path of the shared library
        """
        self.library = library
        self.daemon_config = daemon_config
        self.logger = logging.getLogger(__name__)
        self._lib = None
        self._lock = threading.Lock()

    def _load(self):
        if self._lib is not None:
            return self._lib
        try:
            lib = ctypes.CDLL(self.library)
        except OSError as e:
            raise ImageServiceError(f"load {self.library} failed: {e}") from e

        lib.init_isulad_image_module.argtypes = [
            ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p,
            ctypes.POINTER(ctypes.c_char_p), ctypes.c_size_t, ctypes.c_int
        ]
        lib.init_isulad_image_module.restype = ctypes.c_int
        # the returned string is owned by the caller
        lib.isulad_img_prepare_rootfs.argtypes = [ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p]
        lib.isulad_img_prepare_rootfs.restype = ctypes.c_void_p
        lib.im_remove_container_rootfs.argtypes = [ctypes.c_char_p, ctypes.c_char_p]
        lib.im_remove_container_rootfs.restype = ctypes.c_int
        for name in ("im_mount_container_rootfs", "im_umount_container_rootfs"):
            func = getattr(lib, name)
            func.argtypes = [ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p]
            func.restype = ctypes.c_int
        lib.free.argtypes = [ctypes.c_void_p]
        lib.free.restype = None
        self._lib = lib
        return lib

    def init_module(self):
        """
        Initialize the image module for iSulad's graph and storage driver.

        Raises:
            ImageServiceError: If the library is missing or returns nonzero
        """
        config = self.daemon_config
        opts: List[bytes] = [opt.encode() for opt in config.storage_opts]
        c_opts = (ctypes.c_char_p * len(opts))(*opts) if opts else None

        with self._lock:
            lib = self._load()
            ret = lib.init_isulad_image_module(
                config.graph.encode(),
                config.state.encode(),
                config.storage_driver.encode(),
                c_opts,
                len(opts),
                1 if config.image_layer_check else 0
            )
        if ret != 0:
            raise ImageServiceError(f"init {self.library} get ret code: {ret}")
        self.logger.debug(f"{self.library} initialized with driver {config.storage_driver}")

    def prepare(self, container_id: str, image: str) -> str:
        """
        Create the container's rootfs from image.

        Returns:
            str: Mount point, empty if the library returned NULL
        """
        with self._lock:
            lib = self._load()
            ptr = lib.isulad_img_prepare_rootfs(
                IMAGE_TYPE_OCI.encode(), container_id.encode(), image.encode()
            )
            if not ptr:
                return ""
            try:
                return ctypes.string_at(ptr).decode()
            finally:
                lib.free(ptr)

    def remove(self, container_id: str) -> int:
        with self._lock:
            return self._load().im_remove_container_rootfs(IMAGE_TYPE_OCI.encode(), container_id.encode())

    def mount(self, container_id: str, image: str) -> int:
        with self._lock:
            return self._load().im_mount_container_rootfs(
                IMAGE_TYPE_OCI.encode(), image.encode(), container_id.encode()
            )

    def umount(self, container_id: str, image: str) -> int:
        with self._lock:
            return self._load().im_umount_container_rootfs(
                IMAGE_TYPE_OCI.encode(), image.encode(), container_id.encode()
            )


class RootfsOperations:
    """Root filesystem operations shared by every storage driver."""

    def __init__(self, client: ImageServiceClient):
        self.client = client
        self.logger = logging.getLogger(__name__)

    def generate_rootfs(self, container_id: str, image: str) -> str:
        """
        Prepare a new root filesystem for the container.

        Args:
            container_id: Container ID
            image: Image reference the rootfs is created from

        Returns:
            str: Mount point of the new rootfs

        Raises:
            ImageServiceError: If the image service fails
        """
        mount_point = self.client.prepare(container_id, image)
        if not mount_point:
            # a half created container may be left in the image store
            try:
                ret = self.client.remove(container_id)
                self.logger.info(f"isulad-img remove container {container_id} get ret code: {ret}")
            except ImageServiceError as e:
                self.logger.info(f"isulad-img remove container {container_id}: {e}")
            raise ImageServiceError("isulad-img returns empty rootfs")
        return mount_point

    def cleanup_rootfs(self, container_id: str):
        """Remove the container's rootfs; failures are only logged."""
        try:
            ret = self.client.remove(container_id)
        except ImageServiceError as e:
            self.logger.warning(f"isulad-img remove container {container_id}: {e}")
            return
        if ret != 0:
            self.logger.warning(f"remove container {container_id}'s rootfs get code: {ret}")
        else:
            self.logger.info(f"isulad-img remove container {container_id} successful")

    def mount_rootfs(self, container_id: str, image: str):
        ret = self.client.mount(container_id, image)
        if ret != 0:
            raise ImageServiceError(f"mount container {container_id}'s rootfs get ret code: {ret}")

    def umount_rootfs(self, container_id: str, image: str):
        ret = self.client.umount(container_id, image)
        if ret != 0:
            raise ImageServiceError(f"umount container {container_id}'s rootfs get ret code: {ret}")
