#!/usr/bin/env python3
"""
Bindings to liblcr, the low-level runtime used by iSulad.

lcr_create_from_ocidata writes the runtime's own artifacts (config,
ocihooks.json, seccomp) for a container from its OCI spec.
"""

import ctypes
import logging
import os
import threading

from container_transform.errors import TransformError

LCR_LIBRARY = "liblcr.so"
ISULAD_LOG_FIFO = "isulad_log_gather_fifo"


class LcrRuntime:
    """Lazily loaded handle to liblcr; calls into the library are serialized."""

    def __init__(self, library: str = LCR_LIBRARY):
        self.library = library
        self.logger = logging.getLogger(__name__)
        self._lib = None
        self._lock = threading.Lock()

    def _load(self):
        if self._lib is not None:
            return self._lib
        try:
            lib = ctypes.CDLL(self.library)
        except OSError as e:
            raise TransformError(f"load {self.library} failed: {e}") from e

        lib.lcr_create_from_ocidata.argtypes = [ctypes.c_char_p, ctypes.c_char_p, ctypes.c_void_p]
        lib.lcr_create_from_ocidata.restype = ctypes.c_bool
        lib.lcr_log_init.argtypes = [
            ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p,
            ctypes.c_char_p, ctypes.c_int, ctypes.c_void_p
        ]
        lib.lcr_log_init.restype = ctypes.c_int
        self._lib = lib
        return lib

    def create(self, container_id: str, lcr_path: str, spec: bytes):
        """
        Create the runtime artifacts of a container.

        Args:
            container_id: Container ID
            lcr_path: Runtime root, e.g. /var/lib/isulad/engines/lcr
            spec: Serialized OCI runtime spec

        Raises:
            TransformError: If the library cannot be loaded or the call fails
        """
        with self._lock:
            lib = self._load()
            data = ctypes.create_string_buffer(spec)
            ok = lib.lcr_create_from_ocidata(
                container_id.encode(),
                lcr_path.encode(),
                ctypes.cast(data, ctypes.c_void_p)
            )
        if not ok:
            raise TransformError("lcr create failed")

    def log_init(self, isulad_state: str, runtime: str, log_level: str):
        """Route liblcr logs into the iSulad daemon's log gather fifo."""
        fifo = "fifo:" + os.path.join(isulad_state, ISULAD_LOG_FIFO)
        with self._lock:
            lib = self._load()
            lib.lcr_log_init(b"isulad", fifo.encode(), log_level.encode(), runtime.encode(), 1, None)
        self.logger.debug(f"lcr log redirected to {fifo}")
