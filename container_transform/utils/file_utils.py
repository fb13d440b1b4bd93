#!/usr/bin/env python3
"""
File utilities for container transformation.
Provides directory, copy and removal helpers used by the pipeline and
storage drivers.
"""

import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from container_transform.errors import TransformError

MAX_CONFIG_FILE_SIZE = 10 * 1024 * 1024


def ensure_directory(path: str, mode: Optional[int] = None) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path to create
        mode: Permission bits for newly created directories

    Returns:
        Path object for the directory
    """
    dir_path = Path(path)
    if mode is None:
        dir_path.mkdir(parents=True, exist_ok=True)
    else:
        dir_path.mkdir(mode=mode, parents=True, exist_ok=True)
    return dir_path


def check_file_valid(file_path: str) -> None:
    """
    Make sure a path is a regular file no larger than 10M.

    Args:
        file_path: Path to check

    Raises:
        TransformError: If the path is missing, a directory or too large
    """
    try:
        stat = os.stat(file_path)
    except OSError as e:
        raise TransformError(f"stat file {file_path}: {e}") from e

    if os.path.isdir(file_path):
        raise TransformError(f"{file_path} should not be a directory")
    if stat.st_size > MAX_CONFIG_FILE_SIZE:
        raise TransformError(f"size of {file_path} is larger than MAX_FILE_SIZE(10M)")


def copy_archive(source: str, destination: str) -> None:
    """
    Recursively copy a path preserving ownership, modes, links and times.

    Args:
        source: File or directory to copy
        destination: Target path (or existing directory to copy into)

    Raises:
        TransformError: If the copy command fails
    """
    result = subprocess.run(
        ["cp", "-ra", source, destination],
        capture_output=True,
        text=True
    )
    if result.returncode != 0:
        raise TransformError(f"copy {source} to {destination} failed: {result.stderr.strip()}")


def remove_path(path: str) -> None:
    """
    Remove a file or directory tree; a missing path is not an error.

    Args:
        path: Path to remove
    """
    if os.path.islink(path) or os.path.isfile(path):
        os.remove(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)
