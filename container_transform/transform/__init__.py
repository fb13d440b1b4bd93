"""
Container transformation module.

This module orchestrates the in-place transformation of running Docker
containers into iSulad containers.
"""

from .container_store import ContainerStatus, ContainerStore
from .orchestrator import TransformOrchestrator, TransformResult, handle_signals
from .pipeline import ContainerPipeline, PipelineState
from .rollback import CancelToken, Rollback

__all__ = [
    'ContainerStatus',
    'ContainerStore',
    'TransformOrchestrator',
    'TransformResult',
    'handle_signals',
    'ContainerPipeline',
    'PipelineState',
    'CancelToken',
    'Rollback',
]
