"""Projection of domain events into read models."""

from natrix.projection.checkpoint import ProjectionCheckpoint
from natrix.projection.engine import (
    ApplyResult,
    ProjectionConfig,
    ProjectionEngine,
    load_view,
    view_key,
)
from natrix.projection.transforms import TRANSFORMS, Transform

__all__ = [
    "ApplyResult",
    "ProjectionCheckpoint",
    "ProjectionConfig",
    "ProjectionEngine",
    "TRANSFORMS",
    "Transform",
    "load_view",
    "view_key",
]
