"""
Model Registry Module.

- artifact_store: append-only versioned artifact storage (file / in-memory)
- registry: hot-swap controller serving immutable Active snapshots

Example:
    >>> from recsys.registry import ModelRegistry, FileArtifactStore
    >>> registry = ModelRegistry(FileArtifactStore('artifacts/models'))
    >>> registry.poll()
"""

from .artifact_store import (
    ArtifactStore,
    FileArtifactStore,
    InMemoryArtifactStore,
    ModelArtifact,
    compute_checksum,
)
from .registry import (
    ModelRegistry,
    ModelSnapshot,
    ModelState,
    ALLOWED_TRANSITIONS,
    validate_artifact,
)

__all__ = [
    'ArtifactStore',
    'FileArtifactStore',
    'InMemoryArtifactStore',
    'ModelArtifact',
    'compute_checksum',
    'ModelRegistry',
    'ModelSnapshot',
    'ModelState',
    'ALLOWED_TRANSITIONS',
    'validate_artifact',
]
