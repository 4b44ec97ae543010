"""
Model Artifact Store.

Versioned, append-only blob storage keyed by ``(strategy, version)``.

On-disk layout (FileArtifactStore):

    <root>/<strategy>/v000247/params.npz
    <root>/<strategy>/v000247/metadata.json

A publish writes into a temporary directory next to the target and
renames it into place, so readers either see a complete version or none.
Publishing an existing ``(strategy, version)`` raises ArtifactExistsError.

Example:
    >>> store = FileArtifactStore('artifacts/models')
    >>> store.publish(ModelArtifact.create('collaborative', 1, params, metrics))
    >>> store.latest_version('collaborative')
    1
"""

from typing import Dict, List, Optional, Any
from pathlib import Path
from datetime import datetime
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import hashlib
import json
import logging
import os
import shutil
import tempfile
import threading

import numpy as np

from recsys.exceptions import ArtifactExistsError

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

PARAMS_FILE = "params.npz"
METADATA_FILE = "metadata.json"


def version_dirname(version: int) -> str:
    return f"v{version:06d}"


def compute_checksum(params: Dict[str, np.ndarray]) -> str:
    """SHA-256 over parameter names, dtypes, shapes and bytes (sorted by name)."""
    digest = hashlib.sha256()
    for name in sorted(params):
        arr = np.ascontiguousarray(params[name])
        digest.update(name.encode('utf-8'))
        digest.update(str(arr.dtype).encode('utf-8'))
        digest.update(str(arr.shape).encode('utf-8'))
        digest.update(arr.tobytes())
    return digest.hexdigest()


# ============================================================================
# Artifact
# ============================================================================

@dataclass
class ModelArtifact:
    """
    One published model version.

    Attributes:
        strategy: Strategy name ('collaborative', 'graph', ...)
        version: Monotonically increasing version number
        params: Opaque parameter blob (name -> array)
        metrics: Training / round metrics
        created_at: ISO timestamp
        metadata: Extra info (declared shapes, checksum, config, lineage)
    """
    strategy: str
    version: int
    params: Dict[str, np.ndarray]
    metrics: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        strategy: str,
        version: int,
        params: Dict[str, np.ndarray],
        metrics: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> 'ModelArtifact':
        """Build an artifact, declaring shapes and checksum in its metadata."""
        params = {k: np.asarray(v) for k, v in params.items()}
        meta = dict(metadata or {})
        meta['shapes'] = {k: list(v.shape) for k, v in params.items()}
        meta['checksum'] = compute_checksum(params)
        return cls(
            strategy=strategy,
            version=int(version),
            params=params,
            metrics=dict(metrics or {}),
            created_at=datetime.now().isoformat(),
            metadata=meta
        )

    def metadata_dict(self) -> Dict[str, Any]:
        return {
            'strategy': self.strategy,
            'version': self.version,
            'created_at': self.created_at,
            'metrics': self.metrics,
            'metadata': self.metadata,
        }


# ============================================================================
# Store interface
# ============================================================================

class ArtifactStore(ABC):
    """Append-only artifact storage."""

    @abstractmethod
    def publish(self, artifact: ModelArtifact) -> None:
        ...

    @abstractmethod
    def load(self, strategy: str, version: int) -> ModelArtifact:
        ...

    @abstractmethod
    def list_versions(self, strategy: str) -> List[int]:
        ...

    @abstractmethod
    def strategies(self) -> List[str]:
        ...

    def latest_version(self, strategy: str) -> Optional[int]:
        versions = self.list_versions(strategy)
        return versions[-1] if versions else None

    def next_version(self, strategy: str) -> int:
        latest = self.latest_version(strategy)
        return 1 if latest is None else latest + 1


class InMemoryArtifactStore(ArtifactStore):
    """Process-local store for tests and single-process deployments."""

    def __init__(self):
        self._artifacts: Dict[str, Dict[int, ModelArtifact]] = {}
        self._lock = threading.Lock()

    def publish(self, artifact: ModelArtifact) -> None:
        with self._lock:
            versions = self._artifacts.setdefault(artifact.strategy, {})
            if artifact.version in versions:
                raise ArtifactExistsError(
                    f"{artifact.strategy} v{artifact.version} already published"
                )
            versions[artifact.version] = artifact
        logger.info(f"Published {artifact.strategy} v{artifact.version} (in-memory)")

    def load(self, strategy: str, version: int) -> ModelArtifact:
        with self._lock:
            try:
                return self._artifacts[strategy][version]
            except KeyError:
                raise KeyError(f"Artifact not found: {strategy} v{version}") from None

    def list_versions(self, strategy: str) -> List[int]:
        with self._lock:
            return sorted(self._artifacts.get(strategy, {}))

    def strategies(self) -> List[str]:
        with self._lock:
            return sorted(self._artifacts)


class FileArtifactStore(ArtifactStore):
    """Directory-backed store (see module docstring for the layout)."""

    def __init__(self, root: str = "artifacts/models"):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _version_path(self, strategy: str, version: int) -> Path:
        return self.root / strategy / version_dirname(version)

    def publish(self, artifact: ModelArtifact) -> None:
        target = self._version_path(artifact.strategy, artifact.version)
        strategy_dir = target.parent

        with self._lock:
            if target.exists():
                raise ArtifactExistsError(
                    f"{artifact.strategy} v{artifact.version} already published at {target}"
                )
            strategy_dir.mkdir(parents=True, exist_ok=True)
            tmp_dir = Path(tempfile.mkdtemp(prefix=f".{target.name}-", dir=strategy_dir))
            try:
                np.savez(tmp_dir / PARAMS_FILE, **artifact.params)
                with open(tmp_dir / METADATA_FILE, 'w', encoding='utf-8') as f:
                    json.dump(artifact.metadata_dict(), f, indent=2, ensure_ascii=False, default=float)
                os.rename(tmp_dir, target)
            except OSError:
                shutil.rmtree(tmp_dir, ignore_errors=True)
                if target.exists():
                    raise ArtifactExistsError(
                        f"{artifact.strategy} v{artifact.version} already published at {target}"
                    )
                raise

        logger.info(f"Published {artifact.strategy} v{artifact.version} -> {target}")

    def load(self, strategy: str, version: int) -> ModelArtifact:
        path = self._version_path(strategy, version)
        params_file = path / PARAMS_FILE
        metadata_file = path / METADATA_FILE

        if not params_file.exists():
            raise FileNotFoundError(f"Missing file: {params_file}")
        if not metadata_file.exists():
            raise FileNotFoundError(f"Missing file: {metadata_file}")

        with open(metadata_file, 'r', encoding='utf-8') as f:
            meta = json.load(f)
        with np.load(params_file, allow_pickle=False) as data:
            params = {name: data[name] for name in data.files}

        return ModelArtifact(
            strategy=meta.get('strategy', strategy),
            version=int(meta.get('version', version)),
            params=params,
            metrics=meta.get('metrics', {}),
            created_at=meta.get('created_at', ''),
            metadata=meta.get('metadata', {})
        )

    def list_versions(self, strategy: str) -> List[int]:
        strategy_dir = self.root / strategy
        if not strategy_dir.is_dir():
            return []
        versions = []
        for entry in strategy_dir.iterdir():
            name = entry.name
            if entry.is_dir() and name.startswith('v') and name[1:].isdigit():
                versions.append(int(name[1:]))
        return sorted(versions)

    def strategies(self) -> List[str]:
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith('.'))
