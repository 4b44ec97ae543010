"""
Versioned Embedding Store.

Holds fixed-size vectors for three namespaces: ``user``, ``item`` and
``taxonomy``. Writes append a new version for a key; older versions are
kept and remain readable, so readers holding a version number never see
it change underneath them.

Example:
    >>> store = EmbeddingStore(dims={'item': 128, 'user': 128, 'taxonomy': 128})
    >>> store.put('item', 'i1', vec)
    1
    >>> ids, matrix = store.matrix('item')   # L2-normalized, cached
"""

from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass
from datetime import datetime
import logging
import threading

import numpy as np

logger = logging.getLogger(__name__)

NAMESPACES = ('user', 'item', 'taxonomy')


@dataclass(frozen=True)
class EmbeddingVersion:
    """One immutable version of an embedding."""
    version: int
    vector: np.ndarray
    created_at: datetime


def l2_normalize(x: np.ndarray, axis: int = -1, eps: float = 1e-12) -> np.ndarray:
    norm = np.linalg.norm(x, axis=axis, keepdims=True)
    return x / np.maximum(norm, eps)


class EmbeddingStore:
    """
    Append-only, versioned embedding storage.

    ``matrix(namespace)`` returns a cached ``(ids, normalized_matrix)`` pair
    of the latest versions, rebuilt lazily after writes to that namespace.
    """

    def __init__(self, dims: Dict[str, int]):
        unknown = set(dims) - set(NAMESPACES)
        if unknown:
            raise ValueError(f"Unknown namespaces: {sorted(unknown)}")
        self.dims = dict(dims)
        self._data: Dict[str, Dict[str, List[EmbeddingVersion]]] = {ns: {} for ns in NAMESPACES}
        self._matrix_cache: Dict[str, Tuple[List[str], np.ndarray]] = {}
        self._lock = threading.RLock()

    def _check(self, namespace: str, vector: np.ndarray) -> np.ndarray:
        if namespace not in self.dims:
            raise KeyError(f"Namespace not configured: {namespace}")
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dims[namespace]:
            raise ValueError(
                f"{namespace} embedding must have dim {self.dims[namespace]}, got {vector.shape[0]}"
            )
        if not np.all(np.isfinite(vector)):
            raise ValueError(f"{namespace} embedding contains non-finite values")
        return vector

    def put(self, namespace: str, key: str, vector: np.ndarray) -> int:
        """Append a new version and return its version number."""
        vector = self._check(namespace, vector)
        vector.setflags(write=False)
        with self._lock:
            versions = self._data[namespace].setdefault(key, [])
            version = versions[-1].version + 1 if versions else 1
            versions.append(EmbeddingVersion(version, vector, datetime.now()))
            self._matrix_cache.pop(namespace, None)
        return version

    def get(self, namespace: str, key: str, version: Optional[int] = None) -> Optional[np.ndarray]:
        """Latest (or a specific) version of an embedding, or None."""
        versions = self._data.get(namespace, {}).get(key)
        if not versions:
            return None
        if version is None:
            return versions[-1].vector
        for entry in versions:
            if entry.version == version:
                return entry.vector
        return None

    def history(self, namespace: str, key: str) -> List[EmbeddingVersion]:
        with self._lock:
            return list(self._data.get(namespace, {}).get(key, []))

    def keys(self, namespace: str) -> List[str]:
        with self._lock:
            return sorted(self._data.get(namespace, {}))

    def __contains__(self, ns_key: Tuple[str, str]) -> bool:
        namespace, key = ns_key
        return key in self._data.get(namespace, {})

    def matrix(self, namespace: str) -> Tuple[List[str], np.ndarray]:
        """Sorted ids and their latest L2-normalized vectors as one matrix."""
        with self._lock:
            cached = self._matrix_cache.get(namespace)
            if cached is not None:
                return cached

            ids = sorted(self._data[namespace])
            dim = self.dims.get(namespace, 0)
            if ids:
                mat = np.vstack([self._data[namespace][k][-1].vector for k in ids])
                mat = l2_normalize(mat.astype(np.float32))
            else:
                mat = np.zeros((0, dim), dtype=np.float32)
            mat.setflags(write=False)
            self._matrix_cache[namespace] = (ids, mat)
            logger.debug(f"Rebuilt {namespace} matrix: {mat.shape}")
            return ids, mat
