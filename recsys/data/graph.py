"""
Content/Interaction Graph.

The ingestion collaborator writes items and interaction edges; the
recommendation core only reads immutable ``GraphSnapshot`` objects.

A snapshot is an arena addressed by dense integer indices:
- users occupy node indices [0, num_users)
- items occupy node indices [num_users, num_users + num_items)

Adjacency is a symmetric ``scipy.sparse.csr_matrix`` whose weights are the
interaction weights decayed to the snapshot time. Snapshots are safe to
share read-only across threads.

Example:
    >>> graph = InteractionGraph()
    >>> graph.add_item(Item('i1', tags={'jazz'}))
    >>> graph.record_interaction('u1', 'i1', rating=5, timestamp=now)
    >>> snap = graph.snapshot()
    >>> snap.user_items('u1')
    array([0])
"""

from typing import Dict, List, Optional, Tuple, FrozenSet, Iterable, Set
from datetime import datetime, timezone
import logging
import threading

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix, bmat

from .entities import (
    Item, User, Interaction, InteractionEdge, TrustComponents, DEFAULT_HISTORY_WINDOW, MAX_RATING
)

logger = logging.getLogger(__name__)

DEFAULT_HALF_LIFE_DAYS = 30.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Snapshot (read-only arena)
# ============================================================================

class GraphSnapshot:
    """Immutable, index-addressed view of the interaction graph."""

    def __init__(
        self,
        user_ids: List[str],
        item_ids: List[str],
        interactions: csr_matrix,
        item_tags: List[FrozenSet[str]],
        item_trust: List[TrustComponents],
        as_of: datetime,
        version: int
    ):
        self.user_ids = list(user_ids)
        self.item_ids = list(item_ids)
        self.user_pos = {uid: i for i, uid in enumerate(self.user_ids)}
        self.item_pos = {iid: i for i, iid in enumerate(self.item_ids)}
        self.interactions = interactions.tocsr()
        self.item_tags = item_tags
        self.item_trust = item_trust
        self.as_of = as_of
        self.version = version

        self.num_users = len(self.user_ids)
        self.num_items = len(self.item_ids)
        self.num_nodes = self.num_users + self.num_items

        # Symmetric bipartite adjacency over the node arena
        if self.num_users and self.num_items:
            self.adjacency = bmat(
                [[None, self.interactions], [self.interactions.T, None]],
                format='csr',
                dtype=np.float64
            )
        else:
            self.adjacency = csr_matrix((self.num_nodes, self.num_nodes), dtype=np.float64)
        self.item_popularity = np.asarray(self.interactions.sum(axis=0)).ravel()
        self._interactions_csc = self.interactions.tocsc()

    # --- node arena -------------------------------------------------------

    def user_node(self, user_id: str) -> Optional[int]:
        return self.user_pos.get(user_id)

    def item_node(self, item_id: str) -> Optional[int]:
        pos = self.item_pos.get(item_id)
        return None if pos is None else self.num_users + pos

    def is_item_node(self, node: int) -> bool:
        return node >= self.num_users

    def node_item_id(self, node: int) -> str:
        return self.item_ids[node - self.num_users]

    def node_label(self, node: int) -> str:
        if self.is_item_node(node):
            return self.node_item_id(node)
        return self.user_ids[node]

    def neighbors(self, node: int) -> Tuple[np.ndarray, np.ndarray]:
        """Neighbor node indices and decayed edge weights."""
        start, end = self.adjacency.indptr[node], self.adjacency.indptr[node + 1]
        return self.adjacency.indices[start:end], self.adjacency.data[start:end]

    # --- user / item views -----------------------------------------------

    def user_items(self, user_id: str) -> np.ndarray:
        """Item positions (not node indices) the user interacted with."""
        u = self.user_pos.get(user_id)
        if u is None:
            return np.array([], dtype=np.int64)
        start, end = self.interactions.indptr[u], self.interactions.indptr[u + 1]
        return self.interactions.indices[start:end].astype(np.int64)

    def user_item_weights(self, user_id: str) -> Tuple[np.ndarray, np.ndarray]:
        u = self.user_pos.get(user_id)
        if u is None:
            return np.array([], dtype=np.int64), np.array([])
        start, end = self.interactions.indptr[u], self.interactions.indptr[u + 1]
        return (
            self.interactions.indices[start:end].astype(np.int64),
            self.interactions.data[start:end]
        )

    def item_users(self, item_pos: int) -> np.ndarray:
        start, end = self._interactions_csc.indptr[item_pos], self._interactions_csc.indptr[item_pos + 1]
        return self._interactions_csc.indices[start:end].astype(np.int64)

    def tags(self, item_id: str) -> FrozenSet[str]:
        pos = self.item_pos.get(item_id)
        return self.item_tags[pos] if pos is not None else frozenset()

    def trust(self, item_id: str) -> TrustComponents:
        pos = self.item_pos.get(item_id)
        return self.item_trust[pos] if pos is not None else TrustComponents()

    def popular_items(self, topk: int, exclude: Optional[Set[int]] = None) -> List[Tuple[int, float]]:
        """Top items by decayed interaction mass, ties broken by item id."""
        exclude = exclude or set()
        order = sorted(
            (i for i in range(self.num_items) if i not in exclude),
            key=lambda i: (-self.item_popularity[i], self.item_ids[i])
        )
        return [(i, float(self.item_popularity[i])) for i in order[:topk]]

    def bfs_tree(self, src: int, max_hops: int = 3) -> Dict[int, Optional[int]]:
        """
        BFS parent map of every node within ``max_hops`` edges of ``src``.

        Neighbors are visited in node order, so the tree (and every path
        read from it) is deterministic.
        """
        parent: Dict[int, Optional[int]] = {src: None}
        frontier = [src]
        for _ in range(max_hops):
            next_frontier = []
            for node in frontier:
                nbrs, _ = self.neighbors(node)
                for nbr in sorted(int(n) for n in nbrs):
                    if nbr not in parent:
                        parent[nbr] = node
                        next_frontier.append(nbr)
            if not next_frontier:
                break
            frontier = next_frontier
        return parent

    @staticmethod
    def path_in_tree(parent: Dict[int, Optional[int]], dst: int) -> Optional[List[int]]:
        """Root-to-``dst`` path from a ``bfs_tree`` parent map, or None if unreached."""
        if dst not in parent:
            return None
        path = [dst]
        while parent[path[-1]] is not None:
            path.append(parent[path[-1]])
        return path[::-1]

    def find_path(self, src: int, dst: int, max_hops: int = 3) -> Optional[List[int]]:
        """Shortest node path from ``src`` to ``dst`` within ``max_hops`` edges (BFS)."""
        return self.path_in_tree(self.bfs_tree(src, max_hops), dst)


# ============================================================================
# Mutable graph (ingestion side)
# ============================================================================

class InteractionGraph:
    """
    Thread-safe store of items, users and interaction edges.

    Edges are append-only. ``snapshot()`` materializes a cached
    ``GraphSnapshot``; any write invalidates the cache.
    """

    def __init__(
        self,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
        history_window: int = DEFAULT_HISTORY_WINDOW
    ):
        self.half_life_days = half_life_days
        self.history_window = history_window

        self._items: Dict[str, Item] = {}
        self._users: Dict[str, User] = {}
        self._edges: List[InteractionEdge] = []
        self._version = 0

        self._lock = threading.RLock()
        self._cached: Optional[GraphSnapshot] = None
        self._cached_as_of: Optional[datetime] = None

    # --- writes -----------------------------------------------------------

    def add_item(self, item: Item) -> None:
        """Insert or refresh an item's metadata."""
        with self._lock:
            self._items[item.item_id] = item
            self._invalidate()

    def record_interaction(
        self,
        user_id: str,
        item_id: str,
        timestamp: Optional[datetime] = None,
        rating: Optional[float] = None,
        engagement: Optional[float] = None
    ) -> InteractionEdge:
        """Append an interaction edge, creating the user on first interaction."""
        timestamp = timestamp or utcnow()
        edge = InteractionEdge.from_signal(user_id, item_id, timestamp, rating, engagement)
        with self._lock:
            if item_id not in self._items:
                raise KeyError(f"Unknown item: {item_id}")
            user = self._users.get(user_id)
            if user is None:
                user = User(user_id, window=self.history_window)
                self._users[user_id] = user
                logger.debug(f"Created user {user_id} on first interaction")
            user.record(item_id, rating if rating is not None else edge.weight * MAX_RATING, timestamp)
            self._edges.append(edge)
            self._invalidate()
        return edge

    def _invalidate(self) -> None:
        self._version += 1
        self._cached = None

    # --- reads ------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    def get_item(self, item_id: str) -> Optional[Item]:
        return self._items.get(item_id)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def user_history(self, user_id: str) -> Tuple[Interaction, ...]:
        """The user's recency window, copied under the write lock (empty if unknown)."""
        with self._lock:
            user = self._users.get(user_id)
            return user.recent() if user is not None else ()

    def items(self) -> Iterable[Item]:
        with self._lock:
            return list(self._items.values())

    def users(self) -> Iterable[User]:
        with self._lock:
            return list(self._users.values())

    def edges(self) -> List[InteractionEdge]:
        with self._lock:
            return list(self._edges)

    def snapshot(self, as_of: Optional[datetime] = None) -> GraphSnapshot:
        """
        Build (or reuse) a read-only snapshot with weights decayed to ``as_of``.

        Without ``as_of`` the cached snapshot is reused until the next write.
        """
        with self._lock:
            if self._cached is not None and (as_of is None or as_of == self._cached_as_of):
                return self._cached

            as_of = as_of or utcnow()
            user_ids = sorted(self._users)
            item_ids = sorted(self._items)
            user_pos = {u: i for i, u in enumerate(user_ids)}
            item_pos = {i: k for k, i in enumerate(item_ids)}

            rows, cols, vals = [], [], []
            for edge in self._edges:
                rows.append(user_pos[edge.user_id])
                cols.append(item_pos[edge.item_id])
                vals.append(edge.decayed_weight(as_of, self.half_life_days))

            # Duplicate (u, i) entries are summed by the constructor
            interactions = csr_matrix(
                (
                    np.asarray(vals, dtype=np.float64),
                    (np.asarray(rows, dtype=np.int64), np.asarray(cols, dtype=np.int64))
                ),
                shape=(len(user_ids), len(item_ids))
            )
            interactions.sum_duplicates()

            snap = GraphSnapshot(
                user_ids=user_ids,
                item_ids=item_ids,
                interactions=interactions,
                item_tags=[self._items[i].tags for i in item_ids],
                item_trust=[self._items[i].trust for i in item_ids],
                as_of=as_of,
                version=self._version
            )
            self._cached = snap
            self._cached_as_of = as_of
            logger.debug(
                f"Graph snapshot v{self._version}: users={snap.num_users}, "
                f"items={snap.num_items}, edges={interactions.nnz}"
            )
            return snap

    # --- bulk load ----------------------------------------------------------

    @classmethod
    def from_frames(
        cls,
        items_df: pd.DataFrame,
        interactions_df: pd.DataFrame,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
        history_window: int = DEFAULT_HISTORY_WINDOW
    ) -> 'InteractionGraph':
        """
        Build a graph from the ingestion collaborator's bulk export.

        Args:
            items_df: columns item_id, tags (iterable or '|'-joined str) and
                optionally the TrustComponents fields
            interactions_df: columns user_id, item_id, timestamp and
                rating and/or engagement
        """
        graph = cls(half_life_days=half_life_days, history_window=history_window)
        trust_fields = [f for f in TrustComponents.__dataclass_fields__ if f in items_df.columns]

        for row in items_df.itertuples(index=False):
            tags = getattr(row, 'tags', ()) if 'tags' in items_df.columns else ()
            if isinstance(tags, str):
                tags = [t for t in tags.split('|') if t]
            elif tags is None or (isinstance(tags, float) and pd.isna(tags)):
                tags = ()
            trust = TrustComponents(**{f: float(getattr(row, f)) for f in trust_fields})
            graph.add_item(Item(
                item_id=str(row.item_id),
                tags=frozenset(tags),
                trust=trust,
                title=getattr(row, 'title', None) if 'title' in items_df.columns else None
            ))

        df = interactions_df.sort_values('timestamp')
        has_rating = 'rating' in df.columns
        has_engagement = 'engagement' in df.columns
        for row in df.itertuples(index=False):
            ts = pd.Timestamp(row.timestamp)
            if ts.tzinfo is None:
                ts = ts.tz_localize('UTC')
            rating = getattr(row, 'rating') if has_rating else None
            engagement = getattr(row, 'engagement') if has_engagement else None
            graph.record_interaction(
                str(row.user_id),
                str(row.item_id),
                timestamp=ts.to_pydatetime(),
                rating=None if rating is None or pd.isna(rating) else float(rating),
                engagement=None if engagement is None or pd.isna(engagement) else float(engagement)
            )

        logger.info(
            f"Loaded graph from frames: items={len(graph._items):,}, "
            f"users={len(graph._users):,}, edges={len(graph._edges):,}"
        )
        return graph
