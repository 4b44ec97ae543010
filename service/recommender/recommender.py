"""
Hybrid Recommender: the request pipeline.

One request flows through:

1. snapshot the interaction graph (one consistent view for all strategies)
2. run every strategy concurrently under a single deadline
3. reciprocal rank fusion over the strategies that answered OK
4. trust filter
5. MMR diversity re-ranking down to ``k``
6. explanation per item

A strategy that raises or misses the deadline is reported as PARTIAL and
the response is flagged ``partial``; abstentions are listed but do not
degrade the response. When fusion yields nothing (abstentions and
failures alike) the page comes from the popularity fallback.

Example:
    >>> recommender = HybridRecommender(graph, registry, embeddings, load_config())
    >>> response = recommender.recommend(ScoringRequest(user_id='u1', k=10))
    >>> [item.item_id for item in response.items]
"""

from typing import Dict, List, Optional, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
import logging
import time

from recsys.config import RecsysConfig
from recsys.data.embedding_store import EmbeddingStore
from recsys.data.graph import InteractionGraph
from recsys.registry import ModelRegistry
from .explanation import ExplanationGenerator
from .fallback import FALLBACK_METHOD, popular_candidates
from .fusion import FusedCandidate, FusionEngine
from .schemas import ScoredItem, ScoringRequest, ScoringResponse, sanitize_numpy_types
from .strategies import (
    CollaborativeStrategy,
    ContentStrategy,
    GraphNeuralStrategy,
    ScoringContext,
    Strategy,
    StrategyOutcome,
    StrategyStatus,
)
from .trust import TrustFilter

logger = logging.getLogger(__name__)


# ============================================================================
# HybridRecommender
# ============================================================================

class HybridRecommender:
    """
    Orchestrates strategies, fusion, trust filtering and explanations.

    Args:
        graph: live interaction graph
        registry: model registry holding the Active model per strategy
        embeddings: content embedding store
        config: full configuration tree
        strategies: override the default strategy set (mainly for tests)
    """

    def __init__(
        self,
        graph: InteractionGraph,
        registry: ModelRegistry,
        embeddings: EmbeddingStore,
        config: Optional[RecsysConfig] = None,
        strategies: Optional[Sequence[Strategy]] = None
    ):
        self.graph = graph
        self.registry = registry
        self.embeddings = embeddings
        self.config = config or RecsysConfig()

        if strategies is None:
            strategies = [
                CollaborativeStrategy(registry, self.config.als),
                ContentStrategy(embeddings, self.config.content),
                GraphNeuralStrategy(registry),
            ]
        self.strategies: List[Strategy] = list(strategies)

        self.fusion = FusionEngine(self.config.fusion)
        self.trust_filter = TrustFilter(self.config.trust)
        self.explainer = ExplanationGenerator(title_of=self._title_of)
        self._executor = ThreadPoolExecutor(
            max_workers=max(self.config.pipeline.max_workers, len(self.strategies)),
            thread_name_prefix='strategy'
        )

    def _title_of(self, item_id: str) -> Optional[str]:
        item = self.graph.get_item(item_id)
        return item.title if item is not None else None

    # ------------------------------------------------------------------------
    # Strategy fan-out
    # ------------------------------------------------------------------------

    def _run_strategies(self, ctx: ScoringContext) -> List[StrategyOutcome]:
        timeout = self.config.pipeline.timeout_ms / 1000.0
        futures = {
            self._executor.submit(strategy.score, ctx): strategy
            for strategy in self.strategies
        }
        done, _ = wait(futures, timeout=timeout)

        outcomes = []
        for future, strategy in futures.items():
            if future not in done:
                future.cancel()
                logger.warning(
                    f"Strategy {strategy.kind.value} timed out after "
                    f"{self.config.pipeline.timeout_ms:.0f}ms for user {ctx.user_id}"
                )
                outcomes.append(StrategyOutcome.partial(strategy.kind, 'timeout'))
                continue
            try:
                outcomes.append(future.result())
            except Exception as e:
                logger.warning(
                    f"Strategy {strategy.kind.value} failed for user {ctx.user_id}: {e}",
                    exc_info=True
                )
                outcomes.append(StrategyOutcome.partial(strategy.kind, f'error: {e}'))
        return outcomes

    # ------------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------------

    def recommend(self, request: ScoringRequest) -> ScoringResponse:
        """
        Rank items for one user.

        Args:
            request: validated scoring request

        Returns:
            ScoringResponse with at most ``request.k`` items, never
            containing an item the user already interacted with
        """
        start = time.perf_counter()
        snapshot = self.graph.snapshot()
        user_id = request.user_id

        seen = snapshot.user_items(user_id)
        exclude = frozenset(int(p) for p in seen)
        ctx = ScoringContext(
            user_id=user_id,
            snapshot=snapshot,
            user=self.graph.get_user(user_id),
            exclude=exclude,
            limit=request.k * self.config.pipeline.candidate_multiplier,
            context=dict(request.context or {}),
            history=self.graph.user_history(user_id)
        )

        outcomes = self._run_strategies(ctx)
        degraded = [o.kind.value for o in outcomes if o.status == StrategyStatus.PARTIAL]
        abstained = [o.kind.value for o in outcomes if o.status == StrategyStatus.ABSTAIN]
        model_versions = {
            o.kind.value: o.model_version
            for o in outcomes
            if o.status == StrategyStatus.OK and o.model_version is not None
        }

        fused = self.fusion.reciprocal_rank_fusion(outcomes)
        fallback_method = None
        if not fused:
            fallback_method = FALLBACK_METHOD
            fused = [
                FusedCandidate(
                    item_id=c.item_id,
                    score=c.score,
                    ranks={FALLBACK_METHOD: c.rank},
                    contributions={FALLBACK_METHOD: c.score},
                    evidence={FALLBACK_METHOD: c.evidence}
                )
                for c in popular_candidates(snapshot, exclude, ctx.limit)
            ]
            logger.info(
                f"No fused candidates for user {user_id} (abstained={abstained}, "
                f"degraded={degraded}), using {FALLBACK_METHOD} fallback"
            )

        trusted, _ = self.trust_filter.apply(fused, snapshot.trust)
        page = self.fusion.mmr_rerank(trusted, snapshot.tags, request.k)

        items = [
            ScoredItem(
                item_id=cand.item_id,
                score=float(cand.score),
                trust_score=float(cand.trust_score),
                explanation=self.explainer.explain(cand, fallback_method),
                strategy_contributions=sanitize_numpy_types(cand.contributions),
                low_confidence=cand.low_confidence
            )
            for cand in page
        ]

        latency_ms = (time.perf_counter() - start) * 1000
        if degraded:
            logger.warning(
                f"Partial response for user {user_id}: degraded={degraded}, "
                f"items={len(items)}, latency={latency_ms:.1f}ms"
            )
        else:
            logger.debug(f"Scored user {user_id}: items={len(items)}, latency={latency_ms:.1f}ms")

        return ScoringResponse(
            user_id=user_id,
            items=items,
            partial=bool(degraded),
            degraded_strategies=degraded,
            abstained_strategies=abstained,
            model_versions=model_versions,
            fallback_method=fallback_method,
            latency_ms=latency_ms
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
