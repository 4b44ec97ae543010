"""
Configuration for the recommendation core.

All tunables live in one YAML file (default ``config/recsys.yaml``, or the
path in ``RECSYS_CONFIG``). Each top-level key maps to a dataclass section;
missing files or keys fall back to the defaults below.

Example:
    >>> from recsys.config import load_config
    >>> cfg = load_config()
    >>> cfg.fusion.k_smooth
    60
"""

from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
import logging
import os

import yaml

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

DEFAULT_CONFIG_PATH = "config/recsys.yaml"
CONFIG_ENV_VAR = "RECSYS_CONFIG"


# ============================================================================
# Sections
# ============================================================================

@dataclass
class ALSConfig:
    """Collaborative strategy (ALS matrix factorization)."""
    factors: int = 64
    regularization: float = 0.01
    epochs: int = 50
    alpha: float = 10.0
    tolerance: float = 1e-4
    min_interactions: int = 2
    init_scale: float = 0.01
    random_seed: int = 42


@dataclass
class ContentConfig:
    """Content-based strategy."""
    history_weight: float = 0.7     # vs. genre-preference vector
    recency_half_life_days: float = 14.0
    max_rating: float = 5.0


@dataclass
class GNNConfig:
    """Graph-neural strategy and its BPR training."""
    input_dim: int = 512
    layer_dims: Tuple[int, ...] = (256, 128, 64)
    heads: Tuple[int, ...] = (8, 4, 2)
    fanouts: Tuple[int, ...] = (25, 15, 10)
    leaky_relu_slope: float = 0.2
    dropout: float = 0.0
    negatives_per_positive: int = 4
    learning_rate: float = 1e-3
    weight_decay: float = 0.0
    grad_clip_norm: float = 1.0
    batch_size: int = 512
    max_epochs: int = 100
    early_stopping_patience: int = 10
    validation_fraction: float = 0.1
    eval_k: int = 10
    random_seed: int = 42


@dataclass
class FusionConfig:
    """Weighted reciprocal rank fusion and MMR re-ranking."""
    k_smooth: int = 60
    weights: Dict[str, float] = field(default_factory=lambda: {
        'collaborative': 0.35,
        'content': 0.25,
        'graph': 0.30,
        'context': 0.10,
    })
    mmr_lambda: float = 0.85


@dataclass
class TrustConfig:
    """Trust filter."""
    threshold: float = 0.6
    decay_per_day: float = 0.01
    component_weights: Dict[str, float] = field(default_factory=lambda: {
        'source_reliability': 0.25,
        'metadata_accuracy': 0.25,
        'availability_confidence': 0.20,
        'recommendation_quality': 0.15,
        'user_preference_confidence': 0.15,
    })


@dataclass
class GraphConfig:
    """Interaction graph read-time decay and user windows."""
    edge_half_life_days: float = 30.0
    history_window: int = 50


@dataclass
class RegistryConfig:
    """Model registry and hot-swap controller."""
    artifact_root: str = "artifacts/models"
    audit_log_path: str = "logs/registry_audit.log"
    retire_grace_seconds: float = 30.0
    warmup_requests: int = 8


@dataclass
class PipelineConfig:
    """Scoring pipeline."""
    timeout_ms: float = 200.0
    candidate_multiplier: int = 5
    max_workers: int = 8


@dataclass
class FederatedConfig:
    """Federated training coordinator."""
    clip_norm: float = 1.0
    noise_multiplier: float = 1.1
    n_min: int = 1000
    cohort_size: int = 1200
    round_epsilon: float = 1.0
    round_delta: float = 1e-5
    composition_delta: float = 1e-6
    max_epsilon: float = 8.0
    max_delta: float = 1e-3
    server_learning_rate: float = 1.0
    local_epochs: int = 2
    local_batch_size: int = 16
    local_learning_rate: float = 0.05
    local_regularization: float = 0.01
    max_sample_count: int = 1000
    round_deadline_seconds: float = 60.0
    fixed_point_bits: int = 24
    max_workers: int = 16
    straggler_join_seconds: float = 5.0
    random_seed: Optional[int] = None


@dataclass
class SchedulerConfig:
    """Background job intervals."""
    federated_round_hours: float = 6.0
    registry_poll_seconds: float = 60.0
    registry_reap_seconds: float = 30.0
    timezone: str = "UTC"
    status_file: Optional[str] = "logs/scheduler/task_status.json"


@dataclass
class RecsysConfig:
    """Top-level configuration."""
    als: ALSConfig = field(default_factory=ALSConfig)
    content: ContentConfig = field(default_factory=ContentConfig)
    gnn: GNNConfig = field(default_factory=GNNConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    trust: TrustConfig = field(default_factory=TrustConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    federated: FederatedConfig = field(default_factory=FederatedConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


# ============================================================================
# Loading
# ============================================================================

def _build_section(section_cls, data: Optional[Dict[str, Any]], name: str):
    """Instantiate a dataclass section from a dict, ignoring unknown keys."""
    if not data:
        return section_cls()

    known = {f.name: f for f in fields(section_cls)}
    kwargs = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Unknown config key '{name}.{key}' ignored")
            continue
        # YAML has no tuples
        default = known[key].default
        if isinstance(default, tuple) and isinstance(value, list):
            value = tuple(value)
        kwargs[key] = value
    return section_cls(**kwargs)


def config_from_dict(data: Optional[Dict[str, Any]]) -> RecsysConfig:
    """Build a RecsysConfig from a plain dict (e.g. parsed YAML)."""
    data = data or {}
    kwargs = {}
    for f in fields(RecsysConfig):
        section_cls = f.default_factory
        kwargs[f.name] = _build_section(section_cls, data.get(f.name), f.name)
    for key in data:
        if key not in kwargs:
            logger.warning(f"Unknown config section '{key}' ignored")
    return RecsysConfig(**kwargs)


def load_config(config_path: Optional[str] = None) -> RecsysConfig:
    """
    Load configuration from YAML.

    Args:
        config_path: Path to YAML file. Defaults to $RECSYS_CONFIG or
            config/recsys.yaml.

    Returns:
        RecsysConfig with defaults filled in for anything missing
    """
    path = Path(config_path or os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH))
    if not path.exists():
        logger.warning(f"Config not found at {path}, using defaults")
        return RecsysConfig()

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse config {path}: {e}, using defaults")
        return RecsysConfig()

    logger.info(f"Loaded config from {path}")
    return config_from_dict(data)


def config_to_dict(config: Any) -> Dict[str, Any]:
    """Convert a config (or section) to a plain dict for logging/metadata."""
    if is_dataclass(config):
        return {f.name: config_to_dict(getattr(config, f.name)) for f in fields(config)}
    if isinstance(config, tuple):
        return list(config)
    return config
