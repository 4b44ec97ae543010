"""ALS matrix factorization for the collaborative strategy."""

from .trainer import ALSTrainer, TrainingHistory

__all__ = ['ALSTrainer', 'TrainingHistory']
