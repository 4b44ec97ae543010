"""
Federated Learning Module.

- messages: round protocol messages
- privacy: clipping, Gaussian noise, privacy accountant
- secure_aggregation: pairwise masking, fixed-point ring encoding, upload envelope
- client: on-device local training
- coordinator: round state machine and aggregation
"""

from .messages import (
    KeyAdvertisement,
    RoundInit,
    ClientUpload,
    UnmaskRequest,
    UnmaskResponse,
    RoundResult,
)
from .privacy import PrivacyAccountant, clip_by_norm, compose, gaussian_noise_std, privatize
from .client import FederatedClient
from .coordinator import FederatedCoordinator, RoundState, FEDERATED_STRATEGY

__all__ = [
    'KeyAdvertisement',
    'RoundInit',
    'ClientUpload',
    'UnmaskRequest',
    'UnmaskResponse',
    'RoundResult',
    'PrivacyAccountant',
    'clip_by_norm',
    'compose',
    'gaussian_noise_std',
    'privatize',
    'FederatedClient',
    'FederatedCoordinator',
    'RoundState',
    'FEDERATED_STRATEGY',
]
