"""
Secure aggregation primitives.

Masking (all arithmetic in the ring Z_{2^64}, numpy uint64 wraps):

    y_i = encode(x_i) + PRG(b_i) + Σ_{j > i} PRG(s_ij) − Σ_{j < i} PRG(s_ij)

where ``b_i`` is client i's private self-mask seed and ``s_ij = s_ji`` is
derived by both ends from an X25519 key agreement, HKDF-SHA256 with the
round id as ``info``. Clients are ordered by id. Summing y_i over all
clients cancels every pairwise term exactly, leaving
Σ encode(x_i) + Σ PRG(b_i); the server removes the self masks once the
survivors reveal their seeds. For a client that dropped after key
agreement, survivors reveal s_ij instead so the server can remove the
dangling pairwise terms. A client's self seed and its pairwise seeds are
never both revealed.

Values are fixed-point encoded with ``bits`` fractional bits (default 24)
and decoded from the two's-complement sum.

Upload envelope: AES-256-GCM over the masked vector, AES key wrapped
with RSA-OAEP(SHA-256) under the aggregator's public key.
"""

from typing import Dict, Iterable, Tuple
import logging
import os

import numpy as np
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa, x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from recsys.exceptions import MalformedClientUpload

logger = logging.getLogger(__name__)

SEED_BYTES = 32
NONCE_BYTES = 12
UINT64_MAX = np.iinfo(np.uint64).max


# ============================================================================
# Key agreement and seeds
# ============================================================================

def generate_dh_keypair() -> Tuple[x25519.X25519PrivateKey, bytes]:
    """Fresh X25519 key pair; returns (private key, raw public bytes)."""
    private = x25519.X25519PrivateKey.generate()
    public = private.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return private, public


def derive_pairwise_seed(
    private_key: x25519.X25519PrivateKey,
    peer_public: bytes,
    round_id: str
) -> bytes:
    """Shared 32-byte seed for (self, peer) bound to ``round_id``."""
    shared = private_key.exchange(x25519.X25519PublicKey.from_public_bytes(peer_public))
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=SEED_BYTES,
        salt=None,
        info=round_id.encode('utf-8')
    )
    return hkdf.derive(shared)


def new_self_seed() -> bytes:
    return os.urandom(SEED_BYTES)


def expand_mask(seed: bytes, length: int) -> np.ndarray:
    """Deterministic uniform uint64 vector from a seed."""
    rng = np.random.default_rng(int.from_bytes(seed, 'big'))
    return rng.integers(0, UINT64_MAX, size=length, dtype=np.uint64, endpoint=True)


def pair_sign(client_id: str, peer_id: str) -> int:
    """+1 if the client adds the pairwise mask shared with ``peer_id``, else -1."""
    return 1 if client_id < peer_id else -1


def pairwise_mask(client_id: str, peer_seeds: Dict[str, bytes], length: int) -> np.ndarray:
    """Signed sum of pairwise masks for one client (uint64, mod 2^64)."""
    total = np.zeros(length, dtype=np.uint64)
    for peer_id in sorted(peer_seeds):
        if peer_id == client_id:
            continue
        mask = expand_mask(peer_seeds[peer_id], length)
        if pair_sign(client_id, peer_id) > 0:
            total += mask
        else:
            total -= mask
    return total


def mask_update(
    encoded: np.ndarray,
    client_id: str,
    self_seed: bytes,
    peer_seeds: Dict[str, bytes]
) -> np.ndarray:
    length = len(encoded)
    return encoded + expand_mask(self_seed, length) + pairwise_mask(client_id, peer_seeds, length)


def unmask_sum(
    masked_sum: np.ndarray,
    self_seeds: Dict[str, bytes],
    dropped_seeds: Dict[Tuple[str, str], bytes]
) -> np.ndarray:
    """
    Remove survivors' self masks and dangling pairwise masks.

    Args:
        masked_sum: Σ y_i over surviving clients (uint64)
        self_seeds: survivor id -> self-mask seed
        dropped_seeds: (survivor id, dropped id) -> pairwise seed
    """
    length = len(masked_sum)
    total = masked_sum.astype(np.uint64, copy=True)
    for client_id in sorted(self_seeds):
        total -= expand_mask(self_seeds[client_id], length)
    for (survivor, dropped) in sorted(dropped_seeds):
        mask = expand_mask(dropped_seeds[(survivor, dropped)], length)
        if pair_sign(survivor, dropped) > 0:
            total -= mask
        else:
            total += mask
    return total


def ring_sum(vectors: Iterable[np.ndarray], length: int) -> np.ndarray:
    total = np.zeros(length, dtype=np.uint64)
    for vec in vectors:
        total += vec
    return total


# ============================================================================
# Fixed-point encoding
# ============================================================================

def encode_fixed_point(values: np.ndarray, bits: int = 24) -> np.ndarray:
    scaled = np.rint(np.asarray(values, dtype=np.float64) * float(1 << bits))
    return scaled.astype(np.int64).view(np.uint64)


def decode_fixed_point(encoded: np.ndarray, bits: int = 24) -> np.ndarray:
    return encoded.astype(np.uint64).view(np.int64).astype(np.float64) / float(1 << bits)


# ============================================================================
# Upload envelope
# ============================================================================

OAEP_PADDING = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None
)


def generate_aggregator_keypair(key_size: int = 2048) -> Tuple[rsa.RSAPrivateKey, bytes]:
    """RSA key pair for the aggregator; returns (private key, PEM public key)."""
    private = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    public_pem = private.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return private, public_pem


def _aad(round_id: str, client_id: str) -> bytes:
    return f"{round_id}|{client_id}".encode('utf-8')


def encrypt_update(
    masked: np.ndarray,
    public_pem: bytes,
    round_id: str,
    client_id: str
) -> Tuple[bytes, bytes, bytes]:
    """
    Encrypt a masked update.

    Returns:
        (ciphertext, wrapped_key, nonce)
    """
    public_key = serialization.load_pem_public_key(public_pem)
    key = AESGCM.generate_key(bit_length=256)
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(
        nonce, np.ascontiguousarray(masked, dtype='<u8').tobytes(), _aad(round_id, client_id)
    )
    wrapped_key = public_key.encrypt(key, OAEP_PADDING)
    return ciphertext, wrapped_key, nonce


def decrypt_update(
    ciphertext: bytes,
    wrapped_key: bytes,
    nonce: bytes,
    private_key: rsa.RSAPrivateKey,
    round_id: str,
    client_id: str,
    expected_length: int
) -> np.ndarray:
    """
    Decrypt and shape-check a masked update.

    Raises:
        MalformedClientUpload: undecryptable, tampered or wrong-length payload
    """
    try:
        key = private_key.decrypt(wrapped_key, OAEP_PADDING)
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, _aad(round_id, client_id))
    except (ValueError, TypeError, InvalidTag) as e:
        raise MalformedClientUpload(client_id, f"decryption failed: {type(e).__name__}") from e

    if len(plaintext) != expected_length * 8:
        raise MalformedClientUpload(
            client_id, f"payload has {len(plaintext)} bytes, expected {expected_length * 8}"
        )
    return np.frombuffer(plaintext, dtype='<u8').astype(np.uint64)
