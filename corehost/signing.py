"""
Core Host - Signing

Device ed25519 keys, canonical JSON hashing and detached signatures.

Canonical JSON: object keys sorted recursively, arrays kept in order, no
whitespace, UTF-8. The SHA-256 of that text is the bundle hash; the
signature covers the 32 raw digest bytes and is stored as base64.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
from typing import Any, Optional

import filelock
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from pydantic import ValidationError

from .models import CanonicalHash, DeviceKeyPair, now_ms
from .state_store import CoreHostError, StateStore

logger = logging.getLogger(__name__)

KEY_LOCK_TIMEOUT = 30.0  # seconds


class SigningError(CoreHostError):
    """Error loading, generating or using a signing key."""
    pass


# =============================================================================
# Canonical JSON
# =============================================================================

def _stable_sort(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _stable_sort(value[key]) for key in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [_stable_sort(item) for item in value]
    return value


def stable_stringify(value: Any) -> str:
    """Serialize with recursively sorted keys and compact separators."""
    return json.dumps(_stable_sort(value), separators=(",", ":"), ensure_ascii=False)


def hash_canonical_json(value: Any) -> CanonicalHash:
    canonical = stable_stringify(value)
    return CanonicalHash(
        canonical=canonical,
        hash_hex=hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
    )


# =============================================================================
# Device Keys
# =============================================================================

def generate_key_pair() -> DeviceKeyPair:
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return DeviceKeyPair(
        public_key_pem=public_pem.decode("ascii"),
        private_key_pem=private_pem.decode("ascii"),
        created_at=now_ms(),
    )


def _load_key_pair(state_store: StateStore) -> Optional[DeviceKeyPair]:
    path = state_store.device_key_path
    if not path.exists():
        return None
    try:
        pair = DeviceKeyPair.model_validate(state_store.read_json(path))
    except (OSError, ValueError, ValidationError) as e:
        logger.warning(f"[Signing] Device key at {path} is malformed, regenerating: {e}")
        return None
    if not pair.private_key_pem or not pair.public_key_pem:
        return None
    return pair


def _write_private_json(state_store: StateStore, pair: DeviceKeyPair) -> None:
    """Atomically write the key file, readable by the owner only."""
    path = state_store.device_key_path
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".json.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(pair.to_json_dict(), f, indent=2, sort_keys=True)
            f.write("\n")
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def ensure_signing_keys(state_store: StateStore) -> DeviceKeyPair:
    """
    Load the device key pair, generating it on first use.

    An existing well-formed key is never replaced. Generation runs under a
    file lock so concurrent processes end up sharing one key.

    Raises:
        SigningError: If the key lock cannot be acquired.
    """
    existing = _load_key_pair(state_store)
    if existing is not None:
        return existing

    state_store.signing_path.mkdir(parents=True, exist_ok=True)
    lock = filelock.FileLock(str(state_store.signing_path / "device-key.lock"))
    try:
        with lock.acquire(timeout=KEY_LOCK_TIMEOUT):
            existing = _load_key_pair(state_store)
            if existing is not None:
                return existing
            pair = generate_key_pair()
            _write_private_json(state_store, pair)
            logger.info(f"[Signing] Generated device key at {state_store.device_key_path}")
            return pair
    except filelock.Timeout:
        raise SigningError(
            f"Could not acquire signing key lock within {KEY_LOCK_TIMEOUT}s. "
            "Another process may be generating the device key."
        )


# =============================================================================
# Sign / Verify
# =============================================================================

def sign_hash(private_key_pem: str, hash_hex: str) -> str:
    """Sign the raw digest bytes of ``hash_hex``; returns base64."""
    try:
        private_key = serialization.load_pem_private_key(private_key_pem.encode("ascii"), password=None)
        digest = bytes.fromhex(hash_hex)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Cannot sign hash: {e}") from e
    if not isinstance(private_key, Ed25519PrivateKey):
        raise SigningError("Signing key is not an ed25519 private key.")
    return base64.b64encode(private_key.sign(digest)).decode("ascii")


def verify_signature(public_key_pem: str, hash_hex: str, signature_b64: str) -> bool:
    """True only for a valid ed25519 signature; never raises."""
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("ascii"))
        if not isinstance(public_key, Ed25519PublicKey):
            return False
        public_key.verify(base64.b64decode(signature_b64, validate=True), bytes.fromhex(hash_hex))
        return True
    except (InvalidSignature, ValueError, TypeError, UnsupportedAlgorithm):
        return False
