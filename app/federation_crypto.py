"""Org signing keys (Ed25519) and per-agreement channel encryption (Fernet)."""

from __future__ import annotations

import base64
import logging

from cryptography.exceptions import InvalidSignature
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from app.secrets import SecretStoreError, decrypt_secret, encrypt_secret

logger = logging.getLogger("agentc2.federation.crypto")


class FederationCryptoError(RuntimeError):
    pass


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"))


# org key pairs


def generate_org_key_pair(store, org_id: str) -> dict:
    """Create a new active key version for ``org_id``; older versions stay for verification."""
    private_key = Ed25519PrivateKey.generate()
    private_raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    existing = store.list_keys(org_id)
    version = max((k.get("keyVersion") or 0 for k in existing), default=0) + 1
    for key in existing:
        if key.get("isActive"):
            store.update_key(key["id"], {"isActive": False})
    record = store.save_key(
        {
            "organizationId": org_id,
            "keyVersion": version,
            "publicKey": _b64(public_raw),
            "encryptedPrivateKey": encrypt_secret(_b64(private_raw)),
            "isActive": True,
        }
    )
    logger.info("org_key_generated org_id=%s version=%s", org_id, version)
    return record


def get_active_org_key_pair(store, org_id: str) -> dict | None:
    return store.get_active_key(org_id)


def get_org_key_pair_by_version(store, org_id: str, key_version: int) -> dict | None:
    return store.get_key_by_version(org_id, key_version)


def sign_payload(message: str, encrypted_private_key: str) -> str | None:
    try:
        private_raw = _unb64(decrypt_secret(encrypted_private_key))
    except (SecretStoreError, ValueError):
        logger.warning("federation_sign_failed reason=private_key_unavailable")
        return None
    private_key = Ed25519PrivateKey.from_private_bytes(private_raw)
    return _b64(private_key.sign(message.encode("utf-8")))


def verify_signature(message: str, signature: str, public_key: str) -> bool:
    try:
        key = Ed25519PublicKey.from_public_bytes(_unb64(public_key))
        key.verify(_unb64(signature), message.encode("utf-8"))
    except (InvalidSignature, ValueError):
        return False
    return True


# channel keys


def generate_channel_key() -> str:
    return Fernet.generate_key().decode("ascii")


def encrypt_channel_key(channel_key: str) -> str:
    try:
        return encrypt_secret(channel_key)
    except SecretStoreError as exc:
        raise FederationCryptoError("Failed to generate secure channel") from exc


def decrypt_channel_key(encrypted: str | None) -> str | None:
    if not encrypted:
        return None
    try:
        return decrypt_secret(encrypted)
    except SecretStoreError:
        logger.warning("federation_channel_key_unavailable")
        return None


def encrypt_with_key(plaintext: str, channel_key: str) -> str:
    return Fernet(channel_key.encode("ascii")).encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_with_key(token: str, channel_key: str) -> str | None:
    try:
        return Fernet(channel_key.encode("ascii")).decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError):
        return None
