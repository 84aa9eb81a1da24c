"""Fernet encryption for credentials and key material at rest."""

from __future__ import annotations

import base64
import json
import os
from typing import Any

from cryptography.fernet import Fernet, InvalidToken


class SecretStoreError(RuntimeError):
    pass


def _get_fernet() -> Fernet:
    key = os.getenv("APP_SECRET_KEY", "").strip()
    if not key:
        raise SecretStoreError("APP_SECRET_KEY is not set")
    # a raw 32-character key is accepted and encoded on the fly
    if len(key) == 32:
        key = base64.urlsafe_b64encode(key.encode("utf-8")).decode("utf-8")
    try:
        return Fernet(key.encode("utf-8"))
    except ValueError as exc:
        raise SecretStoreError("Invalid APP_SECRET_KEY") from exc


def generate_key() -> str:
    return Fernet.generate_key().decode("utf-8")


def encrypt_secret(value: str) -> str:
    return _get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(token: str) -> str:
    try:
        return _get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise SecretStoreError("Invalid secret token") from exc


def encrypt_json(value: Any) -> str:
    return encrypt_secret(json.dumps(value, separators=(",", ":")))


def decrypt_json(token: str | None) -> Any:
    if not token:
        return None
    return json.loads(decrypt_secret(token))
