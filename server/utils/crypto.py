"""Fernet encryption for provider API keys kept in the settings table.

The Fernet key is derived from ``APP_SECRET_KEY``; rotating the secret makes
previously stored keys unreadable, which surfaces as ``ValueError``.
"""

from __future__ import annotations

import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from server.config import settings


@lru_cache(maxsize=4)
def _fernet_for(secret: str) -> Fernet:
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest()))


def encrypt(plaintext: str) -> str:
    return _fernet_for(settings.app_secret_key).encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    try:
        return _fernet_for(settings.app_secret_key).decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        raise ValueError("Stored secret cannot be decrypted with the current app secret")
