# backend/riskauth/core/security.py

import base64
import hashlib
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from fastapi_users.password import PasswordHelper

from riskauth.core.config import settings

logger = logging.getLogger(__name__)

# --- Password Hashing ---
password_helper = PasswordHelper()


def _apply_pepper(secret: str) -> str:
    """
    Mix the server-side pepper into a secret before it reaches the salted hasher.

    The digest is base64 encoded so the hasher always sees a fixed-length ASCII input.
    """
    digest = hashlib.sha256((secret + settings.PASSWORD_PEPPER).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def get_password_hash(password: str) -> str:
    """Hashes a password (or backup code) with pepper and a per-hash salt."""
    return password_helper.hash(_apply_pepper(password))


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verifies a plain secret against a peppered hash."""
    verified, _ = password_helper.verify_and_update(_apply_pepper(plain_password), hashed_password)
    return verified


def is_numeric_code(code: str) -> bool:
    """True for a non-empty string of ASCII digits. str.isdigit() alone also accepts other scripts."""
    return code.isascii() and code.isdigit()


def generate_unusable_password() -> str:
    """Random password for accounts that only sign in through an OAuth2 provider."""
    return password_helper.generate()


# --- Encryption of stored secrets ---
def _derive_fernet_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode("utf-8")).digest())


@lru_cache(maxsize=1)
def _get_fernet() -> MultiFernet:
    keys = settings.DATA_ENCRYPTION_KEYS
    return MultiFernet([Fernet(_derive_fernet_key(k)) for k in keys])


def encrypt_value(value: str) -> str:
    """Encrypt with the primary key of the keyring."""
    return _get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_value(token: str) -> str:
    """
    Decrypt with any key of the keyring.

    Raises ValueError when no key matches.
    """
    try:
        return _get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        logger.error("Failed to decrypt stored secret with the configured keyring.")
        raise ValueError("Stored secret could not be decrypted") from e
