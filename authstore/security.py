from __future__ import annotations

import asyncio
import os
import secrets
import uuid

import bcrypt

DEFAULT_BCRYPT_ROUNDS = 10
TOKEN_LENGTH = 32


def _bcrypt_rounds() -> int:
    raw = os.environ.get("AUTHSTORE_BCRYPT_ROUNDS", "").strip()
    if not raw.isdigit():
        return DEFAULT_BCRYPT_ROUNDS
    # bcrypt accepts 4..31
    return max(4, min(31, int(raw)))


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def new_token(length: int = TOKEN_LENGTH) -> str:
    """URL-safe random token of exactly ``length`` characters."""
    return secrets.token_urlsafe(length)[:length]


def hash_password_sync(password: str) -> str:
    salt = bcrypt.gensalt(rounds=_bcrypt_rounds())
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password_sync(password: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


async def hash_password(password: str) -> str:
    return await asyncio.to_thread(hash_password_sync, password)


async def verify_password(password: str, hashed: str | None) -> bool:
    return await asyncio.to_thread(verify_password_sync, password, hashed)


def mask_secret(value: str | None, *, visible: int = 8) -> str:
    if not value:
        return ""
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}..."


def redact_sensitive(value: object) -> object:
    sensitive_keys = {
        "authorization",
        "token",
        "secret",
        "password",
        "passwordhash",
        "apikey",
        "api_key",
        "licensekey",
        "sessiontoken",
    }
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            if str(key).lower() in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    return value
