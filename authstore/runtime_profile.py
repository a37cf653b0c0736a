from __future__ import annotations

import logging
import os
from collections.abc import Mapping

logger = logging.getLogger(__name__)

REQUIRED_GITHUB_VARS = ("GITHUB_TOKEN", "GITHUB_USER", "GITHUB_REPO")


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def is_production(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    profile = env.get("AUTHSTORE_ENV", "").strip().lower() or env.get("NODE_ENV", "development").strip().lower()
    return profile == "production" or _as_bool(env.get("AUTHSTORE_REQUIRE_REMOTE", "false"))


def missing_github_config(environ: Mapping[str, str] | None = None) -> list[str]:
    env = os.environ if environ is None else environ
    return [name for name in REQUIRED_GITHUB_VARS if not env.get(name, "").strip()]


def validate_required_config(environ: Mapping[str, str] | None = None) -> list[str]:
    """Check the GitHub settings both stores need.

    Missing values are a warning during development and a hard failure in
    production. Returns the names that were missing.
    """
    env = os.environ if environ is None else environ
    missing = missing_github_config(env)
    if not missing:
        return []
    if is_production(env):
        raise RuntimeError(f"required GitHub environment variables missing: {', '.join(missing)}")
    logger.warning("github_config_missing vars=%s", ",".join(missing))
    return missing


def env_int(environ: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def env_float(environ: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)
