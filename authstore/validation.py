from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from authstore.document_codec import parse_timestamp, utcnow

MESSAGES: dict[str, str] = {
    "not_found": "Invalid license key",
    "api_key_not_found": "Invalid API key or license key",
    "application_inactive": "Application is inactive",
    "inactive": "License key is inactive",
    "banned": "License key is banned",
    "expired": "License key has expired",
    "capacity_exceeded": "License key has reached maximum user limit",
    "hwid_mismatch": "Hardware ID mismatch",
}


@dataclass
class LicenseCheck:
    """Outcome of a license validation; a failed check is a normal result, not an error."""

    valid: bool
    reason: str | None = None
    message: str | None = None
    license: dict[str, Any] | None = None
    app_user: dict[str, Any] | None = None

    @classmethod
    def fail(cls, reason: str, record: dict[str, Any] | None = None) -> LicenseCheck:
        return cls(
            valid=False,
            reason=reason,
            message=MESSAGES[reason],
            license=copy.deepcopy(record) if record is not None else None,
        )

    @classmethod
    def ok(cls, record: dict[str, Any]) -> LicenseCheck:
        return cls(valid=True, license=copy.deepcopy(record))


def is_expired(record: dict[str, Any], *, now: datetime | None = None) -> bool:
    expires_at = parse_timestamp(record.get("expiresAt"))
    if not isinstance(expires_at, datetime):
        return False
    return (now or utcnow()) > expires_at


def first_failure(
    record: dict[str, Any],
    *,
    hwid: str | None = None,
    now: datetime | None = None,
) -> str | None:
    """Evaluate the fixed chain inactive > banned > expired > capacity > hwid."""
    if not record.get("isActive", False):
        return "inactive"
    if record.get("isBanned", False):
        return "banned"
    if is_expired(record, now=now):
        return "expired"
    if int(record.get("currentUsers") or 0) >= int(record.get("maxUsers") or 0):
        return "capacity_exceeded"
    bound = record.get("hwid")
    if record.get("hwidLockEnabled") and bound and hwid and bound != hwid:
        return "hwid_mismatch"
    return None


def check_license(
    record: dict[str, Any] | None,
    *,
    hwid: str | None = None,
    now: datetime | None = None,
    require_active_application: bool = False,
    missing_reason: str = "not_found",
) -> LicenseCheck:
    if record is None:
        return LicenseCheck.fail(missing_reason)
    if require_active_application:
        snapshot = record.get("applicationData") or {}
        if not snapshot.get("isActive", False):
            return LicenseCheck.fail("application_inactive")
    reason = first_failure(record, hwid=hwid, now=now)
    if reason is not None:
        # only a mismatch hands the record back
        return LicenseCheck.fail(reason, record if reason == "hwid_mismatch" else None)
    return LicenseCheck.ok(record)
