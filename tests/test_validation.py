from __future__ import annotations

from datetime import UTC, datetime, timedelta

from authstore.validation import LicenseCheck, check_license, first_failure, is_expired

NOW = datetime(2025, 6, 1, tzinfo=UTC)


def _record(**overrides):
    record = {
        "licenseKey": "KEY",
        "isActive": True,
        "isBanned": False,
        "expiresAt": NOW + timedelta(days=1),
        "currentUsers": 0,
        "maxUsers": 1,
        "hwidLockEnabled": False,
        "hwid": None,
        "applicationData": {"name": "App", "apiKey": "k", "version": "1.0", "isActive": True},
    }
    record.update(overrides)
    return record


def test_failure_chain_order():
    everything_wrong = _record(
        isActive=False,
        isBanned=True,
        expiresAt=NOW - timedelta(days=1),
        currentUsers=5,
        hwidLockEnabled=True,
        hwid="A",
    )
    assert first_failure(everything_wrong, hwid="B", now=NOW) == "inactive"
    assert first_failure({**everything_wrong, "isActive": True}, hwid="B", now=NOW) == "banned"
    assert first_failure({**everything_wrong, "isActive": True, "isBanned": False}, hwid="B", now=NOW) == "expired"
    still_full = {**everything_wrong, "isActive": True, "isBanned": False, "expiresAt": NOW + timedelta(days=1)}
    assert first_failure(still_full, hwid="B", now=NOW) == "capacity_exceeded"
    assert first_failure({**still_full, "currentUsers": 0}, hwid="B", now=NOW) == "hwid_mismatch"
    assert first_failure({**still_full, "currentUsers": 0}, hwid="A", now=NOW) is None


def test_expiry_is_strictly_after():
    assert is_expired(_record(expiresAt=NOW), now=NOW) is False
    assert is_expired(_record(expiresAt=NOW - timedelta(milliseconds=1)), now=NOW) is True
    assert is_expired(_record(expiresAt=None), now=NOW) is False
    assert is_expired(_record(expiresAt="2025-05-31T00:00:00.000Z"), now=NOW) is True


def test_missing_record_reasons():
    assert check_license(None).reason == "not_found"
    missing = check_license(None, missing_reason="api_key_not_found")
    assert missing.message == "Invalid API key or license key"


def test_inactive_application_only_checked_when_required():
    record = _record(applicationData={"name": "App", "apiKey": "k", "version": "1.0", "isActive": False})
    assert check_license(record, now=NOW).valid is True
    assert check_license(record, now=NOW, require_active_application=True).reason == "application_inactive"


def test_checks_return_copies():
    record = _record()
    check = check_license(record, now=NOW)
    check.license["currentUsers"] = 99
    assert record["currentUsers"] == 0
    assert check == LicenseCheck(valid=True, license={**record, "currentUsers": 99})
