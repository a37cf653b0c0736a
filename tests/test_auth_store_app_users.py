from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from authstore.document_codec import GENERAL_SCHEMA, utcnow
from authstore.errors import ApiError
from authstore.object_storage import InMemoryObjectStore
from authstore.store import AuthStore
from conftest import make_document_store


def _with_app(auth_store, scenario):
    async def main():
        app = await auth_store.create_application("owner@example.com", "Tool")
        return await scenario(app)

    return asyncio.run(main())


def test_create_app_user_counts_against_default_subscription(auth_store):
    async def scenario(app):
        user = await auth_store.create_app_user(app["id"], "player1", "pw-1", hwid="HW-1")
        subscription = await auth_store.get_default_subscription(app["id"])
        return user, subscription

    user, subscription = _with_app(auth_store, scenario)
    assert user["username"] == "player1"
    assert user["password"] != "pw-1"
    assert user["isActive"] is True
    assert user["isPaused"] is False
    assert user["isBanned"] is False
    assert user["hwidLockEnabled"] is False
    assert user["loginAttempts"] == 0
    assert user["expiresAt"] - user["createdAt"] == timedelta(days=30)
    assert subscription["currentUsers"] == 1


def test_explicit_expiry_is_kept(auth_store):
    async def scenario(app):
        return await auth_store.create_app_user(app["id"], "p", "pw", expiresAt="2030-01-01T00:00:00Z")

    user = _with_app(auth_store, scenario)
    assert user["expiresAt"].year == 2030


def test_username_is_unique_per_application(auth_store):
    async def scenario(app):
        other = await auth_store.create_application("owner@example.com", "Other")
        await auth_store.create_app_user(app["id"], "dup", "pw")
        await auth_store.create_app_user(other["id"], "dup", "pw")
        try:
            await auth_store.create_app_user(app["id"], "dup", "pw")
        except ApiError as exc:
            return exc, await auth_store.list_app_users(app["id"])
        raise AssertionError("expected APP_USER_EXISTS")

    exc, users = _with_app(auth_store, scenario)
    assert exc.code == "APP_USER_EXISTS"
    assert exc.http_status == 409
    assert len(users) == 1


def test_create_app_user_for_missing_application(auth_store):
    with pytest.raises(ApiError) as exc_info:
        asyncio.run(auth_store.create_app_user("app_missing", "p", "pw"))
    assert exc_info.value.code == "APPLICATION_NOT_FOUND"


def test_pause_and_ban_are_independent_flags(auth_store):
    async def scenario(app):
        user = await auth_store.create_app_user(app["id"], "p", "pw")
        states = []
        for action in (
            auth_store.pause_app_user,
            auth_store.ban_app_user,
            auth_store.unpause_app_user,
            auth_store.unban_app_user,
        ):
            row = await action(user["id"])
            states.append((row["isPaused"], row["isBanned"], row["isActive"]))
        return states

    assert _with_app(auth_store, scenario) == [
        (True, False, False),
        (True, True, False),
        (False, True, False),
        (False, False, True),
    ]


def test_update_app_user_rehashes_only_new_passwords(auth_store):
    async def scenario(app):
        user = await auth_store.create_app_user(app["id"], "p", "old-pw")
        renamed = await auth_store.update_app_user(user["id"], {"username": "p2", "isActive": False})
        repassed = await auth_store.update_app_user(user["id"], {"password": "new-pw"})
        return (
            user,
            renamed,
            repassed,
            await auth_store.verify_app_user_password(user["id"], "new-pw"),
            await auth_store.verify_app_user_password(user["id"], "old-pw"),
        )

    user, renamed, repassed, new_ok, old_ok = _with_app(auth_store, scenario)
    assert renamed["username"] == "p2"
    assert renamed["password"] == user["password"]
    assert renamed["isActive"] is True
    assert repassed["password"] != user["password"]
    assert new_ok is True
    assert old_ok is False


def test_update_app_user_rejects_taken_username(auth_store):
    async def scenario(app):
        await auth_store.create_app_user(app["id"], "taken", "pw")
        user = await auth_store.create_app_user(app["id"], "free", "pw")
        with pytest.raises(ApiError) as exc_info:
            await auth_store.update_app_user(user["id"], {"username": "taken"})
        return exc_info.value

    assert _with_app(auth_store, scenario).code == "APP_USER_EXISTS"


def test_record_login_binds_hwid_on_first_success(auth_store):
    async def scenario(app):
        user = await auth_store.create_app_user(app["id"], "p", "pw", hwidLockEnabled=True)
        failed = await auth_store.record_app_user_login(user["id"], success=False)
        first = await auth_store.record_app_user_login(user["id"], success=True, ip="10.0.0.1", hwid="HW-A")
        second = await auth_store.record_app_user_login(user["id"], success=True, hwid="HW-B")
        reset = await auth_store.reset_app_user_hwid(user["id"])
        return failed, first, second, reset

    failed, first, second, reset = _with_app(auth_store, scenario)
    assert failed["loginAttempts"] == 1
    assert failed["lastLogin"] is None
    assert failed["lastLoginAttempt"] is not None
    assert first["loginAttempts"] == 0
    assert first["hwid"] == "HW-A"
    assert first["ip"] == "10.0.0.1"
    assert first["lastLogin"] is not None
    assert second["hwid"] == "HW-A"
    assert reset["hwid"] is None


def test_delete_app_user_releases_subscription_and_license_seats(auth_store):
    async def scenario(app):
        key = await auth_store.create_license_key(app["id"], maxUsers=5)
        check = await auth_store.create_app_user_with_license(app["id"], "p", "pw", key["licenseKey"])
        before = await auth_store.get_license_key(key["id"])
        removed = await auth_store.delete_app_user(check.app_user["id"])
        after_key = await auth_store.get_license_key(key["id"])
        subscription = await auth_store.get_default_subscription(app["id"])
        with pytest.raises(ApiError) as exc_info:
            await auth_store.delete_app_user(check.app_user["id"])
        return before, removed, after_key, subscription, exc_info.value

    before, removed, after_key, subscription, missing = _with_app(auth_store, scenario)
    assert before["currentUsers"] == 1
    assert removed["username"] == "p"
    assert after_key["currentUsers"] == 0
    assert subscription["currentUsers"] == 0
    assert missing.code == "APP_USER_NOT_FOUND"


def test_license_with_single_seat_admits_one_user(auth_store):
    async def scenario(app):
        key = await auth_store.create_license_key(app["id"], maxUsers=1)
        first = await auth_store.create_app_user_with_license(app["id"], "first", "pw", key["licenseKey"])
        stored_key = await auth_store.get_license_key_by_key(key["licenseKey"])
        second = await auth_store.create_app_user_with_license(app["id"], "second", "pw", key["licenseKey"])
        return first, stored_key, second, await auth_store.get_app_user_by_username(app["id"], "second")

    first, stored_key, second, ghost = _with_app(auth_store, scenario)
    assert first.valid is True
    assert first.app_user["username"] == "first"
    assert first.app_user["licenseKey"] == stored_key["licenseKey"]
    assert first.license["currentUsers"] == 1
    assert stored_key["currentUsers"] == 1
    assert second.valid is False
    assert second.reason == "capacity_exceeded"
    assert second.message == "License key has reached maximum user limit"
    assert second.app_user is None
    assert ghost is None


def test_license_key_from_another_application_is_rejected(auth_store):
    async def scenario(app):
        other = await auth_store.create_application("owner@example.com", "Other")
        key = await auth_store.create_license_key(other["id"])
        check = await auth_store.create_app_user_with_license(app["id"], "p", "pw", key["licenseKey"])
        return check, await auth_store.list_app_users(app["id"])

    check, users = _with_app(auth_store, scenario)
    assert check.valid is False
    assert check.reason == "not_found"
    assert users == []


def test_license_key_defaults_and_status_updates(auth_store):
    async def scenario(app):
        key = await auth_store.create_license_key(app["id"], description="trial")
        custom = await auth_store.create_license_key(app["id"], licenseKey="CUSTOM-KEY-0001", maxUsers=3)
        valid = await auth_store.validate_license_key(key["licenseKey"], app["id"])
        await auth_store.update_license_key_status(key["id"], {"expiresAt": "2001-01-01T00:00:00Z"})
        expired = await auth_store.validate_license_key(key["licenseKey"], app["id"])
        await auth_store.update_license_key_status(key["id"], {"isActive": False, "maxUsers": 99})
        inactive = await auth_store.validate_license_key(key["licenseKey"], app["id"])
        wrong_app = await auth_store.validate_license_key(custom["licenseKey"], "app_other")
        listed = await auth_store.list_license_keys(app["id"])
        return key, custom, valid, expired, inactive, wrong_app, listed

    key, custom, valid, expired, inactive, wrong_app, listed = _with_app(auth_store, scenario)
    assert len(key["licenseKey"]) == 32
    assert key["maxUsers"] == 1
    assert key["validityDays"] == 30
    assert key["expiresAt"] - key["createdAt"] == timedelta(days=30)
    assert custom["licenseKey"] == "CUSTOM-KEY-0001"
    assert custom["maxUsers"] == 3
    assert valid.valid is True
    assert expired.reason == "expired"
    assert inactive.reason == "inactive"
    assert wrong_app.reason == "not_found"
    stored = next(row for row in listed if row["id"] == key["id"])
    assert stored["maxUsers"] == 1


def test_license_key_usage_never_goes_negative(auth_store):
    async def scenario(app):
        key = await auth_store.create_license_key(app["id"], maxUsers=4)
        up = await auth_store.update_license_key_usage(key["licenseKey"], 2)
        down = await auth_store.update_license_key_usage(key["licenseKey"], -5)
        with pytest.raises(ApiError) as exc_info:
            await auth_store.update_license_key_usage("NOPE", 1)
        removed = await auth_store.delete_license_key(key["id"])
        return up, down, exc_info.value, removed, await auth_store.get_license_key(key["id"])

    up, down, missing, removed, gone = _with_app(auth_store, scenario)
    assert up["currentUsers"] == 2
    assert down["currentUsers"] == 0
    assert missing.code == "LICENSE_KEY_NOT_FOUND"
    assert removed["currentUsers"] == 0
    assert gone is None


def test_expired_key_fails_before_capacity(auth_store):
    async def scenario(app):
        key = await auth_store.create_license_key(app["id"], maxUsers=1)
        await auth_store.update_license_key_usage(key["licenseKey"], 1)
        past = utcnow() - timedelta(days=1)
        await auth_store.update_license_key_status(key["id"], {"expiresAt": past})
        return await auth_store.validate_license_key(key["licenseKey"], app["id"])

    assert _with_app(auth_store, scenario).reason == "expired"


def test_concurrent_app_user_creates_against_a_slow_backend_all_land(clock):
    backend = InMemoryObjectStore(path="data.json", latency_s=0.002)
    store = AuthStore(make_document_store(backend, GENERAL_SCHEMA, clock))

    async def main():
        app = await store.create_application("owner@example.com", "Tool")
        created = await asyncio.gather(*(store.create_app_user(app["id"], f"player{i}", "pw") for i in range(8)))
        return created, await store.list_app_users(app["id"]), await store.get_default_subscription(app["id"])

    created, stored, subscription = asyncio.run(main())
    assert sorted(user["username"] for user in stored) == sorted(f"player{i}" for i in range(8))
    assert {user["id"] for user in stored} == {user["id"] for user in created}
    assert subscription["currentUsers"] == 8
    assert backend.conflict_count == 0


def test_license_keys_are_unique_across_applications(auth_store):
    async def scenario(app):
        other = await auth_store.create_application("other@example.com", "Other")
        await auth_store.create_license_key(app["id"], licenseKey="SHARED-KEY")
        with pytest.raises(ApiError) as exc_info:
            await auth_store.create_license_key(other["id"], licenseKey="SHARED-KEY")
        return exc_info.value, await auth_store.list_license_keys(other["id"])

    error, other_keys = _with_app(auth_store, scenario)
    assert error.code == "LICENSE_KEY_EXISTS"
    assert error.http_status == 409
    assert "SHARED-KEY" not in error.message
    assert other_keys == []
