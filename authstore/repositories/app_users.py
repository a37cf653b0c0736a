from __future__ import annotations

import copy
from datetime import datetime, timedelta
from typing import Any

from authstore.document_codec import parse_timestamp, utcnow
from authstore.errors import ApiError
from authstore.repositories.base import DocumentCollectionRepository
from authstore.security import new_id

DEFAULT_TRIAL_DAYS = 30
PROTECTED_FIELDS = ("id", "applicationId", "createdAt", "password", "isActive")


def _username_taken(application_id: str, username: str) -> ApiError:
    return ApiError(
        code="APP_USER_EXISTS",
        message=f"username already exists in application {application_id}: {username}",
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def _sync_active(row: dict[str, Any]) -> None:
    row["isActive"] = not (row.get("isPaused") or row.get("isBanned"))


class AppUsersRepository(DocumentCollectionRepository):
    collection = "appUsers"
    entity = "app user"

    def get_by_username(self, application_id: str, username: str) -> dict[str, Any] | None:
        return self.get_by(applicationId=application_id, username=username)

    def create(
        self,
        *,
        application_id: str,
        username: str,
        password_hash: str,
        fields: dict[str, Any],
        has_subscription: bool,
    ) -> dict[str, Any]:
        if self._find_by(applicationId=application_id, username=username) is not None:
            raise _username_taken(application_id, username)
        now = utcnow()
        expires_at = parse_timestamp(fields.get("expiresAt"))
        if expires_at is None and has_subscription:
            expires_at = now + timedelta(days=DEFAULT_TRIAL_DAYS)
        row: dict[str, Any] = {
            "id": new_id("usr"),
            "applicationId": application_id,
            "username": username,
            "password": password_hash,
            "hwid": fields.get("hwid") or None,
            "hwidLockEnabled": bool(fields.get("hwidLockEnabled", False)),
            "licenseKey": fields.get("licenseKey") or None,
            "expiresAt": expires_at,
            "isPaused": bool(fields.get("isPaused", False)),
            "isBanned": False,
            "ip": fields.get("ip") or None,
            "loginAttempts": 0,
            "lastLogin": None,
            "lastLoginAttempt": None,
            "createdAt": now,
            "updatedAt": now,
        }
        _sync_active(row)
        return self.insert(row)

    def update_fields(
        self,
        app_user_id: str,
        changes: dict[str, Any],
        *,
        password_hash: str | None = None,
    ) -> dict[str, Any]:
        row = self.require(app_user_id)
        username = changes.get("username")
        if username and username != row.get("username"):
            clash = self._find_by(applicationId=row["applicationId"], username=username)
            if clash is not None:
                raise _username_taken(row["applicationId"], username)
        row.update({key: value for key, value in changes.items() if key not in PROTECTED_FIELDS})
        if "expiresAt" in changes:
            row["expiresAt"] = parse_timestamp(changes["expiresAt"])
        if password_hash is not None:
            row["password"] = password_hash
        _sync_active(row)
        row["updatedAt"] = utcnow()
        return copy.deepcopy(row)

    def set_flag(self, app_user_id: str, flag: str, value: bool) -> dict[str, Any]:
        row = self.require(app_user_id)
        row[flag] = value
        _sync_active(row)
        row["updatedAt"] = utcnow()
        return copy.deepcopy(row)

    def reset_hwid(self, app_user_id: str) -> dict[str, Any]:
        row = self.require(app_user_id)
        row["hwid"] = None
        row["updatedAt"] = utcnow()
        return copy.deepcopy(row)

    def record_login(
        self,
        app_user_id: str,
        *,
        success: bool,
        ip: str | None = None,
        hwid: str | None = None,
        at: datetime | None = None,
    ) -> dict[str, Any]:
        row = self.require(app_user_id)
        now = at or utcnow()
        row["lastLoginAttempt"] = now
        if success:
            row["loginAttempts"] = 0
            row["lastLogin"] = now
            if ip:
                row["ip"] = ip
            if hwid and row.get("hwidLockEnabled") and not row.get("hwid"):
                row["hwid"] = hwid
        else:
            row["loginAttempts"] = int(row.get("loginAttempts") or 0) + 1
        row["updatedAt"] = now
        return copy.deepcopy(row)
