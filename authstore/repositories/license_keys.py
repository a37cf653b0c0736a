from __future__ import annotations

import copy
from datetime import timedelta
from typing import Any

from authstore.document_codec import parse_timestamp, utcnow
from authstore.errors import ApiError
from authstore.repositories.base import DocumentCollectionRepository
from authstore.security import mask_secret, new_id

DEFAULT_MAX_USERS = 1
DEFAULT_VALIDITY_DAYS = 30
STATUS_FIELDS = ("isActive", "isBanned", "validityDays", "expiresAt")


def license_key_taken(license_key: str) -> ApiError:
    return ApiError(
        code="LICENSE_KEY_EXISTS",
        message=f"license key already exists: {mask_secret(license_key)}",
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


class LicenseKeysRepository(DocumentCollectionRepository):
    collection = "licenseKeys"
    entity = "license key"

    def get_by_key(self, license_key: str) -> dict[str, Any] | None:
        return self.get_by(licenseKey=license_key)

    def find_live(self, license_key: str) -> dict[str, Any] | None:
        return self._find_by(licenseKey=license_key)

    def create(self, *, application_id: str, license_key: str, fields: dict[str, Any]) -> dict[str, Any]:
        if self._find_by(licenseKey=license_key) is not None:
            raise license_key_taken(license_key)
        now = utcnow()
        validity_days = int(fields.get("validityDays") or DEFAULT_VALIDITY_DAYS)
        return self.insert(
            {
                "id": new_id("lk"),
                "applicationId": application_id,
                "licenseKey": license_key,
                "maxUsers": int(fields.get("maxUsers") or DEFAULT_MAX_USERS),
                "currentUsers": 0,
                "validityDays": validity_days,
                "expiresAt": now + timedelta(days=validity_days),
                "description": fields.get("description") or None,
                "isActive": bool(fields.get("isActive", True)),
                "isBanned": False,
                "createdAt": now,
                "updatedAt": now,
            }
        )

    def update_status(self, license_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        updates = {key: changes[key] for key in STATUS_FIELDS if key in changes}
        if "expiresAt" in updates:
            updates["expiresAt"] = parse_timestamp(updates["expiresAt"])
        return self.update(license_id, updates)

    def adjust_usage(self, row: dict[str, Any], delta: int) -> dict[str, Any]:
        row["currentUsers"] = max(0, int(row.get("currentUsers") or 0) + delta)
        row["updatedAt"] = utcnow()
        return copy.deepcopy(row)
