from __future__ import annotations

import copy
from datetime import timedelta
from typing import Any

from authstore.document_codec import APPLICATION_SNAPSHOT_FIELDS, parse_timestamp, utcnow
from authstore.errors import ApiError
from authstore.repositories.base import DocumentCollectionRepository
from authstore.repositories.license_keys import license_key_taken
from authstore.security import new_token

DEFAULT_MAX_USERS = 1
DEFAULT_VALIDITY_DAYS = 30
LICENSE_ID_LENGTH = 16


def application_snapshot(application: dict[str, Any]) -> dict[str, Any]:
    """The slice of an application embedded in each of its licenses."""
    if not isinstance(application, dict):
        application = {}
    missing = [key for key in APPLICATION_SNAPSHOT_FIELDS if key not in application]
    if missing:
        raise ApiError(
            code="LICENSE_APPLICATION_DATA_MISSING",
            message=f"application data lacks fields: {', '.join(missing)}",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return {key: application[key] for key in APPLICATION_SNAPSHOT_FIELDS}


class LicensesRepository(DocumentCollectionRepository):
    collection = "licenses"
    entity = "license"

    def get_by_key(self, license_key: str) -> dict[str, Any] | None:
        return self.get_by(licenseKey=license_key)

    def find_live(self, license_key: str, application_id: str | None = None) -> dict[str, Any] | None:
        if application_id is not None:
            return self._find_by(licenseKey=license_key, applicationId=application_id)
        return self._find_by(licenseKey=license_key)

    def find_by_api_key(self, api_key: str, license_key: str) -> dict[str, Any] | None:
        for row in self.rows:
            snapshot = row.get("applicationData") or {}
            if row.get("licenseKey") == license_key and snapshot.get("apiKey") == api_key:
                return row
        return None

    def create(
        self,
        *,
        application_id: str,
        application_data: dict[str, Any],
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        license_key = fields.get("licenseKey") or new_token()
        if self._find_by(licenseKey=license_key) is not None:
            raise license_key_taken(license_key)
        now = utcnow()
        validity_days = int(fields.get("validityDays") or DEFAULT_VALIDITY_DAYS)
        return self.insert(
            {
                "id": new_token(LICENSE_ID_LENGTH),
                "licenseKey": license_key,
                "applicationId": application_id,
                "maxUsers": int(fields.get("maxUsers") or DEFAULT_MAX_USERS),
                "currentUsers": 0,
                "validityDays": validity_days,
                "expiresAt": now + timedelta(days=validity_days),
                "description": fields.get("description") or None,
                "isActive": True,
                "isBanned": False,
                "hwid": fields.get("hwid") or None,
                "hwidLockEnabled": bool(fields.get("hwidLockEnabled", False)),
                "createdAt": now,
                "updatedAt": now,
                "applicationData": application_snapshot(application_data),
            }
        )

    def update_fields(self, license_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        updates = dict(changes)
        if updates.get("hwidLockEnabled") is False:
            updates["hwid"] = None
        if updates.get("applicationData") is not None:
            updates["applicationData"] = application_snapshot(updates["applicationData"])
        else:
            updates.pop("applicationData", None)
        if "expiresAt" in updates:
            updates["expiresAt"] = parse_timestamp(updates["expiresAt"])
        return self.update(license_id, updates, immutable=("licenseKey",))

    def set_fields(self, license_id: str, **values: Any) -> dict[str, Any]:
        row = self.require(license_id)
        row.update(values)
        row["updatedAt"] = utcnow()
        return copy.deepcopy(row)

    def adjust_usage(self, row: dict[str, Any], delta: int) -> dict[str, Any]:
        row["currentUsers"] = max(0, int(row.get("currentUsers") or 0) + delta)
        row["updatedAt"] = utcnow()
        return copy.deepcopy(row)

    def bind_hwid(self, row: dict[str, Any], hwid: str | None) -> None:
        if hwid and row.get("hwidLockEnabled") and not row.get("hwid"):
            row["hwid"] = hwid

    def resync_snapshot(self, application: dict[str, Any]) -> int:
        snapshot = application_snapshot(application)
        now = utcnow()
        updated = 0
        for row in self.rows:
            if row.get("applicationId") != application["id"] or row.get("applicationData") == snapshot:
                continue
            row["applicationData"] = dict(snapshot)
            row["updatedAt"] = now
            updated += 1
        return updated
