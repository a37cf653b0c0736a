from __future__ import annotations

from typing import Any

from authstore.document_codec import utcnow
from authstore.repositories.base import DocumentCollectionRepository
from authstore.security import new_id

IMMUTABLE_FIELDS = ("id", "userId", "apiKey", "createdAt")
MESSAGE_FIELDS = {
    "loginSuccess": "loginSuccessMessage",
    "loginFailed": "loginFailedMessage",
    "accountDisabled": "accountDisabledMessage",
    "accountExpired": "accountExpiredMessage",
    "versionMismatch": "versionMismatchMessage",
    "hwidMismatch": "hwidMismatchMessage",
}

# collections holding per-application rows, removed with their application;
# global blacklist entries (applicationId None) never match
CASCADE_COLLECTIONS = (
    "appUsers",
    "subscriptions",
    "licenseKeys",
    "activityLogs",
    "activeSessions",
    "blacklistEntries",
)


class ApplicationsRepository(DocumentCollectionRepository):
    collection = "applications"
    entity = "application"

    def create(self, *, user_id: str, name: str, api_key: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = utcnow()
        row: dict[str, Any] = {
            "description": None,
            "isActive": True,
            "version": "1.0",
            "hwidLockEnabled": True,
            **{column: None for column in MESSAGE_FIELDS.values()},
            **{key: value for key, value in fields.items() if key not in IMMUTABLE_FIELDS},
            "id": new_id("app"),
            "userId": user_id,
            "name": name,
            "apiKey": api_key,
            "createdAt": now,
            "updatedAt": now,
        }
        return self.insert(row)

    def get_by_api_key(self, api_key: str) -> dict[str, Any] | None:
        return self.get_by(apiKey=api_key)

    def update_fields(self, application_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return self.update(application_id, changes, immutable=IMMUTABLE_FIELDS)

    def delete_cascade(self, application_id: str) -> tuple[dict[str, Any], dict[str, int]]:
        """Remove the application, its dependent rows and its owner's webhooks."""
        removed = self.delete(application_id)
        counts: dict[str, int] = {}
        for name in CASCADE_COLLECTIONS:
            rows = self._document.get(name, [])
            kept = [row for row in rows if row.get("applicationId") != application_id]
            counts[name] = len(rows) - len(kept)
            self._document[name] = kept
        webhooks = self._document.get("webhooks", [])
        kept_hooks = [row for row in webhooks if row.get("userId") != removed.get("userId")]
        counts["webhooks"] = len(webhooks) - len(kept_hooks)
        self._document["webhooks"] = kept_hooks
        return removed, counts

    def messages(self, application_id: str, defaults: dict[str, str]) -> dict[str, str]:
        row = self.require(application_id)
        merged = dict(defaults)
        for key, column in MESSAGE_FIELDS.items():
            if row.get(column):
                merged[key] = row[column]
        return merged
