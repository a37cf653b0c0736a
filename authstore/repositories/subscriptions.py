from __future__ import annotations

from datetime import timedelta
from typing import Any

from authstore.document_codec import utcnow
from authstore.repositories.base import DocumentCollectionRepository
from authstore.security import new_id

DEFAULT_SUBSCRIPTION_NAME = "default"
DEFAULT_MAX_USERS = 1000
DEFAULT_VALIDITY_DAYS = 365


class SubscriptionsRepository(DocumentCollectionRepository):
    collection = "subscriptions"
    entity = "subscription"

    def create_default(self, *, application: dict[str, Any]) -> dict[str, Any]:
        now = utcnow()
        return self.insert(
            {
                "id": new_id("sub"),
                "applicationId": application["id"],
                "name": DEFAULT_SUBSCRIPTION_NAME,
                "description": f"Default subscription for {application['name']}",
                "maxUsers": DEFAULT_MAX_USERS,
                "currentUsers": 0,
                "validityDays": DEFAULT_VALIDITY_DAYS,
                "expiresAt": now + timedelta(days=DEFAULT_VALIDITY_DAYS),
                "isActive": True,
                "createdAt": now,
                "updatedAt": now,
            }
        )

    def _default_row(self, application_id: str) -> dict[str, Any] | None:
        return self._find_by(applicationId=application_id, name=DEFAULT_SUBSCRIPTION_NAME)

    def get_default(self, application_id: str) -> dict[str, Any] | None:
        return self.get_by(applicationId=application_id, name=DEFAULT_SUBSCRIPTION_NAME)

    def adjust_users(self, application_id: str, delta: int) -> bool:
        row = self._default_row(application_id)
        if row is None:
            return False
        row["currentUsers"] = max(0, int(row.get("currentUsers") or 0) + delta)
        row["updatedAt"] = utcnow()
        return True
