from __future__ import annotations

import copy
from typing import Any

from authstore.document_codec import utcnow
from authstore.errors import ApiError
from authstore.repositories.base import DocumentCollectionRepository
from authstore.security import new_id

BLACKLIST_TYPES = frozenset({"ip", "username", "hwid"})


def ensure_blacklist_type(entry_type: str) -> str:
    if entry_type not in BLACKLIST_TYPES:
        raise ApiError(
            code="BLACKLIST_TYPE_INVALID",
            message=f"blacklist type must be one of ip, username, hwid: {entry_type}",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return entry_type


class BlacklistRepository(DocumentCollectionRepository):
    collection = "blacklistEntries"
    entity = "blacklist entry"

    def create(
        self,
        *,
        entry_type: str,
        value: str,
        application_id: str | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        now = utcnow()
        return self.insert(
            {
                "id": new_id("bl"),
                "applicationId": application_id,
                "type": ensure_blacklist_type(entry_type),
                "value": value,
                "reason": reason,
                "createdAt": now,
                "updatedAt": now,
            }
        )

    def update_fields(self, entry_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        if "type" in changes:
            ensure_blacklist_type(changes["type"])
        return self.update(entry_id, changes)

    def match(self, application_id: str | None, entry_type: str, value: str) -> dict[str, Any] | None:
        """App-scoped entries and global ones (``applicationId`` None) both match."""
        for row in self.rows:
            if row.get("type") != entry_type or row.get("value") != value:
                continue
            if row.get("applicationId") in (application_id, None):
                return copy.deepcopy(row)
        return None
