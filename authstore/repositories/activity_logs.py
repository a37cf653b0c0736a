from __future__ import annotations

import copy
from datetime import datetime
from typing import Any

from authstore.document_codec import parse_timestamp, utcnow
from authstore.repositories.base import DocumentCollectionRepository
from authstore.security import new_id

MAX_LOGS_PER_APPLICATION = 1000


def _created_at(row: dict[str, Any]) -> float:
    value = parse_timestamp(row.get("createdAt"))
    return value.timestamp() if isinstance(value, datetime) else 0.0


class ActivityLogsRepository(DocumentCollectionRepository):
    collection = "activityLogs"
    entity = "activity log"

    def __init__(self, document: dict[str, Any], *, retention: int = MAX_LOGS_PER_APPLICATION) -> None:
        super().__init__(document)
        self._retention = retention

    def create(self, *, application_id: str, event: str, success: bool, fields: dict[str, Any]) -> dict[str, Any]:
        row = {
            "id": new_id("log"),
            "applicationId": application_id,
            "appUserId": fields.get("appUserId"),
            "event": event,
            "success": bool(success),
            "errorMessage": fields.get("errorMessage"),
            "ipAddress": fields.get("ipAddress"),
            "userAgent": fields.get("userAgent"),
            "metadata": dict(fields.get("metadata") or {}),
            "createdAt": utcnow(),
        }
        created = self.insert(row)
        self._prune(application_id)
        return created

    def _prune(self, application_id: str) -> None:
        own = [row for row in self.rows if row.get("applicationId") == application_id]
        if len(own) <= self._retention:
            return
        # equal timestamps: the later insert is the newer log
        ordered = sorted(enumerate(own), key=lambda pair: (_created_at(pair[1]), pair[0]), reverse=True)
        keep = {id(row) for _, row in ordered[: self._retention]}
        self._replace_rows(
            [row for row in self.rows if row.get("applicationId") != application_id or id(row) in keep]
        )

    def newest_first(self, **match: Any) -> list[dict[str, Any]]:
        rows = [row for row in self.rows if all(row.get(key) == value for key, value in match.items())]
        ordered = sorted(enumerate(rows), key=lambda pair: (_created_at(pair[1]), pair[0]), reverse=True)
        return [copy.deepcopy(row) for _, row in ordered]
