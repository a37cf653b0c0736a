from __future__ import annotations

import copy
from typing import Any

from authstore.document_codec import parse_timestamp, utcnow
from authstore.repositories.base import DocumentCollectionRepository
from authstore.security import mask_secret, new_id, new_token


class SessionsRepository(DocumentCollectionRepository):
    collection = "activeSessions"
    entity = "session"

    def create(self, *, application_id: str, app_user_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = utcnow()
        return self.insert(
            {
                "id": new_id("ses"),
                "applicationId": application_id,
                "appUserId": app_user_id,
                "sessionToken": fields.get("sessionToken") or new_token(),
                "ipAddress": fields.get("ipAddress"),
                "userAgent": fields.get("userAgent"),
                "location": fields.get("location"),
                "hwid": fields.get("hwid"),
                "expiresAt": parse_timestamp(fields.get("expiresAt")),
                "isActive": bool(fields.get("isActive", True)),
                "createdAt": now,
                "updatedAt": now,
            }
        )

    def active_for(self, application_id: str) -> list[dict[str, Any]]:
        return [row for row in self.list(applicationId=application_id) if row.get("isActive")]

    def _require_token(self, session_token: str) -> dict[str, Any]:
        row = self._find_by(sessionToken=session_token)
        if row is None:
            raise self.missing(mask_secret(session_token))
        return row

    def touch(self, session_token: str) -> dict[str, Any]:
        row = self._require_token(session_token)
        row["updatedAt"] = utcnow()
        return copy.deepcopy(row)

    def end(self, session_token: str) -> dict[str, Any]:
        row = self._require_token(session_token)
        row["isActive"] = False
        row["updatedAt"] = utcnow()
        return copy.deepcopy(row)
