from __future__ import annotations

from typing import Any

from authstore.document_codec import utcnow
from authstore.repositories.base import DocumentCollectionRepository
from authstore.security import new_id


class WebhooksRepository(DocumentCollectionRepository):
    collection = "webhooks"
    entity = "webhook"

    def create(self, *, user_id: str, url: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = utcnow()
        return self.insert(
            {
                "id": new_id("wh"),
                "userId": user_id,
                "url": url,
                "events": list(fields.get("events") or []),
                "isActive": bool(fields.get("isActive", True)),
                "secret": fields.get("secret") or None,
                "createdAt": now,
                "updatedAt": now,
            }
        )

    def update_fields(self, webhook_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return self.update(webhook_id, changes, immutable=("userId",))
