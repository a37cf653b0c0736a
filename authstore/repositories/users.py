from __future__ import annotations

import copy
from typing import Any

from authstore.document_codec import utcnow
from authstore.repositories.base import DocumentCollectionRepository


class UsersRepository(DocumentCollectionRepository):
    collection = "users"
    entity = "user"

    def upsert(self, *, user: dict[str, Any]) -> dict[str, Any]:
        now = utcnow()
        existing = self._find(user["id"])
        if existing is not None:
            existing.update({key: value for key, value in user.items() if key not in {"id", "createdAt"}})
            existing["updatedAt"] = now
            return copy.deepcopy(existing)
        row = {
            "email": user["id"],
            "firstName": None,
            "lastName": None,
            "profileImageUrl": None,
            "role": "user",
            "permissions": [],
            "isActive": True,
            "passwordHash": None,
            **user,
            "createdAt": now,
            "updatedAt": now,
        }
        return self.insert(row)
