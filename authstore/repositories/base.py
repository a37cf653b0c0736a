from __future__ import annotations

import copy
from collections.abc import Iterable
from typing import Any

from authstore.document_codec import utcnow
from authstore.errors import ApiError, not_found


class DocumentCollectionRepository:
    """Repository over one list collection of a decoded store document.

    Reads return copies; ``_find`` and ``require`` hand out the live record for
    mutation inside a transaction.
    """

    collection = ""
    entity = "record"
    id_field = "id"

    def __init__(self, document: dict[str, Any]) -> None:
        self._document = document

    @property
    def rows(self) -> list[dict[str, Any]]:
        return self._document.setdefault(self.collection, [])

    def _replace_rows(self, rows: list[dict[str, Any]]) -> None:
        self._document[self.collection] = rows

    def _find_by(self, **match: Any) -> dict[str, Any] | None:
        for row in self.rows:
            if all(row.get(key) == value for key, value in match.items()):
                return row
        return None

    def _find(self, record_id: Any) -> dict[str, Any] | None:
        return self._find_by(**{self.id_field: record_id})

    def missing(self, key: Any) -> ApiError:
        return not_found(self.entity, key)

    def require(self, record_id: Any) -> dict[str, Any]:
        row = self._find(record_id)
        if row is None:
            raise self.missing(record_id)
        return row

    def get(self, record_id: Any) -> dict[str, Any] | None:
        row = self._find(record_id)
        return copy.deepcopy(row) if row is not None else None

    def get_by(self, **match: Any) -> dict[str, Any] | None:
        row = self._find_by(**match)
        return copy.deepcopy(row) if row is not None else None

    def list(self, **match: Any) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(row) for row in self.rows if all(row.get(key) == value for key, value in match.items())
        ]

    def insert(self, record: dict[str, Any]) -> dict[str, Any]:
        self.rows.append(record)
        return copy.deepcopy(record)

    def update(self, record_id: Any, changes: dict[str, Any], *, immutable: Iterable[str] = ()) -> dict[str, Any]:
        row = self.require(record_id)
        frozen = set(immutable) | {self.id_field, "createdAt"}
        row.update({key: value for key, value in changes.items() if key not in frozen})
        row["updatedAt"] = utcnow()
        return copy.deepcopy(row)

    def delete(self, record_id: Any) -> dict[str, Any]:
        row = self.require(record_id)
        self.rows.remove(row)
        return copy.deepcopy(row)

