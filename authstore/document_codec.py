from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from authstore.errors import ApiError
from authstore.security import mask_secret

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = "1.0.0"
DATE_FIELDS = frozenset({"createdAt", "updatedAt", "expiresAt", "lastLogin", "lastLoginAttempt"})
APPLICATION_SNAPSHOT_FIELDS = ("name", "apiKey", "version", "isActive")

DEFAULT_MESSAGES: dict[str, str] = {
    "loginSuccess": "Login successful! Welcome back.",
    "loginFailed": "Invalid username or password. Please try again.",
    "accountDisabled": "Your account has been disabled. Please contact support.",
    "accountExpired": "Your account has expired. Please renew your subscription.",
    "versionMismatch": "Your application version is outdated. Please update to continue.",
    "hwidMismatch": "Hardware ID mismatch detected. Please contact support for assistance.",
}


def utcnow() -> datetime:
    # millisecond precision, matching what the wire format keeps
    now = datetime.now(UTC)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class DocumentSchema:
    name: str
    lists: tuple[str, ...]
    dicts: tuple[str, ...] = ()
    scalars: dict[str, Any] = field(default_factory=dict)
    check: Callable[[dict[str, Any], dict[str, Any] | None], None] | None = None

    def empty(self) -> dict[str, Any]:
        document: dict[str, Any] = {key: [] for key in self.lists}
        document.update({key: {} for key in self.dicts})
        document.update(self.scalars)
        document["metadata"] = {"lastUpdated": format_timestamp(utcnow()), "version": DOCUMENT_VERSION}
        if self.name == "general":
            document["customMessages"] = dict(DEFAULT_MESSAGES)
        return document


def _has_snapshot(record: dict[str, Any]) -> bool:
    snapshot = record.get("applicationData")
    return isinstance(snapshot, dict) and all(key in snapshot for key in APPLICATION_SNAPSHOT_FIELDS)


def _check_license_snapshots(document: dict[str, Any], previous: dict[str, Any] | None = None) -> None:
    """Refuse licenses written without a complete applicationData snapshot.

    Records carried over unchanged from ``previous`` are logged instead.
    """
    untouched: dict[Any, dict[str, Any]] = {}
    if previous is not None:
        untouched = {row.get("id"): row for row in previous.get("licenses", []) if row.get("id")}
    missing = []
    legacy = []
    for record in document.get("licenses", []):
        if _has_snapshot(record):
            continue
        label = str(record.get("licenseKey") or record.get("id") or "?")
        if record.get("id") and untouched.get(record.get("id")) == record:
            legacy.append(label)
        else:
            missing.append(label)
    if legacy:
        logger.warning(
            "license_snapshot_missing count=%s keys=%s",
            len(legacy),
            ",".join(mask_secret(key) for key in legacy),
        )
    if missing:
        raise ApiError(
            code="LICENSE_APPLICATION_DATA_MISSING",
            message=f"licenses without applicationData: {', '.join(missing)}",
            error_class="invariant",
            retryable=False,
            http_status=500,
        )


GENERAL_SCHEMA = DocumentSchema(
    name="general",
    lists=(
        "admin",
        "licenses",
        "users",
        "applications",
        "appUsers",
        "licenseKeys",
        "subscriptions",
        "webhooks",
        "blacklistEntries",
        "activityLogs",
        "activeSessions",
    ),
    dicts=("credits", "customMessages"),
    scalars={"owner_id": None},
)

LICENSE_SCHEMA = DocumentSchema(
    name="license",
    lists=("licenses",),
    check=_check_license_snapshots,
)


def _decode_record(record: dict[str, Any]) -> dict[str, Any]:
    return {key: parse_timestamp(value) if key in DATE_FIELDS else value for key, value in record.items()}


def normalize(payload: Any, schema: DocumentSchema) -> dict[str, Any]:
    """Coerce a parsed payload into the schema's shape.

    Unknown top-level keys are kept so documents written by newer versions
    survive a round trip through older ones.
    """
    if not isinstance(payload, dict):
        return schema.empty()
    document = dict(payload)
    for key in schema.lists:
        rows = payload.get(key)
        document[key] = [_decode_record(row) for row in rows if isinstance(row, dict)] if isinstance(rows, list) else []
    for key in schema.dicts:
        value = payload.get(key)
        document[key] = dict(value) if isinstance(value, dict) else {}
    for key, default in schema.scalars.items():
        document.setdefault(key, default)
    if schema.name == "general":
        document["customMessages"] = {**DEFAULT_MESSAGES, **document["customMessages"]}
    metadata = payload.get("metadata")
    metadata = dict(metadata) if isinstance(metadata, dict) else {}
    metadata.setdefault("lastUpdated", format_timestamp(utcnow()))
    metadata.setdefault("version", DOCUMENT_VERSION)
    document["metadata"] = metadata
    return document


def decode(content: bytes | None, schema: DocumentSchema) -> dict[str, Any]:
    if not content or not content.strip():
        return schema.empty()
    try:
        payload = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("document_decode_failed schema=%s error=%s", schema.name, exc)
        return schema.empty()
    return normalize(payload, schema)


def _to_wire(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, dict):
        return {str(key): _to_wire(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_wire(item) for item in value]
    return value


def encode(document: dict[str, Any], schema: DocumentSchema, *, previous: dict[str, Any] | None = None) -> bytes:
    if schema.check is not None:
        schema.check(document, previous)
    wire = _to_wire(document)
    metadata = wire.get("metadata") if isinstance(wire.get("metadata"), dict) else {}
    metadata["lastUpdated"] = format_timestamp(utcnow())
    metadata.setdefault("version", DOCUMENT_VERSION)
    wire["metadata"] = metadata
    return json.dumps(wire, indent=2, ensure_ascii=False).encode("utf-8")
