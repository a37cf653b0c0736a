from __future__ import annotations

from typing import Any

from authstore.document_codec import APPLICATION_SNAPSHOT_FIELDS, DocumentSchema
from authstore.factory import StoreBundle
from authstore.repositories import application_snapshot
from authstore.security import mask_secret


def _size_of(value: Any) -> int:
    if isinstance(value, dict | list):
        return len(value)
    return 0 if value is None else 1


def summarize_document(document: dict[str, Any], *, schema: DocumentSchema, sha: str | None) -> dict[str, Any]:
    sections = {key: _size_of(document.get(key)) for key in (*schema.lists, *schema.dicts)}
    return {
        "schema": schema.name,
        "sha": sha,
        "metadata": dict(document.get("metadata") or {}),
        "sections": sections,
    }


def licenses_missing_snapshot(document: dict[str, Any]) -> list[str]:
    missing = []
    for record in document.get("licenses", []):
        snapshot = record.get("applicationData")
        if not isinstance(snapshot, dict) or any(key not in snapshot for key in APPLICATION_SNAPSHOT_FIELDS):
            missing.append(mask_secret(str(record.get("licenseKey") or record.get("id") or "")))
    return missing


def stale_snapshots(general: dict[str, Any], licenses: dict[str, Any]) -> dict[str, list[str]]:
    """Licenses whose embedded application data no longer matches the live application."""
    applications = {row.get("id"): row for row in general.get("applications", [])}
    stale: list[str] = []
    orphaned: list[str] = []
    for record in licenses.get("licenses", []):
        key = mask_secret(str(record.get("licenseKey") or record.get("id") or ""))
        application = applications.get(record.get("applicationId"))
        if application is None:
            orphaned.append(key)
        elif record.get("applicationData") != application_snapshot(application):
            stale.append(key)
    return {"stale": stale, "orphaned": orphaned}


async def build_store_report(bundle: StoreBundle) -> dict[str, Any]:
    general = await bundle.auth.documents.read(force_refresh=True)
    licenses = await bundle.licenses.documents.read(force_refresh=True)
    missing = licenses_missing_snapshot(licenses)
    return {
        "general": summarize_document(
            general,
            schema=bundle.auth.documents.schema,
            sha=bundle.auth.cache_status()["sha"],
        ),
        "license": summarize_document(
            licenses,
            schema=bundle.licenses.documents.schema,
            sha=bundle.licenses.cache_status()["sha"],
        ),
        "licenses_missing_application_data": missing,
        "snapshots": stale_snapshots(general, licenses),
        "ok": len(missing) == 0,
    }


async def resync_license_snapshots(bundle: StoreBundle, *, dry_run: bool = False) -> dict[str, Any]:
    applications = await bundle.auth.list_applications()
    rows: list[dict[str, Any]] = []
    total = 0
    for application in applications:
        if dry_run:
            licenses = await bundle.licenses.list_licenses_by_application(application["id"])
            snapshot = application_snapshot(application)
            updated = sum(1 for record in licenses if record.get("applicationData") != snapshot)
        else:
            updated = await bundle.licenses.refresh_application_snapshot(application)
        total += updated
        rows.append({"application_id": application["id"], "updated": updated})
    return {"dry_run": dry_run, "applications": rows, "updated_total": total}
