from __future__ import annotations

import logging
from typing import Any

from authstore.document_codec import LICENSE_SCHEMA
from authstore.document_store import DocumentStore, SkipWrite
from authstore.repositories import LicensesRepository
from authstore.security import mask_secret
from authstore.validation import LicenseCheck, check_license

logger = logging.getLogger(__name__)


class LicenseStore:
    """Standalone licenses, each carrying a snapshot of its application so validation needs one read."""

    def __init__(self, documents: DocumentStore) -> None:
        if documents.schema is not LICENSE_SCHEMA:
            raise ValueError("LicenseStore requires a document store using the license schema")
        self._documents = documents

    @property
    def documents(self) -> DocumentStore:
        return self._documents

    async def _repository(self) -> LicensesRepository:
        return LicensesRepository(await self._documents.read())

    async def list_licenses(self) -> list[dict[str, Any]]:
        return (await self._repository()).list()

    async def list_licenses_by_application(self, application_id: str) -> list[dict[str, Any]]:
        return (await self._repository()).list(applicationId=application_id)

    async def get_license(self, license_id: str) -> dict[str, Any] | None:
        return (await self._repository()).get(license_id)

    async def get_license_by_key(self, license_key: str) -> dict[str, Any] | None:
        return (await self._repository()).get_by_key(license_key)

    async def create_license(
        self,
        application_id: str,
        application_data: dict[str, Any],
        **fields: Any,
    ) -> dict[str, Any]:
        """Create a license and return it as the refreshed cache serves it."""
        created = await self._documents.transact(
            lambda document: LicensesRepository(document).create(
                application_id=application_id,
                application_data=application_data,
                fields=fields,
            ),
            message="Create license",
        )
        logger.info(
            "license_created license_id=%s application_id=%s key=%s",
            created["id"],
            application_id,
            mask_secret(created["licenseKey"]),
        )
        cached = self._documents.peek()
        if cached is None:
            return created
        return LicensesRepository(cached).get(created["id"]) or created

    async def update_license(self, license_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: LicensesRepository(document).update_fields(license_id, changes),
            message=f"Update license: {license_id}",
        )

    async def delete_license(self, license_id: str) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: LicensesRepository(document).delete(license_id),
            message=f"Delete license: {license_id}",
        )

    async def _set_fields(self, license_id: str, action: str, **values: Any) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: LicensesRepository(document).set_fields(license_id, **values),
            message=f"{action} license: {license_id}",
        )

    async def reset_license_hwid(self, license_id: str) -> dict[str, Any]:
        return await self._set_fields(license_id, "Reset HWID for", hwid=None)

    async def lock_license_hwid(self, license_id: str, hwid: str) -> dict[str, Any]:
        return await self._set_fields(license_id, "Lock HWID for", hwid=hwid, hwidLockEnabled=True)

    async def unlock_license_hwid(self, license_id: str) -> dict[str, Any]:
        return await self._set_fields(license_id, "Unlock HWID for", hwid=None, hwidLockEnabled=False)

    async def ban_license(self, license_id: str) -> dict[str, Any]:
        return await self._set_fields(license_id, "Ban", isBanned=True)

    async def unban_license(self, license_id: str) -> dict[str, Any]:
        return await self._set_fields(license_id, "Unban", isBanned=False)

    async def _adjust_usage(self, license_key: str, delta: int) -> dict[str, Any]:
        def mutate(document: dict[str, Any]) -> dict[str, Any]:
            licenses = LicensesRepository(document)
            row = licenses.find_live(license_key)
            if row is None:
                raise licenses.missing(mask_secret(license_key))
            return licenses.adjust_usage(row, delta)

        verb = "Increment" if delta > 0 else "Decrement"
        return await self._documents.transact(mutate, message=f"{verb} usage for license: {mask_secret(license_key)}")

    async def increment_license_usage(self, license_key: str) -> dict[str, Any]:
        return await self._adjust_usage(license_key, 1)

    async def decrement_license_usage(self, license_key: str) -> dict[str, Any]:
        return await self._adjust_usage(license_key, -1)

    async def validate_license(
        self,
        license_key: str,
        application_id: str | None = None,
        hwid: str | None = None,
    ) -> LicenseCheck:
        record = (await self._repository()).find_live(license_key, application_id)
        return check_license(record, hwid=hwid)

    async def validate_license_with_api_key(
        self,
        api_key: str,
        license_key: str,
        hwid: str | None = None,
    ) -> LicenseCheck:
        """Validate against the application snapshot embedded in the license, never the live application."""
        record = (await self._repository()).find_by_api_key(api_key, license_key)
        return check_license(
            record,
            hwid=hwid,
            require_active_application=True,
            missing_reason="api_key_not_found",
        )

    async def activate_license(
        self,
        license_key: str,
        *,
        api_key: str | None = None,
        application_id: str | None = None,
        hwid: str | None = None,
    ) -> LicenseCheck:
        """Validate and consume one seat in a single transaction."""

        def mutate(document: dict[str, Any]) -> LicenseCheck:
            licenses = LicensesRepository(document)
            if api_key is not None:
                row = licenses.find_by_api_key(api_key, license_key)
                check = check_license(
                    row,
                    hwid=hwid,
                    require_active_application=True,
                    missing_reason="api_key_not_found",
                )
            else:
                row = licenses.find_live(license_key, application_id)
                check = check_license(row, hwid=hwid)
            if not check.valid or row is None:
                raise SkipWrite(check)
            licenses.bind_hwid(row, hwid)
            return LicenseCheck.ok(licenses.adjust_usage(row, 1))

        check = await self._documents.transact(mutate, message=f"Activate license: {mask_secret(license_key)}")
        logger.info(
            "license_activation key=%s valid=%s reason=%s",
            mask_secret(license_key),
            check.valid,
            check.reason,
        )
        return check

    async def refresh_application_snapshot(self, application: dict[str, Any]) -> int:
        """Copy the application's current name, apiKey, version and isActive into each of its licenses."""

        def mutate(document: dict[str, Any]) -> int:
            updated = LicensesRepository(document).resync_snapshot(application)
            if updated == 0:
                raise SkipWrite(0)
            return updated

        updated = await self._documents.transact(
            mutate,
            message=f"Refresh application data for licenses of: {application.get('id')}",
        )
        logger.info("license_snapshots_refreshed application_id=%s updated=%s", application.get("id"), updated)
        return updated

    async def force_refresh(self) -> dict[str, Any]:
        return await self._documents.force_refresh()

    def cache_status(self) -> dict[str, Any]:
        return self._documents.cache_status()
