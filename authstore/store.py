from __future__ import annotations

import logging
from typing import Any

from authstore.document_codec import DEFAULT_MESSAGES, GENERAL_SCHEMA
from authstore.document_store import DocumentStore, SkipWrite
from authstore.errors import ApiError
from authstore.repositories import (
    ActivityLogsRepository,
    ApplicationsRepository,
    AppUsersRepository,
    BlacklistRepository,
    LicenseKeysRepository,
    SessionsRepository,
    SubscriptionsRepository,
    UsersRepository,
    WebhooksRepository,
)
from authstore.security import hash_password, mask_secret, new_token, verify_password
from authstore.validation import LicenseCheck, check_license

logger = logging.getLogger(__name__)


def _required(value: Any, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ApiError(
            code="REQ_VALIDATION_FAILED",
            message=f"{field} is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return text


class AuthStore:
    """Tenant users, applications and everything hanging off them, kept in one remote document."""

    def __init__(self, documents: DocumentStore) -> None:
        if documents.schema is not GENERAL_SCHEMA:
            raise ValueError("AuthStore requires a document store using the general schema")
        self._documents = documents

    @property
    def documents(self) -> DocumentStore:
        return self._documents

    async def _read(self) -> dict[str, Any]:
        return await self._documents.read()

    # Tenant users

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        return UsersRepository(await self._read()).get(user_id)

    async def list_users(self) -> list[dict[str, Any]]:
        return UsersRepository(await self._read()).list()

    async def upsert_user(self, user: dict[str, Any]) -> dict[str, Any]:
        user_id = _required(user.get("id"), "id")
        payload = {**user, "id": user_id}
        return await self._documents.transact(
            lambda document: UsersRepository(document).upsert(user=payload),
            message=f"Upsert user: {user_id}",
        )

    async def update_user(self, user_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: UsersRepository(document).update(user_id, changes, immutable=("passwordHash",)),
            message=f"Update user: {user_id}",
        )

    async def create_user_with_credentials(
        self,
        email: str,
        password: str,
        *,
        fields: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        email = _required(email, "email")
        _required(password, "password")
        password_hash = await hash_password(password)
        payload = {**(fields or {}), "id": email, "email": email, "passwordHash": password_hash}
        user = await self._documents.transact(
            lambda document: UsersRepository(document).upsert(user=payload),
            message=f"Create user: {email}",
        )
        logger.info("user_created user_id=%s", email)
        return user

    async def set_user_password(self, user_id: str, password: str) -> dict[str, Any]:
        _required(password, "password")
        password_hash = await hash_password(password)
        return await self._documents.transact(
            lambda document: UsersRepository(document).update(user_id, {"passwordHash": password_hash}),
            message=f"Set password for user: {user_id}",
        )

    async def verify_user_password(self, user_id: str, password: str) -> bool:
        user = await self.get_user(user_id)
        if user is None or not user.get("isActive", True):
            return False
        return await verify_password(password, user.get("passwordHash"))

    async def delete_user(self, user_id: str) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: UsersRepository(document).delete(user_id),
            message=f"Delete user: {user_id}",
        )

    # Applications

    async def list_applications(self, user_id: str | None = None) -> list[dict[str, Any]]:
        repository = ApplicationsRepository(await self._read())
        if user_id is None:
            return repository.list()
        return repository.list(userId=user_id)

    async def get_application(self, application_id: str) -> dict[str, Any] | None:
        return ApplicationsRepository(await self._read()).get(application_id)

    async def get_application_by_api_key(self, api_key: str) -> dict[str, Any] | None:
        return ApplicationsRepository(await self._read()).get_by_api_key(api_key)

    async def create_application(self, user_id: str, name: str, **fields: Any) -> dict[str, Any]:
        user_id = _required(user_id, "user_id")
        name = _required(name, "name")
        api_key = new_token()

        def mutate(document: dict[str, Any]) -> dict[str, Any]:
            application = ApplicationsRepository(document).create(
                user_id=user_id,
                name=name,
                api_key=api_key,
                fields=fields,
            )
            SubscriptionsRepository(document).create_default(application=application)
            return application

        application = await self._documents.transact(
            mutate,
            message=f"Create application: {name} with default subscription",
        )
        logger.info(
            "application_created application_id=%s api_key=%s",
            application["id"],
            mask_secret(api_key),
        )
        return application

    async def update_application(self, application_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: ApplicationsRepository(document).update_fields(application_id, changes),
            message=f"Update application: {application_id}",
        )

    async def set_application_active(self, application_id: str, active: bool) -> dict[str, Any]:
        return await self.update_application(application_id, {"isActive": bool(active)})

    async def delete_application(self, application_id: str) -> dict[str, Any]:
        removed, counts = await self._documents.transact(
            lambda document: ApplicationsRepository(document).delete_cascade(application_id),
            message=f"Delete application: {application_id}",
        )
        logger.info("application_deleted application_id=%s cascade=%s", application_id, counts)
        return removed

    async def get_application_messages(self, application_id: str) -> dict[str, str]:
        document = await self._read()
        return ApplicationsRepository(document).messages(application_id, document["customMessages"])

    # App users

    async def list_app_users(self, application_id: str) -> list[dict[str, Any]]:
        return AppUsersRepository(await self._read()).list(applicationId=application_id)

    async def get_app_user(self, app_user_id: str) -> dict[str, Any] | None:
        return AppUsersRepository(await self._read()).get(app_user_id)

    async def get_app_user_by_username(self, application_id: str, username: str) -> dict[str, Any] | None:
        return AppUsersRepository(await self._read()).get_by_username(application_id, username)

    @staticmethod
    def _insert_app_user(
        document: dict[str, Any],
        *,
        application_id: str,
        username: str,
        password_hash: str,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        ApplicationsRepository(document).require(application_id)
        subscriptions = SubscriptionsRepository(document)
        has_subscription = subscriptions.get_default(application_id) is not None
        app_user = AppUsersRepository(document).create(
            application_id=application_id,
            username=username,
            password_hash=password_hash,
            fields=fields,
            has_subscription=has_subscription,
        )
        subscriptions.adjust_users(application_id, 1)
        return app_user

    async def create_app_user(
        self,
        application_id: str,
        username: str,
        password: str,
        **fields: Any,
    ) -> dict[str, Any]:
        username = _required(username, "username")
        password_hash = await hash_password(_required(password, "password"))
        return await self._documents.transact(
            lambda document: self._insert_app_user(
                document,
                application_id=application_id,
                username=username,
                password_hash=password_hash,
                fields=fields,
            ),
            message=f"Create app user: {username} under subscription",
        )

    async def create_app_user_with_license(
        self,
        application_id: str,
        username: str,
        password: str,
        license_key: str,
        **fields: Any,
    ) -> LicenseCheck:
        """Validate ``license_key`` and consume one of its seats for a new app user, atomically."""
        username = _required(username, "username")
        password_hash = await hash_password(_required(password, "password"))

        def mutate(document: dict[str, Any]) -> LicenseCheck:
            keys = LicenseKeysRepository(document)
            row = keys.find_live(license_key)
            if row is not None and row.get("applicationId") != application_id:
                row = None
            check = check_license(row)
            if not check.valid:
                raise SkipWrite(check)
            app_user = self._insert_app_user(
                document,
                application_id=application_id,
                username=username,
                password_hash=password_hash,
                fields={**fields, "licenseKey": license_key},
            )
            check = LicenseCheck.ok(keys.adjust_usage(row, 1))
            check.app_user = app_user
            return check

        check = await self._documents.transact(mutate, message=f"Create app user with license: {username}")
        if not check.valid:
            logger.info(
                "app_user_license_rejected application_id=%s key=%s reason=%s",
                application_id,
                mask_secret(license_key),
                check.reason,
            )
        return check

    async def update_app_user(self, app_user_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        changes = dict(changes)
        password = changes.pop("password", None)
        password_hash = await hash_password(password) if password else None
        return await self._documents.transact(
            lambda document: AppUsersRepository(document).update_fields(
                app_user_id,
                changes,
                password_hash=password_hash,
            ),
            message=f"Update app user: {app_user_id}",
        )

    async def delete_app_user(self, app_user_id: str) -> dict[str, Any]:
        def mutate(document: dict[str, Any]) -> dict[str, Any]:
            removed = AppUsersRepository(document).delete(app_user_id)
            SubscriptionsRepository(document).adjust_users(removed["applicationId"], -1)
            if removed.get("licenseKey"):
                keys = LicenseKeysRepository(document)
                row = keys.find_live(removed["licenseKey"])
                if row is not None:
                    keys.adjust_usage(row, -1)
            return removed

        return await self._documents.transact(mutate, message=f"Delete app user: {app_user_id}")

    async def _set_app_user_flag(self, app_user_id: str, flag: str, value: bool, action: str) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: AppUsersRepository(document).set_flag(app_user_id, flag, value),
            message=f"{action} app user: {app_user_id}",
        )

    async def pause_app_user(self, app_user_id: str) -> dict[str, Any]:
        return await self._set_app_user_flag(app_user_id, "isPaused", True, "Pause")

    async def unpause_app_user(self, app_user_id: str) -> dict[str, Any]:
        return await self._set_app_user_flag(app_user_id, "isPaused", False, "Unpause")

    async def ban_app_user(self, app_user_id: str) -> dict[str, Any]:
        return await self._set_app_user_flag(app_user_id, "isBanned", True, "Ban")

    async def unban_app_user(self, app_user_id: str) -> dict[str, Any]:
        return await self._set_app_user_flag(app_user_id, "isBanned", False, "Unban")

    async def reset_app_user_hwid(self, app_user_id: str) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: AppUsersRepository(document).reset_hwid(app_user_id),
            message=f"Reset HWID for app user: {app_user_id}",
        )

    async def record_app_user_login(
        self,
        app_user_id: str,
        *,
        success: bool,
        ip: str | None = None,
        hwid: str | None = None,
    ) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: AppUsersRepository(document).record_login(app_user_id, success=success, ip=ip, hwid=hwid),
            message=f"Record login for app user: {app_user_id}",
        )

    async def verify_app_user_password(self, app_user_id: str, password: str) -> bool:
        app_user = await self.get_app_user(app_user_id)
        if app_user is None:
            return False
        return await verify_password(password, app_user.get("password"))

    # License keys

    async def list_license_keys(self, application_id: str) -> list[dict[str, Any]]:
        return LicenseKeysRepository(await self._read()).list(applicationId=application_id)

    async def get_license_key(self, license_id: str) -> dict[str, Any] | None:
        return LicenseKeysRepository(await self._read()).get(license_id)

    async def get_license_key_by_key(self, license_key: str) -> dict[str, Any] | None:
        return LicenseKeysRepository(await self._read()).get_by_key(license_key)

    async def create_license_key(self, application_id: str, **fields: Any) -> dict[str, Any]:
        license_key = str(fields.pop("licenseKey", "") or "") or new_token()

        def mutate(document: dict[str, Any]) -> dict[str, Any]:
            ApplicationsRepository(document).require(application_id)
            return LicenseKeysRepository(document).create(
                application_id=application_id,
                license_key=license_key,
                fields=fields,
            )

        return await self._documents.transact(mutate, message=f"Create license key: {mask_secret(license_key)}")

    async def update_license_key_status(self, license_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: LicenseKeysRepository(document).update_status(license_id, changes),
            message=f"Update license key: {license_id}",
        )

    async def delete_license_key(self, license_id: str) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: LicenseKeysRepository(document).delete(license_id),
            message=f"Delete license key: {license_id}",
        )

    async def validate_license_key(self, license_key: str, application_id: str) -> LicenseCheck:
        row = LicenseKeysRepository(await self._read()).get_by(licenseKey=license_key, applicationId=application_id)
        return check_license(row)

    async def update_license_key_usage(self, license_key: str, delta: int) -> dict[str, Any]:
        def mutate(document: dict[str, Any]) -> dict[str, Any]:
            keys = LicenseKeysRepository(document)
            row = keys.find_live(license_key)
            if row is None:
                raise keys.missing(mask_secret(license_key))
            return keys.adjust_usage(row, delta)

        return await self._documents.transact(mutate, message=f"Update license key usage: {mask_secret(license_key)}")

    # Subscriptions

    async def list_subscriptions(self, application_id: str) -> list[dict[str, Any]]:
        return SubscriptionsRepository(await self._read()).list(applicationId=application_id)

    async def get_default_subscription(self, application_id: str) -> dict[str, Any] | None:
        return SubscriptionsRepository(await self._read()).get_default(application_id)

    # Webhooks

    async def list_user_webhooks(self, user_id: str) -> list[dict[str, Any]]:
        return WebhooksRepository(await self._read()).list(userId=user_id)

    async def get_webhook(self, webhook_id: str) -> dict[str, Any] | None:
        return WebhooksRepository(await self._read()).get(webhook_id)

    async def create_webhook(self, user_id: str, url: str, **fields: Any) -> dict[str, Any]:
        url = _required(url, "url")
        return await self._documents.transact(
            lambda document: WebhooksRepository(document).create(user_id=user_id, url=url, fields=fields),
            message=f"Create webhook: {url}",
        )

    async def update_webhook(self, webhook_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: WebhooksRepository(document).update_fields(webhook_id, changes),
            message=f"Update webhook: {webhook_id}",
        )

    async def delete_webhook(self, webhook_id: str) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: WebhooksRepository(document).delete(webhook_id),
            message=f"Delete webhook: {webhook_id}",
        )

    # Blacklist

    async def list_blacklist_entries(self, application_id: str | None = None) -> list[dict[str, Any]]:
        repository = BlacklistRepository(await self._read())
        if application_id is None:
            return repository.list()
        return [row for row in repository.list() if row.get("applicationId") in (application_id, None)]

    async def get_blacklist_entry(self, entry_id: str) -> dict[str, Any] | None:
        return BlacklistRepository(await self._read()).get(entry_id)

    async def create_blacklist_entry(
        self,
        entry_type: str,
        value: str,
        *,
        application_id: str | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        value = _required(value, "value")
        return await self._documents.transact(
            lambda document: BlacklistRepository(document).create(
                entry_type=entry_type,
                value=value,
                application_id=application_id,
                reason=reason,
            ),
            message=f"Create blacklist entry: {entry_type}",
        )

    async def update_blacklist_entry(self, entry_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: BlacklistRepository(document).update_fields(entry_id, changes),
            message=f"Update blacklist entry: {entry_id}",
        )

    async def delete_blacklist_entry(self, entry_id: str) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: BlacklistRepository(document).delete(entry_id),
            message=f"Delete blacklist entry: {entry_id}",
        )

    async def check_blacklist(self, application_id: str | None, entry_type: str, value: str) -> dict[str, Any] | None:
        return BlacklistRepository(await self._read()).match(application_id, entry_type, value)

    # Activity logs

    async def create_activity_log(
        self,
        application_id: str,
        event: str,
        *,
        success: bool,
        **fields: Any,
    ) -> dict[str, Any]:
        event = _required(event, "event")
        return await self._documents.transact(
            lambda document: ActivityLogsRepository(document).create(
                application_id=application_id,
                event=event,
                success=success,
                fields=fields,
            ),
            message=f"Add activity log: {event}",
        )

    async def get_activity_logs(self, application_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        logs = ActivityLogsRepository(await self._read()).newest_first(applicationId=application_id)
        return logs[:limit] if limit else logs

    async def get_user_activity_logs(self, app_user_id: str) -> list[dict[str, Any]]:
        return ActivityLogsRepository(await self._read()).newest_first(appUserId=app_user_id)

    async def get_activity_log(self, log_id: str) -> dict[str, Any] | None:
        return ActivityLogsRepository(await self._read()).get(log_id)

    # Active sessions

    async def list_active_sessions(self, application_id: str) -> list[dict[str, Any]]:
        return SessionsRepository(await self._read()).active_for(application_id)

    async def get_session(self, session_token: str) -> dict[str, Any] | None:
        return SessionsRepository(await self._read()).get_by(sessionToken=session_token)

    async def create_active_session(self, application_id: str, app_user_id: str, **fields: Any) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: SessionsRepository(document).create(
                application_id=application_id,
                app_user_id=app_user_id,
                fields=fields,
            ),
            message=f"Create active session for app user: {app_user_id}",
        )

    async def touch_session(self, session_token: str) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: SessionsRepository(document).touch(session_token),
            message=f"Update session activity: {mask_secret(session_token)}",
        )

    async def end_session(self, session_token: str) -> dict[str, Any]:
        return await self._documents.transact(
            lambda document: SessionsRepository(document).end(session_token),
            message=f"End session: {mask_secret(session_token)}",
        )

    # Custom messages

    async def get_custom_messages(self) -> dict[str, str]:
        return dict((await self._read())["customMessages"])

    async def update_custom_messages(self, messages: dict[str, str]) -> dict[str, str]:
        def mutate(document: dict[str, Any]) -> dict[str, str]:
            merged = {**DEFAULT_MESSAGES, **document.get("customMessages", {}), **messages}
            document["customMessages"] = merged
            return dict(merged)

        return await self._documents.transact(mutate, message="Update custom messages")

    async def reset_custom_messages(self) -> dict[str, str]:
        def mutate(document: dict[str, Any]) -> dict[str, str]:
            document["customMessages"] = dict(DEFAULT_MESSAGES)
            return dict(DEFAULT_MESSAGES)

        return await self._documents.transact(mutate, message="Reset custom messages to defaults")

    async def force_refresh(self) -> dict[str, Any]:
        return await self._documents.force_refresh()

    def cache_status(self) -> dict[str, Any]:
        return self._documents.cache_status()
