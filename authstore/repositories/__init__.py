from authstore.repositories.activity_logs import ActivityLogsRepository
from authstore.repositories.app_users import AppUsersRepository
from authstore.repositories.applications import ApplicationsRepository
from authstore.repositories.base import DocumentCollectionRepository
from authstore.repositories.blacklist import BlacklistRepository
from authstore.repositories.license_keys import LicenseKeysRepository
from authstore.repositories.licenses import LicensesRepository, application_snapshot
from authstore.repositories.sessions import SessionsRepository
from authstore.repositories.subscriptions import SubscriptionsRepository
from authstore.repositories.users import UsersRepository
from authstore.repositories.webhooks import WebhooksRepository

__all__ = [
    "ActivityLogsRepository",
    "AppUsersRepository",
    "ApplicationsRepository",
    "BlacklistRepository",
    "DocumentCollectionRepository",
    "LicenseKeysRepository",
    "LicensesRepository",
    "SessionsRepository",
    "SubscriptionsRepository",
    "UsersRepository",
    "WebhooksRepository",
    "application_snapshot",
]
