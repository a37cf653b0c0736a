from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from authstore.document_codec import GENERAL_SCHEMA, LICENSE_SCHEMA
from authstore.document_store import create_document_store
from authstore.license_store import LicenseStore
from authstore.object_storage import create_object_store_from_env
from authstore.runtime_profile import is_production, validate_required_config
from authstore.store import AuthStore

logger = logging.getLogger(__name__)


@dataclass
class StoreBundle:
    auth: AuthStore
    licenses: LicenseStore

    def cache_status(self) -> dict[str, Any]:
        return {"general": self.auth.cache_status(), "license": self.licenses.cache_status()}

    async def aclose(self) -> None:
        await self.auth.documents.backend.aclose()
        await self.licenses.documents.backend.aclose()


def create_stores_from_env(environ: Mapping[str, str] | None = None) -> StoreBundle:
    env = os.environ if environ is None else environ
    backend = env.get("AUTHSTORE_BACKEND", "github").strip().lower() or "github"
    if backend == "memory" and is_production(env):
        raise RuntimeError("AUTHSTORE_BACKEND=memory is not allowed in production")
    if backend == "github":
        validate_required_config(env)
    general = create_object_store_from_env(env, path_env="DATA_FILE", default_path="data.json")
    licenses = create_object_store_from_env(env, path_env="LICENSE_FILE", default_path="License.json")
    logger.info(
        "stores_configured backend=%s data_file=%s license_file=%s",
        backend,
        general.path,
        licenses.path,
    )
    return StoreBundle(
        auth=AuthStore(create_document_store(general, GENERAL_SCHEMA, env)),
        licenses=LicenseStore(create_document_store(licenses, LICENSE_SCHEMA, env)),
    )
