from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from authstore.errors import ApiError
from authstore.runtime_profile import env_float, env_int
from authstore.security import redact_sensitive

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
USER_AGENT = "authstore-contents-client"


def _blob_sha(content: bytes) -> str:
    header = f"blob {len(content)}\0".encode("ascii")
    return hashlib.sha1(header + content).hexdigest()


def _response_detail(response: httpx.Response, limit: int = 200) -> str:
    """Response body for error messages, with secret-bearing keys redacted."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:limit]
    return json.dumps(redact_sensitive(payload), ensure_ascii=False)[:limit]


def _conflict(path: str, detail: str) -> ApiError:
    return ApiError(
        code="STORE_CONFLICT",
        message=f"stale content sha for {path}: {detail}",
        error_class="conflict",
        retryable=True,
        http_status=409,
    )


@dataclass(frozen=True)
class RemoteDocument:
    content: bytes
    sha: str


@dataclass(frozen=True)
class GitHubStoreConfig:
    token: str
    owner: str
    repo: str
    path: str
    branch: str = ""
    api_base: str = GITHUB_API_BASE
    timeout_s: float = 30.0
    max_retries: int = 3
    backoff_base_s: float = 1.0
    user_agent: str = USER_AGENT


class ObjectStoreBackend:
    """One remote file, read whole and written whole under a sha precondition."""

    backend_name = "base"
    path = ""

    async def fetch_document(self) -> RemoteDocument | None:
        raise NotImplementedError

    async def write_document(self, content: bytes, *, expected_sha: str | None, message: str) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class InMemoryObjectStore(ObjectStoreBackend):
    """Process-local backend with git-style blob shas and real compare-and-swap."""

    backend_name = "memory"

    def __init__(self, *, path: str = "data.json", latency_s: float = 0.0, initial: bytes | None = None) -> None:
        self.path = path
        self._latency_s = latency_s
        self._content = initial
        self._sha = _blob_sha(initial) if initial is not None else None
        self.fetch_count = 0
        self.write_count = 0
        self.conflict_count = 0
        self.commit_messages: list[str] = []

    @property
    def sha(self) -> str | None:
        return self._sha

    @property
    def content(self) -> bytes | None:
        return self._content

    async def _pause(self) -> None:
        await asyncio.sleep(self._latency_s)

    async def fetch_document(self) -> RemoteDocument | None:
        self.fetch_count += 1
        await self._pause()
        if self._content is None or self._sha is None:
            return None
        return RemoteDocument(content=self._content, sha=self._sha)

    async def write_document(self, content: bytes, *, expected_sha: str | None, message: str) -> str:
        await self._pause()
        if expected_sha != self._sha:
            self.conflict_count += 1
            raise _conflict(self.path, f"expected={expected_sha} current={self._sha}")
        self._content = content
        self._sha = _blob_sha(content)
        self.write_count += 1
        self.commit_messages.append(message)
        return self._sha

    def replace_externally(self, content: bytes) -> str:
        """Simulate a write by another process, bypassing this process's serializer."""
        self._content = content
        self._sha = _blob_sha(content)
        return self._sha

    def reset(self) -> None:
        self._content = None
        self._sha = None
        self.fetch_count = 0
        self.write_count = 0
        self.conflict_count = 0
        self.commit_messages.clear()


class GitHubContentsStore(ObjectStoreBackend):
    """GitHub repository contents API used as a single-file document store."""

    backend_name = "github"

    def __init__(
        self,
        *,
        config: GitHubStoreConfig,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_s)
        self._owns_client = client is None
        self._sleep = sleep
        self.path = config.path

    @property
    def url(self) -> str:
        cfg = self._config
        return f"{cfg.api_base.rstrip('/')}/repos/{cfg.owner}/{cfg.repo}/contents/{cfg.path.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
            "User-Agent": self._config.user_agent,
        }

    def _backoff_s(self, attempt: int) -> float:
        return self._config.backoff_base_s * (2**attempt)

    def _retry_delay_s(self, response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After", "").strip()
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
        return self._backoff_s(attempt)

    @staticmethod
    def _is_transient(response: httpx.Response) -> bool:
        if response.status_code == 429 or response.status_code >= 500:
            return True
        # secondary rate limits come back as 403
        if response.status_code == 403:
            return response.headers.get("x-ratelimit-remaining") == "0" or "Retry-After" in response.headers
        return False

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await self._client.request(method, url, headers=self._headers(), json=json, params=params)
            except httpx.TransportError as exc:
                if attempt >= self._config.max_retries:
                    raise ApiError(
                        code="STORE_UNAVAILABLE",
                        message=f"github contents api unreachable: {exc}",
                        error_class="transient",
                        retryable=True,
                        http_status=503,
                    ) from exc
                delay = self._backoff_s(attempt)
                logger.warning(
                    "store_request_error method=%s path=%s attempt=%s delay_s=%s error=%s",
                    method,
                    self.path,
                    attempt + 1,
                    delay,
                    type(exc).__name__,
                )
            else:
                if not self._is_transient(response):
                    return response
                if attempt >= self._config.max_retries:
                    raise ApiError(
                        code="STORE_UNAVAILABLE",
                        message=f"github contents api HTTP {response.status_code} after {attempt + 1} attempts",
                        error_class="transient",
                        retryable=True,
                        http_status=503,
                    )
                delay = self._retry_delay_s(response, attempt)
                logger.warning(
                    "store_request_retry method=%s path=%s status=%s attempt=%s delay_s=%s",
                    method,
                    self.path,
                    response.status_code,
                    attempt + 1,
                    delay,
                )
            attempt += 1
            await self._sleep(delay)

    def _request_failed(self, response: httpx.Response) -> ApiError:
        return ApiError(
            code="STORE_REQUEST_FAILED",
            message=f"github contents api HTTP {response.status_code}: {_response_detail(response)}",
            error_class="permanent",
            retryable=False,
            http_status=502,
        )

    async def fetch_document(self) -> RemoteDocument | None:
        params = {"ref": self._config.branch} if self._config.branch else None
        response = await self._request("GET", self.url, params=params)
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise self._request_failed(response)
        payload = response.json()
        sha = str(payload.get("sha") or "")
        if payload.get("encoding") == "base64":
            content = base64.b64decode(payload.get("content") or "")
        elif payload.get("download_url"):
            # files over 1MB come back without inline content
            raw = await self._request("GET", str(payload["download_url"]))
            if raw.status_code != 200:
                raise self._request_failed(raw)
            content = raw.content
        else:
            raise ApiError(
                code="STORE_CONTENT_UNAVAILABLE",
                message=f"no content available for {self.path}",
                error_class="permanent",
                retryable=False,
                http_status=502,
            )
        return RemoteDocument(content=content, sha=sha)

    async def write_document(self, content: bytes, *, expected_sha: str | None, message: str) -> str:
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
        }
        if expected_sha:
            body["sha"] = expected_sha
        if self._config.branch:
            body["branch"] = self._config.branch
        response = await self._request("PUT", self.url, json=body)
        if response.status_code in (200, 201):
            return str(response.json().get("content", {}).get("sha") or "")
        if response.status_code == 409 or (response.status_code == 422 and "sha" in response.text.lower()):
            raise _conflict(self.path, _response_detail(response))
        raise self._request_failed(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_object_store_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    path_env: str,
    default_path: str,
) -> ObjectStoreBackend:
    env = os.environ if environ is None else environ
    backend = env.get("AUTHSTORE_BACKEND", "github").strip().lower() or "github"
    path = env.get(path_env, "").strip() or default_path
    if backend == "memory":
        return InMemoryObjectStore(path=path)
    if backend != "github":
        raise ValueError(f"unsupported AUTHSTORE_BACKEND: {backend}")
    config = GitHubStoreConfig(
        token=env.get("GITHUB_TOKEN", "").strip(),
        owner=env.get("GITHUB_USER", "").strip(),
        repo=env.get("GITHUB_REPO", "").strip(),
        path=path,
        branch=env.get("GITHUB_BRANCH", "").strip(),
        api_base=env.get("GITHUB_API_BASE", "").strip() or GITHUB_API_BASE,
        timeout_s=env_float(env, "AUTHSTORE_HTTP_TIMEOUT_S", default=30.0, minimum=1.0),
        max_retries=env_int(env, "AUTHSTORE_MAX_RETRIES", default=3),
        backoff_base_s=env_int(env, "AUTHSTORE_RETRY_BACKOFF_BASE_MS", default=1000) / 1000.0,
    )
    return GitHubContentsStore(config=config)
