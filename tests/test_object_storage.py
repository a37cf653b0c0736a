from __future__ import annotations

import asyncio
import base64
import json

import httpx
import pytest

from authstore.errors import ApiError
from authstore.object_storage import (
    GitHubContentsStore,
    GitHubStoreConfig,
    InMemoryObjectStore,
    create_object_store_from_env,
)


def _config(**overrides) -> GitHubStoreConfig:
    options = {
        "token": "ghp_test",
        "owner": "acme",
        "repo": "auth-data",
        "path": "data.json",
        "max_retries": 2,
        "backoff_base_s": 0.5,
    }
    options.update(overrides)
    return GitHubStoreConfig(**options)


def _run_with_store(handler, scenario, **config):
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            store = GitHubContentsStore(config=_config(**config), client=client, sleep=fake_sleep)
            return await scenario(store)

    return asyncio.run(main()), sleeps


def _contents_payload(body: bytes, sha: str = "sha_1") -> dict:
    encoded = base64.b64encode(body).decode("ascii")
    # the api wraps base64 content at 60 columns
    wrapped = "\n".join(encoded[i : i + 60] for i in range(0, len(encoded), 60))
    return {"sha": sha, "encoding": "base64", "content": wrapped}


def test_fetch_returns_none_for_missing_file():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Not Found"})

    result, _ = _run_with_store(handler, lambda store: store.fetch_document())
    assert result is None


def test_fetch_decodes_base64_content_and_sends_auth_headers():
    body = json.dumps({"users": [{"id": "a@example.com"}] * 20}).encode("utf-8")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_contents_payload(body, sha="abc123"))

    result, _ = _run_with_store(handler, lambda store: store.fetch_document(), branch="main")
    assert result.content == body
    assert result.sha == "abc123"
    request = seen[0]
    assert request.url.path == "/repos/acme/auth-data/contents/data.json"
    assert request.url.params["ref"] == "main"
    assert request.headers["Authorization"] == "Bearer ghp_test"
    assert request.headers["Accept"] == "application/vnd.github+json"


def test_fetch_falls_back_to_download_url_for_large_files():
    body = b'{"licenses": []}'

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "raw.example.test":
            return httpx.Response(200, content=body)
        return httpx.Response(
            200,
            json={"sha": "big_sha", "encoding": "none", "content": "", "download_url": "https://raw.example.test/f"},
        )

    result, _ = _run_with_store(handler, lambda store: store.fetch_document())
    assert result.content == body
    assert result.sha == "big_sha"


def test_fetch_without_any_content_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"sha": "x", "encoding": "none", "content": ""})

    with pytest.raises(ApiError) as exc_info:
        _run_with_store(handler, lambda store: store.fetch_document())
    assert exc_info.value.code == "STORE_CONTENT_UNAVAILABLE"


def test_write_sends_sha_and_branch_and_returns_new_sha():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"content": {"sha": "new_sha"}})

    result, _ = _run_with_store(
        handler,
        lambda store: store.write_document(b'{"a": 1}', expected_sha="old_sha", message="Update x"),
        branch="data",
    )
    assert result == "new_sha"
    assert captured["method"] == "PUT"
    assert captured["body"]["sha"] == "old_sha"
    assert captured["body"]["branch"] == "data"
    assert captured["body"]["message"] == "Update x"
    assert base64.b64decode(captured["body"]["content"]) == b'{"a": 1}'


def test_first_write_omits_sha():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"content": {"sha": "created"}})

    result, _ = _run_with_store(handler, lambda store: store.write_document(b"{}", expected_sha=None, message="init"))
    assert result == "created"
    assert "sha" not in captured["body"]
    assert "branch" not in captured["body"]


@pytest.mark.parametrize(
    "status,text",
    [(409, "data.json does not match abc"), (422, '{"message": "Invalid request. \\"sha\\" wasn\'t supplied."}')],
)
def test_stale_sha_is_reported_as_conflict(status: int, text: str):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=text)

    with pytest.raises(ApiError) as exc_info:
        _run_with_store(handler, lambda store: store.write_document(b"{}", expected_sha="s", message="m"))
    assert exc_info.value.code == "STORE_CONFLICT"
    assert exc_info.value.http_status == 409


def test_other_client_errors_are_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, text="Bad credentials")

    with pytest.raises(ApiError) as exc_info:
        _run_with_store(handler, lambda store: store.fetch_document())
    assert exc_info.value.code == "STORE_REQUEST_FAILED"
    assert len(calls) == 1


def test_error_bodies_are_redacted_before_reaching_messages():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "Validation Failed", "token": "ghp_leaked", "password": "pw"})

    with pytest.raises(ApiError) as exc_info:
        _run_with_store(handler, lambda store: store.write_document(b"{}", expected_sha=None, message="m"))
    assert exc_info.value.code == "STORE_REQUEST_FAILED"
    assert "Validation Failed" in exc_info.value.message
    assert "ghp_leaked" not in exc_info.value.message
    assert "pw\"" not in exc_info.value.message
    assert "***REDACTED***" in exc_info.value.message


def test_rate_limit_honours_retry_after():
    responses = iter(
        [
            httpx.Response(429, headers={"Retry-After": "7"}),
            httpx.Response(200, json=_contents_payload(b"{}")),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    result, sleeps = _run_with_store(handler, lambda store: store.fetch_document())
    assert result.content == b"{}"
    assert sleeps == [7.0]


def test_secondary_rate_limit_403_is_retried():
    responses = iter(
        [
            httpx.Response(403, headers={"x-ratelimit-remaining": "0"}),
            httpx.Response(200, json={"content": {"sha": "ok"}}),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    result, sleeps = _run_with_store(handler, lambda store: store.write_document(b"{}", expected_sha=None, message="m"))
    assert result == "ok"
    assert sleeps == [0.5]


def test_server_errors_back_off_exponentially_then_give_up():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(ApiError) as exc_info:
        _run_with_store(handler, lambda store: store.fetch_document())
    assert exc_info.value.code == "STORE_UNAVAILABLE"
    assert exc_info.value.retryable is True
    assert len(calls) == 3


def test_transport_errors_are_retried_then_wrapped():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ApiError) as exc_info:
        _run_with_store(handler, lambda store: store.fetch_document(), max_retries=1)
    assert exc_info.value.code == "STORE_UNAVAILABLE"
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
    assert len(attempts) == 2


def test_in_memory_store_enforces_compare_and_swap():
    async def main():
        store = InMemoryObjectStore(path="data.json")
        assert await store.fetch_document() is None
        first = await store.write_document(b"{}", expected_sha=None, message="init")
        with pytest.raises(ApiError) as exc_info:
            await store.write_document(b'{"a": 1}', expected_sha=None, message="stale")
        assert exc_info.value.code == "STORE_CONFLICT"
        second = await store.write_document(b'{"a": 1}', expected_sha=first, message="next")
        remote = await store.fetch_document()
        return store, first, second, remote

    store, first, second, remote = asyncio.run(main())
    assert first != second
    assert remote.sha == second
    assert remote.content == b'{"a": 1}'
    assert store.conflict_count == 1
    assert store.commit_messages == ["init", "next"]


def test_in_memory_store_uses_git_blob_shas():
    # `git hash-object` of an empty file
    store = InMemoryObjectStore(initial=b"")
    assert store.sha == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"


def test_factory_builds_memory_backend_with_configured_path():
    store = create_object_store_from_env(
        {"AUTHSTORE_BACKEND": "memory", "DATA_FILE": "tenants/data.json"},
        path_env="DATA_FILE",
        default_path="data.json",
    )
    assert isinstance(store, InMemoryObjectStore)
    assert store.path == "tenants/data.json"


def test_factory_builds_github_backend_from_env():
    env = {
        "GITHUB_TOKEN": "t",
        "GITHUB_USER": "acme",
        "GITHUB_REPO": "auth-data",
        "GITHUB_API_BASE": "https://ghe.example.test/api/v3",
    }
    store = create_object_store_from_env(env, path_env="LICENSE_FILE", default_path="License.json")
    assert isinstance(store, GitHubContentsStore)
    assert store.url == "https://ghe.example.test/api/v3/repos/acme/auth-data/contents/License.json"
    asyncio.run(store.aclose())


def test_factory_rejects_unknown_backend():
    with pytest.raises(ValueError, match="unsupported AUTHSTORE_BACKEND"):
        create_object_store_from_env({"AUTHSTORE_BACKEND": "s3"}, path_env="DATA_FILE", default_path="data.json")
