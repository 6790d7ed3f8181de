"""Shared fixtures for sitekv tests."""

import base64
import json
from pathlib import Path
from urllib.parse import unquote

import httpx
import pytest

from sitekv.config import DeploymentConfig, RetryConfig

TEST_TOKEN = "cf-test-token-0123456789abcdefghij"
ACCOUNT_ID = "acc123"
NAMESPACE_ID = "ns456"


def envelope(result=None, success=True, errors=None, **extra):
    """Cloudflare v4 response body."""
    body = {"success": success, "errors": errors or [], "messages": [], "result": result}
    body.update(extra)
    return body


class FakeKVStore:
    """In-memory Workers KV namespace served through ``httpx.MockTransport``.

    Scripted failures queued with ``fail_next`` are returned, in order, before
    any request is handled normally.
    """

    def __init__(self):
        self.values = {}
        self.metadata = {}
        self.requests = []
        self._scripted = []
        self._deferred = []
        self.reject_keys = {}

    def fail_next(self, status, times=1, body=None, headers=None):
        for _ in range(times):
            self._scripted.append((status, body, headers or {}))

    def fail_from(self, request_number, status, times=1):
        """Fail ``times`` requests starting with the ``request_number``-th one (1-based)."""
        self._deferred.append((request_number, status, times))

    def reject_key(self, key, times=1):
        """Report ``key`` as unsuccessful in the next ``times`` bulk writes that include it."""
        self.reject_keys[key] = times

    @property
    def write_requests(self):
        return [r for r in self.requests if r.method == "PUT"]

    def transport(self):
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for deferred in list(self._deferred):
            request_number, status, times = deferred
            if len(self.requests) == request_number:
                self._deferred.remove(deferred)
                self.fail_next(status, times)
        if self._scripted:
            status, body, headers = self._scripted.pop(0)
            if body is None:
                body = envelope(success=False, errors=[{"code": status, "message": "scripted failure"}])
            return httpx.Response(status, json=body, headers=headers)

        path = request.url.raw_path.decode("ascii").split("?", 1)[0]
        if request.method == "PUT" and "/values/" in path:
            key = unquote(path.split("/values/", 1)[1])
            self.values[key] = request.content
            return httpx.Response(200, json=envelope())

        if request.method == "PUT" and path.endswith("/bulk"):
            unsuccessful = []
            for entry in json.loads(request.content):
                key = entry["key"]
                if self.reject_keys.get(key):
                    self.reject_keys[key] -= 1
                    unsuccessful.append(key)
                    continue
                value = entry["value"]
                self.values[key] = base64.b64decode(value) if entry.get("base64") else value.encode()
                self.metadata[key] = entry.get("metadata")
            return httpx.Response(200, json=envelope({
                "successful_key_count": len(json.loads(request.content)) - len(unsuccessful),
                "unsuccessful_keys": unsuccessful,
            }))

        if request.method == "POST" and path.endswith("/bulk/delete"):
            for key in json.loads(request.content):
                self.values.pop(key, None)
                self.metadata.pop(key, None)
            return httpx.Response(200, json=envelope({"unsuccessful_keys": []}))

        return httpx.Response(404, json=envelope(success=False, errors=[{"code": 10013, "message": "not found"}]))


@pytest.fixture
def config():
    """Deployable configuration that never sleeps between retries."""
    return DeploymentConfig(
        api_token=TEST_TOKEN,
        account_id=ACCOUNT_ID,
        namespace_id=NAMESPACE_ID,
        workers=2,
        retry=RetryConfig(max_attempts=3, delay="0s"),
    )


@pytest.fixture
def kv_store():
    return FakeKVStore()


@pytest.fixture
def make_site(tmp_path):
    """Write a site tree from a {relative path: content} mapping."""
    def _make(files, name="site"):
        root = tmp_path / name
        root.mkdir(parents=True, exist_ok=True)
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, str):
                content = content.encode("utf-8")
            path.write_bytes(content)
        return root
    return _make


@pytest.fixture
def site(make_site) -> Path:
    return make_site({
        "index.html": "<h1>Home</h1>",
        "about/index.html": "<h1>About</h1>",
        "assets/app.css": "body { color: red; }",
    })
