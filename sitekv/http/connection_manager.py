"""Pooled async HTTP client for Workers KV write operations."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx

from ..config.schema import DeploymentConfig
from ..errors import TransientHTTPError
from ..utils.security import default_masker, get_secure_logger, mask_secrets
from .cloudflare_api import (
    auth_headers,
    bulk_delete_url,
    bulk_url,
    decode_body,
    failure_for_response,
    result_of,
    value_url,
)

logger = get_secure_logger(__name__)


class KVConnectionPool:
    """Connection pool for KV writes. Each call is a single attempt; retry lives in the executor."""

    def __init__(self,
                 config: DeploymentConfig,
                 max_connections: Optional[int] = None,
                 keepalive_expiry: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize connection pool.

        Args:
            config: Deployment configuration (credentials, timeout)
            max_connections: Maximum total connections (defaults to the worker count)
            keepalive_expiry: Seconds to keep idle connections alive
            transport: Custom transport, e.g. ``httpx.MockTransport`` in tests
        """
        self.config = config
        connections = max_connections or config.workers
        self.limits = httpx.Limits(
            max_connections=connections,
            max_keepalive_connections=connections,
            keepalive_expiry=keepalive_expiry
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        async with self._lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    limits=self.limits,
                    timeout=httpx.Timeout(self.config.request_timeout),
                    headers=auth_headers(self.config),
                    transport=self._transport,
                )
                logger.debug(f"Created HTTP client for {self.config.api_base}")
            return self._client

    async def request(self, method: str, url: str, **kwargs) -> Any:
        """Send one request and return the decoded envelope, raising classified errors."""
        client = await self.get_client()
        logger.debug(
            f"Making {method} request to {url} "
            f"headers={default_masker.mask_headers(dict(client.headers))}"
        )
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientHTTPError(f"Request timed out: {mask_secrets(str(e)) or type(e).__name__}")
        except httpx.TransportError as e:
            raise TransientHTTPError(f"Connection error: {mask_secrets(str(e)) or type(e).__name__}")

        payload = decode_body(response.text)
        failure = failure_for_response(
            response.status_code, payload, response.text, response.headers
        )
        if failure is not None:
            raise failure
        return payload

    async def put_value(self, key: str, content: bytes, metadata: Dict[str, Any],
                        content_type: str = "application/octet-stream") -> None:
        """Write a single key with its metadata (multipart form)."""
        await self.request(
            "PUT",
            value_url(self.config, key),
            files={"value": (key.rsplit("/", 1)[-1] or "value", content, content_type)},
            data={"metadata": json.dumps(metadata)},
        )

    async def put_bulk(self, entries: List[Dict[str, Any]]) -> List[str]:
        """
        Write many keys in one request.

        Returns:
            Keys the store reported as not written (empty when all succeeded)
        """
        payload = await self.request("PUT", bulk_url(self.config), json=entries)
        result = result_of(payload)
        if isinstance(result, dict):
            return [str(key) for key in result.get("unsuccessful_keys") or []]
        return []

    async def delete_bulk(self, keys: List[str]) -> List[str]:
        """Delete many keys in one request. Returns keys the store failed to delete."""
        payload = await self.request("POST", bulk_delete_url(self.config), json=keys)
        result = result_of(payload)
        if isinstance(result, dict):
            return [str(key) for key in result.get("unsuccessful_keys") or []]
        return []

    async def close_all(self):
        """Close the HTTP client and release pooled connections."""
        async with self._lock:
            if self._client is not None:
                try:
                    await self._client.aclose()
                    logger.debug("Closed HTTP client")
                except httpx.HTTPError as e:
                    logger.warning(f"Error closing HTTP client: {e}")
                self._client = None

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close_all()
