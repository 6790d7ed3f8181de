"""Synchronous Workers KV client for listing keys and verifying tokens."""

import time
from typing import Any, Callable, Dict, Iterator, Optional

import requests
from requests.exceptions import ConnectionError, RequestException, Timeout

from ..config.schema import DeploymentConfig
from ..errors import (
    AuthError,
    RateLimitedError,
    RateLimitExhausted,
    RetryableError,
    TransientHTTPError,
    TransientUploadError,
)
from ..utils.security import default_masker, get_secure_logger, mask_secrets
from .cloudflare_api import (
    auth_headers,
    decode_body,
    failure_for_response,
    keys_url,
    result_of,
    token_verify_url,
)

logger = get_secure_logger(__name__)


class KVRestClient:
    """HTTP client for read-only KV API calls with retry support."""

    def __init__(self,
                 config: DeploymentConfig,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the client.

        Args:
            config: Deployment configuration (credentials and retry policy)
            session: Optional pre-built session, mostly for tests
            sleep: Function used to wait between retries
        """
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update(auth_headers(config))
        self._sleep = sleep

    def _execute_request(self, method: str, url: str, **kwargs) -> Any:
        """Execute a single HTTP request and return the decoded envelope."""
        logger.debug(
            f"Making {method} request to {url} "
            f"headers={default_masker.mask_headers(dict(self.session.headers))}"
        )
        try:
            response = self.session.request(
                method, url, timeout=self.config.request_timeout, **kwargs
            )
        except Timeout as e:
            raise TransientHTTPError(f"Request timed out: {mask_secrets(str(e))}")
        except ConnectionError as e:
            raise TransientHTTPError(f"Connection error: {mask_secrets(str(e))}")
        except RequestException as e:
            raise TransientHTTPError(f"Request failed: {mask_secrets(str(e))}")

        payload = decode_body(response.text)
        failure = failure_for_response(
            response.status_code, payload, response.text, response.headers
        )
        if failure is not None:
            raise failure
        return payload

    def request(self, method: str, url: str, **kwargs) -> Any:
        """Execute a request, retrying rate limits and transient failures.

        Raises:
            RateLimitExhausted, TransientUploadError: once ``retry.max_attempts`` is spent
            AuthError, KVValidationError: immediately
        """
        retry = self.config.retry
        attempt = 0

        while True:
            attempt += 1
            try:
                return self._execute_request(method, url, **kwargs)
            except RetryableError as e:
                if attempt >= retry.max_attempts:
                    logger.error(f"Request failed after {attempt} attempts: {e}")
                    if isinstance(e, RateLimitedError):
                        raise RateLimitExhausted(f"Still rate limited after {attempt} attempts: {e}") from e
                    raise TransientUploadError(f"Still failing after {attempt} attempts: {e}") from e

                retry_after = e.retry_after if isinstance(e, RateLimitedError) else None
                delay = retry.delay_for(attempt, retry_after)
                logger.warning(f"Request failed (attempt {attempt}), retrying in {delay}s: {e}")
                self._sleep(delay)

    def list_keys_page(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Fetch one page of the key listing.

        Returns:
            Dict with ``keys`` (list of key records) and ``cursor`` (None on the last page)
        """
        params: Dict[str, Any] = {"limit": self.config.limits.list_page_size}
        if cursor:
            params["cursor"] = cursor

        payload = self.request("GET", keys_url(self.config), params=params)
        keys = result_of(payload) or []
        result_info = {}
        if isinstance(payload, dict):
            result_info = payload.get("result_info") or {}
        return {"keys": keys, "cursor": result_info.get("cursor") or None}

    def iter_keys(self) -> Iterator[Dict[str, Any]]:
        """Yield every key record in the namespace, following cursors until exhausted."""
        cursor = None
        seen_cursors = set()
        while True:
            page = self.list_keys_page(cursor)
            for record in page["keys"]:
                yield record

            cursor = page["cursor"]
            if not cursor:
                break
            if cursor in seen_cursors:
                # A repeating cursor would otherwise loop forever.
                logger.warning("Key listing returned a repeated cursor, stopping pagination")
                break
            seen_cursors.add(cursor)

    def verify_token(self) -> Dict[str, Any]:
        """
        Check that the API token is valid and active.

        Returns:
            The token status record from the API

        Raises:
            AuthError: if the token is invalid, expired or disabled
        """
        payload = self.request("GET", token_verify_url(self.config))
        result = result_of(payload) or {}
        status = result.get("status")
        if status != "active":
            raise AuthError(f"API token is not active (status: {status})")
        return result

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
