"""Cloudflare v4 API conventions shared by the sync and async clients."""

import base64
import json
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

from ..config.schema import DeploymentConfig
from ..errors import (
    AuthError,
    KVValidationError,
    RateLimitedError,
    SiteKVError,
    TransientHTTPError,
)
from ..utils.security import mask_secrets

USER_AGENT = "sitekv/1.0"
TOKEN_VERIFY_PATH = "/user/tokens/verify"

# Cloudflare error codes that mean the credentials are bad, whatever the status.
# 10000: Authentication error, 9109: Invalid access token,
# 6111: Invalid format for Authorization header
AUTH_ERROR_CODES = {10000, 9109, 6111}


def auth_headers(config: DeploymentConfig) -> Dict[str, str]:
    """Request headers for an authenticated call. Never log the result unmasked."""
    return {
        "Authorization": f"Bearer {config.api_token.get_secret_value()}",
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
    }


def keys_url(config: DeploymentConfig) -> str:
    return f"{config.namespace_url}/keys"


def value_url(config: DeploymentConfig, key: str) -> str:
    # Keys may contain '/', '?' and '#', all of which must be escaped in the path.
    return f"{config.namespace_url}/values/{quote(key, safe='')}"


def bulk_url(config: DeploymentConfig) -> str:
    return f"{config.namespace_url}/bulk"


def bulk_delete_url(config: DeploymentConfig) -> str:
    return f"{config.namespace_url}/bulk/delete"


def token_verify_url(config: DeploymentConfig) -> str:
    return f"{config.api_base}{TOKEN_VERIFY_PATH}"


def bulk_entry(key: str, content: bytes, metadata: Dict[str, Any]) -> Dict[str, Any]:
    """One element of a bulk write body. Values are base64 so binary files survive JSON."""
    return {
        "key": key,
        "value": base64.b64encode(content).decode("ascii"),
        "base64": True,
        "metadata": metadata,
    }


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header, which may be a number or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def decode_body(text: str) -> Any:
    """Parse a response body as JSON, returning None when it is not JSON."""
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def error_codes(payload: Any) -> List[int]:
    if not isinstance(payload, dict):
        return []
    codes = []
    for error in payload.get("errors") or []:
        if isinstance(error, dict) and isinstance(error.get("code"), int):
            codes.append(error["code"])
    return codes


def error_summary(payload: Any, text: str = "") -> str:
    """Human readable summary of a Cloudflare error envelope, secrets masked."""
    if isinstance(payload, dict) and payload.get("errors"):
        parts = []
        for error in payload["errors"]:
            if isinstance(error, dict):
                parts.append(f"[{error.get('code')}] {error.get('message')}")
            else:
                parts.append(str(error))
        return mask_secrets("; ".join(parts))
    if text:
        return mask_secrets(text[:500])
    return "No response body"


def failure_for_response(status_code: int, payload: Any, text: str = "",
                         headers: Optional[Mapping[str, str]] = None) -> Optional[SiteKVError]:
    """
    Classify a store response.

    Returns None for a successful response, otherwise the exception describing
    the failure. The caller decides whether to raise or retry it.
    """
    ok_envelope = not isinstance(payload, dict) or payload.get("success", True) is not False
    if status_code < 400 and ok_envelope:
        return None

    summary = error_summary(payload, text)
    message = f"HTTP {status_code}: {summary}"

    if status_code in (401, 403) or AUTH_ERROR_CODES.intersection(error_codes(payload)):
        return AuthError(message)

    if status_code == 429:
        retry_after = parse_retry_after((headers or {}).get("Retry-After"))
        return RateLimitedError(message, retry_after=retry_after, status_code=status_code)

    if status_code >= 500:
        return TransientHTTPError(message, status_code=status_code)

    return KVValidationError(message, status_code=status_code)


def result_of(payload: Any) -> Any:
    if isinstance(payload, dict):
        return payload.get("result")
    return None
