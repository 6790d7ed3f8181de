# sitekv/config/schema.py
"""Configuration schema definitions for sitekv."""

import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from ..errors import ConfigurationError

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"

# Documented Workers KV limits.
KV_MAX_BULK_ITEMS = 10_000
KV_MAX_LIST_PAGE = 1000
# The bulk endpoint caps the request body at 100 MB. Values travel base64
# encoded (4/3 inflation) so raw bytes per batch stay well under that.
KV_DEFAULT_BATCH_BYTES = 50 * 1024 * 1024
# Largest raw batch whose base64 body, keys and metadata still fit in 100 MB.
KV_MAX_BATCH_BYTES = 70 * 1024 * 1024

_DURATION_RE = re.compile(r'^(\d+\.?\d*|\.\d+)[smh]$')


def parse_duration(value: str) -> float:
    """Parse a duration such as '5s', '1.5m' or '2h' into seconds."""
    if value.endswith('s'):
        return float(value[:-1])
    elif value.endswith('m'):
        return float(value[:-1]) * 60
    elif value.endswith('h'):
        return float(value[:-1]) * 3600
    else:
        raise ValueError(f"Invalid duration format: {value}")


class RetryConfig(BaseModel):
    """Retry policy for rate-limited and transient failures."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(5, description="Total attempts per request, first one included", ge=1, le=10)
    delay: str = Field("1s", description="Initial delay between attempts (e.g., '1s', '0.5s')")
    max_delay: str = Field("30s", description="Upper bound for any single delay")
    backoff: Literal["constant", "linear", "exponential"] = Field(
        "exponential", description="Backoff strategy"
    )

    @field_validator('delay', 'max_delay')
    @classmethod
    def validate_duration(cls, v):
        """Validate duration format."""
        if not _DURATION_RE.match(v):
            raise ValueError("Duration must be in format '5s', '1.5m', or '2h'")
        return v

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait after the given failed attempt (1-based).

        A server supplied ``Retry-After`` wins over the computed backoff but is
        still clamped to ``max_delay``.
        """
        base_delay = parse_duration(self.delay)
        ceiling = parse_duration(self.max_delay)

        if retry_after is not None and retry_after >= 0:
            return min(retry_after, ceiling)

        if self.backoff == "constant":
            computed = base_delay
        elif self.backoff == "linear":
            computed = base_delay * attempt
        else:
            computed = base_delay * (2 ** (attempt - 1))
        return min(computed, ceiling)


class KVLimits(BaseModel):
    """Per-request limits enforced by the target KV store."""

    model_config = ConfigDict(frozen=True)

    max_batch_items: int = Field(
        KV_MAX_BULK_ITEMS, description="Maximum key/value pairs per bulk write", ge=1, le=KV_MAX_BULK_ITEMS
    )
    max_batch_bytes: int = Field(
        KV_DEFAULT_BATCH_BYTES, description="Maximum raw value bytes per bulk write",
        ge=1, le=KV_MAX_BATCH_BYTES,
    )
    list_page_size: int = Field(
        KV_MAX_LIST_PAGE, description="Keys requested per list page", ge=10, le=KV_MAX_LIST_PAGE
    )


class DeploymentConfig(BaseModel):
    """Everything one deployment run needs. Immutable for the run."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    api_token: SecretStr = Field(SecretStr(""), alias="apiToken", description="Cloudflare API token")
    account_id: str = Field("", alias="accountID", description="Cloudflare account ID")
    namespace_id: str = Field("", alias="namespaceID", description="Workers KV namespace ID")
    use_bulk_upload: bool = Field(True, alias="useBulkUpload", description="Upload files in batches")

    workers: int = Field(4, description="Concurrent upload workers", ge=1, le=32)
    incremental: bool = Field(True, description="Skip files whose remote fingerprint matches")
    delete_stale: bool = Field(False, description="Delete remote keys missing from the site")
    request_timeout: float = Field(30.0, description="Per-request timeout in seconds", gt=0)
    api_base: str = Field(CLOUDFLARE_API_BASE, description="Cloudflare API base URL")
    limits: KVLimits = Field(default_factory=KVLimits)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("api_token", mode="before")
    @classmethod
    def strip_token(cls, v):
        if v is None:
            return ""
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        return str(v).strip()

    @field_validator("account_id", "namespace_id", mode="before")
    @classmethod
    def strip_identifier(cls, v):
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("account_id", "namespace_id")
    @classmethod
    def validate_identifier(cls, v):
        """Identifiers end up in the request path, so keep them to hex-ish ids."""
        if v and not re.match(r'^[A-Za-z0-9_-]+$', v):
            raise ValueError("Identifier can only contain alphanumeric characters, hyphens and underscores")
        return v

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v):
        if not v.startswith(("https://", "http://")):
            raise ValueError("api_base must be an http(s) URL")
        return v.rstrip("/")

    def missing_credentials(self) -> List[str]:
        """Names of the credential fields that are still empty."""
        missing = []
        if not self.api_token.get_secret_value():
            missing.append("api_token")
        if not self.account_id:
            missing.append("account_id")
        if not self.namespace_id:
            missing.append("namespace_id")
        return missing

    def ensure_deployable(self) -> None:
        """Raise ConfigurationError unless every credential is present."""
        missing = self.missing_credentials()
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

    @property
    def namespace_url(self) -> str:
        return f"{self.api_base}/accounts/{self.account_id}/storage/kv/namespaces/{self.namespace_id}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentConfig":
        """Create a configuration from a dictionary, accepting original option names."""
        return cls.model_validate(data)


def create_default_config() -> Dict[str, Any]:
    """Create a default configuration dictionary with credentials left blank.

    Returns:
        Dictionary containing the default configuration
    """
    return {
        "account_id": "",
        "namespace_id": "",
        "use_bulk_upload": True,
        "workers": 4,
        "incremental": True,
        "delete_stale": False,
        "request_timeout": 30.0,
        "limits": {
            "max_batch_items": KV_MAX_BULK_ITEMS,
            "max_batch_bytes": KV_DEFAULT_BATCH_BYTES,
            "list_page_size": KV_MAX_LIST_PAGE,
        },
        "retry": {
            "max_attempts": 5,
            "delay": "1s",
            "max_delay": "30s",
            "backoff": "exponential",
        },
    }


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    try:
        parsed = DeploymentConfig.from_dict(config)
    except Exception as e:
        issues.append(str(e))
        return issues

    for name in parsed.missing_credentials():
        issues.append(f"{name} is required")

    return issues
