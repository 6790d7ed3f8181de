"""HTTP clients for the Cloudflare Workers KV API."""

from .connection_manager import KVConnectionPool
from .kv_client import KVRestClient

__all__ = ["KVConnectionPool", "KVRestClient"]
