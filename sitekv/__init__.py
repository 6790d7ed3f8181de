# sitekv/__init__.py
"""Deploy static sites to Cloudflare Workers KV."""

from .config import DeploymentConfig, load_config
from .deploy import (
    Deployer,
    DeploymentReport,
    DeploymentStatus,
    RunState,
    deploy_site,
)
from .errors import (
    AuthError,
    CatalogFetchError,
    ConfigurationError,
    InventoryError,
    SiteKVError,
)

__version__ = "0.1.0"
