# sitekv/deploy/__init__.py
"""Deployment pipeline for Workers KV."""

from .catalog import RemoteCatalog, RemoteRecord
from .deployer import Deployer, DeploymentPlan, deploy_site
from .executor import UploadExecutor
from .inventory import SiteFile, SiteInventory, compute_fingerprint
from .planner import BatchPlanner, UploadBatch
from .report import (
    DeploymentReport,
    DeploymentStatus,
    FailureReason,
    RunState,
    UploadOutcome,
    UploadStatus,
)

__all__ = [
    "RemoteCatalog",
    "RemoteRecord",
    "Deployer",
    "DeploymentPlan",
    "deploy_site",
    "UploadExecutor",
    "SiteFile",
    "SiteInventory",
    "compute_fingerprint",
    "BatchPlanner",
    "UploadBatch",
    "DeploymentReport",
    "DeploymentStatus",
    "FailureReason",
    "RunState",
    "UploadOutcome",
    "UploadStatus",
]
