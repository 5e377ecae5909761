"""
Elastic CI worker fleet for Google Compute Engine.
"""

from clients import ComputeApiError, ComputeRestClient
from config import CloudFunctionConfig, FleetConfig
from fleet import FleetController, ProvisioningError
from launcher import LaunchError, LaunchTimeoutError, LinuxLauncher, WindowsLauncher
from lifecycle import WorkerLifecycle
from log_utils import setup_logging
from matcher import NoConfigurationError, TemplateMatcher
from models import LoadSnapshot, WorkerRecord, WorkerState, WorkerTemplate
from provisioner import NoDelayProvisioningStrategy, StrategyDecision
from reconciler import OrphanReconciler
from registry import FleetRegistry
from service import FleetService

__all__ = [
    "ComputeApiError",
    "ComputeRestClient",
    "CloudFunctionConfig",
    "FleetConfig",
    "FleetController",
    "ProvisioningError",
    "LaunchError",
    "LaunchTimeoutError",
    "LinuxLauncher",
    "WindowsLauncher",
    "WorkerLifecycle",
    "setup_logging",
    "NoConfigurationError",
    "TemplateMatcher",
    "LoadSnapshot",
    "WorkerRecord",
    "WorkerState",
    "WorkerTemplate",
    "NoDelayProvisioningStrategy",
    "StrategyDecision",
    "OrphanReconciler",
    "FleetRegistry",
    "FleetService",
]
