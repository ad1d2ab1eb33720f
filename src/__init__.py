"""
Self-Service Environment Refresh Tool.
"""

from clients import AzureRestClient
from config import RefreshConfig
from log_utils import setup_logging
from models import CopyTask, ServerTopology, WorkflowRun
from workflow import WorkflowCoordinator

__all__ = [
    "AzureRestClient",
    "RefreshConfig",
    "setup_logging",
    "CopyTask",
    "ServerTopology",
    "WorkflowRun",
    "WorkflowCoordinator",
]
