"""
vum-mcp-pro: an MCP server automating vCenter Update Manager (Integrity).

Provides baseline and baseline-group management, compliance checks,
host/cluster remediation and content import over the Integrity SOAP API,
bound to an authenticated vCenter REST session.
"""

from .config import AppConfig, VumConfig, load_config
from .errors import (
    ScanExhaustedError,
    TaskCancelledError,
    TaskTimeoutError,
    VumConnectionError,
    VumError,
    VumNotFoundError,
    VumPreconditionError,
    VumTaskError,
)
from .inventory import VsphereApiError, VsphereClient, VsphereClientPool
from .session import VumSession, close_session, establish_session, open_session
from .soap import VumApiError, VumSoapClient

__version__ = "0.1.0"

__all__ = [
    # Config
    "AppConfig",
    "VumConfig",
    "load_config",
    # Connections
    "VsphereClient",
    "VsphereClientPool",
    "VumSoapClient",
    "VumSession",
    "establish_session",
    "close_session",
    "open_session",
    # Errors
    "VsphereApiError",
    "VumApiError",
    "VumError",
    "VumConnectionError",
    "VumNotFoundError",
    "ScanExhaustedError",
    "VumPreconditionError",
    "VumTaskError",
    "TaskTimeoutError",
    "TaskCancelledError",
]
