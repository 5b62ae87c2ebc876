"""
Windows Multi-Arch Container Builder.
"""

from builder import MultiArchBuilder
from clients import ComputeRestClient, StorageRestClient
from config import BuilderConfig
from instances import InstanceManager
from log_utils import setup_logging
from models import BuildOutcome, BuildServer, RemoteServer, VersionEntry
from remote import RemoteWindowsServer

__all__ = [
    "MultiArchBuilder",
    "ComputeRestClient",
    "StorageRestClient",
    "BuilderConfig",
    "InstanceManager",
    "setup_logging",
    "BuildOutcome",
    "BuildServer",
    "RemoteServer",
    "VersionEntry",
    "RemoteWindowsServer",
]
