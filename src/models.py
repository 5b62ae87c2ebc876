"""
Data models for the Windows multi-arch container builder.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from network import NetworkConfig


@dataclass(frozen=True)
class VersionEntry:
    """A Windows Server version and the image family it is built on."""

    version: str  # e.g. "ltsc2019"
    image_family: str  # e.g. "windows-cloud/global/images/family/windows-2019-core"


@dataclass(frozen=True)
class BuildServerConfig:
    """Desired shape of the builder instance for one Windows version."""

    instance_name_prefix: str
    image_version: str
    image_family: str
    zone: str
    network_config: NetworkConfig
    labels: Dict[str, str] = field(default_factory=dict)
    machine_type: str = "e2-standard-2"
    boot_disk_type: str = "pd-standard"
    boot_disk_size_gb: int = 75
    service_account: str = "default"
    use_internal_ip: bool = False
    external_ip: bool = True
    reuse_instance: bool = False

    def service_account_email(self, project_id: str) -> str:
        """Expand a bare service account name to its project email."""
        if self.service_account == "default" or "@" in self.service_account:
            return self.service_account
        return f"{self.service_account}@{project_id}.iam.gserviceaccount.com"


@dataclass
class RemoteServer:
    """Connection details of a ready builder instance. Never persisted."""

    hostname: str
    username: str
    password: str = field(repr=False)
    workspace_folder: str
    workspace_bucket: str = ""


@dataclass
class BuildServer:
    """A provisioned (or reused) builder instance ready for WinRM."""

    name: str
    zone: str
    version: str
    remote: RemoteServer
    reused: bool = False


@dataclass
class BuildOutcome:
    """Result of building one Windows version."""

    version: str
    server: Optional[BuildServer] = None
    error: Optional[Exception] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def skipped(self) -> bool:
        return self.server is None and self.error is None

    @property
    def succeeded(self) -> bool:
        return self.server is not None and self.error is None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time
