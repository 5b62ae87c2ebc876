"""
Configuration management for the Windows multi-arch container builder.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from models import BuildServerConfig, VersionEntry
from network import NetworkConfig

logger = logging.getLogger(__name__)

# Windows version -> GCE image family. The version name must match the
# servercore tag used by the Dockerfile (passed as WINDOWS_VERSION).
VERSION_MAP: Dict[str, str] = {
    "ltsc2019": "windows-cloud/global/images/family/windows-2019-core-for-containers",
    "2004": "windows-cloud/global/images/family/windows-2004-core",
    "20H2": "windows-cloud/global/images/family/windows-20h2-core",
    "ltsc2022": "windows-cloud/global/images/family/windows-2022-core",
}

# Image family that no longer exists, used to check obsolete versions are skipped
OBSOLETE_TEST_VERSION = VersionEntry(
    version="1809",
    image_family="windows-cloud/global/images/family/windows-1809-core-for-containers",
)

MIN_BOOT_DISK_SIZE_GB = 40


def pick_versions(selector: str = "") -> Dict[str, str]:
    """
    Select the versions to build from a comma separated list.

    Args:
        selector: e.g. "ltsc2019, 2004". Empty selects every supported version.

    Returns:
        Mapping of version -> image family

    Raises:
        ValueError: If a version is unsupported or nothing was selected
    """
    if not selector:
        return dict(VERSION_MAP)

    picked: Dict[str, str] = {}
    for ver in selector.split(","):
        ver = ver.strip()
        if not ver:
            continue
        if ver not in VERSION_MAP:
            raise ValueError(f"Unsupported Windows Server version: {ver}")
        picked[ver] = VERSION_MAP[ver]

    if not picked:
        raise ValueError("No supported Windows Server versions found")
    return picked


def parse_labels(text: str) -> Dict[str, str]:
    """Parse "k1=v1,k2=v2" into a dict, skipping malformed entries."""
    labels: Dict[str, str] = {}
    if not text:
        return labels
    for label in text.split(","):
        parts = label.split("=")
        if len(parts) != 2:
            logger.warning(f"Label needs to be key=value, ignoring: {label}")
            continue
        key = parts[0].strip()
        if not key:
            logger.warning(f"Label key can't be empty, ignoring: {label}")
            continue
        labels[key] = parts[1].strip()
    return labels


@dataclass(frozen=True)
class BuilderConfig:
    """Configuration for a multi-arch build run. Built once, read-only."""

    project_id: str
    container_image_name: str
    versions: Tuple[VersionEntry, ...]
    workspace_path: str = "/workspace"
    workspace_bucket: str = ""
    network: str = "default"
    network_project: str = ""
    subnetwork: str = "default"
    subnetwork_project: str = ""
    region: str = "us-central1"
    zone: str = "us-central1-f"
    labels: Dict[str, str] = field(default_factory=dict)
    machine_type: str = "e2-standard-2"
    boot_disk_type: str = "pd-standard"
    boot_disk_size_gb: int = 75
    service_account: str = "default"
    instance_name_prefix: str = "windows-builder-"
    reuse_instances: bool = False
    use_internal_ip: bool = False
    external_ip: bool = True
    skip_firewall_check: bool = False
    build_args: Tuple[str, ...] = ()
    copy_timeout: int = 300
    setup_timeout: int = 1200
    command_timeout: int = 600
    verbose: bool = False

    def __post_init__(self):
        if not self.workspace_bucket:
            object.__setattr__(
                self, "workspace_bucket", f"{self.project_id}_builder_tmp"
            )

    @classmethod
    def from_args(cls, args, project_id: Optional[str] = None) -> "BuilderConfig":
        """
        Create configuration from command-line arguments.

        Args:
            args: Parsed argparse arguments
            project_id: Project to use when --project was not given

        Returns:
            BuilderConfig instance

        Raises:
            ValueError: If the version selection is invalid
        """
        picked = pick_versions(args.versions)
        versions = [VersionEntry(ver, family) for ver, family in picked.items()]
        if args.testonly_test_obsolete_versions:
            versions.append(OBSOLETE_TEST_VERSION)

        return cls(
            project_id=args.project or project_id or "",
            container_image_name=args.container_image_name,
            versions=tuple(versions),
            workspace_path=args.workspace_path,
            workspace_bucket=args.workspace_bucket,
            network=args.network,
            network_project=args.network_project,
            subnetwork=args.subnetwork,
            subnetwork_project=args.subnetwork_project,
            region=args.region,
            zone=args.zone,
            labels=parse_labels(args.labels),
            machine_type=args.machine_type,
            boot_disk_type=args.boot_disk_type,
            boot_disk_size_gb=args.boot_disk_size_gb,
            service_account=args.service_account,
            instance_name_prefix=args.instance_name_prefix,
            reuse_instances=args.reuse_builder_instances,
            use_internal_ip=args.use_internal_ip,
            external_ip=args.external_ip,
            skip_firewall_check=args.skip_firewall_check,
            build_args=tuple(args.build_arg or ()),
            copy_timeout=args.copy_timeout,
            setup_timeout=args.setup_timeout,
            command_timeout=args.command_timeout,
            verbose=args.verbose,
        )

    def network_config(self) -> NetworkConfig:
        return NetworkConfig.resolve(
            instance_project=self.project_id,
            network=self.network,
            network_project=self.network_project,
            subnetwork=self.subnetwork,
            subnetwork_project=self.subnetwork_project,
            region=self.region,
        )

    def build_server_config(self, entry: VersionEntry) -> BuildServerConfig:
        """Desired instance shape for one version."""
        return BuildServerConfig(
            instance_name_prefix=self.instance_name_prefix,
            image_version=entry.version,
            image_family=entry.image_family,
            zone=self.zone,
            network_config=self.network_config(),
            labels=dict(self.labels),
            machine_type=self.machine_type or "e2-standard-2",
            boot_disk_type=self.boot_disk_type,
            boot_disk_size_gb=self.boot_disk_size_gb,
            service_account=self.service_account,
            use_internal_ip=self.use_internal_ip,
            external_ip=self.external_ip,
            reuse_instance=self.reuse_instances,
        )
