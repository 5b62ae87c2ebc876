"""Console entry point for the Windows Multi-Arch Container Builder CLI."""

from __future__ import annotations

import argparse
import logging
from typing import List

from builder import MultiArchBuilder
from clients import resolve_project_id
from config import MIN_BOOT_DISK_SIZE_GB, VERSION_MAP, BuilderConfig, pick_versions
from errors import BuilderError
from log_utils import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description=(
            "Windows Multi-Arch Container Builder\n\n"
            "Builds a Windows container for each Windows Server version on an\n"
            "ephemeral GCE instance and publishes them under one multi-arch manifest."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Build for every supported version\n"
            "  windows-builder --container-image-name gcr.io/my-project/app:v1\n\n"
            "  # Build for a subset, passing a build argument\n"
            "  windows-builder --container-image-name gcr.io/my-project/app:v1 \\\n"
            "      --versions ltsc2019,20H2 --build-arg GIT_SHA=abc123\n\n"
            "  # Shared VPC, internal addresses only\n"
            "  windows-builder --container-image-name gcr.io/my-project/app:v1 \\\n"
            "      --subnetwork-project host-project --subnetwork builders --use-internal-ip"
        ),
    )

    required = parser.add_argument_group("required arguments")
    required.add_argument(
        "--container-image-name",
        required=True,
        metavar="IMAGE:TAG",
        help="The target container image:tag name",
    )

    build = parser.add_argument_group("build")
    build.add_argument(
        "--versions",
        default="",
        metavar="V1,V2",
        help=(
            "Comma separated Windows Server versions to build "
            f"(supported: {', '.join(VERSION_MAP)}). Defaults to all of them."
        ),
    )
    build.add_argument(
        "--build-arg",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Argument passed to docker build (repeatable)",
    )
    build.add_argument(
        "--workspace-path",
        default="/workspace",
        help="The directory to copy to the builder instances (default: /workspace)",
    )
    build.add_argument(
        "--workspace-bucket",
        default="",
        help="The bucket used to relay the workspace (default: <project>_builder_tmp)",
    )

    instance = parser.add_argument_group("builder instances")
    instance.add_argument(
        "--project",
        default="",
        metavar="PROJECT_ID",
        help="Project to create the instances in (default: from application credentials)",
    )
    instance.add_argument("--zone", default="us-central1-f")
    instance.add_argument(
        "--labels",
        default="",
        metavar="K=V,K2=V2",
        help="Labels to add to created instances",
    )
    instance.add_argument(
        "--machine-type",
        default="e2-standard-2",
        help="Machine type of the instances (default: e2-standard-2)",
    )
    instance.add_argument(
        "--boot-disk-type",
        default="pd-standard",
        help="Boot disk type: pd-standard, pd-ssd or pd-balanced (default: pd-standard)",
    )
    instance.add_argument(
        "--boot-disk-size-gb",
        type=int,
        default=75,
        metavar="GB",
        help=f"Boot disk size, at least {MIN_BOOT_DISK_SIZE_GB} GB (default: 75)",
    )
    instance.add_argument(
        "--service-account",
        default="default",
        help="Service account of the instances; a bare name is expanded to the project",
    )
    instance.add_argument(
        "--instance-name-prefix",
        default="windows-builder-",
        help="Prefix of created instance names (default: windows-builder-)",
    )
    instance.add_argument(
        "--reuse-builder-instances",
        action="store_true",
        help=(
            "Reuse running instances found by labels and name prefix, only creating "
            "one if none is found. Avoid when queuing parallel builds."
        ),
    )
    instance.add_argument(
        "--testonly-test-obsolete-versions",
        action="store_true",
        help="Also attempt an obsolete Windows version, which must be skipped (testing only)",
    )

    network = parser.add_argument_group("network")
    network.add_argument("--network", default="default", help="VPC network name")
    network.add_argument(
        "--network-project",
        default="",
        help="Project owning the network (inferred if not specified)",
    )
    network.add_argument("--subnetwork", default="default", help="Subnetwork name")
    network.add_argument(
        "--subnetwork-project",
        default="",
        help="Project owning the subnetwork (default: --network-project)",
    )
    network.add_argument(
        "--region", default="us-central1", help="Region of the subnetwork"
    )
    network.add_argument(
        "--use-internal-ip",
        action="store_true",
        help="Connect over internal IP addresses; no firewall check is needed",
    )
    network.add_argument(
        "--external-ip",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Give instances an external IP; without one Cloud NAT must be enabled",
    )
    network.add_argument(
        "--skip-firewall-check",
        action="store_true",
        help="Skip checking that a firewall rule permits WinRM ingress",
    )

    timeouts = parser.add_argument_group("timeouts")
    timeouts.add_argument(
        "--setup-timeout",
        type=int,
        default=1200,
        metavar="SECONDS",
        help="Time to wait for WinRM and Docker on an instance (default: 1200)",
    )
    timeouts.add_argument(
        "--copy-timeout",
        type=int,
        default=300,
        metavar="SECONDS",
        help="Workspace copy timeout (default: 300)",
    )
    timeouts.add_argument(
        "--command-timeout",
        type=int,
        default=600,
        metavar="SECONDS",
        help="Timeout of the docker build and manifest commands (default: 600)",
    )

    logging_group = parser.add_argument_group("logging and output")
    logging_group.add_argument(
        "--verbose", action="store_true", help="Enable verbose logging"
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    # Reject bad input before any cloud resource is touched
    try:
        pick_versions(args.versions)
    except ValueError as e:
        parser.error(str(e))
    if args.boot_disk_size_gb < MIN_BOOT_DISK_SIZE_GB:
        parser.error(f"--boot-disk-size-gb must be at least {MIN_BOOT_DISK_SIZE_GB}")

    setup_logging(verbose=args.verbose)
    logger.info("Starting Windows multi-arch container builder")

    try:
        project_id = args.project or resolve_project_id()
        config = BuilderConfig.from_args(args, project_id=project_id)
        MultiArchBuilder(config).run()
    except BuilderError as e:
        logger.error(
            f"Windows multi-arch container building process failed with error: {e}"
        )
        return 1
    return 0
