"""
Network resolution and WinRM firewall preflight for builder instances.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from errors import ApiError, SetupError

logger = logging.getLogger(__name__)

COMPUTE_URL_PREFIX = "https://www.googleapis.com/compute/v1/projects/"
WINRM_PORT = 5986


def using_shared_vpc(
    instance_project: str, network_project: str, subnetwork_project: str
) -> bool:
    """
    Decide whether the network lives in another project (Shared VPC).

    Args:
        instance_project: Project the instances are created in
        network_project: Value of --network-project ("" if not given)
        subnetwork_project: Value of --subnetwork-project ("" if not given)

    Returns:
        True if the network or subnetwork is owned by a different project
    """
    if network_project:
        return network_project != instance_project
    return bool(subnetwork_project) and subnetwork_project != instance_project


@dataclass(frozen=True)
class NetworkConfig:
    """Resolved network placement of a builder instance."""

    network: str
    network_project: str  # "" when the network is inferred from the subnetwork
    subnetwork: str
    subnetwork_project: str
    region: str
    shared_vpc: bool = False

    @classmethod
    def resolve(
        cls,
        instance_project: str,
        network: str = "default",
        network_project: str = "",
        subnetwork: str = "default",
        subnetwork_project: str = "",
        region: str = "us-central1",
    ) -> "NetworkConfig":
        """
        Build a NetworkConfig from the user supplied flag values.

        The subnetwork project falls back to the network project. Outside a
        Shared VPC both fall back to the instance project. Inside a Shared VPC
        nothing is assumed beyond what the user passed, so a missing network
        project means the network is inferred by the compute API from the
        subnetwork.
        """
        subnetwork_project = subnetwork_project or network_project
        shared = using_shared_vpc(instance_project, network_project, subnetwork_project)
        if not shared:
            network_project = network_project or instance_project
            subnetwork_project = subnetwork_project or instance_project
        return cls(
            network=network,
            network_project=network_project,
            subnetwork=subnetwork,
            subnetwork_project=subnetwork_project,
            region=region,
            shared_vpc=shared,
        )

    @property
    def network_inferred(self) -> bool:
        return not self.network or not self.network_project

    @property
    def host_project(self) -> str:
        """Project that owns the network (and so its firewall rules)."""
        return self.network_project or self.subnetwork_project

    def network_url(self) -> Optional[str]:
        """Network URL, or None when the network must be inferred."""
        if self.network_inferred:
            return None
        return f"{COMPUTE_URL_PREFIX}{self.network_project}/global/networks/{self.network}"

    def subnetwork_url(self) -> Optional[str]:
        if not self.subnetwork or not self.subnetwork_project:
            return None
        return (
            f"{COMPUTE_URL_PREFIX}{self.subnetwork_project}/regions/{self.region}"
            f"/subnetworks/{self.subnetwork}"
        )

    def firewall_projects(self) -> List[str]:
        """Projects that must carry the WinRM ingress rule."""
        return [self.host_project] if self.host_project else []


def same_resource(url_a: Optional[str], url_b: Optional[str]) -> bool:
    """Compare two compute resource references, full URL or relative."""
    if not url_a or not url_b:
        return False
    return _relative(url_a) == _relative(url_b)


def _relative(url: str) -> str:
    marker = "projects/"
    idx = url.find(marker)
    return url[idx:] if idx >= 0 else url


def _port_allowed(ports: List[str], port: int) -> bool:
    # No port list means every port of the protocol
    if not ports:
        return True
    for entry in ports:
        if "-" in entry:
            low, _, high = entry.partition("-")
            if low.isdigit() and high.isdigit() and int(low) <= port <= int(high):
                return True
        elif entry.isdigit() and int(entry) == port:
            return True
    return False


def winrm_ingress_allowed(rules: List[Dict], network_url: str) -> bool:
    """
    Return True if one of ``rules`` allows WinRM ingress from anywhere.

    Args:
        rules: Firewall resources as returned by the compute API
        network_url: Network the rule must be attached to

    Returns:
        True if an enabled INGRESS rule on the network allows tcp:5986 from 0.0.0.0/0
    """
    for rule in rules:
        if rule.get("disabled", False):
            continue
        if rule.get("direction", "INGRESS") != "INGRESS":
            continue
        if not same_resource(rule.get("network"), network_url):
            continue
        if "0.0.0.0/0" not in rule.get("sourceRanges", []):
            continue
        for allowed in rule.get("allowed", []):
            if allowed.get("IPProtocol") not in ("tcp", "all"):
                continue
            if _port_allowed(allowed.get("ports", []), WINRM_PORT):
                logger.info(
                    f"Found INGRESS firewall rule {rule.get('name')} for tcp:{WINRM_PORT}"
                )
                return True
    return False


def resolve_network_url(compute, net_config: NetworkConfig) -> str:
    """
    Return the network URL, asking the compute API when it must be inferred.

    Raises:
        SetupError: If the subnetwork cannot be read
    """
    url = net_config.network_url()
    if url:
        return url
    try:
        subnet = compute.get_subnetwork(
            net_config.subnetwork_project, net_config.region, net_config.subnetwork
        )
    except ApiError as e:
        raise SetupError(
            f"Cannot infer network from subnetwork {net_config.subnetwork_url()}: {e}"
        ) from e
    network = subnet.get("network", "")
    if not network:
        raise SetupError(
            f"Subnetwork {net_config.subnetwork_url()} does not reference a network"
        )
    logger.info(f"Inferred network {network} from subnetwork {net_config.subnetwork}")
    return network


def check_project_firewalls(compute, net_config: NetworkConfig) -> None:
    """
    Verify the projects owning the network allow WinRM ingress.

    Args:
        compute: ComputeRestClient
        net_config: Resolved network configuration

    Raises:
        SetupError: If a project lacks the rule; the message names the fix
    """
    network_url = resolve_network_url(compute, net_config)

    for project in net_config.firewall_projects():
        logger.info(
            f"Checking WinRM firewall rule is present for project {project}, network {network_url}"
        )
        try:
            rules = compute.list_firewalls(project)
        except ApiError as e:
            logger.error(f"Firewall list failed for project {project}: {e}")
            rules = []

        if not winrm_ingress_allowed(rules, network_url):
            raise SetupError(
                f"Project {project} does not have a firewall rule to allow WinRM ingress. "
                f"Please run:\n  gcloud compute firewall-rules create --project={project} "
                f"allow-winrm-ingress --allow=tcp:{WINRM_PORT} --direction=INGRESS "
                f"--network={network_url}"
            )
