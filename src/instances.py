"""
Create, reuse and delete Windows builder instances on Compute Engine.
"""

import logging
import random
import uuid
from typing import Dict, List, Optional

from clients import CLOUD_PLATFORM_SCOPE, ComputeRestClient
from credentials import WindowsPasswordExchange
from errors import ApiError, BuilderError, ImageNotFoundError, OperationError
from models import BuildServer, BuildServerConfig, RemoteServer
from network import COMPUTE_URL_PREFIX, same_resource
from operations import wait_for_zone_operation
from scripts import STARTUP_SCRIPT

logger = logging.getLogger(__name__)

USERNAME = "builder"
STARTUP_SCRIPT_METADATA_KEY = "windows-startup-script-ps1"
EXTERNAL_NAT = "External NAT"
VERSION_LABEL = "windows-builder-version"


def version_label(version: str) -> str:
    """Label value for a Windows version (label values are lowercase)."""
    return version.lower()


def build_list_instances_filter(labels: Dict[str, str], name_prefix: str) -> str:
    """Compute API filter for running instances with a name prefix and labels."""
    filters = ["(status eq RUNNING)"]
    if name_prefix:
        filters.append(f"(name eq {name_prefix}.*)")
    for key, value in sorted(labels.items()):
        filters.append(f"(labels.{key} eq {value})")
    return " ".join(filters)


def is_image_not_found(err: Exception, image_family: str) -> bool:
    """
    Check whether ``err`` reports that ``image_family`` does not exist.

    Sample: googleapi: Error 404: The resource
    'projects/windows-cloud/global/images/family/windows-1809-core-for-containers'
    was not found
    """
    if isinstance(err, ApiError):
        return err.status_code == 404 and image_family in err.message
    if isinstance(err, OperationError):
        return any(
            e.get("code") == "RESOURCE_NOT_FOUND" and image_family in e.get("message", "")
            for e in err.errors
        )
    return False


def instance_ip(instance: Dict, use_internal_ip: bool) -> str:
    """
    Return the address to reach ``instance`` on.

    Raises:
        BuilderError: If the instance has no usable address
    """
    for nic in instance.get("networkInterfaces", []):
        if use_internal_ip:
            return nic["networkIP"]
        for ac in nic.get("accessConfigs", []):
            if ac.get("name") == EXTERNAL_NAT and ac.get("natIP"):
                return ac["natIP"]
        if not nic.get("accessConfigs") and nic.get("networkIP"):
            # No external address requested (Cloud NAT); reach it internally
            return nic["networkIP"]
    raise BuilderError(
        f"Could not get an IP address for instance {instance.get('name')}"
    )


class InstanceManager:
    """Manages the lifecycle of builder instances."""

    def __init__(
        self,
        compute: ComputeRestClient,
        project_id: str,
        workspace_bucket: str = "",
        password_exchange: Optional[WindowsPasswordExchange] = None,
    ):
        """
        Args:
            compute: Compute client for the builder project
            project_id: Project the instances live in
            workspace_bucket: Bucket recorded on the remote handles
            password_exchange: Override for the Windows password exchange
        """
        self.compute = compute
        self.project_id = project_id
        self.workspace_bucket = workspace_bucket
        self.password_exchange = password_exchange

    def _exchange(self, zone: str) -> WindowsPasswordExchange:
        return self.password_exchange or WindowsPasswordExchange(self.compute, zone)

    def _labels(self, config: BuildServerConfig) -> Dict[str, str]:
        labels = dict(config.labels)
        labels[VERSION_LABEL] = version_label(config.image_version)
        return labels

    def instance_body(self, name: str, config: BuildServerConfig) -> Dict:
        """Instance resource for an insert request."""
        zone_url = f"{COMPUTE_URL_PREFIX}{self.project_id}/zones/{config.zone}"

        nic: Dict = {}
        network_url = config.network_config.network_url()
        subnetwork_url = config.network_config.subnetwork_url()
        if network_url:
            nic["network"] = network_url
        if subnetwork_url:
            nic["subnetwork"] = subnetwork_url
        if config.external_ip:
            nic["accessConfigs"] = [{"type": "ONE_TO_ONE_NAT", "name": EXTERNAL_NAT}]

        return {
            "name": name,
            "machineType": f"{zone_url}/machineTypes/{config.machine_type}",
            "disks": [
                {
                    "autoDelete": True,
                    "boot": True,
                    "type": "PERSISTENT",
                    "initializeParams": {
                        "diskName": f"{name}-pd",
                        "sourceImage": f"{COMPUTE_URL_PREFIX}{config.image_family}",
                        "diskType": f"{zone_url}/diskTypes/{config.boot_disk_type}",
                        "diskSizeGb": str(config.boot_disk_size_gb),
                    },
                }
            ],
            "metadata": {
                "items": [{"key": STARTUP_SCRIPT_METADATA_KEY, "value": STARTUP_SCRIPT}]
            },
            "networkInterfaces": [nic],
            "serviceAccounts": [
                {
                    "email": config.service_account_email(self.project_id),
                    "scopes": [CLOUD_PLATFORM_SCOPE],
                }
            ],
            "labels": self._labels(config),
        }

    def create(self, config: BuildServerConfig) -> BuildServer:
        """
        Create a new instance and prepare it for WinRM.

        The startup script may reboot the instance; callers wait for readiness.

        Returns:
            The ready BuildServer

        Raises:
            ImageNotFoundError: If the image family no longer exists
            BuilderError: On any other failure
        """
        name = f"{config.instance_name_prefix}{uuid.uuid4()}"
        body = self.instance_body(name, config)

        try:
            op = self.compute.insert_instance(config.zone, body)
        except ApiError as e:
            if is_image_not_found(e, config.image_family):
                raise ImageNotFoundError(config.image_family, e) from e
            logger.error(f"GCE instance insert for {name} failed: {e}")
            raise

        # The insert was accepted: from here on no handle is returned on
        # failure, so the instance is deleted here
        try:
            wait_for_zone_operation(self.compute, config.zone, op)
            instance = self.compute.get_instance(config.zone, name)
            logger.info(
                f"Successfully created instance: {name}, version: {config.image_version}"
            )
            return self._prepare(instance, config, reused=False)
        except OperationError as e:
            if is_image_not_found(e, config.image_family):
                raise ImageNotFoundError(config.image_family, e) from e
            logger.error(f"GCE instance insert for {name} failed: {e}")
            self._delete(config.zone, name)
            raise
        except Exception as e:
            logger.error(f"Preparing instance {name} failed, deleting it: {e}")
            self._delete(config.zone, name)
            raise

    def find_reusable(self, config: BuildServerConfig) -> Optional[BuildServer]:
        """
        Pick a running instance with matching name prefix and labels.

        A candidate is chosen uniformly at random so that concurrent runs
        sharing a pool spread over it.

        Returns:
            A prepared BuildServer, or None if nothing matches
        """
        filter_expr = build_list_instances_filter(
            self._labels(config), config.instance_name_prefix
        )
        candidates = self.compute.list_instances(config.zone, filter_expr)
        candidates = self._on_network(candidates, config)

        if not candidates:
            logger.info(f"Found no relevant instances for version: {config.image_version}")
            return None

        chosen = random.choice(candidates)
        logger.info(
            f"Found {len(candidates)} relevant instances for version: "
            f"{config.image_version}, chose {chosen['name']}"
        )
        instance = self.compute.get_instance(config.zone, chosen["name"])
        return self._prepare(instance, config, reused=True)

    def _on_network(self, instances: List[Dict], config: BuildServerConfig) -> List[Dict]:
        network_url = config.network_config.network_url()
        subnetwork_url = config.network_config.subnetwork_url()
        matching = []
        for inst in instances:
            nics = inst.get("networkInterfaces", [])
            if not nics:
                continue
            if network_url and not same_resource(nics[0].get("network"), network_url):
                continue
            if subnetwork_url and not same_resource(
                nics[0].get("subnetwork"), subnetwork_url
            ):
                continue
            matching.append(inst)
        return matching

    def _prepare(self, instance: Dict, config: BuildServerConfig, reused: bool) -> BuildServer:
        name = instance["name"]
        password = self._exchange(config.zone).reset_password(instance, USERNAME)

        # Refresh: the instance may have been assigned its address meanwhile
        instance = self.compute.get_instance(config.zone, name)
        ip = instance_ip(instance, config.use_internal_ip)

        remote = RemoteServer(
            hostname=ip,
            username=USERNAME,
            password=password,
            workspace_folder=f"C:\\ws-{uuid.uuid4()}",
            workspace_bucket=self.workspace_bucket,
        )
        return BuildServer(
            name=name,
            zone=config.zone,
            version=config.image_version,
            remote=remote,
            reused=reused,
        )

    def delete(self, server: BuildServer) -> None:
        """Delete ``server``. Failures are logged, never raised."""
        self._delete(server.zone, server.name)

    def _delete(self, zone: str, name: str) -> None:
        try:
            self.compute.delete_instance(zone, name)
        except Exception as e:
            logger.error(f"Could not delete instance: {name}, with error: {e}")
            return
        logger.info(f"Instance: {name} deleted")
