"""
Unit tests for the builder instance lifecycle.
"""

import unittest
from unittest.mock import MagicMock, patch
from errors import (
    ApiError,
    BuilderError,
    CredentialExchangeError,
    ImageNotFoundError,
    OperationError,
    WaitTimeoutError,
)
from instances import (
    STARTUP_SCRIPT_METADATA_KEY,
    VERSION_LABEL,
    InstanceManager,
    build_list_instances_filter,
    instance_ip,
    is_image_not_found,
)
from models import BuildServerConfig
from network import NetworkConfig

FAMILY = "windows-cloud/global/images/family/windows-2004-core"
NETWORK_URL = "https://www.googleapis.com/compute/v1/projects/p/global/networks/default"
SUBNET_URL = (
    "https://www.googleapis.com/compute/v1/projects/p/regions/us-central1/subnetworks/default"
)


def make_config(**overrides):
    values = dict(
        instance_name_prefix="windows-builder-",
        image_version="2004",
        image_family=FAMILY,
        zone="us-central1-f",
        network_config=NetworkConfig.resolve("p"),
        labels={"team": "infra"},
    )
    values.update(overrides)
    return BuildServerConfig(**values)


def running_instance(name, nat_ip="203.0.113.7", network=NETWORK_URL, subnetwork=SUBNET_URL):
    return {
        "name": name,
        "metadata": {"fingerprint": "fp", "items": []},
        "networkInterfaces": [
            {
                "network": network,
                "subnetwork": subnetwork,
                "networkIP": "10.128.0.5",
                "accessConfigs": [{"name": "External NAT", "natIP": nat_ip}],
            }
        ],
    }


class TestHelpers(unittest.TestCase):
    """Test filter, error and address helpers."""

    def test_list_filter(self):
        self.assertEqual(
            build_list_instances_filter({"b": "2", "a": "1"}, "windows-builder-"),
            "(status eq RUNNING) (name eq windows-builder-.*) (labels.a eq 1) (labels.b eq 2)",
        )

    def test_image_not_found_api_error(self):
        err = ApiError("Insert instance", 404, f"The resource 'projects/{FAMILY}' was not found")
        self.assertTrue(is_image_not_found(err, FAMILY))
        self.assertFalse(is_image_not_found(err, "other-family"))

    def test_image_not_found_operation_error(self):
        err = OperationError(
            "op-1", [{"code": "RESOURCE_NOT_FOUND", "message": f"'{FAMILY}' was not found"}]
        )
        self.assertTrue(is_image_not_found(err, FAMILY))

    def test_other_errors_are_not_image_not_found(self):
        self.assertFalse(is_image_not_found(ApiError("Insert instance", 403, FAMILY), FAMILY))
        self.assertFalse(is_image_not_found(RuntimeError(FAMILY), FAMILY))

    def test_instance_ip(self):
        instance = running_instance("vm-1")
        self.assertEqual(instance_ip(instance, use_internal_ip=False), "203.0.113.7")
        self.assertEqual(instance_ip(instance, use_internal_ip=True), "10.128.0.5")

    def test_instance_ip_without_access_config(self):
        instance = running_instance("vm-1")
        del instance["networkInterfaces"][0]["accessConfigs"]
        self.assertEqual(instance_ip(instance, use_internal_ip=False), "10.128.0.5")

    def test_instance_ip_missing(self):
        instance = running_instance("vm-1", nat_ip="")
        with self.assertRaises(BuilderError):
            instance_ip(instance, use_internal_ip=False)


class TestInstanceManager(unittest.TestCase):
    """Test InstanceManager against a fake compute client."""

    def setUp(self):
        self.compute = MagicMock()
        self.compute.insert_instance.return_value = {"name": "op-insert"}
        self.compute.get_zone_operation.return_value = {"name": "op-insert", "status": "DONE"}
        self.compute.get_instance.side_effect = lambda zone, name: running_instance(name)
        self.exchange = MagicMock()
        self.exchange.reset_password.return_value = "pw"
        self.manager = InstanceManager(
            self.compute, "p", workspace_bucket="p_builder_tmp", password_exchange=self.exchange
        )

    def test_instance_body(self):
        body = self.manager.instance_body("windows-builder-x", make_config())

        nic = body["networkInterfaces"][0]
        self.assertEqual(nic["network"], NETWORK_URL)
        self.assertEqual(nic["subnetwork"], SUBNET_URL)
        self.assertEqual(nic["accessConfigs"][0]["name"], "External NAT")
        disk = body["disks"][0]["initializeParams"]
        self.assertEqual(disk["diskName"], "windows-builder-x-pd")
        self.assertEqual(disk["diskSizeGb"], "75")
        self.assertTrue(disk["sourceImage"].endswith(FAMILY))
        self.assertEqual(body["metadata"]["items"][0]["key"], STARTUP_SCRIPT_METADATA_KEY)
        self.assertEqual(body["labels"], {"team": "infra", VERSION_LABEL: "2004"})
        self.assertEqual(body["serviceAccounts"][0]["email"], "default")

    def test_instance_body_infers_shared_vpc_network(self):
        """Test an inferred network is left out of the instance request."""
        config = make_config(
            network_config=NetworkConfig.resolve(
                "p", subnetwork="builders", subnetwork_project="host"
            ),
            external_ip=False,
        )

        nic = self.manager.instance_body("windows-builder-x", config)["networkInterfaces"][0]

        self.assertNotIn("network", nic)
        self.assertIn("projects/host/regions/us-central1/subnetworks/builders", nic["subnetwork"])
        self.assertNotIn("accessConfigs", nic)

    @patch("polling.time")
    def test_create(self, mock_time):
        mock_time.monotonic.return_value = 0.0

        server = self.manager.create(make_config())

        self.assertTrue(server.name.startswith("windows-builder-"))
        self.assertEqual(server.remote.hostname, "203.0.113.7")
        self.assertEqual(server.remote.username, "builder")
        self.assertEqual(server.remote.password, "pw")
        self.assertEqual(server.remote.workspace_bucket, "p_builder_tmp")
        self.assertTrue(server.remote.workspace_folder.startswith("C:\\ws-"))
        self.assertFalse(server.reused)
        self.exchange.reset_password.assert_called_once()

    @patch("polling.time")
    def test_create_uses_unique_names(self, mock_time):
        mock_time.monotonic.return_value = 0.0

        first = self.manager.create(make_config())
        second = self.manager.create(make_config())

        self.assertNotEqual(first.name, second.name)

    def test_create_image_not_found(self):
        self.compute.insert_instance.side_effect = ApiError(
            "Insert instance", 404, f"The resource 'projects/{FAMILY}' was not found"
        )

        with self.assertRaises(ImageNotFoundError) as ctx:
            self.manager.create(make_config())

        self.assertEqual(ctx.exception.image_family, FAMILY)
        self.compute.delete_instance.assert_not_called()

    def test_create_other_insert_failure(self):
        self.compute.insert_instance.side_effect = ApiError("Insert instance", 403, "quota")

        with self.assertRaises(ApiError):
            self.manager.create(make_config())

    @patch("polling.time")
    def test_create_deletes_instance_when_password_fails(self, mock_time):
        """Test a half-prepared instance is not leaked."""
        mock_time.monotonic.return_value = 0.0
        self.exchange.reset_password.side_effect = CredentialExchangeError("bad reply")

        with self.assertRaises(CredentialExchangeError):
            self.manager.create(make_config())

        self.compute.delete_instance.assert_called_once()

    @patch("polling.time")
    def test_create_deletes_instance_when_get_fails(self, mock_time):
        """Test an instance that cannot be read back after insert is deleted."""
        mock_time.monotonic.return_value = 0.0
        self.compute.get_instance.side_effect = ApiError("Get instance", 500, "backend error")

        with self.assertRaises(ApiError):
            self.manager.create(make_config())

        self.compute.delete_instance.assert_called_once()
        self.exchange.reset_password.assert_not_called()

    @patch("polling.time")
    def test_create_deletes_instance_when_operation_times_out(self, mock_time):
        """Test an accepted insert whose operation never finishes is deleted."""
        mock_time.monotonic.side_effect = [0.0, 301.0]
        self.compute.get_zone_operation.return_value = {
            "name": "op-insert",
            "status": "RUNNING",
        }

        with self.assertRaises(WaitTimeoutError):
            self.manager.create(make_config())

        zone, name = self.compute.delete_instance.call_args[0]
        self.assertEqual(zone, "us-central1-f")
        self.assertTrue(name.startswith("windows-builder-"))

    @patch("polling.time")
    def test_create_image_not_found_in_operation(self, mock_time):
        """Test a missing image reported by the operation is not deleted."""
        mock_time.monotonic.return_value = 0.0
        self.compute.get_zone_operation.return_value = {
            "name": "op-insert",
            "status": "DONE",
            "error": {
                "errors": [
                    {"code": "RESOURCE_NOT_FOUND", "message": f"'{FAMILY}' was not found"}
                ]
            },
        }

        with self.assertRaises(ImageNotFoundError):
            self.manager.create(make_config())

        self.compute.delete_instance.assert_not_called()

    def test_find_reusable(self):
        self.compute.list_instances.return_value = [
            running_instance("windows-builder-a"),
            running_instance("windows-builder-b"),
        ]

        with patch("instances.random.choice", side_effect=lambda c: c[1]) as mock_choice:
            server = self.manager.find_reusable(make_config(reuse_instance=True))

        self.assertEqual(server.name, "windows-builder-b")
        self.assertTrue(server.reused)
        self.assertEqual(len(mock_choice.call_args[0][0]), 2)
        filter_expr = self.compute.list_instances.call_args[0][1]
        self.assertIn(f"(labels.{VERSION_LABEL} eq 2004)", filter_expr)
        self.assertIn("(labels.team eq infra)", filter_expr)

    def test_find_reusable_filters_other_networks(self):
        self.compute.list_instances.return_value = [
            running_instance(
                "windows-builder-a", network="projects/p/global/networks/other"
            )
        ]

        self.assertIsNone(self.manager.find_reusable(make_config()))
        self.exchange.reset_password.assert_not_called()

    def test_find_reusable_none(self):
        self.compute.list_instances.return_value = []
        self.assertIsNone(self.manager.find_reusable(make_config()))

    def test_delete_never_raises(self):
        self.compute.delete_instance.side_effect = ApiError("Delete instance", 500, "boom")
        server = MagicMock(zone="us-central1-f")
        server.name = "vm-1"

        self.manager.delete(server)

        self.compute.delete_instance.assert_called_once_with("us-central1-f", "vm-1")


if __name__ == "__main__":
    unittest.main()
