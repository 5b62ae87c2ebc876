"""
Unit tests for zone operation waiting.
"""

import unittest
from unittest.mock import MagicMock, patch
from errors import OperationError
from operations import wait_for_zone_operation


class TestWaitForZoneOperation(unittest.TestCase):
    """Test wait_for_zone_operation."""

    def setUp(self):
        self.compute = MagicMock()

    @patch("polling.time")
    def test_polls_until_done(self, mock_time):
        mock_time.monotonic.return_value = 0.0
        self.compute.get_zone_operation.side_effect = [
            {"name": "op-1", "status": "RUNNING"},
            {"name": "op-1", "status": "DONE"},
        ]

        op = wait_for_zone_operation(self.compute, "us-central1-f", {"name": "op-1"})

        self.assertEqual(op["status"], "DONE")
        self.compute.get_zone_operation.assert_called_with("us-central1-f", "op-1")
        mock_time.sleep.assert_called_once_with(1.0)

    @patch("polling.time")
    def test_done_with_errors(self, mock_time):
        """Test operation errors are raised with their codes."""
        mock_time.monotonic.return_value = 0.0
        errors = [{"code": "RESOURCE_NOT_FOUND", "message": "image missing"}]
        self.compute.get_zone_operation.return_value = {
            "name": "op-1",
            "status": "DONE",
            "error": {"errors": errors},
        }

        with self.assertRaises(OperationError) as ctx:
            wait_for_zone_operation(self.compute, "us-central1-f", {"name": "op-1"})

        self.assertEqual(ctx.exception.errors, errors)
        self.assertIn("RESOURCE_NOT_FOUND", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
