"""
Unit tests for logging utilities.
"""

import logging
import unittest
from log_utils import setup_logging


class TestLogUtils(unittest.TestCase):
    """Test logging utilities."""

    def test_setup_logging_default(self):
        """Test default logging setup."""
        logger = setup_logging(log_file=None)
        self.assertIsInstance(logger, logging.Logger)

    def test_setup_logging_verbose(self):
        """Test verbose logging setup."""
        logger = setup_logging(verbose=True, log_file=None)
        self.assertIsInstance(logger, logging.Logger)

    def test_http_loggers_quietened(self):
        """Test request-level loggers are raised to WARNING."""
        setup_logging(verbose=True, log_file=None)
        self.assertEqual(logging.getLogger("urllib3").level, logging.WARNING)
        self.assertEqual(logging.getLogger("google.auth").level, logging.WARNING)


if __name__ == "__main__":
    unittest.main()
