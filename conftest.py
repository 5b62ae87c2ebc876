"""
Pytest configuration for the builder unit tests.

The builder modules live flat under src/ and import each other as top-level
modules (``from clients import ComputeRestClient``), so src/ goes on sys.path.
"""

import os
import sys

SRC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "src")

if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)
