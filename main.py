#!/usr/bin/env python3
"""
Windows Multi-Arch Container Builder

Builds a Windows container image for several Windows Server versions on
ephemeral GCE instances and publishes a multi-arch manifest over them.

This script supports running directly from a source checkout that uses the
src/ layout: it adds the local `src/` directory to sys.path before importing.
For production use, prefer installing the project and using the provided
`windows-builder` console script.
"""

import os
import sys

# Add src/ to path to import modules directly
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from cli import main

if __name__ == "__main__":
    sys.exit(main())
