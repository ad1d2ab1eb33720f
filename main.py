#!/usr/bin/env python3
"""
Self-Service Environment Refresh Tool (Azure REST)

- Dry run by default: discovery, validation and a full plan
- Perform the refresh with --execute

This script supports running directly from a source checkout that uses a
src/ layout. It adds the local `src/` directory to sys.path so the modules
import without installation. For production use, prefer installing the
project and using the `environment-refresh` console script.
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
