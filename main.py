#!/usr/bin/env python3
"""
Elastic CI worker fleet controller for Compute Engine.

- Provision workers for a job label with --provision LABEL --count N
- Delete orphaned fleet instances with --reconcile
- List fleet instances with --status

This script runs directly from a source checkout: it adds the local `src/`
directory to sys.path. For production use, prefer installing the project
and using the `ci-fleet` console script.
"""

import os
import sys

# Add src/ to path to import modules directly
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
