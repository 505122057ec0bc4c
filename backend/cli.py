#!/usr/bin/env python3
"""
MKVE worker CLI - thin entrypoint.

Runs mkve_worker.cli.commands.main from a source checkout without
installing the package. See that module for commands and exit codes.
"""

import sys
from pathlib import Path

# Add backend directory to path if not already there
_backend_dir = Path(__file__).parent.resolve()
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

from mkve_worker.cli.commands import main


if __name__ == '__main__':
    sys.exit(main())
