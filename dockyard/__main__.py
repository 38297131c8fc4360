#!/usr/bin/env python3
"""
Dockyard entry point.
Allows running as: python3 -m dockyard <command>
"""

import sys

from dockyard.cli import main

if __name__ == "__main__":
    sys.exit(main())
