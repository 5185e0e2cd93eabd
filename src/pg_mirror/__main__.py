#!/usr/bin/env python3
"""
Entry point for the pg-mirror CLI command.
This allows the package to be run as: python -m pg_mirror
"""

import sys

from .mirror import main

if __name__ == '__main__':
    sys.exit(main())
