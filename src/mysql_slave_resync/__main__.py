#!/usr/bin/env python3
"""
Entry point for the mysql-slave-resync CLI command.
This allows the package to be run as: python -m mysql_slave_resync
"""

import sys

from .slave_resync import main

if __name__ == '__main__':
    sys.exit(main())
