"""
MySQL Slave Resync Tool - Resync MySQL replication slave databases with their master

This package provides a CLI tool, run on the master host, that rebuilds one or more
databases on a replication slave: it read-locks the master, dumps the database, ships
the dump to the slave over ssh/scp, restores it and repoints the slave at the master
log file and position captured under the lock.

Main features:
- Master read lock held for the whole dump and released on every exit path
- Compressed dumps, copied and restored over ssh
- Slave repointed at the exact checkpoint taken with the snapshot
- Replication thread status report after restart
- Config file, environment or command-line settings
- Dump artifacts removed on both hosts, including after a failure

Usage:
    mysql-slave-resync --config resync.json orders inventory
    mysql-slave-resync --slave-host db.example.com --slave-user deploy --slave-password secret orders
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .slave_resync import (
    SlaveResyncTool,
    ResyncConfig,
    RemoteShell,
    MasterDatabase,
    SlaveDatabase,
    CommandRunner,
    ResyncError,
    ConfigError,
    StepError,
)

__all__ = [
    "SlaveResyncTool",
    "ResyncConfig",
    "RemoteShell",
    "MasterDatabase",
    "SlaveDatabase",
    "CommandRunner",
    "ResyncError",
    "ConfigError",
    "StepError",
]
