"""
PostgreSQL Mirror Tool - Mirror a hosted PostgreSQL database to a local instance and back

This package mirrors a cloud PostgreSQL database (Supabase by default) to a local
PostgreSQL instance using pg_dump and psql. When the client tools are not installed
they run inside a throwaway postgres container instead.

Main features:
- Pooler region detection over the PostgreSQL wire protocol
- Direct (IPv6-only) to pooler URL rewriting
- Native or containerized pg_dump/psql, chosen automatically
- Managed local postgres container (create, start, stop, remove)
- Config file or command-line support

Usage:
    pg-mirror pull
    pg-mirror push --yes
    pg-mirror status
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .backend import ExecutionBackend, ExecutionMode, get_backend, reset_backend
from .local_db import ContainerDescriptor, LocalInstanceManager
from .mirror import MirrorTool
from .ports import find_free_port
from .region_probe import detect_region

__all__ = [
    "ContainerDescriptor",
    "ExecutionBackend",
    "ExecutionMode",
    "LocalInstanceManager",
    "MirrorTool",
    "detect_region",
    "find_free_port",
    "get_backend",
    "reset_backend",
]
