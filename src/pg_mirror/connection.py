"""Database connectivity checks"""

import logging
from dataclasses import dataclass
from typing import Optional

from .backend import ExecutionBackend, ExecutionMode, get_backend
from .errors import CommandError, MirrorError

logger = logging.getLogger(__name__)


@dataclass
class ConnectionInfo:
    connected: bool
    version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Prerequisites:
    mode: Optional[ExecutionMode]
    runtime_available: bool

    @property
    def ready(self) -> bool:
        return self.mode is not None


async def check_connection(url: str, backend: Optional[ExecutionBackend] = None) -> ConnectionInfo:
    """Run `SELECT version();` against the database"""
    backend = backend or get_backend()
    try:
        result = await backend.run_client_command("psql", [
            url,
            "--tuples-only",
            "--no-align",
            "-c", "SELECT version();",
        ])
    except CommandError as err:
        return ConnectionInfo(connected=False, error=str(err))

    # PostgreSQL 16.1 on x86_64-pc-linux-musl, compiled by ...
    version = result.stdout.strip().split(",")[0] or "unknown"
    return ConnectionInfo(connected=True, version=version)


async def check_prerequisites(backend: Optional[ExecutionBackend] = None) -> Prerequisites:
    """Report how client tools would run, without failing"""
    backend = backend or get_backend()
    try:
        mode = await backend.resolve_mode()
    except MirrorError as err:
        logger.debug(f"No execution backend: {err}")
        return Prerequisites(mode=None, runtime_available=False)

    if mode is ExecutionMode.CONTAINERIZED:
        return Prerequisites(mode=mode, runtime_available=True)
    return Prerequisites(mode=mode, runtime_available=await backend.runtime_available())
