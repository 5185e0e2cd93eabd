"""
Execution backend for PostgreSQL client tools.

psql/pg_dump run natively when both are on PATH. Otherwise the same
command runs inside a throwaway postgres container, with connection URLs
rewritten for container networking and --file paths mounted into the
container.
"""

import asyncio
import logging
import os
import posixpath
import re
import shutil
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from .errors import CommandError, NoExecutionBackendError
from .urls import (
    SUPABASE,
    ProviderProfile,
    container_network_args,
    is_direct_form,
    rewrite_host_for_container_networking,
)

logger = logging.getLogger(__name__)

CLIENT_TOOLS = ("psql", "pg_dump")
CONTAINER_RUNTIME = "docker"
CLIENT_IMAGE = "postgres:17-alpine"
CONTAINER_DATA_DIR = "/data"
URL_PREFIXES = ("postgres://", "postgresql://")


class ExecutionMode(str, Enum):
    NATIVE = "native"
    CONTAINERIZED = "containerized"


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(program: str, args: Sequence[str], reject: bool = True,
                      stdin_data: Optional[bytes] = None) -> CommandResult:
    """Run a program and capture its output

    A missing executable is reported as exit code 127, like a shell would.
    With reject=True any non-zero exit raises CommandError.
    """
    cmd = [program, *args]
    logger.debug(f"Executing: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        result = CommandResult(cmd, 127, "", f"{program}: command not found")
    else:
        stdout, stderr = await process.communicate(input=stdin_data)
        result = CommandResult(
            cmd,
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    if reject and not result.ok:
        raise CommandError(cmd, result.returncode, result.stderr)
    return result


@dataclass
class ContainerArgs:
    args: List[str]
    volumes: List[str]
    network: List[str]


def _is_connection_url(arg: str) -> bool:
    return arg.startswith(URL_PREFIXES)


class ExecutionBackend:
    """Decides once how client tools run and builds the commands for it"""

    def __init__(self, runtime: str = CONTAINER_RUNTIME, image: str = CLIENT_IMAGE,
                 tools: Sequence[str] = CLIENT_TOOLS, profile: ProviderProfile = SUPABASE):
        self.runtime = runtime
        self.image = image
        self.tools = tuple(tools)
        self.profile = profile
        self.mode: Optional[ExecutionMode] = None
        # Tried in order; the first one to return a mode wins
        self.strategies: Tuple[Callable[[], Awaitable[Optional[ExecutionMode]]], ...] = (
            self._native_strategy,
            self._containerized_strategy,
        )

    async def native_tools_available(self) -> bool:
        """Check all client tools are on PATH"""
        found = await asyncio.gather(*(
            asyncio.to_thread(shutil.which, tool) for tool in self.tools
        ))
        missing = [tool for tool, path in zip(self.tools, found) if not path]
        if missing:
            logger.debug(f"Client tools not on PATH: {', '.join(missing)}")
        return not missing

    async def runtime_available(self) -> bool:
        """Check the container runtime is installed and its daemon answers"""
        result = await run_command(self.runtime, ["info"], reject=False)
        return result.ok

    async def _native_strategy(self) -> Optional[ExecutionMode]:
        if await self.native_tools_available():
            return ExecutionMode.NATIVE
        return None

    async def _containerized_strategy(self) -> Optional[ExecutionMode]:
        if await self.runtime_available():
            return ExecutionMode.CONTAINERIZED
        return None

    async def resolve_mode(self) -> ExecutionMode:
        """Return the cached mode, detecting it on first call"""
        if self.mode is not None:
            return self.mode

        for strategy in self.strategies:
            mode = await strategy()
            if mode is not None:
                logger.info(f"Using {mode.value} PostgreSQL client tools")
                self.mode = mode
                return mode

        raise NoExecutionBackendError(list(self.tools), self.runtime)

    def prepare_container_args(self, args: Sequence[str]) -> ContainerArgs:
        """
        Adapt a psql/pg_dump argument list for running inside a container:
         - rewrite connection URLs for container networking
         - mount the host directory of a --file argument at /data
         - pick --network flags from the original (unrewritten) URL
        """
        rewritten = list(args)
        volumes: List[str] = []
        original_url = None

        for index, arg in enumerate(rewritten):
            if not _is_connection_url(arg):
                continue
            if original_url is None:
                original_url = arg
            if is_direct_form(arg, self.profile):
                logger.warning(
                    f"Direct database URL detected (db.<ref>.{self.profile.direct_domain}). "
                    "It is IPv6-only and containers cannot reach it. Use the pooler URL "
                    "instead (pass --region or run detect-region)."
                )
            rewritten[index] = rewrite_host_for_container_networking(arg)

        if "--file" in rewritten:
            index = rewritten.index("--file")
            if index + 1 < len(rewritten):
                host_path = os.path.abspath(rewritten[index + 1])
                volumes = ["-v", f"{os.path.dirname(host_path)}:{CONTAINER_DATA_DIR}"]
                rewritten[index + 1] = posixpath.join(CONTAINER_DATA_DIR, os.path.basename(host_path))

        network = container_network_args(original_url) if original_url else []
        return ContainerArgs(args=rewritten, volumes=volumes, network=network)

    def container_command(self, tool: str, args: Sequence[str]) -> List[str]:
        prepared = self.prepare_container_args(args)
        return [
            "run", "--rm",
            *prepared.network,
            *prepared.volumes,
            self.image,
            tool,
            *prepared.args,
        ]

    async def run_client_command(self, tool: str, args: Sequence[str],
                                 reject: bool = True) -> CommandResult:
        """Run psql/pg_dump natively or wrapped in `docker run --rm`"""
        mode = await self.resolve_mode()
        if mode is ExecutionMode.NATIVE:
            return await run_command(tool, args, reject=reject)
        return await run_command(self.runtime, self.container_command(tool, args), reject=reject)

    async def client_version(self, tool: str = "pg_dump") -> Optional[str]:
        """Major.minor version of a client tool, or None if it can't be run"""
        try:
            result = await self.run_client_command(tool, ["--version"])
        except (CommandError, NoExecutionBackendError) as err:
            logger.debug(f"Could not get {tool} version: {err}")
            return None

        # pg_dump (PostgreSQL) 16.1
        match = re.search(r"(\d+\.\d+)", result.stdout)
        return match.group(1) if match else None


_backend: Optional[ExecutionBackend] = None


def get_backend() -> ExecutionBackend:
    """Process-wide backend, created on first use"""
    global _backend
    if _backend is None:
        _backend = ExecutionBackend()
    return _backend


def reset_backend(backend: Optional[ExecutionBackend] = None) -> None:
    """Replace (or drop) the process-wide backend"""
    global _backend
    _backend = backend
