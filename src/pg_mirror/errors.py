"""Exceptions raised by pg-mirror"""

from typing import List, Optional


class MirrorError(Exception):
    """Base class for all pg-mirror errors"""


class ConfigError(MirrorError):
    """Config file is missing required values or cannot be parsed"""


class NoExecutionBackendError(MirrorError):
    """Neither native client tools nor a container runtime are usable"""

    def __init__(self, tools: List[str], runtime: str):
        self.tools = tools
        self.runtime = runtime
        super().__init__(
            f"Neither {'/'.join(tools)} nor {runtime} found. "
            f"Install {runtime} (https://docs.docker.com/get-docker/) "
            f"or PostgreSQL client tools ({', '.join(tools)})."
        )


class PortExhaustionError(MirrorError):
    """No free TCP port in the scanned window"""

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(f"No free port found in range {start}-{end}")


class CommandError(MirrorError):
    """An external command exited with a non-zero status"""

    def __init__(self, args: List[str], returncode: int, stderr: str = ""):
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command '{' '.join(args[:2])}' failed with exit code {returncode}"
        if stderr.strip():
            message += f": {stderr.strip()}"
        super().__init__(message)


class ReadinessTimeoutError(MirrorError):
    """Local database never answered the connection test"""

    def __init__(self, timeout: float, last_error: Optional[str] = None):
        self.timeout = timeout
        self.last_error = last_error
        message = f"Local database did not become ready within {timeout:g}s"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)
