"""pg_dump / psql wrappers used by pull and push"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .backend import CommandResult, ExecutionBackend, get_backend
from .errors import MirrorError

logger = logging.getLogger(__name__)

DUMP_FILENAME = "dump.sql"


@dataclass
class DumpOptions:
    schemas: List[str] = field(default_factory=lambda: ["public"])
    exclude_tables: List[str] = field(default_factory=lambda: ["_prisma_migrations", "schema_migrations"])
    dump_flags: List[str] = field(default_factory=lambda: ["--clean", "--if-exists", "--no-owner", "--no-privileges"])


class PgDumpTool:
    """Handle PostgreSQL dump and restore operations"""

    @staticmethod
    def dump_args(url: str, output_file: str, options: DumpOptions) -> List[str]:
        args = [url, "--format=plain", *options.dump_flags, "--file", output_file]
        for schema in options.schemas:
            args.extend(["--schema", schema])
        for table in options.exclude_tables:
            args.extend(["--exclude-table", table])
        return args

    @staticmethod
    async def dump_database(url: str, output_file: str, options: Optional[DumpOptions] = None,
                            backend: Optional[ExecutionBackend] = None) -> Path:
        """Dump a database to a plain SQL file

        Raises CommandError if pg_dump fails.
        """
        options = options or DumpOptions()
        backend = backend or get_backend()
        output = Path(output_file)
        output.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Dumping schemas {', '.join(options.schemas)} to {output}")
        await backend.run_client_command("pg_dump", PgDumpTool.dump_args(url, str(output), options))

        file_size = os.path.getsize(output) if output.exists() else 0
        logger.info(f"Database dump completed. File size: {file_size:,} bytes")
        if file_size == 0:
            logger.warning("Dump file is empty!")
        return output

    @staticmethod
    async def restore_database(url: str, input_file: str,
                               backend: Optional[ExecutionBackend] = None) -> CommandResult:
        """Restore a SQL dump in a single transaction

        psql prints notices for DROP ... IF EXISTS on objects that don't exist
        yet, so a non-zero exit is reported but not raised.
        """
        if not os.path.exists(input_file):
            raise MirrorError(f"No dump file found at {input_file}")

        backend = backend or get_backend()
        logger.info(f"Restoring {input_file}")
        result = await backend.run_client_command(
            "psql", [url, "--single-transaction", "--file", input_file], reject=False
        )

        PgDumpTool._handle_restore_output(result.stderr)
        if result.ok:
            logger.info("Database restore completed successfully")
        else:
            logger.warning(f"Restore finished with exit code {result.returncode} (see above)")
        return result

    @staticmethod
    def _handle_restore_output(stderr_text: str) -> None:
        """Log psql errors and warnings, skip the chatter"""
        for line in stderr_text.splitlines():
            if not line.strip():
                continue
            if any(level in line for level in ("ERROR", "FATAL", "WARNING")):
                logger.warning(line)
            else:
                logger.debug(line)
