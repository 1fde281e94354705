# asset_converter/services/external.py
from __future__ import annotations
from pathlib import Path
from typing import Sequence
import asyncio, logging, shlex, shutil

from asset_converter.core.errors import ExternalToolError

log = logging.getLogger(__name__)


def line_buffered(argv: Sequence[str]) -> list[str]:
    """Prefix with ``stdbuf -oL`` when available so the log grows line by line."""
    stdbuf = shutil.which("stdbuf")
    return [stdbuf, "-oL", *argv] if stdbuf else list(argv)


async def spawn_logged(argv: Sequence[str], log_file: Path) -> asyncio.subprocess.Process:
    """Start ``argv`` with stdout and stderr appended to ``log_file``."""
    log.info("spawn: %s >> %s", shlex.join(argv), log_file)
    try:
        with open(log_file, "ab") as out:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=out,
                stderr=asyncio.subprocess.STDOUT,
            )
    except OSError as e:
        raise ExternalToolError(f"Failed to start {argv[0]}: {e}") from e


def check_exit(argv: Sequence[str], returncode: int) -> None:
    if returncode != 0:
        raise ExternalToolError(f"{Path(argv[0]).name} exited with status {returncode}")
