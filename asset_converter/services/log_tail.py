# asset_converter/services/log_tail.py
from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence
import asyncio, contextlib, logging, re

from asset_converter.core.models import Job, JobState

log = logging.getLogger(__name__)


class ProgressSink(Protocol):
    def set_progress(self, job: Job, value: float) -> None: ...
    def fail(self, job: Job, message: str) -> None: ...


_MULTIPLIERS = {"K": 1e3, "M": 1e6, "B": 1e9, "G": 1e9}
_NUMBER = re.compile(r"^([0-9]*\.?[0-9]+)([KMBG]?)$", re.IGNORECASE)


def normalize_count(token: str) -> float:
    """
    '12.5M' -> 12_500_000.0, '1,234' -> 1234.0, '3 k' -> 3000.0
    Raises ValueError for anything that does not look like a count.
    """
    cleaned = re.sub(r"[,_\s]", "", token or "")
    m = _NUMBER.match(cleaned)
    if not m:
        raise ValueError(f"not a count: {token!r}")
    value = float(m.group(1))
    suffix = m.group(2).upper()
    return value * _MULTIPLIERS.get(suffix, 1.0)


def compute_progress(current: float, total: float) -> float:
    if total <= 0:
        raise ValueError("total must be positive")
    pct = round(current / total * 100, 2)
    return min(max(pct, 0.0), 100.0)


@dataclass(frozen=True)
class LogPattern:
    """A progress line. ``regex`` needs a ``current`` group; ``total`` defaults to 100."""
    regex: re.Pattern

    def parse(self, line: str) -> Optional[float]:
        m = self.regex.search(line)
        if not m:
            return None
        groups = m.groupdict()
        current = normalize_count(groups["current"])
        total = normalize_count(groups["total"]) if groups.get("total") else 100.0
        return compute_progress(current, total)


_COUNT = r"[0-9][0-9.,_]*(?:\s?[KMBG](?![A-Za-z]))?"

# Schwarzwald: "[12:01:03] indexing: 12.3M / 45.6M points"
INDEXING = LogPattern(re.compile(rf"\]\s*(?i:indexing):\s*(?P<current>{_COUNT})\s*/\s*(?P<total>{_COUNT})"))
# Generic: "[55%] Processed 1234 nodes"
PERCENT = LogPattern(re.compile(r"\[\s*(?P<current>[0-9]+(?:\.[0-9]+)?)\s*%\s*\]"))

POINTCLOUD_PATTERNS: tuple[LogPattern, ...] = (INDEXING, PERCENT)
ERROR_MARKERS: tuple[str, ...] = ("ERROR", "Error:", "error:", "terminate called", "Segmentation fault")


def scan_log(
    text: str,
    patterns: Sequence[LogPattern],
    error_markers: Iterable[str] = ERROR_MARKERS,
    complete: bool = False,
) -> tuple[Optional[float], Optional[str]]:
    """
    Returns (progress, error_line). ``progress`` comes from the last line that
    any pattern matches; ``error_line`` is the first line carrying a marker.

    A trailing segment without a newline may still be mid-write and is
    skipped unless ``complete`` says the writer has exited.
    """
    markers = tuple(error_markers)
    if not complete and not text.endswith("\n"):
        text = text.rpartition("\n")[0]
    last_match: Optional[tuple[LogPattern, str]] = None
    for line in text.splitlines():
        if any(mk in line for mk in markers):
            return None, line.strip()
        for pat in patterns:
            if pat.regex.search(line):
                last_match = (pat, line)
                break
    if last_match is None:
        return None, None
    pat, line = last_match
    return pat.parse(line), None


class LogTailPoller:
    """
    Background task that re-reads a growing log and pushes progress into the
    sink. Started once the subprocess is spawned; ``stop()`` ends the loop and
    does one last read so the final value lands before the job settles.
    """

    def __init__(
        self,
        job: Job,
        log_path: Path,
        sink: ProgressSink,
        patterns: Sequence[LogPattern] = POINTCLOUD_PATTERNS,
        interval: float = 0.25,
        error_markers: Iterable[str] = ERROR_MARKERS,
    ):
        self.job = job
        self.log_path = Path(log_path)
        self.sink = sink
        self.patterns = tuple(patterns)
        self.interval = interval
        self.error_markers = tuple(error_markers)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "LogTailPoller":
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=f"tail:{self.job.id}")
        return self

    async def _loop(self) -> None:
        while self.poll_once():
            await asyncio.sleep(self.interval)

    def poll_once(self, complete: bool = False) -> bool:
        """One tick. Returns False once polling should end."""
        if self.job.state is not JobState.processing:
            return False
        try:
            text = self.log_path.read_text(encoding="utf-8", errors="replace")
            progress, error_line = scan_log(text, self.patterns, self.error_markers, complete)
        except (OSError, ValueError, ZeroDivisionError) as e:
            log.debug("tail skip id=%s: %s", self.job.id, e)
            return True

        if error_line is not None:
            log.warning("error marker in log id=%s: %s", self.job.id, error_line)
            self.sink.fail(self.job, f"External tool reported an error: {error_line}")
            return False
        if progress is not None:
            self.sink.set_progress(self.job, progress)
        return True

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self.poll_once(complete=True)
