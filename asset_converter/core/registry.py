# asset_converter/core/registry.py
from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Optional, Protocol
import asyncio, logging, re, threading

from .errors import ConversionError, InvalidJobId, JobNotFound
from .models import Job, JobState, JobType

logger = logging.getLogger("asset_converter.jobs")

_SAFE_ID = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")


class Dispatcher(Protocol):
    async def dispatch(self, job: Job, sink: "JobRegistry") -> None: ...


class JobRegistry:
    """
    In-memory job table plus the single-flight admission gate.

    Entries live for the lifetime of the process. The lock guards the table
    and every state change, because in-process pipelines report progress
    from worker threads.
    """

    def __init__(self, base_path: str | Path, dispatcher: Dispatcher, strict_ids: bool = True):
        self.base_path = Path(base_path)
        self.dispatcher = dispatcher
        self.strict_ids = strict_ids
        self._jobs: Dict[str, Job] = {}
        self._tasks: set[asyncio.Task] = set()
        self._lock = threading.Lock()

    # ---- registration / lookup ----
    def validate_id(self, job_id: str) -> None:
        if self.strict_ids and not _SAFE_ID.fullmatch(job_id or ""):
            raise InvalidJobId(f"Invalid job id: {job_id!r}", job_id=job_id)

    def register(self, job_id: str, job_type: JobType) -> Job:
        self.validate_id(job_id)
        candidate = Job(id=job_id, type=job_type, base_path=self.base_path)
        if not candidate.input_dir().is_dir():
            raise JobNotFound("Not Found", job_id=job_id)

        with self._lock:
            job = self._jobs.setdefault(job_id, candidate)
        if job is candidate:
            logger.info("Job queued id=%s type=%s", job.id, job.type.value)

        self.start(job)
        return job

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound("Not Found", job_id=job_id)
        return job

    def jobs(self) -> List[Job]:
        with self._lock:
            return list(self._jobs.values())

    def queue(self) -> List[Job]:
        return [j for j in self.jobs() if j.state in (JobState.queued, JobState.processing)]

    def progress(self, job_id: str) -> dict:
        job = self.get(job_id)
        if job.state is JobState.queued:
            self.start(job)
        with self._lock:
            return job.progress_view()

    # ---- admission gate ----
    def _processing(self) -> Optional[Job]:
        return next((j for j in self._jobs.values() if j.state is JobState.processing), None)

    def start(self, job: Job) -> bool:
        """Admit ``job`` if it is QUEUED and nothing else is PROCESSING."""
        loop = asyncio.get_running_loop()
        with self._lock:
            if job.state is not JobState.queued:
                return False
            busy = self._processing()
            if busy is not None:
                logger.info("Admission blocked id=%s (processing id=%s)", job.id, busy.id)
                return False
            job.transition(JobState.processing)

        task = loop.create_task(self._run(job), name=f"convert:{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Processing started id=%s type=%s", job.id, job.type.value)
        return True

    async def _run(self, job: Job) -> None:
        try:
            await self.dispatcher.dispatch(job, self)
        except asyncio.CancelledError:
            logger.warning("Process cancelled id=%s", job.id)
            self._settle(job, JobState.error, "Conversion cancelled")
            raise
        except ConversionError as exc:
            logger.warning("Process failed id=%s: %s", job.id, exc)
            self._settle(job, JobState.error, str(exc))
        except Exception as exc:
            logger.exception("Process failed id=%s", job.id)
            self._settle(job, JobState.error, str(exc) or exc.__class__.__name__)
        else:
            self._settle(job, JobState.done)

    def _settle(self, job: Job, state: JobState, message: Optional[str] = None) -> None:
        with self._lock:
            if job.state.terminal:
                logger.debug("Ignoring settlement id=%s to %s; already %s", job.id, state.value, job.state.value)
                return
            if state is JobState.error:
                job.error = message or "Processing failed"
            job.transition(state)
        logger.info("Process finished id=%s state=%s", job.id, state.value)

    # ---- progress sink ----
    def set_progress(self, job: Job, value: float) -> None:
        with self._lock:
            if job.state is not JobState.processing:
                return
            job.progress = min(max(float(value), 0.0), 100.0)

    def fail(self, job: Job, message: str) -> None:
        self._settle(job, JobState.error, message)

    async def wait_idle(self) -> None:
        """Wait until every dispatched conversion has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
