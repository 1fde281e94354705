# asset_converter/services/dispatcher.py
from __future__ import annotations
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable
import asyncio, logging

from asset_converter.config import Settings
from asset_converter.core.errors import InputCardinalityError, OutputDirectoryError, PipelineStageError
from asset_converter.core.models import Job, JobType
from .external import check_exit, line_buffered, spawn_logged
from .ifc_convert import convert_ifc_to_glb
from .log_tail import POINTCLOUD_PATTERNS, LogTailPoller, ProgressSink
from .mesh_pipeline import convert_obj_to_glb
from .staged import stage_progress

log = logging.getLogger(__name__)

INPUT_EXTENSIONS: Dict[JobType, frozenset[str]] = {
    JobType.cloud: frozenset({".las", ".laz"}),
    JobType.model: frozenset({".obj"}),
    JobType.splat: frozenset({".ply", ".splat", ".ksplat", ".spz"}),
    JobType.ifc: frozenset({".ifc", ".ifczip"}),
}


# ---------- common handler contract ----------
def find_single_input(input_dir: Path, extensions: Iterable[str], job_id: str | None = None) -> Path:
    exts = {e.lower() for e in extensions}
    matches = sorted(p for p in Path(input_dir).iterdir() if p.is_file() and p.suffix.lower() in exts)
    if len(matches) > 1:
        raise InputCardinalityError("Multiple input files found", job_id=job_id)
    if not matches:
        raise InputCardinalityError("No input file found", job_id=job_id)
    return matches[0]


def ensure_output_dir(path: Path, job_id: str | None = None) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OutputDirectoryError(f"Failed to create output directory: {e}", job_id=job_id) from e
    return path


def prepare(job: Job) -> tuple[Path, Path]:
    """Locate the single input, then create the output dir (in that order)."""
    src = find_single_input(job.input_dir(), INPUT_EXTENSIONS[job.type], job.id)
    out = ensure_output_dir(job.output_dir(), job.id)
    return src, out


Handler = Callable[[Job, ProgressSink], Awaitable[None]]


class ConversionDispatcher:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.handlers: Dict[JobType, Handler] = {
            JobType.cloud: self.handle_cloud,
            JobType.model: self.handle_model,
            JobType.splat: self.handle_splat,
            JobType.ifc: self.handle_ifc,
        }
        missing = set(JobType) - set(self.handlers)
        if missing:
            raise RuntimeError(f"no handler for job types: {sorted(t.value for t in missing)}")

    async def dispatch(self, job: Job, sink: ProgressSink) -> None:
        await self.handlers[job.type](job, sink)

    # -------- point cloud: external indexer, log-tail progress --------
    async def handle_cloud(self, job: Job, sink: ProgressSink) -> None:
        src, out = prepare(job)
        s = self.settings
        argv = [
            s.POINTCLOUD_BIN, "--tiler",
            "--cache-size", s.POINTCLOUD_CACHE_SIZE,
            "--output-format", s.POINTCLOUD_OUTPUT_FORMAT,
            "-i", str(src), "-o", str(out),
        ]
        proc = await spawn_logged(line_buffered(argv), job.log_file())
        poller = LogTailPoller(job, job.log_file(), sink, POINTCLOUD_PATTERNS, interval=s.poll_interval).start()
        try:
            returncode = await proc.wait()
        finally:
            await poller.stop()
        check_exit(argv, returncode)

    # -------- mesh: in-process staged pipeline --------
    async def handle_model(self, job: Job, sink: ProgressSink) -> None:
        src, out = prepare(job)
        dest = out / f"{src.stem}.compressed.glb"

        def on_stage(index: int, total: int, name: str) -> None:
            sink.set_progress(job, stage_progress(index, total))

        s = self.settings
        log.info("Converting %s to GLB...", src)
        await asyncio.to_thread(
            convert_obj_to_glb, src, dest, on_stage,
            s.MESH_MAX_TEXTURE_SIZE, s.MESH_JPEG_QUALITY, s.GLTFPACK_BIN or None, s.GLTFPACK_ARGS,
        )

    # -------- splat: external converter, no incremental progress --------
    async def handle_splat(self, job: Job, sink: ProgressSink) -> None:
        src, out = prepare(job)
        argv = [
            self.settings.SPLAT_BIN, "-w", str(src),
            "-r", self.settings.SPLAT_ROTATION,
            str(out / f"{src.stem}.compressed.ply"),
        ]
        proc = await spawn_logged(argv, job.log_file())
        check_exit(argv, await proc.wait())

    # -------- structural model: single in-process call --------
    async def handle_ifc(self, job: Job, sink: ProgressSink) -> None:
        src, out = prepare(job)
        try:
            await asyncio.to_thread(convert_ifc_to_glb, src, out / f"{src.stem}.glb")
        except Exception as e:
            raise PipelineStageError(str(e) or e.__class__.__name__, stage="ifc", job_id=job.id) from e
