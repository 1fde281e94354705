"""Shared fixtures: isolated settings, input directories, and a controllable dispatcher."""

import asyncio
import stat
import threading
from pathlib import Path

import pytest

from asset_converter.config import Settings
from asset_converter.core.errors import ExternalToolError
from asset_converter.core.registry import JobRegistry


class GatedDispatcher:
    """Holds each job in PROCESSING until the test releases its gate."""

    def __init__(self):
        self.gates = {}
        self.failing = set()
        self.dispatched = []

    def gate(self, job_id: str) -> threading.Event:
        return self.gates.setdefault(job_id, threading.Event())

    async def dispatch(self, job, sink):
        self.dispatched.append(job.id)
        gate = self.gate(job.id)
        while not gate.is_set():
            await asyncio.sleep(0.005)
        if job.id in self.failing:
            raise ExternalToolError("tool exited with status 1", job_id=job.id)


class RecordingRegistry(JobRegistry):
    """Registry that remembers every accepted progress write."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writes = []

    def set_progress(self, job, value):
        super().set_progress(job, value)
        if job.state.value == "PROCESSING":
            self.writes.append(job.progress)


@pytest.fixture
def settings(tmp_path):
    s = Settings()
    s.BASE_PATH = str(tmp_path / "uploads")
    s.POLL_INTERVAL_MS = 100
    s.STRICT_JOB_IDS = True
    s.GLTFPACK_BIN = ""
    s.OPERATOR_TOKEN = None
    s.RESTART_EXIT_CODE = 1
    return s


@pytest.fixture
def make_input(settings):
    """make_input("cloud", "job1", "scan.las") -> input dir with those files."""

    def _make(job_type: str, job_id: str, *files: str, content: str = "x") -> Path:
        d = Path(settings.BASE_PATH) / job_type / job_id
        d.mkdir(parents=True, exist_ok=True)
        for name in files:
            (d / name).write_text(content)
        return d

    return _make


@pytest.fixture
def make_tool(tmp_path):
    """Write an executable shell script that stands in for an external converter."""

    def _make(name: str, body: str) -> str:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def gated():
    return GatedDispatcher()



@pytest.fixture
def recording_registry(settings):
    def _make(dispatcher) -> RecordingRegistry:
        return RecordingRegistry(settings.BASE_PATH, dispatcher, strict_ids=settings.STRICT_JOB_IDS)

    return _make
