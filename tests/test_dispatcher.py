"""Handlers end to end: input discovery, external tools, staged meshes."""

import asyncio
import time

import ifcopenshell
import ifcopenshell.api
import numpy as np
import pytest
import trimesh

from asset_converter.core.errors import InputCardinalityError
from asset_converter.core.models import JobState, JobType
from asset_converter.services.dispatcher import (
    INPUT_EXTENSIONS,
    ConversionDispatcher,
    ensure_output_dir,
    find_single_input,
)
from asset_converter.services.mesh_pipeline import MESH_STAGES
from asset_converter.services.staged import stage_progress

from test_staged import CUBE_OBJ


def run_job(registry, job_id, job_type):
    async def scenario():
        job = registry.register(job_id, job_type)
        await registry.wait_idle()
        return job

    return asyncio.run(scenario())


class TestInputDiscovery:
    def test_exactly_one_match(self, make_input):
        d = make_input("cloud", "a", "scan.LAZ", "notes.txt", "preview.png")
        assert find_single_input(d, INPUT_EXTENSIONS[JobType.cloud]).name == "scan.LAZ"

    def test_zero_matches(self, make_input):
        d = make_input("cloud", "a", "notes.txt")
        with pytest.raises(InputCardinalityError, match="No input file"):
            find_single_input(d, INPUT_EXTENSIONS[JobType.cloud])

    def test_two_matches(self, make_input):
        d = make_input("cloud", "a", "one.las", "two.laz")
        with pytest.raises(InputCardinalityError, match="Multiple input files"):
            find_single_input(d, INPUT_EXTENSIONS[JobType.cloud])

    def test_subdirectories_are_not_searched(self, make_input):
        d = make_input("model", "a")
        (d / "out").mkdir()
        (d / "out" / "old.obj").write_text("v 0 0 0\n")
        with pytest.raises(InputCardinalityError):
            find_single_input(d, INPUT_EXTENSIONS[JobType.model])

    def test_output_dir_is_idempotent(self, tmp_path):
        out = tmp_path / "x" / "out"
        assert ensure_output_dir(out) == out
        assert ensure_output_dir(out) == out

    def test_every_type_has_a_handler(self, settings):
        assert set(ConversionDispatcher(settings).handlers) == set(JobType)


@pytest.mark.parametrize("job_type,files", [
    (JobType.cloud, []),
    (JobType.cloud, ["a.las", "b.las"]),
    (JobType.model, ["a.obj", "b.OBJ"]),
    (JobType.splat, []),
    (JobType.ifc, ["a.ifc", "b.ifczip"]),
])
def test_bad_cardinality_leaves_no_trace(settings, make_input, make_tool, recording_registry, job_type, files):
    marker = make_tool("marker-tool", f'touch "{settings.BASE_PATH}/spawned"\n')
    settings.POINTCLOUD_BIN = marker
    settings.SPLAT_BIN = marker
    d = make_input(job_type.value, "bad", *files)
    registry = recording_registry(ConversionDispatcher(settings))

    job = run_job(registry, "bad", job_type)

    assert job.state is JobState.error
    assert "input file" in job.error
    assert not job.output_dir().exists()
    assert not job.log_file().exists()
    assert not (d.parents[1] / "spawned").exists()


class TestPointCloud:
    def test_final_progress_captured_before_done(self, settings, make_input, make_tool, recording_registry):
        settings.POINTCLOUD_BIN = make_tool("Schwarzwald", (
            'echo "args: $@"\n'
            'echo "[10%] Processed 100 nodes"\n'
            "sleep 0.3\n"
            'echo "[55%] Processed 550 nodes"\n'
            "exit 0\n"
        ))
        make_input("cloud", "pc1", "scan.laz")
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "pc1", JobType.cloud)

        assert job.state is JobState.done
        assert registry.writes[-1] == 55.0
        assert registry.writes == sorted(registry.writes)
        assert job.output_dir().is_dir()
        log_text = job.log_file().read_text()
        assert "--tiler" in log_text
        assert f"-i {job.input_dir() / 'scan.laz'}" in log_text
        assert f"-o {job.output_dir()}" in log_text

    def test_error_marker_fails_without_waiting_for_exit(self, settings, make_input, make_tool, recording_registry):
        settings.POINTCLOUD_BIN = make_tool("Schwarzwald", (
            'echo "[10%] Processed 100 nodes"\n'
            'echo "ERROR: failed to read point record"\n'
            "sleep 1.5\n"
            "exit 0\n"
        ))
        make_input("cloud", "pc2", "scan.las")
        registry = recording_registry(ConversionDispatcher(settings))

        async def scenario():
            job = registry.register("pc2", JobType.cloud)
            t0 = time.monotonic()
            while job.state is JobState.processing and time.monotonic() - t0 < 1.2:
                await asyncio.sleep(0.02)
            seen_at = time.monotonic() - t0
            state_then = job.state
            await registry.wait_idle()
            return job, state_then, seen_at

        job, state_then, seen_at = asyncio.run(scenario())
        assert state_then is JobState.error
        assert seen_at < 1.2
        # the clean exit afterwards does not resurrect the job
        assert job.state is JobState.error
        assert "failed to read point record" in job.error
        assert job.progress == 10.0 or job.progress == 0.0

    def test_nonzero_exit_is_error(self, settings, make_input, make_tool, recording_registry):
        settings.POINTCLOUD_BIN = make_tool("Schwarzwald", 'echo "[20%] Processed"\nexit 3\n')
        make_input("cloud", "pc3", "scan.las")
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "pc3", JobType.cloud)

        assert job.state is JobState.error
        assert "status 3" in job.error

    def test_missing_binary_is_error(self, settings, make_input, tmp_path, recording_registry):
        settings.POINTCLOUD_BIN = str(tmp_path / "no-such-indexer")
        make_input("cloud", "pc4", "scan.las")
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "pc4", JobType.cloud)

        assert job.state is JobState.error


class TestMesh:
    def test_staged_progress_reaches_100_before_done(self, settings, make_input, recording_registry):
        make_input("model", "m1", "cube.obj", content=CUBE_OBJ)
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "m1", JobType.model)

        assert job.state is JobState.done, job.error
        n = len(MESH_STAGES)
        assert registry.writes == [stage_progress(i, n) for i in range(1, n + 1)]
        glb = job.output_dir() / "cube.compressed.glb"
        assert glb.read_bytes()[:4] == b"glTF"

    def test_configured_gltfpack_compresses_output(self, settings, make_input, make_tool, recording_registry):
        settings.GLTFPACK_BIN = make_tool("gltfpack", 'cp "$2" "$4"\nprintf packed >> "$4"\n')
        settings.GLTFPACK_ARGS = "-cc"
        make_input("model", "m3", "cube.obj", content=CUBE_OBJ)
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "m3", JobType.model)

        assert job.state is JobState.done, job.error
        data = (job.output_dir() / "cube.compressed.glb").read_bytes()
        assert data[:4] == b"glTF" and data.endswith(b"packed")

    def test_broken_obj_is_pipeline_error(self, settings, make_input, recording_registry):
        make_input("model", "m2", "broken.obj", content="# no vertices\n")
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "m2", JobType.model)

        assert job.state is JobState.error
        assert job.error.startswith("decode:")


class TestSplat:
    def test_converter_runs_with_fixed_rotation(self, settings, make_input, make_tool, recording_registry):
        settings.SPLAT_BIN = make_tool("splat-transform", (
            'echo "args: $@"\n'
            'for last; do :; done\n'
            'echo splat > "$last"\n'
        ))
        make_input("splat", "s1", "garden.ply")
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "s1", JobType.splat)

        assert job.state is JobState.done, job.error
        assert registry.writes == []
        assert (job.output_dir() / "garden.compressed.ply").read_text().strip() == "splat"
        assert "-r 0,0,180" in job.log_file().read_text()

    def test_converter_failure(self, settings, make_input, make_tool, recording_registry):
        settings.SPLAT_BIN = make_tool("splat-transform", "echo 'unsupported format' >&2\nexit 2\n")
        make_input("splat", "s2", "garden.spz")
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "s2", JobType.splat)

        assert job.state is JobState.error
        assert "unsupported format" in job.log_file().read_text()


class TestIfc:
    def test_unreadable_model_is_error(self, settings, make_input, recording_registry):
        make_input("ifc", "i1", "tower.ifc", content="not an ifc file")
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "i1", JobType.ifc)

        assert job.state is JobState.error
        assert registry.writes == []

    def test_wall_model_converts_to_glb(self, settings, make_input, recording_registry):
        d = make_input("ifc", "i2")
        write_wall_ifc(d / "wall.ifc")
        registry = recording_registry(ConversionDispatcher(settings))

        job = run_job(registry, "i2", JobType.ifc)

        assert job.state is JobState.done, job.error
        assert registry.writes == []
        glb = job.output_dir() / "wall.glb"
        assert glb.read_bytes()[:4] == b"glTF"
        scene = trimesh.load(str(glb), force="scene")
        assert len(scene.geometry) == 1
        # 5 x 0.2 x 3 wall, whatever the length unit
        extents = np.sort(scene.extents)
        assert np.allclose(extents / extents[-1], [0.04, 0.6, 1.0], atol=1e-3)


def write_wall_ifc(path):
    """One extruded IfcWall in an otherwise empty IFC4 project."""
    model = ifcopenshell.file(schema="IFC4")
    run = ifcopenshell.api.run
    run("root.create_entity", model, ifc_class="IfcProject", name="Test project")
    run("unit.assign_unit", model)
    model3d = run("context.add_context", model, context_type="Model")
    body = run(
        "context.add_context", model, context_type="Model",
        context_identifier="Body", target_view="MODEL_VIEW", parent=model3d,
    )
    wall = run("root.create_entity", model, ifc_class="IfcWall", name="Wall")
    run("geometry.edit_object_placement", model, product=wall)
    rep = run("geometry.add_wall_representation", model, context=body, length=5, height=3, thickness=0.2)
    run("geometry.assign_representation", model, product=wall, representation=rep)
    model.write(str(path))
    return path
