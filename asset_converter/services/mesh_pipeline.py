# asset_converter/services/mesh_pipeline.py
"""
OBJ -> compressed GLB, one operation per stage.

    decode -> center -> deduplicate -> weld -> prune -> flatten
           -> texture-resize -> texture-recompress -> serialize
           -> geometry-compress -> write

Geometry compression is delegated to gltfpack when it is installed; without
it the serialized GLB is written as-is.
"""
from __future__ import annotations
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional
import logging, shlex, shutil, subprocess, tempfile

import trimesh
from PIL import Image

from .staged import Stage, StageObserver, run_stages

log = logging.getLogger(__name__)


@dataclass
class MeshWork:
    source: Path
    dest: Path
    max_texture_size: int = 4096
    jpeg_quality: int = 85
    gltfpack_bin: Optional[str] = "gltfpack"
    gltfpack_args: str = "-cc"
    gltfpack_timeout: float = 600.0
    scene: Optional[trimesh.Scene] = None
    payload: Optional[bytes] = None


def _meshes(scene: trimesh.Scene):
    return [g for g in scene.geometry.values() if isinstance(g, trimesh.Trimesh)]


def decode(work: MeshWork) -> MeshWork:
    scene = trimesh.load(str(work.source), force="scene")
    if not _meshes(scene):
        raise ValueError(f"no mesh geometry in {work.source.name}")
    work.scene = scene
    return work


def center(work: MeshWork) -> MeshWork:
    work.scene.apply_translation(-work.scene.centroid)
    return work


def deduplicate(work: MeshWork) -> MeshWork:
    """Point every instance at one copy of each identical mesh."""
    scene = work.scene
    canonical: dict[str, str] = {}
    seen: dict = {}
    for name, geom in scene.geometry.items():
        if not isinstance(geom, trimesh.Trimesh):
            canonical[name] = name
            continue
        # identical geometry with a different material is not a duplicate
        key = (geom.identifier_hash, id(getattr(geom.visual, "material", None)))
        canonical[name] = seen.setdefault(key, name)

    out = trimesh.Scene()
    for node in scene.graph.nodes_geometry:
        transform, geom_name = scene.graph[node]
        name = canonical[geom_name]
        if name in out.geometry:
            out.graph.update(frame_to=node, matrix=transform, geometry=name)
        else:
            out.add_geometry(scene.geometry[name], geom_name=name, node_name=node, transform=transform)
    work.scene = out
    return work


def weld(work: MeshWork) -> MeshWork:
    for mesh in _meshes(work.scene):
        mesh.merge_vertices()
    return work


def prune(work: MeshWork) -> MeshWork:
    for mesh in _meshes(work.scene):
        mesh.update_faces(mesh.nondegenerate_faces())
        mesh.update_faces(mesh.unique_faces())
        mesh.remove_unreferenced_vertices()
    return work


def flatten(work: MeshWork) -> MeshWork:
    # bake node transforms into vertices so the output graph is one level deep
    work.scene = trimesh.Scene(work.scene.dump())
    return work


_TEXTURE_ATTRS = ("image", "baseColorTexture")


def _texture_slots(mesh: trimesh.Trimesh):
    visual = getattr(mesh, "visual", None)
    material = getattr(visual, "material", None)
    if material is None:
        return
    for attr in _TEXTURE_ATTRS:
        img = getattr(material, attr, None)
        if isinstance(img, Image.Image):
            yield material, attr, img


def texture_resize(work: MeshWork) -> MeshWork:
    limit = work.max_texture_size
    for mesh in _meshes(work.scene):
        for _, _, img in _texture_slots(mesh):
            if max(img.size) > limit:
                img.thumbnail((limit, limit))
    return work


def _as_jpeg(img: Image.Image, quality: int) -> Image.Image:
    buf = BytesIO()
    img.convert("RGB").save(buf, format="JPEG", quality=quality, optimize=True)
    buf.seek(0)
    out = Image.open(buf)
    out.load()
    return out


def texture_recompress(work: MeshWork) -> MeshWork:
    """Re-encode opaque textures as JPEG; the GLB exporter keeps JPEG bytes as-is."""
    for mesh in _meshes(work.scene):
        for material, attr, img in list(_texture_slots(mesh)):
            if img.format == "JPEG" or "A" in img.getbands() or img.mode == "P":
                continue
            setattr(material, attr, _as_jpeg(img, work.jpeg_quality))
    return work


def serialize(work: MeshWork) -> MeshWork:
    work.payload = work.scene.export(file_type="glb")
    return work


def geometry_compress(work: MeshWork) -> MeshWork:
    exe = shutil.which(work.gltfpack_bin) if work.gltfpack_bin else None
    if exe is None:
        log.info("gltfpack not available (%s); writing uncompressed geometry", work.gltfpack_bin)
        return work
    with tempfile.TemporaryDirectory(prefix="glb-") as tmp:
        src, dst = Path(tmp) / "in.glb", Path(tmp) / "out.glb"
        src.write_bytes(work.payload)
        cmd = [exe, "-i", str(src), "-o", str(dst), *shlex.split(work.gltfpack_args)]
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=work.gltfpack_timeout)
        if result.returncode != 0:
            raise RuntimeError(f"gltfpack exited with status {result.returncode}: {result.stderr.strip()}")
        work.payload = dst.read_bytes()
    return work


def write(work: MeshWork) -> MeshWork:
    work.dest.write_bytes(work.payload)
    return work


MESH_STAGES: tuple[Stage, ...] = (
    Stage("decode", decode),
    Stage("center", center),
    Stage("deduplicate", deduplicate),
    Stage("weld", weld),
    Stage("prune", prune),
    Stage("flatten", flatten),
    Stage("texture-resize", texture_resize),
    Stage("texture-recompress", texture_recompress),
    Stage("serialize", serialize),
    Stage("geometry-compress", geometry_compress),
    Stage("write", write),
)


def convert_obj_to_glb(
    source: Path,
    dest: Path,
    on_stage: Optional[StageObserver] = None,
    max_texture_size: int = 4096,
    jpeg_quality: int = 85,
    gltfpack_bin: Optional[str] = "gltfpack",
    gltfpack_args: str = "-cc",
) -> Path:
    work = MeshWork(
        source=Path(source), dest=Path(dest),
        max_texture_size=max_texture_size, jpeg_quality=jpeg_quality,
        gltfpack_bin=gltfpack_bin, gltfpack_args=gltfpack_args,
    )
    run_stages(MESH_STAGES, work, on_stage)
    return work.dest
