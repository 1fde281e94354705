# asset_converter/services/ifc_convert.py
from __future__ import annotations
from pathlib import Path
import logging, multiprocessing

import numpy as np
import trimesh

log = logging.getLogger(__name__)


def _geom_settings():
    import ifcopenshell.geom  # Local import; the native module is slow to load

    settings = ifcopenshell.geom.settings()
    settings.set("use-world-coords", True)
    return settings


def ifc_to_scene(source: Path) -> trimesh.Scene:
    import ifcopenshell
    import ifcopenshell.geom

    model = ifcopenshell.open(Path(source).as_posix())
    iterator = ifcopenshell.geom.iterator(_geom_settings(), model, max(1, multiprocessing.cpu_count() - 1))
    scene = trimesh.Scene()
    if not iterator.initialize():
        raise ValueError(f"no geometry in {Path(source).name}")

    while True:
        shape = iterator.get()
        verts = np.asarray(shape.geometry.verts, dtype=np.float64).reshape(-1, 3)
        faces = np.asarray(shape.geometry.faces, dtype=np.int64).reshape(-1, 3)
        if len(faces):
            mesh = trimesh.Trimesh(vertices=verts, faces=faces, process=False)
            scene.add_geometry(mesh, node_name=shape.guid, geom_name=shape.guid)
        if not iterator.next():
            break

    log.info("ifc %s: %d elements with geometry (schema=%s)", Path(source).name, len(scene.geometry), model.schema)
    return scene


def convert_ifc_to_glb(source: Path, dest: Path) -> Path:
    scene = ifc_to_scene(source)
    if not scene.geometry:
        raise ValueError(f"no tessellated elements in {Path(source).name}")
    Path(dest).write_bytes(scene.export(file_type="glb"))
    return Path(dest)
