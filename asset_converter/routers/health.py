# asset_converter/routers/health.py
from fastapi import APIRouter, Request
from pathlib import Path
import shutil

router = APIRouter()

@router.get("/")
def root():
    return {"status": "OK"}

@router.get("/health/env")
def env_preview(request: Request):
    settings = request.app.state.settings
    base = Path(settings.BASE_PATH)

    return {
        "status": "ok",
        # server
        "PORT": settings.PORT,
        "BASE_PATH": str(base.resolve()),
        "BASE_PATH_EXISTS": base.is_dir(),
        "ALLOWED_ORIGINS": settings.ALLOWED_ORIGINS,
        "POLL_INTERVAL_MS": int(settings.poll_interval * 1000),
        "STRICT_JOB_IDS": settings.STRICT_JOB_IDS,
        # external tools (no secrets)
        "TOOLS": {
            "pointcloud": {"bin": settings.POINTCLOUD_BIN, "resolved": shutil.which(settings.POINTCLOUD_BIN)},
            "splat": {"bin": settings.SPLAT_BIN, "resolved": shutil.which(settings.SPLAT_BIN)},
            "gltfpack": {"bin": settings.GLTFPACK_BIN, "resolved": shutil.which(settings.GLTFPACK_BIN) if settings.GLTFPACK_BIN else None},
        },
        "OPERATOR_RESTART_ENABLED": bool(settings.OPERATOR_TOKEN),
    }
