# asset_converter/config.py
from functools import lru_cache
from pathlib import Path
from typing import Optional
import os
from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]

# Load in ascending precedence; later overrides earlier
load_dotenv(ROOT / ".env")
load_dotenv(ROOT / ".env.local", override=True)
load_dotenv(ROOT / "asset_converter" / ".env", override=True)
load_dotenv(ROOT / "asset_converter" / ".env.local", override=True)


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    # Server
    PORT: int = int(os.getenv("PORT", "7999"))
    BASE_PATH: str = os.getenv("BASE_PATH", "/app/uploads")

    # CORS
    ALLOWED_ORIGINS: list[str] = [
        s for s in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",") if s
    ]

    # Progress polling (log-tail)
    POLL_INTERVAL_MS: int = int(os.getenv("POLL_INTERVAL_MS", "250"))

    # Point cloud indexer
    POINTCLOUD_BIN: str = os.getenv("POINTCLOUD_BIN", "Schwarzwald")
    POINTCLOUD_CACHE_SIZE: str = os.getenv("POINTCLOUD_CACHE_SIZE", "256MB")
    POINTCLOUD_OUTPUT_FORMAT: str = os.getenv("POINTCLOUD_OUTPUT_FORMAT", "ENTWINE_LAZ")

    # Gaussian splats
    SPLAT_BIN: str = os.getenv("SPLAT_BIN", "splat-transform")
    SPLAT_ROTATION: str = os.getenv("SPLAT_ROTATION", "0,0,180")

    # Meshes
    MESH_MAX_TEXTURE_SIZE: int = int(os.getenv("MESH_MAX_TEXTURE_SIZE", "4096"))
    MESH_JPEG_QUALITY: int = int(os.getenv("MESH_JPEG_QUALITY", "85"))
    # empty disables geometry compression
    GLTFPACK_BIN: str = os.getenv("GLTFPACK_BIN", "gltfpack")
    GLTFPACK_ARGS: str = os.getenv("GLTFPACK_ARGS", "-cc")

    # Job ids are used as path segments
    STRICT_JOB_IDS: bool = _flag("STRICT_JOB_IDS", "true")

    # Operator
    OPERATOR_TOKEN: Optional[str] = os.getenv("OPERATOR_TOKEN") or None
    RESTART_EXIT_CODE: int = int(os.getenv("RESTART_EXIT_CODE", "1"))

    @property
    def poll_interval(self) -> float:
        """Log-tail interval in seconds, clamped to 100..500 ms."""
        return min(max(self.POLL_INTERVAL_MS, 100), 500) / 1000.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
