# backend/autocrop/config.py
import os
from dataclasses import dataclass
from typing import Optional, Tuple


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# --- STORAGE ---
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
STORAGE_DIR = os.environ.get("STORAGE_DIR", os.path.join(BASE_DIR, "storage"))

# --- UPLOADS ---
MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)
MAX_UPLOAD_FILES = _env_int("MAX_UPLOAD_FILES", 50)
ALLOWED_EXTENSIONS = (".jpeg", ".jpg", ".png", ".gif", ".webp")

# --- CROP ---
TRIM_TOLERANCE = _env_int("TRIM_TOLERANCE", 20)
FALLBACK_THRESHOLD = _env_int("FALLBACK_THRESHOLD", 250)
MAX_PIXELS = _env_int("MAX_PIXELS", 40_000_000)

# --- WORKERS / NETWORK ---
MAX_WORKERS = _env_int("MAX_WORKERS", 2)
# 0 disables the timeout (requests waits forever)
FETCH_TIMEOUT = _env_int("FETCH_TIMEOUT", 30)

# --- CLEANUP (seconds) ---
JOB_TTL = _env_int("JOB_TTL", 3600)
BATCH_TTL = _env_int("BATCH_TTL", 3600)
DOWNLOAD_CLEANUP_DELAY = _env_int("DOWNLOAD_CLEANUP_DELAY", 30)
CLEANUP_ON_SHUTDOWN = _env_bool("CLEANUP_ON_SHUTDOWN", False)

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "").rstrip("/")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


@dataclass(frozen=True)
class CropConfig:
    """Tunables for one crop decision.

    background_color / tolerance drive the primary trim, fallback_threshold
    drives the per-pixel bounds scan, max_pixels guards raw decoding.
    """
    background_color: Tuple[int, int, int] = (255, 255, 255)
    tolerance: int = 20
    fallback_threshold: int = 250
    max_pixels: int = 40_000_000

    def with_tolerance(self, tolerance: Optional[int]) -> "CropConfig":
        if tolerance is None:
            return self
        return CropConfig(
            background_color=self.background_color,
            tolerance=tolerance,
            fallback_threshold=self.fallback_threshold,
            max_pixels=self.max_pixels,
        )


def crop_config() -> CropConfig:
    return CropConfig(
        tolerance=TRIM_TOLERANCE,
        fallback_threshold=FALLBACK_THRESHOLD,
        max_pixels=MAX_PIXELS,
    )


def fetch_timeout() -> Optional[int]:
    return FETCH_TIMEOUT if FETCH_TIMEOUT > 0 else None
