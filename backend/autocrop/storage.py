# backend/autocrop/storage.py
import logging
import os
import re
import shutil

from .errors import StorageError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def ensure_dir(path: str) -> str:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageError(f"cannot create directory {path}: {e}") from e
    return path


def write_bytes(path: str, data: bytes) -> str:
    """Write data to path; path only ever appears holding the complete data."""
    tmp_path = path + ".part"
    try:
        with open(tmp_path, "wb") as fh:
            fh.write(data)
        os.replace(tmp_path, path)
    except OSError as e:
        remove_path(tmp_path)
        raise StorageError(f"cannot write {path}: {e}") from e
    return path


def remove_path(path: str) -> bool:
    """Delete a file or directory tree. Best effort: never raises."""
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning("cleanup of %s failed: %s", path, e)
        return False


def safe_filename(name: str, default: str = "image") -> str:
    """Basename stripped to a conservative character set."""
    name = os.path.basename((name or "").replace("\\", "/"))
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name or default
