# backend/autocrop/batch.py
"""Batch processing: many images in, one ordered result (and archive) out."""
import logging
import os
import threading
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from . import codec
from .engine import CropDecisionEngine, CropOutcome, Failed
from .errors import CropServiceError, StorageError, ValidationError
from .fetch import fetch_bytes
from .storage import ensure_dir, remove_path, safe_filename, write_bytes

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "cropped-images-"
ARCHIVE_SUFFIX = ".zip"
OUTPUT_PREFIX = "cropped-"

URL_KEYS = ("url", "imageUrl", "image_url", "image", "src", "source")
LIST_KEYS = ("images", "urls", "items")

# progress milestones reported while a single item runs
PROGRESS_RETRIEVING = 25
PROGRESS_RETRIEVED = 50
PROGRESS_CROPPING = 75

ProgressCallback = Callable[[int], None]
UrlFor = Callable[[str, str], str]


@dataclass
class ImageSource:
    """One input image: an uploaded temp file or a remote URL."""
    identifier: str
    path: Optional[str] = None
    url: Optional[str] = None
    invalid_reason: Optional[str] = None


@dataclass
class BatchItemResult:
    identifier: str
    success: bool
    message: str
    artifact_path: Optional[str] = None
    output_name: Optional[str] = None
    outcome: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    original_width: Optional[int] = None
    original_height: Optional[int] = None

    def to_dict(self, batch_id: str, url_for: Optional[UrlFor] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "originalName": self.identifier,
            "success": self.success,
            "message": self.message,
        }
        if self.success:
            data.update({
                "processedName": self.output_name,
                "outcome": self.outcome,
                "width": self.width,
                "height": self.height,
                "originalWidth": self.original_width,
                "originalHeight": self.original_height,
            })
            if url_for is not None:
                data["url"] = url_for(batch_id, self.output_name)
        return data


@dataclass
class BatchResult:
    batch_id: str
    items: List[BatchItemResult] = field(default_factory=list)
    archive_path: Optional[str] = None

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def error_count(self) -> int:
        return sum(1 for item in self.items if not item.success)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def first_success(self) -> Optional[BatchItemResult]:
        return next((item for item in self.items if item.success), None)

    @property
    def archive_name(self) -> Optional[str]:
        return os.path.basename(self.archive_path) if self.archive_path else None

    def to_dict(self, url_for: Optional[UrlFor] = None) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "success": self.success_count,
            "error": self.error_count,
            "total": self.total,
            "successful": self.success_count,
            "failed": self.error_count,
            "files": [item.to_dict(self.batch_id, url_for) for item in self.items],
            "zipFile": self.archive_name,
        }


class BatchIdMinter:
    """Time-derived ids (milliseconds), strictly increasing within the process."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            self._last = max(int(self._clock() * 1000), self._last + 1)
            return str(self._last)


def _resolve_url(entry) -> Optional[str]:
    if isinstance(entry, str):
        return entry.strip() or None
    if isinstance(entry, dict):
        for key in URL_KEYS:
            value = entry.get(key)
            if isinstance(value, (str, dict)):
                url = _resolve_url(value)
                if url:
                    return url
    return None


def _source_from_entry(index: int, entry) -> ImageSource:
    url = _resolve_url(entry)
    if url is None:
        return ImageSource(identifier=f"item-{index + 1}", invalid_reason="missing image url")
    if urlparse(url).scheme.lower() not in ("http", "https"):
        return ImageSource(identifier=url, invalid_reason=f"unsupported url: {url}")
    return ImageSource(identifier=url, url=url)


def normalize_sources(payload) -> List[ImageSource]:
    """Turn a URL payload into sources.

    Accepts a bare URL string, an object wrapping one source, a list of
    either, or an object holding such a list under images/urls/items.
    Entries without a usable URL are kept as invalid sources so the batch
    reports them next to the valid ones.
    """
    if payload is None:
        raise ValidationError("no image source given")
    if isinstance(payload, dict):
        entries = None
        for key in LIST_KEYS:
            if isinstance(payload.get(key), list):
                entries = payload[key]
                break
        if entries is None:
            entries = [payload]
    elif isinstance(payload, list):
        entries = payload
    else:
        entries = [payload]

    if not entries:
        raise ValidationError("no image source given")
    return [_source_from_entry(i, entry) for i, entry in enumerate(entries)]


def build_archive(src_dir: str, zip_path: str) -> str:
    """Zip every file of src_dir (flat) into zip_path.

    The archive is written under a temporary name and renamed when complete,
    so an existing zip_path is always a finished archive.
    """
    tmp_path = zip_path + ".part"
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
            for name in sorted(os.listdir(src_dir)):
                full = os.path.join(src_dir, name)
                if os.path.isfile(full):
                    zf.write(full, arcname=name)
        os.replace(tmp_path, zip_path)
    except OSError as e:
        remove_path(tmp_path)
        raise StorageError(f"cannot build archive {zip_path}: {e}") from e
    return zip_path


def _success_message(outcome: CropOutcome) -> str:
    if outcome.kind == "cropped":
        w, h = outcome.size
        return f"Cropped to {w}x{h}"
    if outcome.kind == "unchanged":
        return "No whitespace border found"
    return "Image is blank, copied unchanged"


class BatchCoordinator:
    def __init__(
        self,
        engine: CropDecisionEngine,
        storage_dir: str,
        fetch: Callable[[str], bytes] = fetch_bytes,
        max_workers: int = 1,
        mint_id: Optional[Callable[[], str]] = None,
    ):
        self.engine = engine
        self.storage_dir = storage_dir
        self.processed_dir = os.path.join(storage_dir, "processed")
        self.upload_dir = os.path.join(storage_dir, "uploads")
        self.fetch = fetch
        self.max_workers = max(1, max_workers)
        self.mint_id = mint_id or BatchIdMinter()

    def ensure_dirs(self):
        ensure_dir(self.processed_dir)
        ensure_dir(self.upload_dir)

    def batch_dir(self, batch_id: str) -> str:
        return os.path.join(self.processed_dir, batch_id)

    def archive_path(self, batch_id: str) -> str:
        return os.path.join(self.processed_dir, f"{ARCHIVE_PREFIX}{batch_id}{ARCHIVE_SUFFIX}")

    def cleanup_batch(self, batch_id: str):
        remove_path(self.archive_path(batch_id))
        remove_path(self.batch_dir(batch_id))
        logger.info("batch %s artifacts removed", batch_id)

    def run_batch(
        self,
        sources: List[ImageSource],
        preserve_format: bool = True,
        make_archive: bool = True,
        progress: Optional[ProgressCallback] = None,
        engine: Optional[CropDecisionEngine] = None,
        batch_id: Optional[str] = None,
    ) -> BatchResult:
        """Crop every source; failures are recorded per item, never raised.

        Only a failure before any item starts (the batch directory cannot be
        created) raises StorageError.
        """
        engine = engine or self.engine
        batch_id = batch_id or self.mint_id()
        batch_dir = ensure_dir(self.batch_dir(batch_id))
        names = self._plan_names(sources, preserve_format)
        planned = frozenset(names)

        def task(index: int) -> BatchItemResult:
            def output_path(fmt: str) -> str:
                return os.path.join(batch_dir, self._name_for_format(names[index], fmt, index, planned))

            return self._process_item(sources[index], output_path, engine, preserve_format, progress)

        if self.max_workers > 1 and len(sources) > 1:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(sources))) as pool:
                items = list(pool.map(task, range(len(sources))))
        else:
            items = [task(i) for i in range(len(sources))]

        result = BatchResult(batch_id=batch_id, items=items)
        if make_archive and result.success_count > 0:
            try:
                result.archive_path = build_archive(batch_dir, self.archive_path(batch_id))
            except StorageError as e:
                logger.warning("batch %s: %s", batch_id, e)

        logger.info(
            "batch %s done: total=%d successful=%d failed=%d archive=%s",
            batch_id, result.total, result.success_count, result.error_count, result.archive_name,
        )
        return result

    def _plan_names(self, sources: List[ImageSource], preserve_format: bool) -> List[str]:
        names, taken = [], set()
        for index, source in enumerate(sources):
            if preserve_format and source.path is not None:
                base = safe_filename(source.identifier)
            else:
                url_name = safe_filename(urlparse(source.url or "").path)
                stem = os.path.splitext(url_name)[0] or "image"
                base = stem + codec.extension_for(codec.LOSSLESS_FORMAT)
            name = f"{OUTPUT_PREFIX}{base}"
            if name in taken:
                name = f"{OUTPUT_PREFIX}{index + 1}-{base}"
            taken.add(name)
            names.append(name)
        return names

    @staticmethod
    def _name_for_format(name: str, fmt: str, index: int, planned: frozenset) -> str:
        """Swap the extension when the encoded format does not match it.

        A renamed output that would clash with another planned name gets the
        item index prefixed, which keeps it unique within the batch.
        """
        stem, ext = os.path.splitext(name)
        if codec.format_for_extension(ext) == fmt:
            return name
        renamed = stem + codec.extension_for(fmt)
        if renamed in planned:
            base = renamed[len(OUTPUT_PREFIX):]
            renamed = f"{OUTPUT_PREFIX}{index + 1}-{base}"
        return renamed

    def _load(self, source: ImageSource, progress: Optional[ProgressCallback]) -> bytes:
        if progress:
            progress(PROGRESS_RETRIEVING)
        if source.path:
            try:
                with open(source.path, "rb") as fh:
                    data = fh.read()
            except OSError as e:
                raise StorageError(f"cannot read upload: {e}") from e
        elif source.url:
            data = self.fetch(source.url)
        else:
            raise ValidationError("missing image source")
        if progress:
            progress(PROGRESS_RETRIEVED)
        return data

    def _process_item(
        self,
        source: ImageSource,
        output_path: Callable[[str], str],
        engine: CropDecisionEngine,
        preserve_format: bool,
        progress: Optional[ProgressCallback],
    ) -> BatchItemResult:
        try:
            if source.invalid_reason:
                raise ValidationError(source.invalid_reason)
            data = self._load(source, progress)

            if progress:
                progress(PROGRESS_CROPPING)
            outcome = engine.process(data, preserve_format=preserve_format)
            del data
            if isinstance(outcome, Failed):
                logger.warning("crop failed for %s: %s", source.identifier, outcome.reason)
                return BatchItemResult(source.identifier, False, f"Processing error: {outcome.reason}")

            path = write_bytes(output_path(outcome.format), outcome.data)
            width, height = outcome.size
            original_width, original_height = getattr(outcome, "original_size", outcome.size)
            return BatchItemResult(
                identifier=source.identifier,
                success=True,
                message=_success_message(outcome),
                artifact_path=path,
                output_name=os.path.basename(path),
                outcome=outcome.kind,
                width=width,
                height=height,
                original_width=original_width,
                original_height=original_height,
            )
        except CropServiceError as e:
            logger.warning("item %s failed: %s", source.identifier, e)
            return BatchItemResult(source.identifier, False, f"Processing error: {e}")
        except Exception as e:
            logger.exception("unexpected failure processing %s", source.identifier)
            return BatchItemResult(source.identifier, False, f"Processing error: {e}")
        finally:
            if source.path:
                remove_path(source.path)
