# backend/autocrop/engine.py
"""Crop decision for a single image.

Three ordered attempts: the codec trim, the manual bounds scan when trim left
the size unchanged, and a passthrough re-encode when the scan finds no content.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from . import codec
from .bounds import Bounds, detect_bounds
from .config import CropConfig
from .errors import DecodeError, EncodeError

logger = logging.getLogger(__name__)

Size = Tuple[int, int]


@dataclass(frozen=True)
class Cropped:
    data: bytes
    format: str
    bounds: Bounds
    size: Size
    original_size: Size
    stage: str  # "trim" | "bounds"

    kind = "cropped"


@dataclass(frozen=True)
class Unchanged:
    data: bytes
    format: str
    size: Size

    kind = "unchanged"


@dataclass(frozen=True)
class PassthroughCopy:
    data: bytes
    format: str
    size: Size

    kind = "passthrough"


@dataclass(frozen=True)
class Failed:
    reason: str

    kind = "failed"


CropOutcome = Union[Cropped, Unchanged, PassthroughCopy, Failed]


class CropDecisionEngine:
    def __init__(self, config: Optional[CropConfig] = None):
        self.config = config or CropConfig()

    def process(self, data: bytes, preserve_format: bool = True) -> CropOutcome:
        """Crop one encoded image. Never raises for codec or I/O failures.

        preserve_format keeps the source encoding (uploads); otherwise the
        output is always the lossless format (remote URL sources).
        """
        try:
            return self._decide(data, preserve_format)
        except (DecodeError, EncodeError) as e:
            return Failed(reason=str(e))
        except (OSError, ValueError) as e:
            return Failed(reason=f"{type(e).__name__}: {e}")

    def _decide(self, data: bytes, preserve_format: bool) -> CropOutcome:
        cfg = self.config
        image = codec.open_image(data, max_pixels=cfg.max_pixels)
        original_size = image.size
        out_format = codec.normalize_format(image.format) if preserve_format else codec.LOSSLESS_FORMAT

        trim_box = codec.trim_bounds(image, background=cfg.background_color, tolerance=cfg.tolerance)
        trimmed = codec.extract(image, trim_box)
        if trimmed.size != original_size:
            logger.debug("trim cropped %s -> %s", original_size, trimmed.size)
            return Cropped(
                data=codec.encode(trimmed, out_format),
                format=out_format,
                bounds=trim_box,
                size=trimmed.size,
                original_size=original_size,
                stage="trim",
            )

        buffer = codec.decode_raw(image)
        bounds = detect_bounds(buffer, threshold=cfg.fallback_threshold)
        del buffer

        if bounds is None:
            logger.debug("no content found in %s image, passing through", original_size)
            return PassthroughCopy(data=codec.encode(image, out_format), format=out_format, size=original_size)

        if bounds.covers(*original_size):
            return Unchanged(data=codec.encode(image, out_format), format=out_format, size=original_size)

        logger.debug("fallback bounds %s on %s image", bounds.to_dict(), original_size)
        cropped = codec.extract(image, bounds)
        return Cropped(
            data=codec.encode(cropped, out_format),
            format=out_format,
            bounds=bounds,
            size=cropped.size,
            original_size=original_size,
            stage="bounds",
        )
