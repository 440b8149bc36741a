"""Shared fixtures: in-memory image factories and a tmp storage coordinator.

backend/ is put on sys.path so ``import autocrop`` works without installing.
"""

import io
import os
import sys

import pytest
from PIL import Image

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
BACKEND_DIR = os.path.join(PROJECT_ROOT, "backend")

if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

from autocrop.batch import BatchCoordinator  # noqa: E402
from autocrop.config import CropConfig  # noqa: E402
from autocrop.engine import CropDecisionEngine  # noqa: E402


def encode_image(image, fmt="PNG"):
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def make_image():
    """Factory: white canvas with optional filled boxes -> encoded bytes.

    boxes are (left, top, right, bottom, color) with right/bottom exclusive.
    """

    def _make(size=(100, 100), background=(255, 255, 255), boxes=(), fmt="PNG", mode="RGB"):
        image = Image.new(mode, size, background)
        for left, top, right, bottom, color in boxes:
            image.paste(color, (left, top, right, bottom))
        return encode_image(image, fmt)

    return _make


@pytest.fixture
def dot_image(make_image):
    """Scenario image: 100x100 white with one black pixel at (50, 50)."""
    return make_image(boxes=[(50, 50, 51, 51, (0, 0, 0))])


@pytest.fixture
def blank_image(make_image):
    return make_image()


@pytest.fixture
def coordinator_factory(tmp_path):
    def _factory(fetch=None, max_workers=1, config=None):
        kwargs = {"max_workers": max_workers}
        if fetch is not None:
            kwargs["fetch"] = fetch
        coord = BatchCoordinator(CropDecisionEngine(config or CropConfig()), str(tmp_path / "storage"), **kwargs)
        coord.ensure_dirs()
        return coord

    return _factory
