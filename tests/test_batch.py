import os
import time
import zipfile
from unittest.mock import patch

import pytest

from autocrop.batch import BatchIdMinter, ImageSource, build_archive, normalize_sources
from autocrop.errors import FetchError, StorageError, ValidationError


def fetch_from(images, delays=None):
    def fetch(url):
        if delays:
            time.sleep(delays.get(url, 0))
        if url not in images:
            raise FetchError(f"cannot fetch {url}: connection refused")
        return images[url]
    return fetch


def url_sources(*urls):
    return [ImageSource(identifier=u, url=u) for u in urls]


def test_one_corrupt_item_does_not_affect_the_others(coordinator_factory, dot_image, make_image):
    images = {
        "http://img.test/a.png": dot_image,
        "http://img.test/b.png": b"corrupt",
        "http://img.test/c.png": make_image(boxes=[(10, 10, 20, 20, (0, 0, 0))]),
        "http://img.test/d.png": dot_image,
    }
    coord = coordinator_factory(fetch=fetch_from(images))

    result = coord.run_batch(url_sources(*images), preserve_format=False)

    assert result.total == 4
    assert result.success_count == 3
    assert result.error_count == 1
    assert result.items[1].success is False
    with zipfile.ZipFile(result.archive_path) as zf:
        assert sorted(zf.namelist()) == ["cropped-a.png", "cropped-c.png", "cropped-d.png"]


def test_results_keep_input_order_with_parallel_workers(coordinator_factory, dot_image):
    urls = [f"http://img.test/{i}.png" for i in range(6)]
    images = {u: dot_image for u in urls}
    # earlier items finish last
    delays = {u: 0.05 * (len(urls) - i) for i, u in enumerate(urls)}
    coord = coordinator_factory(fetch=fetch_from(images, delays), max_workers=4)

    result = coord.run_batch(url_sources(*urls), preserve_format=False)

    assert [item.identifier for item in result.items] == urls
    assert [item.output_name for item in result.items] == [f"cropped-{i}.png" for i in range(6)]


def test_unreachable_url_is_reported_per_item(coordinator_factory, dot_image, blank_image):
    images = {"http://img.test/a.png": dot_image, "http://img.test/c.png": blank_image}
    coord = coordinator_factory(fetch=fetch_from(images))
    sources = url_sources("http://img.test/a.png", "http://unreachable.test/b.png", "http://img.test/c.png")

    result = coord.run_batch(sources, preserve_format=False)
    summary = result.to_dict()

    assert (summary["total"], summary["successful"], summary["failed"]) == (3, 2, 1)
    failed = result.items[1]
    assert failed.message
    assert failed.artifact_path is None
    assert "processedName" not in summary["files"][1]
    assert result.first_success.identifier == "http://img.test/a.png"


def test_successful_items_write_one_file_each(coordinator_factory, dot_image, blank_image):
    images = {"http://img.test/a.png": dot_image, "http://img.test/b.png": blank_image}
    coord = coordinator_factory(fetch=fetch_from(images))

    result = coord.run_batch(url_sources(*images), preserve_format=False)

    assert sorted(os.listdir(coord.batch_dir(result.batch_id))) == ["cropped-a.png", "cropped-b.png"]
    assert [item.outcome for item in result.items] == ["cropped", "passthrough"]
    assert (result.items[1].width, result.items[1].height) == (100, 100)


def test_no_archive_when_nothing_succeeds(coordinator_factory):
    coord = coordinator_factory(fetch=fetch_from({}))

    result = coord.run_batch(url_sources("http://img.test/missing.png"), preserve_format=False)

    assert result.success_count == 0
    assert result.archive_path is None
    assert result.to_dict()["zipFile"] is None
    assert not os.path.exists(coord.archive_path(result.batch_id))


def test_upload_temp_files_are_removed(coordinator_factory, tmp_path, dot_image):
    coord = coordinator_factory()
    good = tmp_path / "good.png"
    bad = tmp_path / "bad.png"
    good.write_bytes(dot_image)
    bad.write_bytes(b"nope")
    sources = [
        ImageSource(identifier="good.png", path=str(good)),
        ImageSource(identifier="bad.png", path=str(bad)),
    ]

    result = coord.run_batch(sources, preserve_format=True)

    assert [item.success for item in result.items] == [True, False]
    assert not good.exists()
    assert not bad.exists()
    assert result.items[0].output_name == "cropped-good.png"


def test_duplicate_names_get_index_prefix(coordinator_factory, dot_image):
    coord = coordinator_factory(fetch=fetch_from({"http://a.test/x.png": dot_image, "http://b.test/x.png": dot_image}))

    result = coord.run_batch(url_sources("http://a.test/x.png", "http://b.test/x.png"), preserve_format=False)

    assert [item.output_name for item in result.items] == ["cropped-x.png", "cropped-2-x.png"]


def test_invalid_source_is_recorded_not_raised(coordinator_factory, dot_image):
    coord = coordinator_factory(fetch=fetch_from({"http://img.test/a.png": dot_image}))
    sources = [ImageSource(identifier="item-1", invalid_reason="missing image url")] + url_sources("http://img.test/a.png")

    result = coord.run_batch(sources, preserve_format=False)

    assert result.items[0].success is False
    assert "missing image url" in result.items[0].message
    assert result.items[1].success is True


def test_progress_milestones(coordinator_factory, dot_image):
    seen = []
    coord = coordinator_factory(fetch=fetch_from({"http://img.test/a.png": dot_image}))

    coord.run_batch(url_sources("http://img.test/a.png"), preserve_format=False, progress=seen.append)

    assert seen == [25, 50, 75]


def test_batch_aborts_when_directory_cannot_be_created(coordinator_factory):
    coord = coordinator_factory()

    with patch("autocrop.batch.ensure_dir", side_effect=StorageError("disk full")):
        with pytest.raises(StorageError):
            coord.run_batch(url_sources("http://img.test/a.png"))


def test_cleanup_batch_removes_archive_and_directory(coordinator_factory, dot_image):
    coord = coordinator_factory(fetch=fetch_from({"http://img.test/a.png": dot_image}))
    result = coord.run_batch(url_sources("http://img.test/a.png"), preserve_format=False)

    coord.cleanup_batch(result.batch_id)
    coord.cleanup_batch(result.batch_id)

    assert not os.path.exists(result.archive_path)
    assert not os.path.exists(coord.batch_dir(result.batch_id))


def test_build_archive_is_flat(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "one.png").write_bytes(b"1")
    (src / "two.png").write_bytes(b"2")

    path = build_archive(str(src), str(tmp_path / "out.zip"))

    with zipfile.ZipFile(path) as zf:
        assert zf.namelist() == ["one.png", "two.png"]
    assert not os.path.exists(path + ".part")


def test_batch_ids_strictly_increase_under_a_frozen_clock():
    mint = BatchIdMinter(clock=lambda: 1700000000.0)

    ids = [mint() for _ in range(5)]

    assert ids == [str(1700000000000 + i) for i in range(5)]


class TestNormalizeSources:
    def test_bare_string(self):
        [source] = normalize_sources("https://img.test/a.png")
        assert source.url == "https://img.test/a.png"

    def test_wrapped_object(self):
        [source] = normalize_sources({"imageUrl": "https://img.test/a.png"})
        assert source.url == "https://img.test/a.png"

    def test_nested_object(self):
        [source] = normalize_sources({"image": {"url": "https://img.test/a.png"}})
        assert source.url == "https://img.test/a.png"

    def test_explicit_list_keeps_invalid_entries(self):
        sources = normalize_sources(["https://img.test/a.png", {"name": "no url"}, {"url": "https://img.test/b.png"}])

        assert [s.url for s in sources] == ["https://img.test/a.png", None, "https://img.test/b.png"]
        assert sources[1].invalid_reason == "missing image url"
        assert sources[1].identifier == "item-2"

    def test_list_under_key(self):
        sources = normalize_sources({"urls": ["https://img.test/a.png", "https://img.test/b.png"]})
        assert len(sources) == 2

    def test_unsupported_scheme(self):
        [source] = normalize_sources("ftp://img.test/a.png")
        assert source.invalid_reason.startswith("unsupported url")

    @pytest.mark.parametrize("payload", [None, [], {"images": []}])
    def test_nothing_to_process(self, payload):
        with pytest.raises(ValidationError):
            normalize_sources(payload)


class FullDiskFile:
    """File object that writes a few bytes of cropped-b outputs, then runs out of space."""

    def __init__(self, path, mode="r"):
        self.path = path
        self.fh = open(path, mode)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.fh.close()

    def write(self, data):
        if "cropped-b" in os.path.basename(self.path):
            self.fh.write(data[:8])
            raise OSError(28, "No space left on device")
        return self.fh.write(data)


def test_failed_write_leaves_nothing_for_the_archive(coordinator_factory, dot_image):
    images = {"http://img.test/a.png": dot_image, "http://img.test/b.png": dot_image}
    coord = coordinator_factory(fetch=fetch_from(images))

    with patch("autocrop.storage.open", FullDiskFile, create=True):
        result = coord.run_batch(url_sources(*images), preserve_format=False)

    assert [item.success for item in result.items] == [True, False]
    assert "No space left" in result.items[1].message
    assert os.listdir(coord.batch_dir(result.batch_id)) == ["cropped-a.png"]
    with zipfile.ZipFile(result.archive_path) as zf:
        assert zf.namelist() == ["cropped-a.png"]


def test_output_extension_follows_the_encoded_format(coordinator_factory, tmp_path, make_image):
    jpeg = make_image(boxes=[(32, 32, 72, 72, (0, 0, 0))], fmt="JPEG")
    misnamed = tmp_path / "x.png"
    named = tmp_path / "x.jpg"
    misnamed.write_bytes(jpeg)
    named.write_bytes(jpeg)
    coord = coordinator_factory()

    result = coord.run_batch(
        [ImageSource(identifier="x.png", path=str(misnamed)), ImageSource(identifier="x.jpg", path=str(named))],
        preserve_format=True,
    )

    assert [item.output_name for item in result.items] == ["cropped-1-x.jpg", "cropped-x.jpg"]
    assert sorted(os.listdir(coord.batch_dir(result.batch_id))) == ["cropped-1-x.jpg", "cropped-x.jpg"]
