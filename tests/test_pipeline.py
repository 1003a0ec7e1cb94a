import json
import os
import threading
import time

import pytest
from PIL import Image

from errors import EncodeError, ManifestIOError
from manifest import ManifestStore
from pipeline import FileState, ImagePipeline, ProcessResult, compression_percent
from utils import normalize_name


def wait_for(predicate, timeout=10.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def pipeline(config):
    p = ImagePipeline(config)
    p.ensure_directories()
    p.store.load()
    yield p
    p.stop()


@pytest.mark.parametrize(
    "filename,expected",
    [
        ("My Cool Meme!!.PNG", "my-cool-meme"),
        ("--Hello__World--.jpg", "hello-world"),
        ("already-normal.webp", "already-normal"),
        ("ÜBER café 2024.gif", "ber-caf-2024"),
        ("!!!.png", "image"),
    ],
)
def test_normalize_name(filename, expected):
    assert normalize_name(filename) == expected


def test_compression_percent():
    assert compression_percent(1000, 400) == 60.0
    assert compression_percent(3, 2) == 33.3
    assert compression_percent(0, 0) == 0.0


def test_process_image_builds_record_and_derivatives(pipeline, config, make_image):
    src = make_image(config.input_dir / "My Cool Meme!!.PNG", size=(2000, 1000))

    result = pipeline.process_image(src)

    assert result.state is FileState.PROCESSED
    record = result.record
    assert record.name == "my-cool-meme"
    assert record.filename == "my-cool-meme.jpg"
    assert record.extension == "jpg"
    assert record.url == "/images/my-cool-meme.jpg"
    assert record.thumbnail_url == "/thumbnails/my-cool-meme.jpg"
    assert record.original_size == src.stat().st_size
    assert record.dimensions.original.width == 2000
    assert (record.dimensions.optimized.width, record.dimensions.optimized.height) == (1024, 512)
    assert (record.dimensions.thumbnail.width, record.dimensions.thumbnail.height) == (400, 200)
    assert record.compression == compression_percent(record.original_size, record.optimized_size)

    optimized = config.optimized_dir / "my-cool-meme.jpg"
    thumbnail = config.thumbnail_dir / "my-cool-meme.jpg"
    assert record.optimized_size == optimized.stat().st_size
    assert record.thumbnail_size == thumbnail.stat().st_size
    with Image.open(optimized) as im:
        assert im.size == (1024, 512)
    with Image.open(thumbnail) as im:
        assert im.size == (400, 200)

    on_disk = json.loads(config.manifest_path.read_text())
    assert [r["name"] for r in on_disk] == ["my-cool-meme"]
    gallery = json.loads(config.gallery_config_path.read_text())
    assert gallery[0]["thumbnailUrl"] == "/thumbnails/my-cool-meme.jpg"
    assert pipeline.state_of(src) is FileState.PROCESSED


def test_small_source_is_not_upscaled(pipeline, config, make_image):
    src = make_image(config.input_dir / "tiny.png", size=(120, 90))
    record = pipeline.process_image(src).record
    assert (record.dimensions.optimized.width, record.dimensions.optimized.height) == (120, 90)
    assert (record.dimensions.thumbnail.width, record.dimensions.thumbnail.height) == (120, 90)


def test_unchanged_file_is_skipped(pipeline, config, make_image):
    src = make_image(config.input_dir / "cat.jpg")
    first = pipeline.process_image(src)
    manifest_before = config.manifest_path.read_text()

    second = pipeline.process_image(src)

    assert second.state is FileState.SKIPPED
    assert second.record == first.record
    assert pipeline.store.get("cat").processed == first.record.processed
    assert config.manifest_path.read_text() == manifest_before


def test_newer_file_is_reprocessed(pipeline, config, make_image):
    src = make_image(config.input_dir / "cat.jpg", size=(800, 600))
    first = pipeline.process_image(src)

    make_image(src, size=(600, 800))
    later = time.time() + 60
    os.utime(src, (later, later))
    second = pipeline.process_image(src)

    assert second.state is FileState.PROCESSED
    assert second.record.processed > first.record.processed
    assert second.record.dimensions.original.height == 800
    assert len(pipeline.store) == 1


def test_failed_file_leaves_previous_record(pipeline, config, make_image):
    src = make_image(config.input_dir / "cat.png", size=(300, 200))
    good = pipeline.process_image(src).record

    src.write_bytes(b"\x89PNG broken")
    later = time.time() + 60
    os.utime(src, (later, later))
    result = pipeline.process_image(src)

    assert result.state is FileState.FAILED
    assert result.record is None
    assert "cat.png" in result.error
    assert pipeline.store.get("cat") == good
    reloaded = ManifestStore(config.manifest_path)
    assert reloaded.load()["cat"] == good


def test_batch_isolates_corrupt_file(pipeline, config, make_image):
    for name in ("a.png", "b.jpg", "d.webp"):
        make_image(config.input_dir / name, size=(640, 480))
    (config.input_dir / "c.jpg").write_bytes(b"corrupted" * 100)
    (config.input_dir / "notes.txt").write_text("ignored")

    results = pipeline.process_existing()

    by_name = {r.name: r for r in results}
    assert set(by_name) == {"a", "b", "c", "d"}
    assert by_name["c"].state is FileState.FAILED
    assert all(by_name[n].state is FileState.PROCESSED for n in ("a", "b", "d"))
    assert pipeline.store.names() == {"a", "b", "d"}
    assert {r["name"] for r in json.loads(config.manifest_path.read_text())} == {"a", "b", "d"}


def test_second_sweep_skips_everything(pipeline, config, make_image):
    for name in ("a.png", "b.png"):
        make_image(config.input_dir / name, size=(200, 200))
    pipeline.process_existing()

    results = pipeline.process_existing()
    assert [r.state for r in results] == [FileState.SKIPPED, FileState.SKIPPED]


def test_manifest_write_failure_keeps_processing(pipeline, config, make_image, monkeypatch):
    def broken_persist():
        raise ManifestIOError("disk full")

    monkeypatch.setattr(pipeline.store, "persist", broken_persist)
    pipeline.store.dirty = False
    src = make_image(config.input_dir / "cat.png", size=(100, 100))

    result = pipeline.process_image(src)

    assert result.state is FileState.PROCESSED
    assert pipeline.store.get("cat") is not None
    assert pipeline.store.dirty
    assert not pipeline.healthy

    monkeypatch.undo()
    assert pipeline.save()
    assert pipeline.healthy
    assert json.loads(config.manifest_path.read_text())[0]["name"] == "cat"


def test_same_path_is_never_processed_concurrently(pipeline, config, make_image, monkeypatch):
    src = make_image(config.input_dir / "cat.png", size=(50, 50))
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow_process(path, force=False):
        calls.append(path)
        started.set()
        release.wait(5)
        return ProcessResult(path, "cat", FileState.PROCESSED)

    monkeypatch.setattr(pipeline, "process_image", slow_process)
    first = pipeline.submit(src)
    assert started.wait(5)
    assert pipeline.submit(src) is None

    release.set()
    first.result(timeout=5)
    assert len(calls) == 1


def test_reconcile_prunes_orphans(pipeline, config, make_image):
    keep = make_image(config.input_dir / "keep.png", size=(100, 100))
    gone = make_image(config.input_dir / "gone.png", size=(100, 100))
    pipeline.process_image(keep)
    pipeline.process_image(gone)
    gone.unlink()

    assert pipeline.reconcile() == ["gone"]
    assert pipeline.store.names() == {"keep"}
    assert not (config.optimized_dir / "gone.jpg").exists()
    assert not (config.thumbnail_dir / "gone.jpg").exists()
    assert (config.optimized_dir / "keep.jpg").exists()


def test_start_sweeps_then_watches(config, make_image):
    make_image(config.input_dir / "existing.png", size=(500, 500))
    pipeline = ImagePipeline(config)
    try:
        results = pipeline.start()
        assert [r.name for r in results] == ["existing"]

        make_image(config.input_dir / "Fresh Upload.jpg", size=(1600, 1200))
        assert wait_for(lambda: "fresh-upload" in pipeline.store)
        record = pipeline.store.get("fresh-upload")
        assert (record.dimensions.optimized.width, record.dimensions.optimized.height) == (1024, 768)
        assert wait_for(lambda: "fresh-upload" in config.manifest_path.read_text())
    finally:
        pipeline.stop()

    # nothing is picked up after stop()
    make_image(config.input_dir / "late.png", size=(50, 50))
    time.sleep(0.5)
    assert "late" not in pipeline.store


def test_start_with_prune_orphans(config, make_image):
    config = config.model_copy(update={"prune_orphans": True})
    store = ManifestStore(config.manifest_path)
    first = ImagePipeline(config, store=store)
    first.ensure_directories()
    src = make_image(config.input_dir / "old.png", size=(60, 60))
    first.process_image(src)
    first.stop()
    src.unlink()

    second = ImagePipeline(config)
    try:
        second.start()
        assert "old" not in second.store
    finally:
        second.stop()


def test_source_rewritten_during_processing_is_redone(pipeline, config, make_image, monkeypatch):
    src = make_image(config.input_dir / "cat.png", size=(800, 600))
    real_resize = pipeline.encoder.resize
    rewrites = []

    def rewrite_then_resize(source, box, destination):
        if not rewrites:
            make_image(src, size=(300, 900))
            now = time.time()
            os.utime(src, (now, now))
            rewrites.append(src)
        return real_resize(source, box, destination)

    monkeypatch.setattr(pipeline.encoder, "resize", rewrite_then_resize)
    first = pipeline.process_image(src)
    assert first.record.dimensions.original.width == 800

    second = pipeline.process_image(src)
    assert second.state is FileState.PROCESSED
    original = second.record.dimensions.original
    assert (original.width, original.height) == (300, 900)


def test_thumbnail_failure_keeps_previous_derivatives(pipeline, config, make_image, monkeypatch):
    src = make_image(config.input_dir / "cat.png", size=(1600, 1200))
    good = pipeline.process_image(src).record
    optimized = config.optimized_dir / "cat.jpg"
    before = optimized.read_bytes()

    make_image(src, size=(900, 900))
    later = time.time() + 60
    os.utime(src, (later, later))
    real_resize = pipeline.encoder.resize

    def fail_on_thumbnail(source, box, destination):
        if box == config.thumbnail_box:
            raise EncodeError(source, destination, "disk full")
        return real_resize(source, box, destination)

    monkeypatch.setattr(pipeline.encoder, "resize", fail_on_thumbnail)
    result = pipeline.process_image(src)

    assert result.state is FileState.FAILED
    assert optimized.read_bytes() == before
    assert pipeline.store.get("cat") == good
    assert sorted(p.name for p in config.optimized_dir.iterdir()) == ["cat.jpg"]
    assert sorted(p.name for p in config.thumbnail_dir.iterdir()) == ["cat.jpg"]


def test_file_arriving_during_startup_sweep_is_processed(config, make_image, monkeypatch):
    for i in range(2):
        make_image(config.input_dir / f"old{i}.png", size=(200, 200))
    pipeline = ImagePipeline(config)
    real_process = pipeline.process_image
    dropped = []

    def drop_file_then_process(path, force=False):
        if not dropped:
            dropped.append(make_image(config.input_dir / "during-sweep.png", size=(200, 200)))
        return real_process(path, force)

    monkeypatch.setattr(pipeline, "process_image", drop_file_then_process)
    try:
        pipeline.start()
        assert wait_for(lambda: "during-sweep" in pipeline.store)
        assert pipeline.store.names() == {"old0", "old1", "during-sweep"}
    finally:
        pipeline.stop()


def test_pipeline_without_gallery_config(config, make_image):
    config = config.model_copy(update={"gallery_config_path": None})
    pipeline = ImagePipeline(config)
    pipeline.ensure_directories()
    try:
        pipeline.process_image(make_image(config.input_dir / "cat.png", size=(100, 100)))
        assert pipeline.healthy
        assert config.manifest_path.exists()
    finally:
        pipeline.stop()
