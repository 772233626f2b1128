"""Tests for idempotent publishing."""

import pytest

from controller.src.errors import SinkError
from controller.src.pipeline.artifacts import ArtifactStore
from controller.src.pipeline.publisher import Publisher
from controller.src.pipeline.sinks import DirectorySink, create_sink

class FlakySink(DirectorySink):
    """Directory sink that rejects some keys."""

    def __init__(self, root, reject):
        super().__init__(root)
        self.reject = set(reject)
        self.puts = []

    def put(self, key, path, digest):
        self.puts.append(key)
        if key in self.reject:
            raise SinkError(f"403 Forbidden for {key}")
        super().put(key, path, digest)

@pytest.fixture
def artifacts(tmp_path):
    staging = tmp_path / "staging"
    (staging / "android").mkdir(parents=True)
    (staging / "android" / "app.apk").write_bytes(b"apk")
    (staging / "android" / "mapping.txt").write_bytes(b"map")
    (staging / "musl").write_bytes(b"elf")

    store = ArtifactStore(tmp_path / "store")
    store.register("android-arm64", staging / "android", stage="build")
    store.register("musl-armv7-latest", staging / "musl", stage="build")
    return store

def test_object_keys(artifacts):
    publisher = Publisher(prefix="/geph5/")
    keys = [key for ref in artifacts.list() for key, _ in publisher.objects(ref)]
    assert keys == [
        "geph5/android-arm64/app.apk",
        "geph5/android-arm64/mapping.txt",
        "geph5/musl-armv7-latest/musl-armv7-latest",
    ]

def test_second_publish_transfers_nothing(artifacts, tmp_path, make_context):
    sink = DirectorySink(tmp_path / "sink")
    publisher = Publisher()

    first = publisher.publish(artifacts, sink, make_context())
    assert len(first.transferred) == 3
    assert first.ok

    second = publisher.publish(artifacts, sink, make_context())
    assert second.transferred == []
    assert len(second.unchanged) == 3

def test_changed_object_is_the_only_transfer(artifacts, tmp_path, make_context):
    sink = DirectorySink(tmp_path / "sink")
    publisher = Publisher()
    publisher.publish(artifacts, sink, make_context())

    (artifacts.get("android-arm64").path / "app.apk").write_bytes(b"apk v2")

    result = publisher.publish(artifacts, sink, make_context())
    assert result.transferred == ["android-arm64/app.apk"]
    assert (tmp_path / "sink" / "android-arm64" / "app.apk").read_bytes() == b"apk v2"

def test_failed_object_does_not_stop_the_rest(artifacts, tmp_path, make_context):
    sink = FlakySink(tmp_path / "sink", reject=["android-arm64/app.apk"])

    result = Publisher().publish(artifacts, sink, make_context())

    assert not result.ok
    assert list(result.failed) == ["android-arm64/app.apk"]
    assert "403" in result.failed["android-arm64/app.apk"]
    assert result.transferred == ["android-arm64/mapping.txt", "musl-armv7-latest/musl-armv7-latest"]

def test_errors_are_masked(artifacts, tmp_path, make_context):
    sink = FlakySink(tmp_path / "sink", reject=["android-arm64/mapping.txt"])
    context = make_context(secrets={"KEY": "Forbidden"})

    result = Publisher().publish(artifacts, sink, context)
    assert "Forbidden" not in result.failed["android-arm64/mapping.txt"]
    assert "***" in result.failed["android-arm64/mapping.txt"]

def test_create_sink():
    assert isinstance(create_sink({"type": "directory", "path": "/tmp/x"}), DirectorySink)
    with pytest.raises(SinkError, match="Unknown sink type"):
        create_sink({"type": "ftp"})
    with pytest.raises(SinkError, match="endpoint and a bucket"):
        create_sink({"type": "http"})
