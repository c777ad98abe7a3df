import hashlib
from datetime import datetime, timedelta, timezone

import pytest

import ota_publisher
from ota import (
    BINARY_CONTENT_TYPE,
    FormatViolationError,
    IntegrityError,
    NotFoundError,
    PersistenceConflict,
    ValidationError,
    is_uuid,
    parse_instant,
)
from ota_models import Scope, Status
from ota_publisher import Publisher
from conftest import BASE_URL, HBC_BYTES, Resp, serve_from, write_export

SCOPE = Scope("1.0.0", "android", "production")


class RecordingStore:
    """Object store that only records calls."""

    def __init__(self):
        self.puts = []

    def put(self, path, data, content_type):
        self.puts.append((path, content_type))
        return "https://cdn.test/" + path

    def public_url(self, path):
        return "https://cdn.test/" + path


def make_publisher(objects, store):
    p = Publisher({"quiet": True}, objects, store)
    p._get = serve_from(objects)
    return p


def test_publish_android_end_to_end(tmp_path, objects, store):
    export = write_export(tmp_path / "dist", assets={"fonts/a.ttf": b"font", "icon.png": b"\x89PNG"})
    record = make_publisher(objects, store).publish("android", "production", "1.0.0", export, message="fix")

    assert is_uuid(record.id)
    assert record.status is Status.PUBLISHED
    assert record.message == "fix"
    m = record.manifest
    assert m["id"] == record.id
    assert m["createdAt"] == record.commit_time
    assert parse_instant(m["createdAt"]) is not None
    assert m["runtimeVersion"] == "1.0.0"
    assert m["launchAsset"]["hash"] == "sha256:" + hashlib.sha256(HBC_BYTES).hexdigest()
    assert m["launchAsset"]["contentType"] == BINARY_CONTENT_TYPE
    assert m["launchAsset"]["url"] == "{}/updates/{}/bundle.hbc".format(BASE_URL, record.id)
    assert [a["key"] for a in m["assets"]] == ["bundle", "assets/fonts/a.ttf", "assets/icon.png"]
    assert m["assets"][2]["contentType"] == "image/png"
    assert m["assets"][2]["hash"] == "sha256:" + hashlib.sha256(b"\x89PNG").hexdigest()
    assert m["metadata"] == {} and m["extra"] == {}

    # objects are stored under the update id exactly as read from disk
    assert objects.local_path("updates/{}/bundle.hbc".format(record.id)).read_bytes() == HBC_BYTES
    assert objects.local_path("updates/{}/assets/fonts/a.ttf".format(record.id)).read_bytes() == b"font"
    assert store.latest_published(SCOPE).id == record.id


def test_republish_allocates_new_paths(tmp_path, objects, store):
    export = write_export(tmp_path / "dist")
    p = make_publisher(objects, store)
    first = p.publish("android", "production", "1.0.0", export)
    second = p.publish("android", "production", "1.0.0", export)
    assert first.id != second.id
    assert first.manifest["launchAsset"]["url"] != second.manifest["launchAsset"]["url"]
    assert objects.local_path("updates/{}/bundle.hbc".format(first.id)).exists()


def test_later_publish_wins(tmp_path, objects, store, monkeypatch):
    export = write_export(tmp_path / "dist")
    t0 = datetime(2026, 4, 1, 9, 0, 0, tzinfo=timezone.utc)
    instants = iter([t0, t0 + timedelta(seconds=30)])
    monkeypatch.setattr(ota_publisher, "utc_now", lambda: next(instants))
    p = make_publisher(objects, store)
    p.publish("android", "production", "1.0.0", export)
    later = p.publish("android", "production", "1.0.0", export)
    assert store.latest_published(SCOPE).id == later.id


def test_same_instant_conflicts_and_keeps_first(tmp_path, objects, store, monkeypatch):
    export = write_export(tmp_path / "dist")
    t0 = datetime(2026, 4, 1, 9, 0, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(ota_publisher, "utc_now", lambda: t0)
    p = make_publisher(objects, store)
    first = p.publish("android", "production", "1.0.0", export)
    with pytest.raises(PersistenceConflict):
        p.publish("android", "production", "1.0.0", export)
    assert [r.id for r in store.history(SCOPE)] == [first.id]
    assert store.get(first.id).manifest == first.manifest


def test_android_text_bundle_rejected_before_upload(tmp_path, store):
    export = write_export(tmp_path / "dist", bundle_name="entry-a.js", bundle=b"var x = 1;")
    objects = RecordingStore()
    p = Publisher({"quiet": True}, objects, store)
    with pytest.raises(FormatViolationError) as excinfo:
        p.publish("android", "production", "1.0.0", export)
    assert "entry-a.js" in str(excinfo.value)
    assert objects.puts == []
    assert store.latest_published(SCOPE) is None


def test_ios_text_bundle_allowed(tmp_path, objects, store):
    export = write_export(tmp_path / "dist", platform="ios", bundle_name="entry-a.js", bundle=b"var x = 1;")
    record = make_publisher(objects, store).publish("ios", "staging", "1.0.0", export)
    assert record.manifest["launchAsset"]["url"].endswith("/bundle.js")
    assert record.manifest["launchAsset"]["contentType"] == BINARY_CONTENT_TYPE


def test_missing_bundle_fails_before_upload(tmp_path, store):
    objects = RecordingStore()
    p = Publisher({"quiet": True}, objects, store)
    with pytest.raises(NotFoundError):
        p.publish("android", "production", "1.0.0", tmp_path / "empty")
    assert objects.puts == []


def test_bundle_uploaded_as_opaque_binary(tmp_path, store):
    export = write_export(tmp_path / "dist", assets={"logo.svg": b"<svg/>"})
    objects = RecordingStore()
    p = Publisher({"quiet": True}, objects, store)
    p._get = lambda url, raw=False: Resp(HBC_BYTES)
    record = p.publish("android", "production", "1.0.0", export)
    assert objects.puts[0] == ("updates/{}/bundle.hbc".format(record.id), BINARY_CONTENT_TYPE)
    assert objects.puts[1] == ("updates/{}/assets/logo.svg".format(record.id), "image/svg+xml")


def test_compressed_delivery_aborts_publish(tmp_path, store):
    export = write_export(tmp_path / "dist")
    p = Publisher({"quiet": True}, RecordingStore(), store)
    p._get = lambda url, raw=False: Resp(HBC_BYTES, headers={"Content-Encoding": "gzip"})
    with pytest.raises(IntegrityError) as excinfo:
        p.publish("android", "production", "1.0.0", export)
    assert "curl -I" in str(excinfo.value)
    assert store.latest_published(SCOPE) is None


def test_transcoded_bytes_abort_publish(tmp_path, store):
    export = write_export(tmp_path / "dist")
    p = Publisher({"quiet": True}, RecordingStore(), store)
    p._get = lambda url, raw=False: Resp(HBC_BYTES + b"\n")
    with pytest.raises(IntegrityError):
        p.publish("android", "production", "1.0.0", export)
    assert store.history(SCOPE) == []


@pytest.mark.parametrize(
    "body, encoding",
    [(b"var x;", "br"), (b"\x1f\x8bgzipped", "gzip"), (b"var y;", None)],
)
def test_text_bundle_verification_is_fatal(tmp_path, store, body, encoding):
    export = write_export(tmp_path / "dist", platform="ios", bundle_name="entry-a.js", bundle=b"var x;")
    p = Publisher({"quiet": True}, RecordingStore(), store)
    headers = {"Content-Encoding": encoding} if encoding else {}
    p._get = lambda url, raw=False: Resp(body, headers=headers)
    with pytest.raises(IntegrityError):
        p.publish("ios", "production", "1.0.0", export)
    assert store.history(Scope("1.0.0", "ios", "production")) == []


def test_invalid_channel_and_platform(tmp_path, store):
    p = Publisher({"quiet": True}, RecordingStore(), store)
    with pytest.raises(ValidationError):
        p.publish("android", "nightly", "1.0.0", tmp_path)
    with pytest.raises(ValidationError):
        p.publish("windows", "production", "1.0.0", tmp_path)


def test_run_export_invokes_bundler(tmp_path, monkeypatch):
    project = tmp_path / "app"
    project.mkdir()
    calls = []

    def fake_run(cmd, cwd=None, check=False):
        calls.append((cmd, cwd, check))

    monkeypatch.setattr(ota_publisher.subprocess, "run", fake_run)
    p = Publisher({"project_path": str(project), "quiet": True}, None, None)
    out = p.run_export("ios")
    assert out == project.resolve() / "dist" / "ios"
    cmd, cwd, check = calls[0]
    assert cmd == ["npx", "expo", "export", "--platform", "ios", "--output-dir", str(out)]
    assert cwd == str(project.resolve())
    assert check is True


def test_run_export_failure(tmp_path, monkeypatch):
    (tmp_path / "app").mkdir()

    def fail(cmd, cwd=None, check=False):
        raise ota_publisher.subprocess.CalledProcessError(1, cmd)

    monkeypatch.setattr(ota_publisher.subprocess, "run", fail)
    p = Publisher({"project_path": str(tmp_path / "app"), "quiet": True}, None, None)
    with pytest.raises(ota_publisher.OTAError) as excinfo:
        p.run_export("android")
    assert "Failed to export bundle" in str(excinfo.value)
