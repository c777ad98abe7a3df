import io
import json
import sqlite3

import pytest

from ota import BINARY_CONTENT_TYPE, HERMES_MAGIC, iso_instant, parse_instant
from ota_records import UpdateRecordStore
from ota_storage import FileObjectStore

BASE_URL = "http://ota.test/objects"
HBC_BYTES = HERMES_MAGIC + b"\x00\x01bytecode\xff\xfe"


class RawBody:
    """Stand-in for urllib3's response: ``read`` takes ``decode_content``."""

    def __init__(self, data):
        self._buf = io.BytesIO(data)
        self.decode_flags = []

    def read(self, n, decode_content=None):
        self.decode_flags.append(decode_content)
        return self._buf.read(n)


class Resp:
    def __init__(self, data=b"", status_code=200, headers=None):
        self.raw = RawBody(data)
        self.status_code = status_code
        self.headers = headers or {}
        self.closed = False

    def close(self):
        self.closed = True


def write_export(root, platform="android", bundle_name="entry-abc123.hbc", bundle=HBC_BYTES, assets=None, legacy=False):
    """Lay out an export tree the way the bundler does."""
    if legacy:
        bundle_dir = root / "bundles"
        assets_dir = root / "assets"
    else:
        bundle_dir = root / "_expo" / "static" / "js" / platform
        assets_dir = root / "_expo" / "static" / "assets"
    bundle_dir.mkdir(parents=True, exist_ok=True)
    (bundle_dir / bundle_name).write_bytes(bundle)
    for rel, data in (assets or {}).items():
        p = assets_dir / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
    return root


def serve_from(objects):
    """A ``Publisher._get`` replacement that reads back from a FileObjectStore."""
    def _get(url, raw=False):
        assert url.startswith(BASE_URL + "/")
        path = objects.local_path(url[len(BASE_URL) + 1:])
        return Resp(path.read_bytes())
    return _get


def manifest_for(update_id, runtime_version="1.0.0", created_at="2026-01-01T00:00:00.000Z", extra=None):
    """A complete manifest document for *update_id*."""
    launch = {
        "hash": "sha256:" + "a" * 64,
        "key": "bundle",
        "contentType": BINARY_CONTENT_TYPE,
        "url": "https://cdn.test/updates/{}/bundle.hbc".format(update_id),
    }
    return {
        "id": update_id,
        "createdAt": created_at,
        "runtimeVersion": runtime_version,
        "launchAsset": launch,
        "assets": [dict(launch)],
        "metadata": {},
        "extra": extra or {},
    }


def insert_raw(store, update_id, scope, commit_time, manifest, status="published"):
    """Write a row as older publish tools did, bypassing validation in ``add``."""
    instant = iso_instant(parse_instant(commit_time))
    doc = manifest if isinstance(manifest, str) else json.dumps(manifest)
    conn = sqlite3.connect(store.db_path)
    try:
        with conn:
            conn.execute(
                "INSERT INTO updates (id, runtime_version, platform, channel, status, commit_time, manifest, "
                "created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (update_id, scope.runtime_version, scope.platform, scope.channel, status, instant, doc, instant),
            )
    finally:
        conn.close()


@pytest.fixture
def store(tmp_path):
    s = UpdateRecordStore(tmp_path / "updates.db")
    s.init_schema()
    return s


@pytest.fixture
def objects(tmp_path):
    return FileObjectStore(tmp_path / "objects", BASE_URL)
