"""Content-addressed object storage and post-upload integrity verification.

Every object lives under ``<prefix>/<update id>/...``. Stores refuse to
overwrite an existing path, so a URL that has been served once keeps
serving the same bytes.
"""

import abc
import logging
import os
import tempfile
from pathlib import Path, PurePosixPath

import requests

from ota import (
    BUNDLE_KEY,
    CHUNK,
    IntegrityError,
    OTAError,
    http_reader,
    sha256_stream,
)

log = logging.getLogger(__name__)

DEFAULT_PREFIX = "updates"
IDENTITY = "identity"


def object_path(prefix, update_id, name):
    """``<prefix>/<update id>/<name>`` with *name* kept relative."""
    rel = PurePosixPath(name)
    if rel.is_absolute() or ".." in rel.parts:
        raise OTAError("object name escapes its update directory: {}".format(name))
    return "/".join(p for p in (prefix.strip("/"), update_id, rel.as_posix()) if p)


def bundle_object_name(bundle_path):
    ext = Path(bundle_path).suffix.lstrip(".") or "js"
    return "{}.{}".format(BUNDLE_KEY, ext)


class ObjectStore(abc.ABC):
    """Write-once object storage with public, immutable URLs."""

    @abc.abstractmethod
    def put(self, path: str, data: bytes, content_type: str) -> str:
        """Store *data* at *path* and return its public URL."""

    @abc.abstractmethod
    def public_url(self, path: str) -> str: ...


class FileObjectStore(ObjectStore):
    """Objects on the local filesystem, served by ``ota_server`` under ``/objects``."""

    def __init__(self, root, base_url):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def local_path(self, path):
        return self.root.joinpath(*PurePosixPath(path).parts)

    def public_url(self, path):
        return "{}/{}".format(self.base_url, path)

    def put(self, path, data, content_type):
        dest = self.local_path(path)
        tmp = None
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(dest.parent), prefix=".upload-", suffix=".tmp")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            # link fails if dest exists; objects are never overwritten
            os.link(tmp, dest)
        except FileExistsError:
            raise OTAError("object already exists, refusing to overwrite: {}".format(path)) from None
        except OSError as exc:
            raise OTAError("upload of {} failed: {}".format(path, exc)) from exc
        finally:
            if tmp is not None:
                try:
                    os.remove(tmp)
                except FileNotFoundError:
                    pass
        log.debug("stored %s (%d bytes, %s)", path, len(data), content_type)
        return self.public_url(path)


class HttpObjectStore(ObjectStore):
    """Blob service accepting ``PUT <api_url>/<path>`` with a bearer token.

    The service answers with JSON carrying the object's public ``url``.
    """

    def __init__(self, api_url, token, public_base_url=None, timeout=None):
        if not token:
            raise ValueError("blob_token is required for the blob object store")
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.public_base_url = (public_base_url or api_url).rstrip("/")
        self.timeout = timeout

    def public_url(self, path):
        return "{}/{}".format(self.public_base_url, path)

    def _headers(self, content_type):
        return {
            "Authorization": "Bearer {}".format(self.token),
            "Content-Type": content_type,
            "x-content-type": content_type,
            "x-add-random-suffix": "0",
            "x-allow-overwrite": "0",
            "x-cache-control-max-age": "31536000",
        }

    def _put(self, url, data, headers):
        kwargs = {"data": data, "headers": headers}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        return requests.put(url, **kwargs)

    def put(self, path, data, content_type):
        try:
            r = self._put("{}/{}".format(self.api_url, path), data, self._headers(content_type))
        except requests.RequestException as exc:
            raise OTAError("upload of {} failed: {}".format(path, exc)) from exc
        try:
            status = getattr(r, "status_code", 200)
            if status >= 400:
                raise OTAError("upload of {} failed: HTTP {} {}".format(path, status, getattr(r, "text", "")[:200]))
            try:
                url = (r.json() or {}).get("url")
            except ValueError:
                url = None
        finally:
            r.close()
        return url or self.public_url(path)

# ------------------------------------------------------------
# Verification

def identity_headers():
    return {"Accept-Encoding": IDENTITY, "Cache-Control": "no-cache"}


def verify_served(resp, url, expected, chunk=CHUNK):
    """Hash the undecoded body of *resp* and compare it with *expected*.

    Raises ``IntegrityError`` on a transport encoding other than identity,
    an HTTP error status or a digest mismatch.
    """
    status = getattr(resp, "status_code", 200)
    if status >= 400:
        raise IntegrityError(
            "Hash verification failed: GET {} returned HTTP {}.\n"
            "   The uploaded bundle is not publicly readable.".format(url, status)
        )
    encoding = (resp.headers.get("Content-Encoding") or IDENTITY).strip().lower()
    if encoding != IDENTITY:
        raise IntegrityError(
            "Hash verification failed: bundle served with Content-Encoding: {}.\n"
            "   Clients hash the bytes they receive; a transcoding layer breaks every download.\n"
            "   Verify headers:\n"
            "   curl -I -H 'Accept-Encoding: identity' {}\n"
            "   Expected: Content-Encoding: identity (or missing).\n"
            "   If it is gzip/br, disable compression for application/octet-stream objects.".format(encoding, url)
        )
    actual, size = sha256_stream(http_reader(resp), chunk)
    if actual != expected:
        raise IntegrityError(
            "Hash verification failed for {}\n"
            "   Expected: {}\n"
            "   Actual:   {} ({} bytes)\n"
            "   Verify headers:\n"
            "   curl -I {}\n"
            "   Expected: Content-Encoding: identity (or missing)".format(url, expected, actual, size, url)
        )
    return actual
