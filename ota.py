"""
Shared core for the OTA update server: error taxonomy, digests, identifiers,
commit instants and content types.
"""

import hashlib
import re
import uuid
from datetime import datetime, timezone

# ------------------------------------------------------------
# Constants

CHUNK = 1024 * 64
HASH_ALGO = "sha256"
BINARY_CONTENT_TYPE = "application/octet-stream"
BUNDLE_KEY = "bundle"
ASSETS_KEY_PREFIX = "assets/"

PLATFORMS = ("ios", "android")
CHANNELS = ("development", "staging", "production")
DEFAULT_CHANNEL = "production"

# platforms whose runtime refuses textual bundles
BINARY_REQUIRED_PLATFORMS = frozenset(["android"])
BINARY_BUNDLE_EXT = ".hbc"
# Hermes bytecode magic, little endian uint64 0x1F1903C103BC1FC6
HERMES_MAGIC = bytes.fromhex("c61fbc03c103191f")

CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "json": "application/json",
    "ttf": "font/ttf",
    "otf": "font/otf",
    "woff": "font/woff",
    "woff2": "font/woff2",
    "js": "application/javascript",
    "map": "application/json",
}

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# ------------------------------------------------------------
# Errors

class OTAError(Exception):
    """Base class for every failure raised by the update server."""

    http_status = 500


class ValidationError(OTAError):
    """A request scope or document field is missing or malformed."""

    http_status = 400

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field


class NotFoundError(OTAError):
    """An expected build artifact is absent."""

    http_status = 404


class FormatViolationError(OTAError):
    """A bundle is not in the binary format its platform requires."""

    http_status = 422


class IntegrityError(OTAError):
    """Served bytes do not hash to the digest computed at publish time."""

    http_status = 502


class PersistenceConflict(OTAError):
    """A record with the same commit instant already exists in the scope."""

    http_status = 409


class InternalError(OTAError):
    """A stored manifest cannot be repaired or the store is unreachable."""

    http_status = 500

# ------------------------------------------------------------
# Digests

def tag_digest(hexdigest):
    return "{}:{}".format(HASH_ALGO, hexdigest)


def sha256_bytes(data: bytes) -> str:
    """Return the algorithm-tagged digest of *data*."""
    return tag_digest(hashlib.sha256(data).hexdigest())


def sha256_file(path, chunk=CHUNK) -> str:
    """Return the algorithm-tagged digest of *path*, read as raw bytes."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            b = f.read(chunk)
            if not b:
                break
            h.update(b)
    return tag_digest(h.hexdigest())


def sha256_stream(reader, chunk=CHUNK):
    """Hash the blocks yielded by ``reader(chunk)``.

    Returns ``(tagged_digest, total_bytes)``.
    """
    h = hashlib.sha256()
    total = 0
    for block in reader(chunk):
        total += len(block)
        h.update(block)
    return tag_digest(h.hexdigest()), total


def http_reader(resp):
    """Yield the undecoded body of *resp* in blocks.

    ``requests`` exposes the urllib3 response as ``resp.raw``; reading it with
    ``decode_content=False`` returns the bytes exactly as they were sent.
    """
    def _yield(n):
        src = getattr(resp, "raw", None)
        if src is None or not hasattr(src, "read"):
            src = resp
            read = src.read
        else:
            def read(size):
                return src.read(size, decode_content=False)
        while True:
            b = read(n)
            if not b:
                break
            yield b
    return _yield

# ------------------------------------------------------------
# Identifiers and instants

def new_update_id() -> str:
    return str(uuid.uuid4())


def is_uuid(value) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def utc_now() -> datetime:
    """Current instant truncated to millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def iso_instant(dt: datetime) -> str:
    """Format *dt* as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_instant(value):
    """Parse a stored instant; return an aware datetime or ``None``."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch milliseconds, as written by some document stores
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

# ------------------------------------------------------------
# Content types

def content_type_for(name: str) -> str:
    ext = name.rpartition(".")[2].lower() if "." in name else ""
    return CONTENT_TYPES.get(ext, BINARY_CONTENT_TYPE)


def object_content_type(key: str) -> str:
    """Content type pinned for an object path under the store layout.

    Bundles are always opaque binary so the delivery layer leaves them
    unencoded; assets follow their extension.
    """
    name = key.rstrip("/").rpartition("/")[2]
    if name.startswith(BUNDLE_KEY + "."):
        return BINARY_CONTENT_TYPE
    return content_type_for(name)


def is_binary_bundle(name: str, head: bytes = b"") -> bool:
    return name.lower().endswith(BINARY_BUNDLE_EXT) or head[:len(HERMES_MAGIC)] == HERMES_MAGIC
