"""Update data model and the manifest normalization applied at the response boundary."""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ota import (
    ASSETS_KEY_PREFIX,
    BINARY_CONTENT_TYPE,
    BUNDLE_KEY,
    DEFAULT_CHANNEL,
    HASH_ALGO,
    PLATFORMS,
    InternalError,
    ValidationError,
    is_uuid,
    iso_instant,
    new_update_id,
    parse_instant,
    utc_now,
)


class Status(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ROLLED_BACK = "rolled_back"


STATUS_TRANSITIONS = {
    Status.DRAFT: frozenset([Status.PUBLISHED]),
    Status.PUBLISHED: frozenset([Status.ROLLED_BACK]),
    Status.ROLLED_BACK: frozenset(),
}


def check_transition(current, target):
    current, target = Status(current), Status(target)
    if target not in STATUS_TRANSITIONS[current]:
        raise ValidationError(
            "illegal status transition {} -> {}".format(current.value, target.value), field="status"
        )


@dataclass(frozen=True)
class Scope:
    """One independent update stream."""

    runtime_version: str
    platform: str
    channel: str = DEFAULT_CHANNEL

    def validate(self):
        if not self.runtime_version or not str(self.runtime_version).strip():
            raise ValidationError("missing required field: runtimeVersion", field="runtimeVersion")
        if not self.platform:
            raise ValidationError("missing required field: platform", field="platform")
        if self.platform not in PLATFORMS:
            raise ValidationError(
                "invalid platform {!r}: must be one of {}".format(self.platform, ", ".join(PLATFORMS)),
                field="platform",
            )
        if not self.channel or not str(self.channel).strip():
            raise ValidationError("missing required field: channel", field="channel")
        return self

    def __str__(self):
        return "{}/{}/{}".format(self.runtime_version, self.platform, self.channel)


@dataclass(frozen=True)
class Asset:
    hash: str
    key: str
    content_type: str
    url: str

    def __post_init__(self):
        algo, sep, hexdigest = self.hash.partition(":")
        if algo != HASH_ALGO or not sep or len(hexdigest) != 64:
            raise ValidationError("asset hash must be {}:<hex>: {!r}".format(HASH_ALGO, self.hash), field="hash")
        if self.key != BUNDLE_KEY and not self.key.startswith(ASSETS_KEY_PREFIX):
            raise ValidationError("asset key must be 'bundle' or 'assets/...': {!r}".format(self.key), field="key")
        if not self.content_type:
            raise ValidationError("asset {} has no content type".format(self.key), field="contentType")
        if not self.url.startswith(("http://", "https://")):
            raise ValidationError("asset {} url is not public: {!r}".format(self.key, self.url), field="url")

    @classmethod
    def from_dict(cls, doc):
        return cls(hash=doc["hash"], key=doc["key"], content_type=doc["contentType"], url=doc["url"])

    def to_dict(self):
        return {"hash": self.hash, "key": self.key, "contentType": self.content_type, "url": self.url}


@dataclass(frozen=True)
class Manifest:
    id: str
    created_at: datetime
    runtime_version: str
    launch_asset: Asset
    assets: tuple = ()
    metadata: dict = field(default_factory=dict)
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        if not is_uuid(self.id):
            raise ValidationError("manifest id is not a valid UUID: {!r}".format(self.id), field="id")
        if self.created_at is None:
            raise ValidationError("manifest has no valid createdAt", field="createdAt")
        if not self.runtime_version:
            raise ValidationError("manifest has no runtimeVersion", field="runtimeVersion")
        if self.launch_asset.key != BUNDLE_KEY:
            raise ValidationError("launch asset must have key 'bundle'", field="launchAsset")
        if self.launch_asset.content_type != BINARY_CONTENT_TYPE:
            raise ValidationError(
                "launch asset content type must be {}".format(BINARY_CONTENT_TYPE), field="launchAsset"
            )
        if not self.assets or self.assets[0] != self.launch_asset:
            raise ValidationError("assets must start with the launch asset", field="assets")

    @classmethod
    def from_dict(cls, doc):
        """Rebuild and validate a stored manifest document."""
        try:
            for name in ("metadata", "extra"):
                if not isinstance(doc.get(name, {}), dict):
                    raise ValidationError("manifest {} must be a mapping".format(name), field=name)
            return cls(
                id=doc["id"],
                created_at=parse_instant(doc["createdAt"]),
                runtime_version=doc["runtimeVersion"],
                launch_asset=Asset.from_dict(doc["launchAsset"]),
                assets=tuple(Asset.from_dict(a) for a in doc.get("assets") or ()),
                metadata=doc.get("metadata", {}),
                extra=doc.get("extra", {}),
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValidationError("malformed manifest: {!r}".format(exc), field="manifest") from exc

    def to_dict(self):
        return {
            "id": self.id,
            "createdAt": iso_instant(self.created_at),
            "runtimeVersion": self.runtime_version,
            "launchAsset": self.launch_asset.to_dict(),
            "assets": [a.to_dict() for a in self.assets],
            "metadata": dict(self.metadata),
            "extra": dict(self.extra),
        }


@dataclass
class UpdateRecord:
    """One persisted publish. ``manifest`` is the stored JSON document."""

    id: str
    scope: Scope
    commit_time: object
    manifest: dict
    status: Status = Status.PUBLISHED
    message: str = None
    created_at: object = None
    rolled_back_at: object = None
    rollback_reason: str = None


# ------------------------------------------------------------
# Normalization

def _can_launch(asset):
    if not isinstance(asset, dict):
        return False
    return all(isinstance(asset.get(k), str) and asset.get(k).strip() for k in ("url", "hash"))


def _launch_matches(asset, launch):
    if not isinstance(asset, dict):
        return False
    if launch.get("url") and asset.get("url") == launch.get("url"):
        return True
    return bool(launch.get("key")) and asset.get("key") == launch.get("key")


def normalize_manifest(record, runtime_version, id_factory=new_update_id, now=utc_now):
    """Return a protocol-compliant copy of ``record.manifest``.

    The stored document is never mutated. A launch asset needs a ``url`` and
    a ``hash``. Only a missing launch asset that cannot be derived from
    ``assets`` is fatal (``InternalError``); every other field is forced or
    defaulted.
    """
    stored = record.manifest if isinstance(record.manifest, dict) else {}
    manifest = copy.deepcopy(stored)

    manifest["id"] = record.id if is_uuid(record.id) else id_factory()

    instant = parse_instant(record.commit_time) or parse_instant(record.created_at) or now()
    manifest["createdAt"] = iso_instant(instant)
    manifest["runtimeVersion"] = runtime_version

    assets = manifest.get("assets")
    if not isinstance(assets, list):
        assets = []

    launch = manifest.get("launchAsset")
    if not _can_launch(launch):
        launch = next((a for a in assets if _can_launch(a) and a.get("key") == BUNDLE_KEY), None)
        if launch is None:
            raise InternalError("Invalid manifest for update {}: missing launchAsset".format(record.id))
    launch = dict(launch)
    launch.setdefault("key", BUNDLE_KEY)
    launch["contentType"] = BINARY_CONTENT_TYPE
    manifest["launchAsset"] = launch

    for i, asset in enumerate(assets):
        if _launch_matches(asset, launch):
            assets[i] = dict(launch)
            break
    else:
        assets.insert(0, dict(launch))
    manifest["assets"] = assets

    for name in ("metadata", "extra"):
        if not isinstance(manifest.get(name), dict):
            manifest[name] = {}
    return manifest
