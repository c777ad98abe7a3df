# manifest_gen.py
"""Locate export artifacts and assemble the update manifest."""

from pathlib import Path

from ota import (
    ASSETS_KEY_PREFIX,
    BINARY_CONTENT_TYPE,
    BUNDLE_KEY,
    NotFoundError,
    content_type_for,
)
from ota_models import Asset, Manifest

DEFAULT_EXCLUDE = [".DS_Store", "Thumbs.db", ".git*"]


def bundle_search_paths(export_dir, platform):
    """Candidate bundle locations in priority order.

    Each entry is ``(directory, glob pattern)``; modern exports come first,
    then the legacy ``bundles/`` layout.
    """
    root = Path(export_dir)
    modern = root / "_expo" / "static" / "js" / platform
    legacy = root / "bundles"
    return [
        (modern, "entry-*.hbc"),
        (modern, "entry-*.js"),
        (legacy, "index-{}.hbc".format(platform)),
        (legacy, "index-{}.js".format(platform)),
    ]


def locate_bundle(export_dir, platform) -> Path:
    checked = []
    for base, pattern in bundle_search_paths(export_dir, platform):
        checked.append(str(base / pattern))
        if not base.is_dir():
            continue
        for p in sorted(base.glob(pattern)):
            if p.is_file():
                return p
    raise NotFoundError(
        "Bundle not found. Checked:\n  - {}\nExport output directory: {}".format(
            "\n  - ".join(checked), export_dir
        )
    )


def locate_assets_dir(export_dir):
    """Return the assets directory of an export, or ``None`` if it has none."""
    root = Path(export_dir)
    for candidate in (root / "_expo" / "static" / "assets", root / "assets"):
        if candidate.is_dir():
            return candidate
    return None


def norm(p: Path, root: Path) -> str:
    return p.relative_to(root).as_posix()


def iter_asset_files(assets_dir, exclude=None):
    """Yield ``(path, relative_posix_path)`` for every asset file, sorted."""
    if assets_dir is None:
        return
    root = Path(assets_dir)
    patterns = DEFAULT_EXCLUDE if exclude is None else exclude

    def excluded(rel):
        parts = Path(rel).parts
        for pat in patterns:
            if any(Path(part).match(pat) for part in parts):
                return True
        return False

    for p in sorted(root.rglob("*")):
        if not p.is_file():
            continue
        rel = norm(p, root)
        if excluded(rel):
            continue
        yield p, rel


def asset_key(rel: str) -> str:
    return ASSETS_KEY_PREFIX + rel


def bundle_asset(digest, url):
    return Asset(hash=digest, key=BUNDLE_KEY, content_type=BINARY_CONTENT_TYPE, url=url)


def file_asset(rel, digest, url):
    return Asset(hash=digest, key=asset_key(rel), content_type=content_type_for(rel), url=url)


def build_manifest(update_id, created_at, runtime_version, launch_asset, assets):
    """Assemble the manifest; the launch asset always leads ``assets``."""
    return Manifest(
        id=update_id,
        created_at=created_at,
        runtime_version=runtime_version,
        launch_asset=launch_asset,
        assets=(launch_asset,) + tuple(assets),
        metadata={},
        extra={},
    )
