"""Publish pipeline: export, locate, hash, upload, verify, assemble, persist.

Any failure aborts the run before the record is written. Objects already
uploaded stay under their unique update id and are never referenced again.
"""

import logging
import subprocess
from pathlib import Path

import requests

from ota import (
    BINARY_CONTENT_TYPE,
    BINARY_REQUIRED_PLATFORMS,
    CHANNELS,
    CHUNK,
    HERMES_MAGIC,
    FormatViolationError,
    IntegrityError,
    OTAError,
    ValidationError,
    is_binary_bundle,
    new_update_id,
    object_content_type,
    sha256_bytes,
    sha256_file,
    utc_now,
)
from manifest_gen import (
    build_manifest,
    bundle_asset,
    file_asset,
    iter_asset_files,
    locate_assets_dir,
    locate_bundle,
)
from ota_models import Scope, Status, UpdateRecord
from ota_storage import (
    DEFAULT_PREFIX,
    bundle_object_name,
    identity_headers,
    object_path,
    verify_served,
)

log = logging.getLogger(__name__)


def default_export_command(platform, output_dir):
    return ["npx", "expo", "export", "--platform", platform, "--output-dir", str(output_dir)]


class Publisher:
    """Runs one publish per call; holds no state between runs."""

    def __init__(self, cfg: dict, object_store, record_store):
        self.cfg = cfg
        self.objects = object_store
        self.records = record_store
        self.prefix = cfg.get("store_prefix", DEFAULT_PREFIX)
        self.chunk = int(cfg.get("chunk", CHUNK))

    def _info(self, *args):
        # progress lines for the operator running the CLI
        if not self.cfg.get("quiet"):
            print(*args)

    # --------------------------------------------------------
    # External bundler

    def export_dir_for(self, platform) -> Path:
        project = self.cfg.get("project_path")
        if not project:
            raise OTAError("project_path is not configured; pass --export-dir instead")
        return Path(project).expanduser().resolve() / "dist" / platform

    def run_export(self, platform) -> Path:
        """Invoke the configured bundler and return its output directory."""
        output_dir = self.export_dir_for(platform)
        project = output_dir.parent.parent
        if not project.is_dir():
            raise OTAError("project not found at {}".format(project))
        template = self.cfg.get("export_command")
        if template:
            cmd = [str(part).format(platform=platform, output_dir=output_dir) for part in template]
        else:
            cmd = default_export_command(platform, output_dir)
        self._info("Building bundle:", " ".join(cmd))
        try:
            subprocess.run(cmd, cwd=str(project), check=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            raise OTAError("Failed to export bundle: {}".format(exc)) from exc
        return output_dir

    # --------------------------------------------------------
    # HTTP

    def _get(self, url: str, raw: bool = False):
        """Single GET; verification is never retried."""
        headers = identity_headers() if raw else {}
        connect_timeout = self.cfg.get("connect_timeout_sec")
        read_timeout = self.cfg.get("http_timeout_sec", 30)
        timeout = None
        if connect_timeout is not None and read_timeout is not None:
            timeout = (connect_timeout, read_timeout)
        elif connect_timeout is not None:
            timeout = connect_timeout
        elif read_timeout is not None:
            timeout = read_timeout
        kwargs = {"headers": headers, "stream": raw}
        if timeout is not None:
            kwargs["timeout"] = timeout
        log.debug("GET %s", url)
        return requests.get(url, **kwargs)

    def verify_upload(self, url, expected):
        try:
            r = self._get(url, raw=True)
        except requests.RequestException as exc:
            raise IntegrityError(
                "Hash verification failed: could not fetch {}: {}\n"
                "   Verify the object is public: curl -I {}".format(url, exc, url)
            ) from exc
        try:
            return verify_served(r, url, expected, self.chunk)
        finally:
            r.close()

    # --------------------------------------------------------
    # Pipeline

    def check_format(self, platform, bundle_path: Path, head: bytes):
        binary = is_binary_bundle(bundle_path.name, head)
        if platform in BINARY_REQUIRED_PLATFORMS and not binary:
            raise FormatViolationError(
                "{} requires Hermes bytecode (.hbc), but found: {}\n"
                "   {} OTA updates must ship bytecode the runtime can load.\n"
                "   Ensure the build is configured for Hermes bytecode.".format(
                    platform.capitalize(), bundle_path, platform.capitalize()
                )
            )
        return binary

    def upload(self, update_id, name, data, content_type):
        return self.objects.put(object_path(self.prefix, update_id, name), data, content_type)

    def publish(self, platform, channel, runtime_version, export_dir, message=None) -> UpdateRecord:
        if channel not in CHANNELS:
            raise ValidationError(
                "invalid channel {!r}: must be one of {}".format(channel, ", ".join(CHANNELS)), field="channel"
            )
        scope = Scope(runtime_version, platform, channel).validate()
        self._info("Publishing update for {} ({})...".format(platform, channel))

        bundle_path = locate_bundle(export_dir, platform)
        self._info("Found bundle at:", bundle_path)
        data = bundle_path.read_bytes()
        binary = self.check_format(platform, bundle_path, data[:len(HERMES_MAGIC)])

        digest = sha256_bytes(data)
        self._info("Calculated hash:", digest)
        self._info("   File size: {} bytes".format(len(data)))
        self._info("   File type: {}".format("Hermes bytecode" if binary else "JavaScript"))

        update_id = new_update_id()
        self._info("Update ID:", update_id)

        bundle_url = self.upload(update_id, bundle_object_name(bundle_path), data, BINARY_CONTENT_TYPE)
        self._info("Bundle uploaded:", bundle_url)

        self.verify_upload(bundle_url, digest)
        self._info("Hash verification passed:", digest)

        assets = []
        for path, rel in iter_asset_files(locate_assets_dir(export_dir)):
            name = "assets/" + rel
            content = path.read_bytes()
            url = self.upload(update_id, name, content, object_content_type(name))
            assets.append(file_asset(rel, sha256_file(path, self.chunk), url))
        self._info("Uploaded {} assets".format(len(assets)))

        commit_time = utc_now()
        manifest = build_manifest(update_id, commit_time, runtime_version, bundle_asset(digest, bundle_url), assets)
        record = UpdateRecord(
            id=update_id,
            scope=scope,
            status=Status.PUBLISHED,
            commit_time=commit_time,
            manifest=manifest.to_dict(),
            message=message,
            created_at=commit_time,
        )
        stored = self.records.add(record)
        log.info("published %s to %s (%d assets)", update_id, scope, len(assets))
        return stored
