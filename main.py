"""Operator entry point: publish, serve, roll back and inspect updates."""

import argparse
import json
import logging
import os
import sys
import tomllib
from pathlib import Path

from ota import CHANNELS, DEFAULT_CHANNEL, PLATFORMS, OTAError
from ota_models import Scope
from ota_publisher import Publisher
from ota_records import UpdateRecordStore
from ota_storage import FileObjectStore, HttpObjectStore

DEFAULT_CONFIG = "ota_config.json"
PLACEHOLDERS = {"YOUR_BLOB_TOKEN", "YOUR_DATABASE_PATH"}

ENV_OVERRIDES = {
    "OTA_DATABASE": "database",
    "OTA_PUBLIC_URL": "public_url",
    "OTA_OBJECT_ROOT": "object_root",
    "OTA_BLOB_API_URL": "blob_api_url",
    "OTA_BLOB_TOKEN": "blob_token",
    "OTA_PROJECT_PATH": "project_path",
}


def load_config(config_path: str = None, environ=None):
    """Load configuration from JSON, YAML or TOML based on extension.

    Environment variables in ``ENV_OVERRIDES`` take precedence over the file.
    """
    environ = os.environ if environ is None else environ
    config_path = config_path or environ.get("OTA_CONFIG", DEFAULT_CONFIG)
    try:
        with open(config_path, "r") as f:
            text = f.read()
    except OSError as exc:
        raise RuntimeError("Config file not found: {}".format(config_path)) from exc
    ext = Path(config_path).suffix.lower()
    if ext in (".yaml", ".yml"):
        import yaml
        try:
            cfg = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ValueError("invalid YAML in {}: {}".format(config_path, exc)) from exc
    elif ext == ".toml":
        cfg = tomllib.loads(text)
    else:
        cfg = json.loads(text)
    if not isinstance(cfg, dict):
        raise ValueError("{} must contain a mapping of settings".format(config_path))
    for var, key in ENV_OVERRIDES.items():
        if environ.get(var):
            cfg[key] = environ[var]
    validate_config(cfg, Path(config_path).name)
    return cfg


def validate_config(cfg, name=DEFAULT_CONFIG):
    for key, value in cfg.items():
        if isinstance(value, str) and value.strip().upper() in PLACEHOLDERS:
            raise ValueError("{} must define a non placeholder '{}' value".format(name, key))
    if not str(cfg.get("database", "")).strip():
        raise ValueError("{} must define 'database'".format(name))
    if not cfg.get("blob_api_url") and not cfg.get("object_root"):
        raise ValueError("{} must define 'object_root' or 'blob_api_url'".format(name))
    if cfg.get("blob_api_url") and not cfg.get("blob_token"):
        raise ValueError("{} must define 'blob_token' with 'blob_api_url'".format(name))
    if cfg.get("object_root") and not cfg.get("blob_api_url"):
        if not cfg.get("object_base_url") and not cfg.get("public_url"):
            raise ValueError("{} must define 'public_url' to serve local objects".format(name))


def build_store(cfg):
    store = UpdateRecordStore(cfg["database"])
    store.init_schema()
    return store


def build_object_store(cfg):
    if cfg.get("blob_api_url"):
        return HttpObjectStore(
            cfg["blob_api_url"],
            cfg.get("blob_token"),
            public_base_url=cfg.get("blob_public_url"),
            timeout=cfg.get("http_timeout_sec", 30),
        )
    base_url = cfg.get("object_base_url") or cfg["public_url"].rstrip("/") + "/objects"
    return FileObjectStore(cfg["object_root"], base_url)


def setup_logging(cfg):
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.DEBUG if cfg.get("debug") else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )

# ------------------------------------------------------------
# Commands

def cmd_publish(cfg, args):
    publisher = Publisher(cfg, build_object_store(cfg), build_store(cfg))
    export_dir = Path(args.export_dir) if args.export_dir else publisher.run_export(args.platform)
    record = publisher.publish(args.platform, args.channel, args.runtime_version, export_dir, message=args.message)
    manifest = record.manifest
    print("\nUpdate published successfully!")
    print("   ID:", record.id)
    print("   Channel:", record.scope.channel)
    print("   Platform:", record.scope.platform)
    print("   Runtime Version:", record.scope.runtime_version)
    print("   Message:", record.message or "(no message)")
    print("   Bundle URL:", manifest["launchAsset"]["url"])
    print("   Assets:", len(manifest["assets"]) - 1)
    print("\nClients check for updates at:")
    print("   {}/api/updates".format(cfg.get("public_url", "http://localhost:8000").rstrip("/")))
    return 0


def cmd_serve(cfg, args):
    from ota_server import create_app

    object_root = None if cfg.get("blob_api_url") else cfg.get("object_root")
    app = create_app(build_store(cfg), object_root=object_root)
    app.run(host=args.host, port=args.port)
    return 0


def cmd_rollback(cfg, args):
    record = build_store(cfg).rollback(args.update_id, args.reason)
    print("Rolled back {} ({}) at {}".format(record.id, record.scope, record.rolled_back_at))
    return 0


def cmd_history(cfg, args):
    scope = Scope(args.runtime_version, args.platform, args.channel).validate()
    for r in build_store(cfg).history(scope, limit=args.limit):
        print("{}  {}  {:<11}  {}".format(r.commit_time, r.id, r.status.value, r.message or ""))
    return 0


def cmd_migrate_ids(cfg, args):
    changed = build_store(cfg).migrate_ids()
    for old, new in changed:
        print("Migrated {} -> {}".format(old, new))
    print("{} record(s) migrated".format(len(changed)))
    return 0


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="OTA code-bundle update server")
    ap.add_argument("--config", default=None, help="config file (default: $OTA_CONFIG or ota_config.json)")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("publish", help="export, upload and publish an update")
    p.add_argument("--channel", required=True, choices=CHANNELS)
    p.add_argument("--platform", required=True, choices=PLATFORMS)
    p.add_argument("--runtime-version", required=True)
    p.add_argument("--message", default=None)
    p.add_argument("--export-dir", default=None, help="use an existing export instead of running the bundler")
    p.set_defaults(func=cmd_publish)

    p = sub.add_parser("serve", help="run the manifest endpoint")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("rollback", help="withdraw a published update")
    p.add_argument("update_id")
    p.add_argument("--reason", required=True)
    p.set_defaults(func=cmd_rollback)

    p = sub.add_parser("history", help="list updates in a scope")
    p.add_argument("--platform", required=True, choices=PLATFORMS)
    p.add_argument("--runtime-version", required=True)
    p.add_argument("--channel", default=DEFAULT_CHANNEL)
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("migrate-ids", help="assign UUIDs to legacy records")
    p.set_defaults(func=cmd_migrate_ids)
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
    except (RuntimeError, ValueError) as exc:
        print("Configuration error:", exc, file=sys.stderr)
        return 1
    setup_logging(cfg)
    try:
        return args.func(cfg, args)
    except OTAError as exc:
        print("{} failed: {}".format(args.command.capitalize(), exc), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
