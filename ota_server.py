"""
Manifest resolution endpoint.

Clients poll ``GET /api/updates`` with their scope and either receive the
latest manifest, an explicit 204 "no update" or a JSON error. Responses are
never cacheable: a stale answer here means clients run the wrong code.
"""

import logging

from flask import Flask, Response, abort, jsonify, request, send_from_directory
from werkzeug.exceptions import HTTPException

from ota import DEFAULT_CHANNEL, InternalError, OTAError, ValidationError, object_content_type
from ota_models import Scope, normalize_manifest

log = logging.getLogger(__name__)

PROTOCOL_VERSION = "1"
SFV_VERSION = "0"

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
    "Surrogate-Control": "no-store",
    "CDN-Cache-Control": "no-store",
}
IMMUTABLE_CACHE = "public, max-age=31536000, immutable"


def _first(*values):
    for v in values:
        if v is not None and str(v).strip():
            return str(v).strip()
    return None


def platform_from_user_agent(user_agent):
    ua = (user_agent or "").lower()
    if "android" in ua:
        return "android"
    if any(token in ua for token in ("iphone", "ipad", "ios", "darwin", "cfnetwork")):
        return "ios"
    return None


def extract_scope(headers, args) -> Scope:
    """Protocol headers win over query parameters; the platform may be inferred
    from the User-Agent as a last resort."""
    runtime_version = _first(
        headers.get("expo-runtime-version"), args.get("runtimeVersion"), args.get("runtime-version")
    )
    platform = _first(headers.get("expo-platform"), args.get("platform"))
    if platform is None:
        platform = platform_from_user_agent(headers.get("User-Agent"))
    channel = _first(headers.get("expo-channel-name"), args.get("channel")) or DEFAULT_CHANNEL
    return Scope(runtime_version, platform.lower() if platform else None, channel)


def _error(exc: OTAError):
    body = {"error": str(exc)}
    if getattr(exc, "field", None):
        body["field"] = exc.field
    resp = jsonify(body)
    resp.status_code = exc.http_status
    resp.headers.update(NO_CACHE_HEADERS)
    return resp


def resolve(store, headers, args):
    """Answer one manifest query as a Flask response."""
    try:
        scope = extract_scope(headers, args).validate()
    except ValidationError as exc:
        log.debug("rejected manifest query: %s", exc)
        return _error(exc)

    try:
        record = store.latest_published(scope)
        if record is None:
            log.debug("no update for %s", scope)
            resp = Response(status=204)
            resp.headers["expo-protocol-version"] = PROTOCOL_VERSION
            resp.headers.update(NO_CACHE_HEADERS)
            return resp
        manifest = normalize_manifest(record, scope.runtime_version)
    except OTAError as exc:
        log.error("manifest query for %s failed: %s", scope, exc)
        return _error(exc)

    log.debug("serving update %s for %s", manifest["id"], scope)
    resp = jsonify(manifest)
    resp.headers["Content-Type"] = "application/json"
    resp.headers["expo-protocol-version"] = PROTOCOL_VERSION
    resp.headers["expo-sfv-version"] = SFV_VERSION
    resp.headers.update(NO_CACHE_HEADERS)
    return resp


def create_app(store, object_root=None) -> Flask:
    """Build the server; ``object_root`` enables serving locally stored objects."""
    app = Flask(__name__)

    @app.get("/api/updates")
    @app.get("/api/manifest")
    def updates():
        return resolve(store, request.headers, request.args)

    @app.get("/objects/<path:key>")
    def objects(key):
        if object_root is None:
            abort(404)
        resp = send_from_directory(
            str(object_root), key, mimetype=object_content_type(key), conditional=True, etag=True
        )
        resp.headers["Cache-Control"] = IMMUTABLE_CACHE
        return resp

    @app.get("/healthz")
    def health():
        return "ok", 200

    @app.errorhandler(Exception)
    def unexpected(exc):
        if isinstance(exc, HTTPException):
            return exc
        log.exception("unhandled error on %s", request.path)
        return _error(InternalError("internal server error"))

    return app
