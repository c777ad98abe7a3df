"""
SQLite-backed store of update records.

One record per successful publish. The unique index on
(runtime_version, platform, channel, commit_time) is the only guard against
two publishes claiming the same instant in a scope; the application holds no
locks of its own.
"""

import json
import logging
import sqlite3
from contextlib import closing, contextmanager

from ota import (
    InternalError,
    PersistenceConflict,
    ValidationError,
    is_uuid,
    iso_instant,
    new_update_id,
    parse_instant,
    utc_now,
)
from ota_models import Manifest, Scope, Status, UpdateRecord, check_transition

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS updates (
    id TEXT PRIMARY KEY,
    runtime_version TEXT NOT NULL,
    platform TEXT NOT NULL,
    channel TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft',
    commit_time TEXT NOT NULL,
    manifest TEXT NOT NULL,
    message TEXT,
    created_at TEXT NOT NULL,
    rolled_back_at TEXT,
    rollback_reason TEXT
);
CREATE INDEX IF NOT EXISTS idx_updates_lookup
    ON updates (runtime_version, platform, channel, status, commit_time DESC);
CREATE UNIQUE INDEX IF NOT EXISTS idx_updates_scope_commit
    ON updates (runtime_version, platform, channel, commit_time);
"""

_COLUMNS = (
    "id, runtime_version, platform, channel, status, commit_time, manifest, "
    "message, created_at, rolled_back_at, rollback_reason"
)


def _stored_instant(value):
    """Instants are stored as fixed-width ISO strings so text order is time order."""
    dt = parse_instant(value)
    if dt is None:
        raise ValidationError("not a valid instant: {!r}".format(value), field="commitTime")
    return iso_instant(dt)


def _row_to_record(row):
    try:
        manifest = json.loads(row["manifest"])
    except (TypeError, ValueError):
        # left for normalize_manifest to reject or repair
        manifest = {}
    return UpdateRecord(
        id=row["id"],
        scope=Scope(row["runtime_version"], row["platform"], row["channel"]),
        status=Status(row["status"]),
        commit_time=row["commit_time"],
        manifest=manifest,
        message=row["message"],
        created_at=row["created_at"],
        rolled_back_at=row["rolled_back_at"],
        rollback_reason=row["rollback_reason"],
    )


class UpdateRecordStore:
    def __init__(self, db_path):
        self.db_path = str(db_path)

    @contextmanager
    def _connect(self):
        """Open a connection for one operation; store failures become ``InternalError``."""
        try:
            with closing(sqlite3.connect(self.db_path)) as conn:
                conn.row_factory = sqlite3.Row
                with conn:
                    yield conn
        except sqlite3.IntegrityError:
            raise
        except (sqlite3.OperationalError, sqlite3.DatabaseError) as exc:
            raise InternalError("update store unavailable: {}".format(exc)) from exc

    def init_schema(self):
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    # --------------------------------------------------------
    # Writes

    def add(self, record: UpdateRecord) -> UpdateRecord:
        """Insert *record*; a duplicate id or commit instant raises ``PersistenceConflict``.

        The manifest must be a complete document for this very update, and
        only draft or published records can be inserted.
        """
        status = Status(record.status)
        if status not in (Status.DRAFT, Status.PUBLISHED):
            raise ValidationError("cannot insert a {} update".format(status.value), field="status")
        record.scope.validate()
        doc = record.manifest.to_dict() if isinstance(record.manifest, Manifest) else record.manifest
        manifest = Manifest.from_dict(doc)
        if manifest.id != record.id:
            raise ValidationError(
                "manifest id {} does not match update {}".format(manifest.id, record.id), field="id"
            )
        created = record.created_at or utc_now()
        row = (
            record.id,
            record.scope.runtime_version,
            record.scope.platform,
            record.scope.channel,
            status.value,
            _stored_instant(record.commit_time),
            json.dumps(doc, sort_keys=True),
            record.message,
            _stored_instant(created),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO updates (id, runtime_version, platform, channel, status, "
                    "commit_time, manifest, message, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    row,
                )
        except sqlite3.IntegrityError as exc:
            raise PersistenceConflict(
                "update {} conflicts with an existing record in scope {} at {}: {}. "
                "Retry the publish.".format(record.id, record.scope, row[5], exc)
            ) from exc
        log.info("stored update %s for %s at %s", record.id, record.scope, row[5])
        return self.get(record.id)

    def set_status(self, update_id, status, reason=None) -> UpdateRecord:
        status = Status(status)
        with self._connect() as conn:
            row = conn.execute("SELECT status FROM updates WHERE id = ?", (update_id,)).fetchone()
            if row is None:
                raise ValidationError("no update with id {}".format(update_id), field="id")
            check_transition(row["status"], status)
            if status is Status.ROLLED_BACK:
                conn.execute(
                    "UPDATE updates SET status = ?, rolled_back_at = ?, rollback_reason = ? "
                    "WHERE id = ? AND status = ?",
                    (status.value, iso_instant(utc_now()), reason, update_id, row["status"]),
                )
            else:
                conn.execute(
                    "UPDATE updates SET status = ? WHERE id = ? AND status = ?",
                    (status.value, update_id, row["status"]),
                )
        return self.get(update_id)

    def rollback(self, update_id, reason) -> UpdateRecord:
        """Permanently withdraw a published update from resolution."""
        if not reason or not reason.strip():
            raise ValidationError("a rollback reason is required", field="reason")
        record = self.set_status(update_id, Status.ROLLED_BACK, reason=reason.strip())
        log.warning("rolled back update %s in %s: %s", update_id, record.scope, record.rollback_reason)
        return record

    def migrate_ids(self):
        """Give every record whose id is not a valid UUID a fresh one.

        Returns a list of ``(old_id, new_id)`` pairs.
        """
        changed = []
        with self._connect() as conn:
            for row in conn.execute("SELECT id FROM updates").fetchall():
                old = row["id"]
                if is_uuid(old):
                    continue
                new = new_update_id()
                conn.execute("UPDATE updates SET id = ? WHERE id = ?", (new, old))
                changed.append((old, new))
        for old, new in changed:
            log.info("migrated update %s -> %s", old, new)
        return changed

    # --------------------------------------------------------
    # Reads

    def get(self, update_id):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT {} FROM updates WHERE id = ?".format(_COLUMNS), (update_id,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def latest_published(self, scope: Scope):
        """The published record with the greatest commit instant, or ``None``."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT {} FROM updates WHERE runtime_version = ? AND platform = ? AND channel = ? "
                "AND status = ? ORDER BY commit_time DESC LIMIT 1".format(_COLUMNS),
                (scope.runtime_version, scope.platform, scope.channel, Status.PUBLISHED.value),
            ).fetchone()
        return _row_to_record(row) if row else None

    def history(self, scope: Scope, limit=20):
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT {} FROM updates WHERE runtime_version = ? AND platform = ? AND channel = ? "
                "ORDER BY commit_time DESC LIMIT ?".format(_COLUMNS),
                (scope.runtime_version, scope.platform, scope.channel, int(limit)),
            ).fetchall()
        return [_row_to_record(r) for r in rows]
