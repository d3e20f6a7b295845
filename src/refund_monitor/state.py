from __future__ import annotations

import logging
import shutil
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .errors import CaseNotFoundError, CheckNotFoundError
from .models import (
    AlarmThresholds,
    CanonicalStatus,
    Notification,
    RefundCheck,
    StatusHistoryEntry,
    TaxCase,
    Track,
)
from .util.dates import parse_timestamp, to_iso


logger = logging.getLogger(__name__)

_CASE_COLUMNS = (
    "id",
    "user_id",
    "client_name",
    "tax_year",
    "case_status",
    "filing_status",
    "work_state",
    "payment_method",
    "encrypted_identifier",
    "federal_status",
    "federal_status_changed_at",
    "federal_last_comment",
    "federal_actual_refund",
    "state_status",
    "state_status_changed_at",
    "state_last_comment",
    "state_actual_refund",
    "estimated_refund",
)

_CHECK_COLUMNS = (
    "id",
    "tax_case_id",
    "portal",
    "raw_status",
    "details",
    "screenshot_path",
    "mapped_status",
    "previous_status",
    "status_changed",
    "result",
    "triggered_by",
    "triggered_by_user_id",
    "error_message",
    "created_at",
)

_DATETIME_COLUMNS = {"federal_status_changed_at", "state_status_changed_at", "created_at"}


@dataclass(frozen=True)
class CheckPage:
    checks: list[RefundCheck]
    next_cursor: Optional[str]


@dataclass(frozen=True)
class CheckStats:
    total: int
    succeeded: int
    failed: int
    status_changes: int


def _to_db(column: str, value: object) -> object:
    if value is None:
        return None
    if column in _DATETIME_COLUMNS and isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, CanonicalStatus):
        return value.value
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _row_to_case(row: sqlite3.Row) -> TaxCase:
    data = {k: row[k] for k in _CASE_COLUMNS}
    for k in ("federal_status_changed_at", "state_status_changed_at"):
        data[k] = parse_timestamp(data[k])
    return TaxCase.model_validate(data)


def _row_to_check(row: sqlite3.Row) -> RefundCheck:
    data = {k: row[k] for k in _CHECK_COLUMNS}
    data["status_changed"] = bool(data["status_changed"])
    data["created_at"] = parse_timestamp(data["created_at"])
    return RefundCheck.model_validate(data)


class CaseStore:
    """
    SQLite persistence for tax cases, refund checks, status history, alarm thresholds and notifications.

    Case-status mutation (`apply_status_change`) is the only multi-row write and runs in one transaction.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._ensure_schema()

        # Ensure we have *some* backup available for next time.
        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        self._conn.close()

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the DB. If it looks corrupted, move it aside and restore from the last-known-good backup.
        """
        if self.db_path.exists():
            try:
                conn = sqlite3.connect(self.db_path)
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except sqlite3.Error as e:
                logger.warning("State DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = sqlite3.connect(self.db_path)
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored state DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except (OSError, sqlite3.Error):
                        logger.warning("Failed to restore state DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No state DB backup found; creating a fresh DB.")

        return sqlite3.connect(self.db_path)

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            # Touch schema_version to fail fast on "file is not a database".
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except sqlite3.Error:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except OSError:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return

        try:
            self.backup()
        except (OSError, sqlite3.Error):
            logger.debug("Failed to write state DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        # Use SQLite online backup API for a consistent snapshot.
        dst = sqlite3.connect(tmp)
        try:
            self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tax_cases (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              client_name TEXT NOT NULL DEFAULT '',
              tax_year INTEGER NOT NULL,
              case_status TEXT NOT NULL DEFAULT 'taxes_filed',
              filing_status TEXT NOT NULL DEFAULT 'single',
              work_state TEXT NOT NULL DEFAULT '',
              payment_method TEXT NOT NULL DEFAULT 'direct_deposit',
              encrypted_identifier TEXT,
              federal_status TEXT,
              federal_status_changed_at TEXT,
              federal_last_comment TEXT,
              federal_actual_refund REAL,
              state_status TEXT,
              state_status_changed_at TEXT,
              state_last_comment TEXT,
              state_actual_refund REAL,
              estimated_refund REAL
            );

            CREATE TABLE IF NOT EXISTS refund_checks (
              id TEXT PRIMARY KEY,
              tax_case_id TEXT NOT NULL REFERENCES tax_cases(id),
              portal TEXT NOT NULL,
              raw_status TEXT NOT NULL,
              details TEXT NOT NULL DEFAULT '',
              screenshot_path TEXT,
              mapped_status TEXT,
              previous_status TEXT,
              status_changed INTEGER NOT NULL DEFAULT 0,
              result TEXT NOT NULL,
              triggered_by TEXT NOT NULL,
              triggered_by_user_id TEXT,
              error_message TEXT,
              created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_refund_checks_portal_created
              ON refund_checks(portal, created_at DESC, id DESC);
            CREATE INDEX IF NOT EXISTS idx_refund_checks_case
              ON refund_checks(tax_case_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS status_history (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              tax_case_id TEXT NOT NULL REFERENCES tax_cases(id),
              track TEXT NOT NULL,
              previous_status TEXT,
              new_status TEXT NOT NULL,
              changed_by TEXT,
              comment TEXT NOT NULL DEFAULT '',
              internal_comment TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_status_history_case ON status_history(tax_case_id, created_at);

            CREATE TABLE IF NOT EXISTS alarm_thresholds (
              tax_case_id TEXT PRIMARY KEY REFERENCES tax_cases(id),
              federal_in_process_days INTEGER,
              state_in_process_days INTEGER,
              verification_timeout_days INTEGER,
              disable_federal_alarms INTEGER NOT NULL DEFAULT 0,
              disable_state_alarms INTEGER NOT NULL DEFAULT 0,
              reason TEXT,
              updated_by TEXT,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS notifications (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              category TEXT NOT NULL,
              title TEXT NOT NULL,
              body TEXT NOT NULL,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              kind TEXT NOT NULL DEFAULT 'batch',
              started_at TEXT NOT NULL,
              finished_at TEXT,
              ok INTEGER,
              message TEXT
            );
            """
        )
        self._apply_light_migrations()
        self._conn.commit()

    def _apply_light_migrations(self) -> None:
        # Best-effort schema evolution for early versions.
        cols = {row[1] for row in self._conn.execute("PRAGMA table_info(tax_cases);").fetchall()}
        if "payment_method" not in cols:
            self._conn.execute("ALTER TABLE tax_cases ADD COLUMN payment_method TEXT NOT NULL DEFAULT 'direct_deposit';")
        if "filing_status" not in cols:
            self._conn.execute("ALTER TABLE tax_cases ADD COLUMN filing_status TEXT NOT NULL DEFAULT 'single';")
        run_cols = {row[1] for row in self._conn.execute("PRAGMA table_info(runs);").fetchall()}
        if "kind" not in run_cols:
            self._conn.execute("ALTER TABLE runs ADD COLUMN kind TEXT NOT NULL DEFAULT 'batch';")

    # -- cases -------------------------------------------------------------------------------------------------

    def upsert_case(self, case: TaxCase) -> None:
        values = [_to_db(k, getattr(case, k)) for k in _CASE_COLUMNS]
        updates = ", ".join(f"{k} = excluded.{k}" for k in _CASE_COLUMNS if k != "id")
        with self._conn:
            self._conn.execute(
                f"INSERT INTO tax_cases({', '.join(_CASE_COLUMNS)}) VALUES ({', '.join('?' for _ in _CASE_COLUMNS)}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates};",
                values,
            )

    def get_case(self, tax_case_id: str) -> TaxCase:
        row = self._conn.execute("SELECT * FROM tax_cases WHERE id = ?;", (tax_case_id,)).fetchone()
        if row is None:
            raise CaseNotFoundError(f"Tax case not found: {tax_case_id}")
        return _row_to_case(row)

    def list_cases(self, *, case_statuses: Optional[tuple[str, ...]] = None) -> list[TaxCase]:
        if case_statuses:
            marks = ", ".join("?" for _ in case_statuses)
            rows = self._conn.execute(
                f"SELECT * FROM tax_cases WHERE case_status IN ({marks}) ORDER BY client_name, id;",
                tuple(case_statuses),
            ).fetchall()
        else:
            rows = self._conn.execute("SELECT * FROM tax_cases ORDER BY client_name, id;").fetchall()
        return [_row_to_case(r) for r in rows]

    def apply_status_change(
        self,
        *,
        tax_case_id: str,
        track: Track,
        new_status: CanonicalStatus,
        changed_by: Optional[str],
        comment: str,
        internal_comment: str = "",
        now: Optional[datetime] = None,
    ) -> Optional[CanonicalStatus]:
        """
        Atomically set the track's status / changed-at / last comment and append the matching history row.

        Returns the status that was replaced.
        """
        ts = to_iso(now or datetime.now(timezone.utc))
        prefix = "federal" if track == "federal" else "state"
        with self._conn:
            row = self._conn.execute(
                f"SELECT {prefix}_status FROM tax_cases WHERE id = ?;",
                (tax_case_id,),
            ).fetchone()
            if row is None:
                raise CaseNotFoundError(f"Tax case not found: {tax_case_id}")
            previous = row[0]

            self._conn.execute(
                f"UPDATE tax_cases SET {prefix}_status = ?, {prefix}_status_changed_at = ?, {prefix}_last_comment = ? "
                "WHERE id = ?;",
                (new_status.value, ts, comment, tax_case_id),
            )
            self._conn.execute(
                """
                INSERT INTO status_history(
                  tax_case_id, track, previous_status, new_status, changed_by, comment, internal_comment, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (tax_case_id, track, previous, new_status.value, changed_by, comment, internal_comment, ts),
            )
        return CanonicalStatus(previous) if previous else None

    def history_for(self, tax_case_id: str, *, track: Optional[Track] = None) -> list[StatusHistoryEntry]:
        sql = "SELECT * FROM status_history WHERE tax_case_id = ?"
        params: list = [tax_case_id]
        if track:
            sql += " AND track = ?"
            params.append(track)
        rows = self._conn.execute(sql + " ORDER BY id;", params).fetchall()
        out: list[StatusHistoryEntry] = []
        for r in rows:
            data = dict(r)
            data["created_at"] = parse_timestamp(data["created_at"])
            out.append(StatusHistoryEntry.model_validate(data))
        return out

    # -- checks ------------------------------------------------------------------------------------------------

    def insert_check(self, check: RefundCheck) -> None:
        with self._conn:
            self._conn.execute(
                f"INSERT INTO refund_checks({', '.join(_CHECK_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _CHECK_COLUMNS)});",
                [_to_db(k, getattr(check, k)) for k in _CHECK_COLUMNS],
            )

    def get_check(self, check_id: str) -> RefundCheck:
        row = self._conn.execute("SELECT * FROM refund_checks WHERE id = ?;", (check_id,)).fetchone()
        if row is None:
            raise CheckNotFoundError(f"Refund check not found: {check_id}")
        return _row_to_check(row)

    def clear_status_changed(self, check_id: str) -> None:
        with self._conn:
            cur = self._conn.execute("UPDATE refund_checks SET status_changed = 0 WHERE id = ?;", (check_id,))
        if cur.rowcount == 0:
            raise CheckNotFoundError(f"Refund check not found: {check_id}")

    def list_checks(
        self,
        *,
        portal: Track,
        tax_case_id: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: int = 20,
    ) -> CheckPage:
        """
        Newest first. `cursor` is the id of the last check of the previous page.
        """
        sql = "SELECT * FROM refund_checks WHERE portal = ?"
        params: list = [portal]
        if tax_case_id:
            sql += " AND tax_case_id = ?"
            params.append(tax_case_id)
        if cursor:
            anchor = self._conn.execute("SELECT created_at, id FROM refund_checks WHERE id = ?;", (cursor,)).fetchone()
            if anchor is None:
                raise CheckNotFoundError(f"Unknown cursor: {cursor}")
            sql += " AND (created_at < ? OR (created_at = ? AND id < ?))"
            params.extend([anchor["created_at"], anchor["created_at"], anchor["id"]])
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?;"
        params.append(int(limit) + 1)

        rows = self._conn.execute(sql, params).fetchall()
        checks = [_row_to_check(r) for r in rows[:limit]]
        next_cursor = checks[-1].id if len(rows) > limit and checks else None
        return CheckPage(checks=checks, next_cursor=next_cursor)

    def iter_checks(self, *, portal: Track) -> Iterator[tuple[RefundCheck, str]]:
        """(check, client_name) pairs, newest first."""
        rows = self._conn.execute(
            """
            SELECT c.*, t.client_name AS client_name
            FROM refund_checks c JOIN tax_cases t ON t.id = c.tax_case_id
            WHERE c.portal = ?
            ORDER BY c.created_at DESC, c.id DESC;
            """,
            (portal,),
        )
        for row in rows:
            yield _row_to_check(row), row["client_name"]

    def check_stats(self, *, portal: Track, since: datetime) -> CheckStats:
        row = self._conn.execute(
            """
            SELECT
              COUNT(*) AS total,
              COALESCE(SUM(CASE WHEN result = 'success' THEN 1 ELSE 0 END), 0) AS succeeded,
              COALESCE(SUM(CASE WHEN result IN ('error', 'timeout') THEN 1 ELSE 0 END), 0) AS failed,
              COALESCE(SUM(CASE WHEN status_changed = 1 THEN 1 ELSE 0 END), 0) AS status_changes
            FROM refund_checks
            WHERE portal = ? AND created_at >= ?;
            """,
            (portal, to_iso(since)),
        ).fetchone()
        return CheckStats(
            total=int(row["total"]),
            succeeded=int(row["succeeded"]),
            failed=int(row["failed"]),
            status_changes=int(row["status_changes"]),
        )

    # -- alarm thresholds --------------------------------------------------------------------------------------

    def get_thresholds(self, tax_case_id: str) -> Optional[AlarmThresholds]:
        row = self._conn.execute("SELECT * FROM alarm_thresholds WHERE tax_case_id = ?;", (tax_case_id,)).fetchone()
        if row is None:
            return None
        return AlarmThresholds(
            federal_in_process_days=row["federal_in_process_days"],
            state_in_process_days=row["state_in_process_days"],
            verification_timeout_days=row["verification_timeout_days"],
            disable_federal_alarms=bool(row["disable_federal_alarms"]),
            disable_state_alarms=bool(row["disable_state_alarms"]),
            reason=row["reason"],
        )

    def set_thresholds(self, tax_case_id: str, thresholds: AlarmThresholds, *, updated_by: Optional[str] = None) -> None:
        self.get_case(tax_case_id)
        now = to_iso(datetime.now(timezone.utc))
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO alarm_thresholds(
                  tax_case_id, federal_in_process_days, state_in_process_days, verification_timeout_days,
                  disable_federal_alarms, disable_state_alarms, reason, updated_by, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tax_case_id) DO UPDATE SET
                  federal_in_process_days = excluded.federal_in_process_days,
                  state_in_process_days = excluded.state_in_process_days,
                  verification_timeout_days = excluded.verification_timeout_days,
                  disable_federal_alarms = excluded.disable_federal_alarms,
                  disable_state_alarms = excluded.disable_state_alarms,
                  reason = excluded.reason,
                  updated_by = excluded.updated_by,
                  updated_at = excluded.updated_at;
                """,
                (
                    tax_case_id,
                    thresholds.federal_in_process_days,
                    thresholds.state_in_process_days,
                    thresholds.verification_timeout_days,
                    1 if thresholds.disable_federal_alarms else 0,
                    1 if thresholds.disable_state_alarms else 0,
                    thresholds.reason,
                    updated_by,
                    now,
                ),
            )

    def clear_thresholds(self, tax_case_id: str) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM alarm_thresholds WHERE tax_case_id = ?;", (tax_case_id,))

    # -- notifications -----------------------------------------------------------------------------------------

    def add_notification(self, *, user_id: str, category: str, title: str, body: str) -> int:
        now = to_iso(datetime.now(timezone.utc))
        with self._conn:
            cur = self._conn.execute(
                "INSERT INTO notifications(user_id, category, title, body, created_at) VALUES (?, ?, ?, ?, ?);",
                (user_id, category, title, body, now),
            )
        return int(cur.lastrowid)

    def list_notifications(self, *, user_id: Optional[str] = None) -> list[Notification]:
        if user_id:
            rows = self._conn.execute("SELECT * FROM notifications WHERE user_id = ? ORDER BY id;", (user_id,))
        else:
            rows = self._conn.execute("SELECT * FROM notifications ORDER BY id;")
        out: list[Notification] = []
        for r in rows:
            data = dict(r)
            data["created_at"] = parse_timestamp(data["created_at"])
            out.append(Notification.model_validate(data))
        return out

    # -- runs --------------------------------------------------------------------------------------------------

    def record_run_start(self, kind: str = "batch") -> int:
        now = to_iso(datetime.now(timezone.utc))
        with self._conn:
            cur = self._conn.execute("INSERT INTO runs(kind, started_at) VALUES (?, ?);", (kind, now))
        return int(cur.lastrowid)

    def record_run_finish(self, run_id: int, *, ok: bool, message: Optional[str] = None) -> None:
        now = to_iso(datetime.now(timezone.utc))
        with self._conn:
            self._conn.execute(
                "UPDATE runs SET finished_at = ?, ok = ?, message = ? WHERE id = ?;",
                (now, 1 if ok else 0, message, run_id),
            )

        # Only refresh backups after a successful run finish (avoid snapshotting a potentially bad state).
        if ok:
            self._maybe_backup(if_missing=False)
