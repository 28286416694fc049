"""SQLite-backed deployment history.

Records each applied deployment (environment, workspace, plan counts, git
tag) so operators can see what went out, when, and by whom.
"""

from __future__ import annotations

import getpass
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tf_workflows.models import PlanSummary

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_DDL = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS deployments (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    environment  TEXT    NOT NULL,
    workspace    TEXT    NOT NULL DEFAULT 'default',
    deployed_at  TEXT    NOT NULL,           -- ISO-8601 UTC
    status       TEXT    NOT NULL,
    to_add       INTEGER NOT NULL DEFAULT 0,
    to_change    INTEGER NOT NULL DEFAULT 0,
    to_destroy   INTEGER NOT NULL DEFAULT 0,
    plan_file    TEXT    NOT NULL DEFAULT '',
    git_tag      TEXT    NOT NULL DEFAULT '',
    operator     TEXT    NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_deployments_env  ON deployments(environment);
CREATE INDEX IF NOT EXISTS idx_deployments_time ON deployments(deployed_at DESC);
"""


def current_operator() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


class DeploymentHistory:
    """Persistent deployment ledger backed by a SQLite database.

    Parameters
    ----------
    db_path : str | Path
        Path to the SQLite database file.  Created automatically if missing.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ── Schema management ──────────────────────────────────────────────

    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(_DDL)
        row = cur.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            cur.execute("INSERT INTO schema_version (version) VALUES (?)", (_SCHEMA_VERSION,))
        self._conn.commit()

    # ── Write ──────────────────────────────────────────────────────────

    def record(
        self,
        environment: str,
        status: str,
        summary: PlanSummary | None = None,
        workspace: str = "default",
        plan_file: str = "",
        git_tag: str = "",
        operator: str | None = None,
    ) -> int:
        """Persist a deployment. Returns the new row id."""
        summary = summary or PlanSummary()
        cur = self._conn.cursor()
        cur.execute(
            """
            INSERT INTO deployments
                (environment, workspace, deployed_at, status,
                 to_add, to_change, to_destroy, plan_file, git_tag, operator)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                environment,
                workspace,
                datetime.now(timezone.utc).isoformat(),
                status,
                summary.to_add,
                summary.to_change,
                summary.to_destroy,
                plan_file,
                git_tag,
                current_operator() if operator is None else operator,
            ),
        )
        self._conn.commit()
        row_id = cur.lastrowid
        logger.info("Recorded deployment %d for %r (%s)", row_id, environment, status)
        return row_id  # type: ignore[return-value]

    # ── Read ───────────────────────────────────────────────────────────

    def last(self, environment: str) -> dict[str, Any] | None:
        """Return the most recent deployment for an environment, or *None*."""
        row = self._conn.execute(
            """
            SELECT * FROM deployments
            WHERE environment = ?
            ORDER BY deployed_at DESC, id DESC
            LIMIT 1
            """,
            (environment,),
        ).fetchone()
        return dict(row) if row is not None else None

    def recent(self, environment: str = "", limit: int = 10) -> list[dict[str, Any]]:
        """Return the *limit* most recent deployments (all environments when empty)."""
        if environment:
            rows = self._conn.execute(
                """
                SELECT * FROM deployments
                WHERE environment = ?
                ORDER BY deployed_at DESC, id DESC
                LIMIT ?
                """,
                (environment, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM deployments ORDER BY deployed_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]

    def count(self, environment: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM deployments WHERE environment = ?",
            (environment,),
        ).fetchone()
        return row[0] if row else 0

    # ── Housekeeping ───────────────────────────────────────────────────

    def prune(self, environment: str, keep: int = 50) -> int:
        """Delete old deployments, keeping the *keep* most recent. Returns rows deleted."""
        cur = self._conn.cursor()
        cur.execute(
            """
            DELETE FROM deployments
            WHERE environment = ? AND id NOT IN (
                SELECT id FROM deployments
                WHERE environment = ?
                ORDER BY deployed_at DESC, id DESC
                LIMIT ?
            )
            """,
            (environment, environment, keep),
        )
        self._conn.commit()
        deleted = cur.rowcount
        if deleted:
            logger.info("Pruned %d old deployments for %r", deleted, environment)
        return deleted

    def close(self) -> None:
        self._conn.close()
