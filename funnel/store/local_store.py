"""
SQLite Local Store for the Practice Funnel.

Provides portable persistence for:
- Concept mastery records per (learner, guide)
- Seen question fingerprints per (learner, module), with a sync marker
- Operator variant overrides per guide

Database location: ~/.funnel/state.db
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from funnel.core.models import ConceptMasteryRecord, FunnelState, VariantAssignment


@dataclass
class SeenRow:
    """A fingerprint observed for one delivered question."""

    fingerprint: str
    question_id: str = ""
    source_type: str = "generated"


class LocalStore:
    """
    SQLite-backed local cache.

    The local cache is authoritative while the remote store is unreachable;
    rows written here are flagged unsynced until a reconciliation succeeds.
    """

    DEFAULT_DB_PATH = Path.home() / ".funnel" / "state.db"

    def __init__(self, db_path: Path | None = None):
        """
        Initialize the local store.

        Args:
            db_path: Custom database path (defaults to ~/.funnel/state.db)
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: sqlite3.Connection | None = None
        self._init_schema()

        logger.debug(f"LocalStore initialized at {self.db_path}")

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _init_schema(self) -> None:
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS concept_mastery (
                learner_id TEXT NOT NULL,
                guide_hash TEXT NOT NULL,
                concept_key TEXT NOT NULL,
                display_name TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                correct INTEGER DEFAULT 0,
                tutor_touches INTEGER DEFAULT 0,
                avg_time_to_answer_ms REAL,
                last_seen_at TEXT,
                PRIMARY KEY (learner_id, guide_hash, concept_key)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS seen_fingerprints (
                learner_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                question_id TEXT,
                source_type TEXT,
                synced INTEGER DEFAULT 0,
                seen_at TEXT,
                PRIMARY KEY (learner_id, module_id, fingerprint)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS variant_overrides (
                guide_hash TEXT PRIMARY KEY,
                variant TEXT NOT NULL,
                updated_at TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_seen_unsynced
            ON seen_fingerprints(learner_id, module_id, synced)
        """)

        self.conn.commit()

    # =========================================================================
    # Mastery
    # =========================================================================

    def load_funnel_state(self, learner_id: str, guide_hash: str) -> FunnelState:
        """Load all mastery records for a learner and guide."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM concept_mastery WHERE learner_id = ? AND guide_hash = ?",
            (learner_id, guide_hash),
        )
        state = FunnelState()
        for row in cursor.fetchall():
            state.concepts[row["concept_key"]] = ConceptMasteryRecord(
                key=row["concept_key"],
                display_name=row["display_name"],
                attempts=row["attempts"],
                correct=row["correct"],
                tutor_touches=row["tutor_touches"],
                avg_time_to_answer_ms=row["avg_time_to_answer_ms"],
                last_seen_at=datetime.fromisoformat(row["last_seen_at"]) if row["last_seen_at"] else None,
            )
        return state

    def save_mastery_records(
        self,
        learner_id: str,
        guide_hash: str,
        records: Iterable[ConceptMasteryRecord],
    ) -> int:
        """
        Upsert mastery records.

        Returns:
            Number of records written
        """
        rows = [
            (
                learner_id,
                guide_hash,
                r.key,
                r.display_name,
                r.attempts,
                r.correct,
                r.tutor_touches,
                r.avg_time_to_answer_ms,
                r.last_seen_at.isoformat() if r.last_seen_at else None,
            )
            for r in records
        ]
        if not rows:
            return 0
        self.conn.executemany(
            """
            INSERT INTO concept_mastery (
                learner_id, guide_hash, concept_key, display_name, attempts,
                correct, tutor_touches, avg_time_to_answer_ms, last_seen_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(learner_id, guide_hash, concept_key) DO UPDATE SET
                display_name = excluded.display_name,
                attempts = excluded.attempts,
                correct = excluded.correct,
                tutor_touches = excluded.tutor_touches,
                avg_time_to_answer_ms = excluded.avg_time_to_answer_ms,
                last_seen_at = excluded.last_seen_at
        """,
            rows,
        )
        self.conn.commit()
        return len(rows)

    # =========================================================================
    # Seen Fingerprints
    # =========================================================================

    def get_seen(self, learner_id: str, module_id: str) -> set[str]:
        """All fingerprints recorded for a learner and module."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT fingerprint FROM seen_fingerprints WHERE learner_id = ? AND module_id = ?",
            (learner_id, module_id),
        )
        return {row["fingerprint"] for row in cursor.fetchall()}

    def add_seen(
        self,
        learner_id: str,
        module_id: str,
        rows: Iterable[SeenRow],
        synced: bool = False,
    ) -> int:
        """
        Insert fingerprints, ignoring ones already present.

        Existing rows are never deleted or downgraded; a synced row stays synced.

        Returns:
            Number of new fingerprints
        """
        now = datetime.now(UTC).isoformat()
        cursor = self.conn.cursor()
        before = self.conn.total_changes
        cursor.executemany(
            """
            INSERT OR IGNORE INTO seen_fingerprints (
                learner_id, module_id, fingerprint, question_id, source_type, synced, seen_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
            [
                (learner_id, module_id, r.fingerprint, r.question_id, r.source_type, int(synced), now)
                for r in rows
            ],
        )
        self.conn.commit()
        return self.conn.total_changes - before

    def get_unsynced(self, learner_id: str, module_id: str) -> list[SeenRow]:
        """Fingerprints not yet confirmed by the remote store."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT fingerprint, question_id, source_type FROM seen_fingerprints
            WHERE learner_id = ? AND module_id = ? AND synced = 0
        """,
            (learner_id, module_id),
        )
        return [
            SeenRow(
                fingerprint=row["fingerprint"],
                question_id=row["question_id"] or "",
                source_type=row["source_type"] or "generated",
            )
            for row in cursor.fetchall()
        ]

    def mark_synced(self, learner_id: str, module_id: str, fingerprints: Iterable[str]) -> None:
        self.conn.executemany(
            """
            UPDATE seen_fingerprints SET synced = 1
            WHERE learner_id = ? AND module_id = ? AND fingerprint = ?
        """,
            [(learner_id, module_id, fp) for fp in fingerprints],
        )
        self.conn.commit()

    def pending_modules(self, learner_id: str) -> list[str]:
        """Modules holding fingerprints that still need a remote write."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT DISTINCT module_id FROM seen_fingerprints
            WHERE learner_id = ? AND synced = 0
            ORDER BY module_id
        """,
            (learner_id,),
        )
        return [row["module_id"] for row in cursor.fetchall()]

    def seen_counts(self, learner_id: str) -> dict[str, tuple[int, int]]:
        """Per module: (total fingerprints, unsynced fingerprints)."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT module_id, COUNT(*) AS total, SUM(CASE WHEN synced = 0 THEN 1 ELSE 0 END) AS pending
            FROM seen_fingerprints
            WHERE learner_id = ?
            GROUP BY module_id
            ORDER BY module_id
        """,
            (learner_id,),
        )
        return {row["module_id"]: (row["total"], row["pending"] or 0) for row in cursor.fetchall()}

    # =========================================================================
    # Variant Overrides
    # =========================================================================

    def get_override(self, guide_hash: str) -> VariantAssignment | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT variant FROM variant_overrides WHERE guide_hash = ?", (guide_hash,))
        row = cursor.fetchone()
        if row is None:
            return None
        try:
            return VariantAssignment(row["variant"])
        except ValueError:
            logger.warning(f"Ignoring unknown variant override {row['variant']!r} for {guide_hash}")
            return None

    def set_override(self, guide_hash: str, variant: VariantAssignment | None) -> None:
        """Set an operator override; None clears it."""
        if variant is None:
            self.conn.execute("DELETE FROM variant_overrides WHERE guide_hash = ?", (guide_hash,))
        else:
            self.conn.execute(
                """
                INSERT INTO variant_overrides (guide_hash, variant, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(guide_hash) DO UPDATE SET
                    variant = excluded.variant,
                    updated_at = excluded.updated_at
            """,
                (guide_hash, variant.value, datetime.now(UTC).isoformat()),
            )
        self.conn.commit()
