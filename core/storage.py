"""
Assessment Store - SQLite persistence for assessments, plans and scenarios.

Every value is stored as JSON text. Assessments are append-only: each save
writes a new version and reads return the latest one.
"""

import json
import sqlite3
import threading
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.errors import InputError

log = logging.getLogger(__name__)

STORAGE_VERSION = "1.0"

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS assessments (
        id TEXT NOT NULL,
        version INTEGER NOT NULL,
        stored_at TEXT NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS local_plans (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS policies (
        id TEXT PRIMARY KEY,
        local_plan_id TEXT NOT NULL,
        policy_ref TEXT,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS compliance_checks (
        assessment_id TEXT NOT NULL,
        local_plan_id TEXT NOT NULL,
        checked_at TEXT NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (assessment_id, local_plan_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scenarios (
        id TEXT PRIMARY KEY,
        plan_id TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS site_allocations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        plan_id TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_policies_plan ON policies(local_plan_id)",
    "CREATE INDEX IF NOT EXISTS idx_scenarios_plan ON scenarios(plan_id)",
    "CREATE INDEX IF NOT EXISTS idx_allocations_plan ON site_allocations(plan_id)",
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ═══════════════════════════════════════════════════════════════════════════
# STORE
# ═══════════════════════════════════════════════════════════════════════════
class AssessmentStore:
    """
    SQLite-backed store shared by the pipeline, compliance engine and
    scenario modeler.

    Usage:
        store = AssessmentStore("assessments.db")
        store.add_local_plan("lp-2030", "Borough Local Plan 2030")
        store.add_policy("lp-2030", {"policy_ref": "H1", "title": "Housing", "content": "..."})
        stored = store.save_assessment(assessment.to_dict())
    """

    DEFAULT_DB_PATH = "assessments.db"

    def __init__(self, db_path: str = None):
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self._lock = threading.RLock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        with self._lock:
            conn = self._get_connection()
            try:
                for statement in SCHEMA:
                    conn.execute(statement)
                conn.commit()
                log.info(f"Assessment store initialized at {self.db_path}")
            finally:
                conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

    def _fetch(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            conn = self._get_connection()
            try:
                return conn.execute(sql, params).fetchall()
            finally:
                conn.close()

    # ───────────────────────────────────────────────────────────────────────
    # Assessments
    # ───────────────────────────────────────────────────────────────────────
    def save_assessment(self, assessment: Dict[str, Any]) -> Dict[str, Any]:
        """
        Append a new version of an assessment.

        Returns:
            The stored record, with storage metadata added
        """
        assessment_id = assessment.get("id")
        if not assessment_id:
            raise InputError("Assessment has no id")

        with self._lock:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT MAX(version) AS v FROM assessments WHERE id = ?", (assessment_id,)
                ).fetchone()
                version = (row["v"] or 0) + 1
                record = dict(assessment)
                record["stored_at"] = _now()
                record["storage_version"] = STORAGE_VERSION
                record["version"] = version
                conn.execute(
                    "INSERT INTO assessments (id, version, stored_at, data) VALUES (?, ?, ?, ?)",
                    (assessment_id, version, record["stored_at"], json.dumps(record)),
                )
                conn.commit()
            finally:
                conn.close()

        log.info(f"Stored assessment {assessment_id} version {version}")
        return record

    def get_assessment(self, assessment_id: str, version: Optional[int] = None) -> Optional[Dict[str, Any]]:
        if version is None:
            rows = self._fetch(
                "SELECT data FROM assessments WHERE id = ? ORDER BY version DESC LIMIT 1", (assessment_id,)
            )
        else:
            rows = self._fetch(
                "SELECT data FROM assessments WHERE id = ? AND version = ?", (assessment_id, version)
            )
        return json.loads(rows[0]["data"]) if rows else None

    def list_assessment_versions(self, assessment_id: str) -> List[int]:
        rows = self._fetch("SELECT version FROM assessments WHERE id = ? ORDER BY version", (assessment_id,))
        return [r["version"] for r in rows]

    # ───────────────────────────────────────────────────────────────────────
    # Local plans and policies
    # ───────────────────────────────────────────────────────────────────────
    def add_local_plan(self, plan_id: str, name: str, **metadata) -> Dict[str, Any]:
        plan = {"id": plan_id, "name": name, **metadata}
        self._execute(
            "INSERT OR REPLACE INTO local_plans (id, name, data) VALUES (?, ?, ?)",
            (plan_id, name, json.dumps(plan)),
        )
        return plan

    def get_local_plan(self, plan_id: str) -> Optional[Dict[str, Any]]:
        rows = self._fetch("SELECT data FROM local_plans WHERE id = ?", (plan_id,))
        return json.loads(rows[0]["data"]) if rows else None

    def add_policy(self, plan_id: str, policy: Dict[str, Any]) -> Dict[str, Any]:
        """Add or replace a policy; the id defaults to '<plan>:<policy_ref>'."""
        if self.get_local_plan(plan_id) is None:
            raise InputError(f"Unknown local plan: {plan_id}")
        if not policy.get("content"):
            raise InputError("Policy has no content")

        record = dict(policy)
        record["local_plan_id"] = plan_id
        record.setdefault("policy_ref", record.get("id") or "")
        record.setdefault("id", f"{plan_id}:{record['policy_ref']}")
        record.setdefault("title", record["policy_ref"])
        self._execute(
            "INSERT OR REPLACE INTO policies (id, local_plan_id, policy_ref, data) VALUES (?, ?, ?, ?)",
            (record["id"], plan_id, record["policy_ref"], json.dumps(record)),
        )
        return record

    def get_policies(self, plan_id: str) -> List[Dict[str, Any]]:
        rows = self._fetch(
            "SELECT data FROM policies WHERE local_plan_id = ? ORDER BY policy_ref", (plan_id,)
        )
        return [json.loads(r["data"]) for r in rows]

    # ───────────────────────────────────────────────────────────────────────
    # Compliance checks
    # ───────────────────────────────────────────────────────────────────────
    def save_compliance_check(self, check: Dict[str, Any]):
        """Replace any earlier check for the same assessment and plan."""
        self._execute(
            """
            INSERT OR REPLACE INTO compliance_checks (assessment_id, local_plan_id, checked_at, data)
            VALUES (?, ?, ?, ?)
            """,
            (check["assessment_id"], check["local_plan_id"], check.get("checked_at") or _now(), json.dumps(check)),
        )

    def get_compliance_check(self, assessment_id: str, local_plan_id: str) -> Optional[Dict[str, Any]]:
        rows = self._fetch(
            "SELECT data FROM compliance_checks WHERE assessment_id = ? AND local_plan_id = ?",
            (assessment_id, local_plan_id),
        )
        return json.loads(rows[0]["data"]) if rows else None

    # ───────────────────────────────────────────────────────────────────────
    # Scenarios
    # ───────────────────────────────────────────────────────────────────────
    def save_scenario(self, scenario: Dict[str, Any]):
        self._execute(
            "INSERT OR REPLACE INTO scenarios (id, plan_id, updated_at, data) VALUES (?, ?, ?, ?)",
            (scenario["id"], scenario["plan_id"], scenario.get("updated_at") or _now(), json.dumps(scenario)),
        )

    def get_scenario(self, scenario_id: str) -> Optional[Dict[str, Any]]:
        rows = self._fetch("SELECT data FROM scenarios WHERE id = ?", (scenario_id,))
        return json.loads(rows[0]["data"]) if rows else None

    def list_scenarios(self, plan_id: str) -> List[Dict[str, Any]]:
        rows = self._fetch(
            "SELECT data FROM scenarios WHERE plan_id = ? ORDER BY updated_at DESC", (plan_id,)
        )
        return [json.loads(r["data"]) for r in rows]

    def delete_scenario(self, scenario_id: str) -> bool:
        return self._execute("DELETE FROM scenarios WHERE id = ?", (scenario_id,)) > 0

    def add_site_allocation(self, plan_id: str, allocation: Dict[str, Any]):
        self._execute(
            "INSERT INTO site_allocations (plan_id, data) VALUES (?, ?)",
            (plan_id, json.dumps(allocation)),
        )

    def get_site_allocations(self, plan_id: str) -> List[Dict[str, Any]]:
        rows = self._fetch("SELECT data FROM site_allocations WHERE plan_id = ? ORDER BY id", (plan_id,))
        return [json.loads(r["data"]) for r in rows]
