"""
SQLite-backed approval rules and tool-decision audit trail.

- ``ToolApprovalRuleStore``: standing ``allow_once`` / ``allow_always`` /
  ``reject_always`` rules keyed by tool-name pattern. The most specific
  matching rule decides; a matched ``allow_once`` rule is consumed.
- ``ToolAuditLog``: append-only, hash-chained record of every approval
  decision taken by the graph. Each entry hashes its predecessor and is
  signed with HMAC-SHA256, so edits and gaps are detectable through
  ``verify_integrity()``.
"""

import hashlib
import hmac
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from .approval import (
    ApprovalReason,
    MatchedToolApprovalRule,
    ToolApprovalPattern,
    ToolApprovalRule,
    ToolRiskLevel,
    rule_sort_key,
)

logger = logging.getLogger(__name__)

AuditDecision = Literal["approval_required", "auto_approved", "user_approved", "user_denied"]

GENESIS_HASH = "GENESIS"
SIGNATURE_ALGORITHM = "hmac-sha256"


class _SqliteStore:
    """Shared connection and lock handling."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()


class ToolApprovalRuleStore(_SqliteStore):
    """
    Persists tool approval rules.

    Example:
        >>> rules = ToolApprovalRuleStore("approval_rules.sqlite")
        >>> rules.upsert_rule(ToolApprovalRule(pattern=ToolApprovalPattern.prefix("read_"),
        ...                                    decision="allow_always"))
        >>> rules.resolve_decision("read_file").decision
        'allow_always'
    """

    def __init__(self, db_path: str = "approval_rules.sqlite"):
        super().__init__(db_path)
        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS approval_rules (
                    rule_id TEXT PRIMARY KEY,
                    pattern_kind TEXT NOT NULL,
                    pattern_value TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

        logger.info(f"ToolApprovalRuleStore initialized: {self.db_path}")

    @staticmethod
    def _row_to_rule(row) -> ToolApprovalRule:
        return ToolApprovalRule(
            id=row[0],
            pattern=ToolApprovalPattern(kind=row[1], value=row[2]),
            decision=row[3],
            created_at=datetime.fromisoformat(row[4]),
            updated_at=datetime.fromisoformat(row[5]),
        )

    def _load(self, conn) -> List[ToolApprovalRule]:
        rows = conn.execute(
            """
            SELECT rule_id, pattern_kind, pattern_value, decision, created_at, updated_at
            FROM approval_rules
            """
        ).fetchall()
        return sorted((self._row_to_rule(row) for row in rows), key=rule_sort_key)

    def list_rules(self) -> List[ToolApprovalRule]:
        """Rules in match order."""
        with self._get_connection() as conn:
            return self._load(conn)

    def upsert_rule(self, rule: ToolApprovalRule) -> None:
        """Insert ``rule`` or update pattern and decision of the rule with its id."""
        now = datetime.now(rule.updated_at.tzinfo).isoformat()
        with self._lock, self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO approval_rules (rule_id, pattern_kind, pattern_value, decision, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(rule_id) DO UPDATE SET
                    pattern_kind = excluded.pattern_kind,
                    pattern_value = excluded.pattern_value,
                    decision = excluded.decision,
                    updated_at = ?
                """,
                (
                    rule.id,
                    rule.pattern.kind,
                    rule.pattern.value,
                    rule.decision,
                    rule.created_at.isoformat(),
                    rule.updated_at.isoformat(),
                    now,
                ),
            )
            conn.commit()
        logger.info(f"Saved approval rule {rule.id}: {rule.pattern.kind}:{rule.pattern.value} -> {rule.decision}")

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock, self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM approval_rules WHERE rule_id = ?", (rule_id,))
            conn.commit()
        return cursor.rowcount > 0

    def resolve_decision(self, tool_name: str, consume_one_shot: bool = True) -> Optional[MatchedToolApprovalRule]:
        """
        The decision of the most specific rule matching ``tool_name``.

        A matched ``allow_once`` rule is deleted when ``consume_one_shot``.
        """
        with self._lock, self._get_connection() as conn:
            matched = next((rule for rule in self._load(conn) if rule.pattern.matches(tool_name)), None)
            if matched is None:
                return None
            if consume_one_shot and matched.decision == "allow_once":
                conn.execute("DELETE FROM approval_rules WHERE rule_id = ?", (matched.id,))
                conn.commit()
                logger.debug(f"Consumed one-shot approval rule {matched.id} for {tool_name}")

        return MatchedToolApprovalRule(rule_id=matched.id, decision=matched.decision)


# ── Audit trail ───────────────────────────────────────────────────────

class ToolAuditEvent(BaseModel):
    """One approval decision about one tool call."""

    model_config = ConfigDict(frozen=True)

    timestamp_ns: int
    thread_id: str
    task_id: str
    tool_call_id: str
    tool_name: str
    risk_level: ToolRiskLevel
    decision: AuditDecision
    reason: Optional[ApprovalReason] = None


class ToolAuditRecord(BaseModel):
    """A chained, signed audit entry."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    previous_entry_hash: Optional[str]
    event: ToolAuditEvent
    entry_hash: str
    signature: str
    signature_algorithm: str = SIGNATURE_ALGORITHM
    signer_key_id: str = "default"


def _canonical_payload(sequence: int, previous_entry_hash: Optional[str], event: ToolAuditEvent) -> str:
    return json.dumps(
        {
            "sequence": sequence,
            "previous_entry_hash": previous_entry_hash,
            "event": event.model_dump(mode="json"),
        },
        sort_keys=True,
    )


def compute_entry_hash(previous_entry_hash: Optional[str], payload: str) -> str:
    """SHA-256 over ``{previous hash or GENESIS}\\n{canonical payload}``."""
    chain = f"{previous_entry_hash or GENESIS_HASH}\n{payload}"
    return hashlib.sha256(chain.encode("utf-8")).hexdigest()


class ToolAuditLog(_SqliteStore):
    """
    Append-only tool decision log.

    Args:
        db_path: SQLite file holding the ``tool_audit`` table
        signing_key: HMAC key used to sign every entry hash
        key_id: Identifier stored alongside each signature
    """

    def __init__(self, db_path: str = "tool_audit.sqlite", signing_key: bytes = b"", key_id: str = "default"):
        super().__init__(db_path)
        if not signing_key:
            logger.warning("ToolAuditLog created without a signing key; signatures only detect accidental edits")
        self._signing_key = signing_key
        self.key_id = key_id

        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tool_audit (
                    sequence INTEGER PRIMARY KEY,
                    previous_entry_hash TEXT,
                    payload TEXT NOT NULL,
                    entry_hash TEXT NOT NULL,
                    signature TEXT NOT NULL,
                    signature_algorithm TEXT NOT NULL,
                    signer_key_id TEXT NOT NULL
                )
                """
            )
            conn.commit()

        logger.info(f"ToolAuditLog initialized: {self.db_path}")

    def _sign(self, entry_hash: str) -> str:
        return hmac.new(self._signing_key, entry_hash.encode("utf-8"), hashlib.sha256).hexdigest()

    def record(
        self,
        thread_id: str,
        task_id: str,
        tool_call_id: str,
        tool_name: str,
        risk_level: ToolRiskLevel,
        decision: AuditDecision,
        reason: Optional[ApprovalReason] = None,
    ) -> ToolAuditRecord:
        """Append one decision, chained to the previous entry."""
        event = ToolAuditEvent(
            timestamp_ns=time.time_ns(),
            thread_id=thread_id,
            task_id=task_id,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            risk_level=risk_level,
            decision=decision,
            reason=reason,
        )

        with self._lock, self._get_connection() as conn:
            last = conn.execute(
                "SELECT sequence, entry_hash FROM tool_audit ORDER BY sequence DESC LIMIT 1"
            ).fetchone()
            sequence = (last[0] if last else 0) + 1
            previous_hash = last[1] if last else None

            payload = _canonical_payload(sequence, previous_hash, event)
            entry_hash = compute_entry_hash(previous_hash, payload)
            signature = self._sign(entry_hash)

            conn.execute(
                """
                INSERT INTO tool_audit (sequence, previous_entry_hash, payload, entry_hash,
                                        signature, signature_algorithm, signer_key_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (sequence, previous_hash, payload, entry_hash, signature, SIGNATURE_ALGORITHM, self.key_id),
            )
            conn.commit()

        logger.debug(f"Audit {sequence}: {decision} {tool_name} ({tool_call_id})")
        return ToolAuditRecord(
            sequence=sequence,
            previous_entry_hash=previous_hash,
            event=event,
            entry_hash=entry_hash,
            signature=signature,
            signer_key_id=self.key_id,
        )

    def _rows(self):
        with self._get_connection() as conn:
            return conn.execute(
                """
                SELECT sequence, previous_entry_hash, payload, entry_hash,
                       signature, signature_algorithm, signer_key_id
                FROM tool_audit ORDER BY sequence ASC
                """
            ).fetchall()

    def records(self) -> List[ToolAuditRecord]:
        return [
            ToolAuditRecord(
                sequence=row[0],
                previous_entry_hash=row[1],
                event=ToolAuditEvent.model_validate(json.loads(row[2])["event"]),
                entry_hash=row[3],
                signature=row[4],
                signature_algorithm=row[5],
                signer_key_id=row[6],
            )
            for row in self._rows()
        ]

    def verify_integrity(self) -> bool:
        """
        Check sequence continuity, hash chaining and signatures.

        Returns:
            False at the first entry that does not verify
        """
        expected_sequence = 1
        previous_hash: Optional[str] = None
        for sequence, stored_previous, payload, entry_hash, signature, _, _ in self._rows():
            if sequence != expected_sequence or stored_previous != previous_hash:
                logger.warning(f"Audit chain broken at entry {sequence}")
                return False
            if json.loads(payload).get("previous_entry_hash") != previous_hash:
                logger.warning(f"Audit payload {sequence} does not reference its predecessor")
                return False
            if compute_entry_hash(previous_hash, payload) != entry_hash:
                logger.warning(f"Audit entry {sequence} hash mismatch")
                return False
            if not hmac.compare_digest(self._sign(entry_hash), signature):
                logger.warning(f"Audit entry {sequence} signature mismatch")
                return False
            previous_hash = entry_hash
            expected_sequence += 1
        return True
