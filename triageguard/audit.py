"""
Append-Only, Tamper-Evident Workflow Audit Trail (Hash-Chained).

Every state change the engine makes is recorded here: escalations opened,
status changes, timeouts, emergency alerts and responses, validation
submissions and decisions, and every notification published.  Entries are
linked by a SHA-256 hash chain, so modifying any entry after the fact
breaks ``verify_chain()``.

Queries are scoped by ``episode_id``.  ``export_for_review()`` strips
patient identifiers and contact details before the bundle leaves the
service.

The log is an optional collaborator: coordinators built without one skip
auditing entirely.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Auditable workflow events."""

    # Escalation ladder
    ESCALATION_OPENED = "ESCALATION_OPENED"
    ESCALATION_STATUS_CHANGED = "ESCALATION_STATUS_CHANGED"
    ESCALATION_TIMED_OUT = "ESCALATION_TIMED_OUT"
    ESCALATION_TIMEOUT_WARNING = "ESCALATION_TIMEOUT_WARNING"

    # Emergency track
    EMERGENCY_ALERT_RAISED = "EMERGENCY_ALERT_RAISED"
    EMERGENCY_RESPONSE_RECORDED = "EMERGENCY_RESPONSE_RECORDED"

    # Validation track
    VALIDATION_SUBMITTED = "VALIDATION_SUBMITTED"
    VALIDATION_DECIDED = "VALIDATION_DECIDED"
    SUPERVISOR_REASSIGNED = "SUPERVISOR_REASSIGNED"

    # Delivery
    NOTIFICATION_PUBLISHED = "NOTIFICATION_PUBLISHED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry, hash-linked to its predecessor."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    episode_id: str = Field(
        ...,
        description="Episode the event belongs to; empty for queue-wide events.",
    )
    actor_id: str = Field(
        ...,
        description="Supervisor ID, or SYSTEM for engine-initiated changes.",
    )
    event_type: AuditEventType
    target_entity: str = Field(
        default="",
        description="Escalation ID, alert ID or message ID the event acted on.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation for hashing (sorted JSON)."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "episode_id": self.episode_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_CONTACT_PATTERNS: dict[str, re.Pattern] = {
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
}

# Fully redacted on export.
_PATIENT_KEYS = {"patient_id", "name", "full_name", "date_of_birth", "dob",
                 "email", "phone", "address", "primary_complaint", "notes"}


def redact_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace patient identifiers and contact details with ``[REDACTED]`` markers.

    Args:
        metadata: The original metadata dictionary.

    Returns:
        A new dictionary safe to include in a review export.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PATIENT_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            for name, pattern in _CONTACT_PATTERNS.items():
                value = pattern.sub(f"[REDACTED-{name.upper()}]", value)
            redacted[key] = value
        elif isinstance(value, dict):
            redacted[key] = redact_metadata(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There is no update or delete.  ``verify_chain()`` recomputes every
    link and reports the first broken index.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []

    def append(self, entry: AuditEntry) -> AuditEntry:
        entry.previous_hash = self._hashes[-1] if self._hashes else ""
        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        episode_id: str,
        actor_id: str = "SYSTEM",
        target_entity: str = "",
        **metadata: Any,
    ) -> AuditEntry:
        """Convenience wrapper used by the coordinators."""
        return self.append(AuditEntry(
            episode_id=episode_id,
            actor_id=actor_id,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata,
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None when the chain is intact.
        """
        for i, entry in enumerate(self._entries):
            expected_prev = "" if i == 0 else self._entries[i - 1].compute_hash()
            if entry.previous_hash != expected_prev:
                return (False, i)
            if self._hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        episode_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Return copies of the entries matching every given filter."""
        results = []
        for entry in self._entries:
            if episode_id is not None and entry.episode_id != episode_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(self, episode_id: str) -> dict[str, Any]:
        """Produce a JSON-serializable, redacted export for one episode.

        Args:
            episode_id: Episode to export.

        Returns:
            A dictionary with ``export_metadata`` (including chain
            integrity) and the redacted ``entries``.
        """
        redacted_entries = []
        for entry in self.query(episode_id=episode_id):
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_metadata(entry.metadata)
            redacted_entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "episode_id": episode_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(redacted_entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": redacted_entries,
        }

    def __len__(self) -> int:
        return len(self._entries)
