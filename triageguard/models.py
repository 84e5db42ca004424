"""
Core data models for the TriageGuard escalation workflow engine.

An ``Episode`` is one patient's triaged case.  Intake (outside this
package) creates it with symptoms and an automated triage assessment;
everything here reads and extends that record:

* the **validation** track writes a single ``HumanValidation`` decision,
* the **escalation** track opens ``EscalationProtocol`` records that climb
  the ordered ``EscalationLevel`` ladder,
* the **emergency** track raises ``EmergencyAlert`` records and collects
  supervisor responses.

Protocols and alerts are never deleted.  They change only through the
status-transition operations of their coordinators, and every mutation of
an episode appends an ``Interaction`` to its history.

DISCLAIMER: These models support human-review workflows.  Urgency levels
and scores come from the upstream triage engine and are routing signals
for supervisors, not diagnoses.
"""

from __future__ import annotations

import enum
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Default clock used by every coordinator."""
    return datetime.now(timezone.utc)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes elapsed from ``start`` to ``end`` (floored)."""
    return math.floor((end - start).total_seconds() / 60)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class UrgencyLevel(str, enum.Enum):
    """Triage urgency, highest first: EMERGENCY > URGENT > ROUTINE > SELF_CARE."""

    EMERGENCY = "emergency"
    URGENT = "urgent"
    ROUTINE = "routine"
    SELF_CARE = "self-care"

    @property
    def queue_priority(self) -> int:
        """Validation queue weight; higher is reviewed first."""
        return _URGENCY_PRIORITY[self]


_URGENCY_PRIORITY = {
    UrgencyLevel.EMERGENCY: 100,
    UrgencyLevel.URGENT: 75,
    UrgencyLevel.ROUTINE: 50,
    UrgencyLevel.SELF_CARE: 25,
}


class EpisodeStatus(str, enum.Enum):
    ACTIVE = "active"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InputMethod(str, enum.Enum):
    TEXT = "text"
    VOICE = "voice"


class ValidationStatus(str, enum.Enum):
    """Queue marker for the human validation track."""

    PENDING = "pending"
    COMPLETED = "completed"


class EscalationLevel(str, enum.Enum):
    """Supervisor tiers, ordered LEVEL_1 < LEVEL_2 < LEVEL_3 < CRITICAL.

    The ladder is closed: ``next()`` returns the tier above, or ``None``
    from CRITICAL.
    """

    LEVEL_1 = "level-1"
    LEVEL_2 = "level-2"
    LEVEL_3 = "level-3"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def next(self) -> Optional["EscalationLevel"]:
        idx = self.rank + 1
        return _LEVEL_ORDER[idx] if idx < len(_LEVEL_ORDER) else None

    @classmethod
    def parse(cls, value: Any) -> Optional["EscalationLevel"]:
        """Return the matching level, or ``None`` for anything unrecognized."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


_LEVEL_ORDER = [
    EscalationLevel.LEVEL_1,
    EscalationLevel.LEVEL_2,
    EscalationLevel.LEVEL_3,
    EscalationLevel.CRITICAL,
]


class EscalationStatus(str, enum.Enum):
    ACTIVE = "active"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EscalationStatus.COMPLETED, EscalationStatus.FAILED)


class AlertSeverity(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"

    @property
    def rank(self) -> int:
        return {"critical": 3, "high": 2, "medium": 1}[self.value]


class AlertStatus(str, enum.Enum):
    """Emergency alert lifecycle: active -> acknowledged -> resolved."""

    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


OPEN_ALERT_STATUSES = frozenset({AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED})
OPEN_ESCALATION_STATUSES = frozenset({EscalationStatus.ACTIVE, EscalationStatus.IN_PROGRESS})


class ResponseAction(str, enum.Enum):
    ACKNOWLEDGE = "acknowledge"
    RESOLVE = "resolve"


# ---------------------------------------------------------------------------
# Triage payload
# ---------------------------------------------------------------------------

class Symptoms(BaseModel):
    primary_complaint: str = Field(..., min_length=1)
    duration: str = ""
    severity: int = Field(..., ge=1, le=10, description="Patient-reported severity (1-10).")
    associated_symptoms: list[str] = Field(default_factory=list)
    input_method: InputMethod = InputMethod.TEXT


class AIAssessment(BaseModel):
    used: bool = False
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    reasoning: Optional[str] = None


class HumanValidation(BaseModel):
    """A supervisor's decision on the automated triage.

    ``approved=False`` is an override and must carry a reason.
    """

    supervisor_id: str = Field(..., description="Supervisor identifier (UUID).")
    approved: bool
    override_reason: Optional[str] = Field(default=None, max_length=500)
    timestamp: datetime = Field(default_factory=utcnow)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("supervisor_id")
    @classmethod
    def supervisor_id_is_uuid(cls, v: str) -> str:
        try:
            uuid.UUID(v)
        except (ValueError, AttributeError, TypeError):
            raise ValueError(f"supervisor_id must be a UUID, got '{v}'")
        return v

    @model_validator(mode="after")
    def override_requires_reason(self) -> "HumanValidation":
        if not self.approved and not (self.override_reason or "").strip():
            raise ValueError("override_reason is required when the triage is not approved")
        return self


class TriageAssessment(BaseModel):
    urgency_level: UrgencyLevel
    rule_based_score: int = Field(default=0, ge=0, le=100)
    ai_assessment: AIAssessment = Field(default_factory=AIAssessment)
    final_score: int = Field(default=0, ge=0, le=100)
    human_validation: Optional[HumanValidation] = None


class Interaction(BaseModel):
    """One entry in an episode's append-only history."""

    type: str
    actor: str = "system"
    timestamp: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Escalation & emergency records
# ---------------------------------------------------------------------------

class EscalationProtocol(BaseModel):
    """One rung of an episode's escalation ladder.

    ``timeout_minutes`` is fixed at creation.  A protocol that times out is
    marked failed and, below CRITICAL, replaced by a new protocol one level
    up that points back through ``previous_escalation_id``.
    """

    escalation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    episode_id: str
    escalation_level: EscalationLevel
    reason: str
    urgent_response: bool = False
    status: EscalationStatus = EscalationStatus.ACTIVE
    assigned_supervisors: list[str] = Field(default_factory=list)
    escalation_path: list[EscalationLevel] = Field(default_factory=list)
    timeout_minutes: int = Field(..., gt=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    timeout_warning_sent: bool = False
    previous_escalation_id: Optional[str] = None


class EscalationRef(BaseModel):
    escalation_id: str
    level: EscalationLevel


class EmergencyAlert(BaseModel):
    alert_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    episode_id: str
    alert_type: str
    severity: AlertSeverity = AlertSeverity.HIGH
    assigned_supervisors: list[str] = Field(default_factory=list)
    status: AlertStatus = AlertStatus.ACTIVE
    response_target_minutes: int = Field(..., gt=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    additional_info: dict[str, Any] = Field(default_factory=dict)


class EmergencyResponse(BaseModel):
    supervisor_id: str
    action: ResponseAction
    notes: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    alert_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Episode
# ---------------------------------------------------------------------------

class Episode(BaseModel):
    """A triaged patient case and all workflow state attached to it.

    ``version`` is the optimistic concurrency token: stores bump it on
    every write and reject writes made against a stale copy.
    ``escalations`` and ``emergency_alerts`` hold the records only when
    the embedded record store is in use.
    """

    episode_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str
    status: EpisodeStatus = EpisodeStatus.ACTIVE
    symptoms: Symptoms
    triage: Optional[TriageAssessment] = None
    interactions: list[Interaction] = Field(default_factory=list)

    current_escalation: Optional[EscalationRef] = None
    escalation_status: Optional[EscalationStatus] = None
    escalation_level: Optional[EscalationLevel] = None
    escalations: list[EscalationProtocol] = Field(default_factory=list)

    emergency_alert: Optional[EmergencyAlert] = None
    emergency_alerts: list[EmergencyAlert] = Field(default_factory=list)
    emergency_status: Optional[AlertStatus] = None
    emergency_responses: list[EmergencyResponse] = Field(default_factory=list)

    assigned_supervisor: Optional[str] = None
    queued_at: Optional[datetime] = None
    validation_status: Optional[ValidationStatus] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def urgency_level(self) -> Optional[UrgencyLevel]:
        return self.triage.urgency_level if self.triage else None

    @property
    def human_validation(self) -> Optional[HumanValidation]:
        return self.triage.human_validation if self.triage else None

    def with_interaction(
        self,
        interaction_type: str,
        timestamp: datetime,
        actor: str = "system",
        **details: Any,
    ) -> list[Interaction]:
        """Return the interaction history with one more entry appended."""
        return [
            *self.interactions,
            Interaction(type=interaction_type, actor=actor, timestamp=timestamp, details=details),
        ]
