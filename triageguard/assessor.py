"""
Escalation Assessor -- does this episode need to climb the ladder?

``assess_escalation_need()`` is a pure function of the episode, the
policy tables, and the current time.  It never writes anything; the
coordinator acts on its answer.

**Rules (first match wins):**

1. EMERGENCY with a critical keyword in the complaint or severity at or
   above the critical threshold -> CRITICAL, urgent response.
2. EMERGENCY waiting longer than its budget -> LEVEL_2, urgent response.
3. EMERGENCY with a low-confidence AI assessment -> LEVEL_1.
4. URGENT waiting longer than its budget -> LEVEL_1.
5. Otherwise no escalation.

The wait is counted in whole elapsed minutes since the episode was
created, and the budget is exceeded only when the wait is strictly
greater than it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from triageguard.config import DEFAULT_POLICY, EscalationPolicy
from triageguard.models import Episode, EscalationLevel, UrgencyLevel, minutes_between, utcnow

REASON_CRITICAL_SYMPTOMS = "critical emergency symptoms detected"
REASON_EMERGENCY_WAIT = "exceeded maximum wait time"
REASON_LOW_CONFIDENCE = "low-confidence AI assessment for emergency case"
REASON_URGENT_WAIT = "urgent case exceeded maximum wait time"
REASON_NO_TRIAGE = "No triage assessment available"
REASON_NOT_REQUIRED = "no escalation criteria met"


class EscalationAssessment(BaseModel):
    required: bool
    reason: str
    target_level: EscalationLevel
    urgent_response: bool = False
    timeout_minutes: int
    wait_minutes: Optional[int] = None
    matched_keywords: list[str] = []


def matched_critical_keywords(complaint: str, policy: EscalationPolicy) -> list[str]:
    text = complaint.lower()
    return [k for k in policy.critical_keywords if k in text]


def wait_budget_exceeded(episode: Episode, policy: EscalationPolicy, now: datetime) -> tuple[bool, int]:
    """Return ``(exceeded, wait_minutes)`` for the episode's urgency."""
    wait = minutes_between(episode.created_at, now)
    return wait > policy.max_wait_for(episode.urgency_level), wait


def assess_escalation_need(
    episode: Episode,
    policy: EscalationPolicy = DEFAULT_POLICY,
    now: Optional[datetime] = None,
) -> EscalationAssessment:
    """Decide whether ``episode`` needs escalation and at what level.

    Args:
        episode: The episode to assess.
        policy: Routing tables (keywords, thresholds, wait budgets, timeouts).
        now: Evaluation time; defaults to the current UTC time.

    Returns:
        An ``EscalationAssessment``.  When no escalation is required the
        target level is the LEVEL_1 placeholder.
    """
    now = now or utcnow()

    def result(required: bool, reason: str, level: EscalationLevel, urgent: bool = False,
               wait: Optional[int] = None, keywords: Optional[list[str]] = None) -> EscalationAssessment:
        return EscalationAssessment(
            required=required,
            reason=reason,
            target_level=level,
            urgent_response=urgent,
            timeout_minutes=policy.timeout_for(level),
            wait_minutes=wait,
            matched_keywords=keywords or [],
        )

    if episode.triage is None:
        return result(False, REASON_NO_TRIAGE, EscalationLevel.LEVEL_1)

    urgency = episode.triage.urgency_level
    exceeded, wait = wait_budget_exceeded(episode, policy, now)

    if urgency == UrgencyLevel.EMERGENCY:
        keywords = matched_critical_keywords(episode.symptoms.primary_complaint, policy)
        if keywords or episode.symptoms.severity >= policy.critical_severity_threshold:
            return result(True, REASON_CRITICAL_SYMPTOMS, EscalationLevel.CRITICAL, True, wait, keywords)
        if exceeded:
            return result(True, REASON_EMERGENCY_WAIT, EscalationLevel.LEVEL_2, True, wait)
        ai = episode.triage.ai_assessment
        if ai.used and ai.confidence is not None and ai.confidence < policy.ai_confidence_threshold:
            return result(True, REASON_LOW_CONFIDENCE, EscalationLevel.LEVEL_1, False, wait)

    if urgency == UrgencyLevel.URGENT and exceeded:
        return result(True, REASON_URGENT_WAIT, EscalationLevel.LEVEL_1, False, wait)

    return result(False, REASON_NOT_REQUIRED, EscalationLevel.LEVEL_1, False, wait)
