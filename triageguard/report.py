"""
Escalation History Report.

Summarizes everything the workflow did to one episode -- the validation
decision, each rung of the escalation ladder, and every emergency alert
and response -- as a single chronological timeline for supervisor review
and post-incident analysis.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from triageguard.models import (
    EmergencyAlert,
    Episode,
    EscalationProtocol,
    EscalationStatus,
    utcnow,
)


class EscalationReport:
    """A structured escalation history for one episode."""

    def __init__(
        self,
        episode_id: str,
        urgency_level: Optional[str],
        episode_status: str,
        current_level: Optional[str],
        highest_level: Optional[str],
        escalation_count: int,
        alert_count: int,
        timeline: list[dict[str, str]],
        generated_at: str,
    ) -> None:
        self.episode_id = episode_id
        self.urgency_level = urgency_level
        self.episode_status = episode_status
        self.current_level = current_level
        self.highest_level = highest_level
        self.escalation_count = escalation_count
        self.alert_count = alert_count
        self.timeline = timeline
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": "Escalation History Report",
            "episode_id": self.episode_id,
            "urgency_level": self.urgency_level,
            "episode_status": self.episode_status,
            "current_level": self.current_level,
            "highest_level": self.highest_level,
            "escalation_count": self.escalation_count,
            "alert_count": self.alert_count,
            "timeline": self.timeline,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"EscalationReport(episode_id={self.episode_id}, "
            f"escalations={self.escalation_count}, alerts={self.alert_count})"
        )


def generate_escalation_report(
    episode: Episode,
    escalations: list[EscalationProtocol],
    alerts: list[EmergencyAlert],
    now: Optional[datetime] = None,
) -> EscalationReport:
    """Build the report from an episode and its records.

    Args:
        episode: The episode.
        escalations: Its escalation protocols (any order).
        alerts: Its emergency alerts (any order).
        now: Report timestamp; defaults to the current UTC time.
    """
    highest = max(escalations, key=lambda e: e.escalation_level.rank, default=None)
    return EscalationReport(
        episode_id=episode.episode_id,
        urgency_level=episode.urgency_level.value if episode.urgency_level else None,
        episode_status=episode.status.value,
        current_level=episode.escalation_level.value if episode.escalation_level else None,
        highest_level=highest.escalation_level.value if highest else None,
        escalation_count=len(escalations),
        alert_count=len(alerts),
        timeline=_build_timeline(episode, escalations, alerts),
        generated_at=(now or utcnow()).isoformat(),
    )


def _build_timeline(
    episode: Episode,
    escalations: list[EscalationProtocol],
    alerts: list[EmergencyAlert],
) -> list[dict[str, str]]:
    """Chronological list of workflow events, oldest first."""
    events: list[tuple[datetime, dict[str, str]]] = [
        (episode.created_at, {"event": "episode_created", "description": "Episode created by intake."}),
    ]

    validation = episode.human_validation
    if validation is not None:
        if validation.approved:
            description = f"Triage approved by supervisor {validation.supervisor_id}."
        else:
            description = (
                f"Triage overridden by supervisor {validation.supervisor_id}: "
                f"{validation.override_reason}"
            )
        events.append((validation.timestamp, {"event": "validation_decided", "description": description}))

    for esc in escalations:
        events.append((esc.created_at, {
            "event": "escalation_opened",
            "description": (
                f"Escalated to {esc.escalation_level.value} "
                f"({', '.join(esc.assigned_supervisors)}): {esc.reason}"
            ),
        }))
        if esc.status == EscalationStatus.COMPLETED and esc.completed_at:
            events.append((esc.completed_at, {
                "event": "escalation_completed",
                "description": f"Escalation at {esc.escalation_level.value} completed.",
            }))
        elif esc.status == EscalationStatus.FAILED and esc.updated_at:
            events.append((esc.updated_at, {
                "event": "escalation_failed",
                "description": f"Escalation at {esc.escalation_level.value} failed: {esc.failure_reason}",
            }))

    for alert in alerts:
        events.append((alert.created_at, {
            "event": "emergency_alert_raised",
            "description": f"{alert.severity.value} alert '{alert.alert_type}' paged {len(alert.assigned_supervisors)} supervisor(s).",
        }))

    for response in episode.emergency_responses:
        events.append((response.timestamp, {
            "event": f"emergency_{response.action.value}",
            "description": f"Supervisor {response.supervisor_id} recorded '{response.action.value}'.",
        }))

    events.sort(key=lambda item: item[0])
    return [{**entry, "timestamp": ts.isoformat()} for ts, entry in events]
