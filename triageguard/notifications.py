"""
Notification Dispatcher -- what to send, to whom, with what priority.

Every workflow transition that a human must hear about is turned into a
``Notification``: a channel, an ASCII subject under the SNS limit, a plain
text body, and string message attributes that subscribers filter on.

**Channels by kind:**

* EMERGENCY -- ``emergency_alert``, ``escalation_required``, ``timeout_warning``
* GENERAL   -- ``validation_required``, ``validation_completed``,
  ``queue_status_update``, ``response_confirmation``

**Delivery contract:**

* The primary publish must succeed.  If it fails the caller gets
  ``DependencyFailureError``; whatever the caller already persisted stays
  persisted.
* Emergency-channel kinds are also fanned out as one personal message per
  assigned supervisor.  These are best effort: a failed recipient is
  logged and skipped, never raised.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from triageguard.audit import AuditEventType, AuditLog
from triageguard.bus import MAX_SUBJECT_LENGTH, Channel, MessageBus
from triageguard.errors import DependencyFailureError
from triageguard.models import AlertSeverity, Episode, EscalationLevel, UrgencyLevel, utcnow

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    VALIDATION_REQUIRED = "validation_required"
    EMERGENCY_ALERT = "emergency_alert"
    VALIDATION_COMPLETED = "validation_completed"
    ESCALATION_REQUIRED = "escalation_required"
    QUEUE_STATUS_UPDATE = "queue_status_update"
    RESPONSE_CONFIRMATION = "response_confirmation"
    TIMEOUT_WARNING = "timeout_warning"


_CHANNELS = {
    NotificationKind.VALIDATION_REQUIRED: Channel.GENERAL,
    NotificationKind.EMERGENCY_ALERT: Channel.EMERGENCY,
    NotificationKind.VALIDATION_COMPLETED: Channel.GENERAL,
    NotificationKind.ESCALATION_REQUIRED: Channel.EMERGENCY,
    NotificationKind.QUEUE_STATUS_UPDATE: Channel.GENERAL,
    NotificationKind.RESPONSE_CONFIRMATION: Channel.GENERAL,
    NotificationKind.TIMEOUT_WARNING: Channel.EMERGENCY,
}

_SUBJECTS = {
    NotificationKind.VALIDATION_REQUIRED: "Healthcare Validation Required - Episode {episode_id}",
    NotificationKind.EMERGENCY_ALERT: "EMERGENCY ALERT - Episode {episode_id}",
    NotificationKind.VALIDATION_COMPLETED: "Validation Completed - Episode {episode_id}",
    NotificationKind.ESCALATION_REQUIRED: "ESCALATION REQUIRED - Episode {episode_id}",
    NotificationKind.QUEUE_STATUS_UPDATE: "Validation Queue Status Update",
    NotificationKind.RESPONSE_CONFIRMATION: "Emergency Response Confirmed - Episode {episode_id}",
    NotificationKind.TIMEOUT_WARNING: "TIMEOUT WARNING - Episode {episode_id}",
}

_HEADLINES = {
    NotificationKind.VALIDATION_REQUIRED: "A triage assessment is waiting for supervisor validation.",
    NotificationKind.EMERGENCY_ALERT: "EMERGENCY: immediate supervisor response required.",
    NotificationKind.VALIDATION_COMPLETED: "Supervisor validation has been recorded.",
    NotificationKind.ESCALATION_REQUIRED: "ESCALATION: this episode requires senior supervisor attention.",
    NotificationKind.QUEUE_STATUS_UPDATE: "Current state of the validation queue.",
    NotificationKind.RESPONSE_CONFIRMATION: "An emergency response has been recorded.",
    NotificationKind.TIMEOUT_WARNING: "WARNING: an escalation is about to time out.",
}

# (label, detail key) rows rendered after the common header, per kind.
_DETAIL_ROWS: dict[NotificationKind, list[tuple[str, str]]] = {
    NotificationKind.VALIDATION_REQUIRED: [],
    NotificationKind.EMERGENCY_ALERT: [
        ("Alert Type", "alert_type"),
        ("Severity", "severity"),
        ("Response Target (minutes)", "response_target_minutes"),
        ("Additional Info", "additional_info"),
    ],
    NotificationKind.VALIDATION_COMPLETED: [
        ("Validated By", "validated_by"),
        ("Decision", "decision"),
        ("Notes", "notes"),
    ],
    NotificationKind.ESCALATION_REQUIRED: [
        ("Reason", "reason"),
        ("Escalation Level", "escalation_level"),
        ("Expected Response (minutes)", "expected_response_minutes"),
        ("Wait Time (minutes)", "wait_minutes"),
        ("Original Assignment", "original_supervisor"),
        ("Backup Supervisors", "backup_supervisors"),
        ("Override Reason", "override_reason"),
    ],
    NotificationKind.QUEUE_STATUS_UPDATE: [
        ("Total Pending", "total_pending"),
        ("Emergency", "emergency_count"),
        ("Urgent", "urgent_count"),
        ("Routine", "routine_count"),
        ("Self-Care", "self_care_count"),
        ("Average Wait (minutes)", "average_wait_minutes"),
    ],
    NotificationKind.RESPONSE_CONFIRMATION: [
        ("Responding Supervisor", "responder"),
        ("Action", "action"),
        ("Notes", "notes"),
        ("Emergency Status", "emergency_status"),
    ],
    NotificationKind.TIMEOUT_WARNING: [
        ("Escalation ID", "escalation_id"),
        ("Escalation Level", "escalation_level"),
        ("Minutes Remaining", "minutes_remaining"),
        ("Timeout At", "timeout_at"),
    ],
}

_PREFIXED_KINDS = {
    NotificationKind.VALIDATION_REQUIRED,
    NotificationKind.EMERGENCY_ALERT,
    NotificationKind.ESCALATION_REQUIRED,
    NotificationKind.TIMEOUT_WARNING,
}

PERSONAL_SUBJECT_PREFIX = "[PERSONAL ALERT] "


class Notification(BaseModel):
    kind: NotificationKind
    channel: Channel
    subject: str
    body: str
    attributes: dict[str, str] = Field(default_factory=dict)


class DispatchResult(BaseModel):
    kind: NotificationKind
    channel: Channel
    message_id: str
    personal_sent: list[str] = Field(default_factory=list)
    personal_failed: list[str] = Field(default_factory=list)


def channel_for(kind: NotificationKind) -> Channel:
    return _CHANNELS[kind]


def _ascii(text: str) -> str:
    return text.encode("ascii", "ignore").decode("ascii")


def _format_value(value: Any) -> str:
    if isinstance(value, enum.Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (list, tuple)):
        return ", ".join(_format_value(v) for v in value) or "none"
    if isinstance(value, dict):
        return "; ".join(f"{k}={_format_value(v)}" for k, v in value.items()) or "none"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _subject_prefix(
    kind: NotificationKind,
    urgency: Optional[UrgencyLevel],
    details: dict[str, Any],
) -> str:
    if kind not in _PREFIXED_KINDS:
        return ""
    if (
        details.get("severity") == AlertSeverity.CRITICAL
        or details.get("escalation_level") == EscalationLevel.CRITICAL
    ):
        return "[CRITICAL] "
    if urgency == UrgencyLevel.EMERGENCY:
        return "[EMERGENCY] "
    if urgency == UrgencyLevel.URGENT or _CHANNELS[kind] == Channel.EMERGENCY:
        return "[URGENT] "
    return ""


def _episode_rows(episode: Episode) -> list[str]:
    rows = [
        f"Symptoms: {episode.symptoms.primary_complaint} (severity {episode.symptoms.severity}/10)",
    ]
    if episode.symptoms.associated_symptoms:
        rows.append(f"Associated Symptoms: {', '.join(episode.symptoms.associated_symptoms)}")
    if episode.triage is not None:
        rows.append(f"Triage Score: {episode.triage.final_score}")
        ai = episode.triage.ai_assessment
        if ai.used:
            confidence = f"{ai.confidence:.2f}" if ai.confidence is not None else "n/a"
            rows.append(f"AI Assessment: confidence {confidence}; {ai.reasoning or 'no reasoning given'}")
        else:
            rows.append("AI Assessment: not used")
    return rows


def build_notification(
    kind: NotificationKind,
    episode: Optional[Episode],
    supervisors: list[str],
    details: dict[str, Any],
    now: datetime,
) -> Notification:
    """Compute the channel, subject, body and attributes for one message.

    Args:
        kind: What happened.
        episode: The episode concerned; None only for queue-wide updates.
        supervisors: Intended recipients, first one is the primary.
        details: Kind-specific payload (reason, wait time, statistics, ...).
        now: Timestamp written into the body.

    Returns:
        The primary ``Notification``.
    """
    episode_id = episode.episode_id if episode else ""
    urgency = episode.urgency_level if episode else None
    assigned = ", ".join(supervisors) if supervisors else "unassigned"

    subject = _subject_prefix(kind, urgency, details) + _SUBJECTS[kind].format(episode_id=episode_id)
    subject = _ascii(subject)[:MAX_SUBJECT_LENGTH]

    lines = [_HEADLINES[kind], ""]
    if episode is not None:
        lines += [
            f"Episode ID: {episode.episode_id}",
            f"Patient ID: {episode.patient_id}",
            f"Urgency Level: {urgency.value.upper() if urgency else 'UNKNOWN'}",
        ]
    lines += [
        f"Assigned Supervisor(s): {assigned}",
        f"Timestamp: {now.isoformat()}",
    ]
    if episode is not None and kind in (NotificationKind.VALIDATION_REQUIRED, NotificationKind.EMERGENCY_ALERT):
        lines += [""] + _episode_rows(episode)
    rows = [
        f"{label}: {_format_value(details[key])}"
        for label, key in _DETAIL_ROWS[kind]
        if details.get(key) not in (None, "", [], {})
    ]
    if rows:
        lines += [""] + rows

    high_priority = urgency == UrgencyLevel.EMERGENCY or _CHANNELS[kind] == Channel.EMERGENCY
    attributes = {
        "notification_type": kind.value,
        "urgency_level": urgency.value if urgency else "unknown",
        "episode_id": episode_id,
        "supervisor_id": supervisors[0] if supervisors else "unassigned",
        "high_priority": "true" if high_priority else "false",
    }
    if details.get("severity") is not None:
        attributes["severity"] = _format_value(details["severity"])
    if details.get("approved") is not None:
        attributes["approved"] = "true" if details["approved"] else "false"

    return Notification(
        kind=kind,
        channel=_CHANNELS[kind],
        subject=subject,
        body="\n".join(lines),
        attributes=attributes,
    )


def personalize(notification: Notification, supervisor_id: str) -> Notification:
    """Derive the per-supervisor copy of an emergency-channel notification."""
    attributes = dict(notification.attributes)
    attributes.update({
        "notification_type": f"{notification.kind.value}_personal",
        "supervisor_id": supervisor_id,
        "personal_alert": "true",
    })
    return notification.model_copy(update={
        "subject": (PERSONAL_SUBJECT_PREFIX + notification.subject)[:MAX_SUBJECT_LENGTH],
        "body": f"SUPERVISOR: {supervisor_id}\n\n{notification.body}",
        "attributes": attributes,
    })


class NotificationDispatcher:
    """Publishes notifications on the message bus.

    Args:
        bus: Any ``MessageBus`` implementation.
        audit_log: Optional audit trail; each primary publish is recorded.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        bus: MessageBus,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._bus = bus
        self._audit_log = audit_log
        self._clock = clock or utcnow

    def dispatch(
        self,
        kind: NotificationKind,
        episode: Optional[Episode] = None,
        supervisors: Optional[list[str]] = None,
        **details: Any,
    ) -> DispatchResult:
        """Publish one notification and, for emergency kinds, its personal copies.

        Raises:
            DependencyFailureError: If the primary publish fails.
        """
        if supervisors is None:
            supervisors = [episode.assigned_supervisor] if episode and episode.assigned_supervisor else []
        notification = build_notification(kind, episode, supervisors, details, self._clock())
        episode_id = episode.episode_id if episode else ""

        try:
            message_id = self._bus.publish(
                notification.channel, notification.subject, notification.body, notification.attributes
            )
        except DependencyFailureError:
            logger.exception(
                "NOTIFICATION_PUBLISH_FAILED",
                extra={
                    "notification_type": kind.value,
                    "channel": notification.channel.value,
                    "episode_id": episode_id,
                },
            )
            raise

        logger.info(
            "NOTIFICATION_PUBLISHED",
            extra={
                "notification_type": kind.value,
                "channel": notification.channel.value,
                "episode_id": episode_id,
                "message_id": message_id,
            },
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.NOTIFICATION_PUBLISHED,
                episode_id=episode_id,
                target_entity=message_id,
                notification_type=kind.value,
                channel=notification.channel.value,
                recipients=list(supervisors),
            )

        result = DispatchResult(kind=kind, channel=notification.channel, message_id=message_id)
        if notification.channel == Channel.EMERGENCY:
            for supervisor_id in supervisors:
                personal = personalize(notification, supervisor_id)
                try:
                    self._bus.publish(personal.channel, personal.subject, personal.body, personal.attributes)
                except DependencyFailureError as exc:
                    logger.warning(
                        "PERSONAL_ALERT_FAILED",
                        extra={
                            "notification_type": kind.value,
                            "episode_id": episode_id,
                            "supervisor_id": supervisor_id,
                            "error": str(exc),
                        },
                    )
                    result.personal_failed.append(supervisor_id)
                else:
                    result.personal_sent.append(supervisor_id)
        return result
