"""
Emergency Alert Coordinator -- raises alerts and tracks supervisor responses.

Alerts are independent of the escalation ladder: an episode can carry an
open alert and an active escalation at the same time, and resolving one
does not touch the other.

**Alert lifecycle:**  active -> acknowledged -> resolved.  An alert is
*open* while it is active or acknowledged.  ``acknowledge`` moves every
active alert of the episode to acknowledged; ``resolve`` closes every open
alert and marks the episode's emergency resolved.

**Fan-out by severity** comes from the policy: critical pages three
emergency supervisors with a 2-minute target, high two with 5 minutes,
medium one with 10 minutes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel

from triageguard.audit import AuditEventType, AuditLog
from triageguard.config import DEFAULT_POLICY, EscalationPolicy
from triageguard.errors import InvalidInputError, MissingFieldError, NotFoundError, PreconditionFailedError
from triageguard.models import (
    OPEN_ALERT_STATUSES,
    AlertSeverity,
    AlertStatus,
    EmergencyAlert,
    EmergencyResponse,
    Episode,
    ResponseAction,
    UrgencyLevel,
    minutes_between,
    utcnow,
)
from triageguard.notifications import NotificationDispatcher, NotificationKind
from triageguard.store import EpisodeStore, RecordStore

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_LIMIT = 20


class AlertResult(BaseModel):
    alert: EmergencyAlert
    supervisors_notified: int
    response_target_minutes: int

    @property
    def alert_id(self) -> str:
        return self.alert.alert_id


class EmergencyStatus(BaseModel):
    episode_id: str
    is_emergency: bool
    active_alerts: list[EmergencyAlert]
    response_status: str
    assigned_supervisors: list[str]
    estimated_response_minutes: Optional[int] = None
    last_alert_time: Optional[datetime] = None


class EmergencyQueueEntry(BaseModel):
    episode_id: str
    patient_id: str
    alert_id: str
    alert_type: str
    severity: AlertSeverity
    status: AlertStatus
    assigned_supervisors: list[str]
    wait_minutes: int
    complaint_summary: str
    created_at: datetime


class EmergencyResponseResult(BaseModel):
    response: EmergencyResponse
    updated_alerts: list[EmergencyAlert]
    emergency_status: AlertStatus


def _parse_severity(severity: AlertSeverity | str) -> AlertSeverity:
    try:
        return AlertSeverity(severity)
    except ValueError:
        raise InvalidInputError(
            f"Unknown alert severity '{severity}'; expected one of {[s.value for s in AlertSeverity]}"
        )


class EmergencyAlertCoordinator:
    """Raises emergency alerts, reports their status, and records responses."""

    def __init__(
        self,
        episodes: EpisodeStore,
        records: RecordStore,
        dispatcher: NotificationDispatcher,
        policy: EscalationPolicy = DEFAULT_POLICY,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._episodes = episodes
        self._records = records
        self._dispatcher = dispatcher
        self._policy = policy
        self._audit_log = audit_log
        self._clock = clock or utcnow

    def _load_episode(self, episode_id: str) -> Episode:
        if not episode_id:
            raise MissingFieldError("episode_id")
        episode = self._episodes.get(episode_id)
        if episode is None:
            raise NotFoundError("Episode", episode_id)
        return episode

    def process_emergency_alert(
        self,
        episode_id: str,
        alert_type: str,
        severity: AlertSeverity | str = AlertSeverity.HIGH,
        additional_info: Optional[dict[str, Any]] = None,
    ) -> AlertResult:
        """Raise an emergency alert for an episode and page the emergency roster.

        Args:
            episode_id: Episode the alert concerns.
            alert_type: Free-form category, e.g. ``emergency_case``.
            severity: ``critical``, ``high`` (default) or ``medium``.
            additional_info: Opaque context carried on the alert.

        Returns:
            An ``AlertResult`` with the persisted alert.

        Raises:
            NotFoundError: If the episode does not exist.
            InvalidInputError: If the severity is unknown.
            DependencyFailureError: If storage or the primary publish fails.
        """
        severity = _parse_severity(severity)
        episode = self._load_episode(episode_id)
        now = self._clock()
        supervisors, response_target = self._policy.emergency_roster_for(severity)

        alert = EmergencyAlert(
            episode_id=episode_id,
            alert_type=alert_type,
            severity=severity,
            assigned_supervisors=supervisors,
            status=AlertStatus.ACTIVE,
            response_target_minutes=response_target,
            created_at=now,
            updated_at=now,
            additional_info=additional_info or {},
        )
        self._records.save_alert(alert)

        episode = self._load_episode(episode_id)
        episode = self._episodes.update(
            episode_id,
            {
                "emergency_alert": alert,
                "emergency_status": AlertStatus.ACTIVE,
                "updated_at": now,
                "interactions": episode.with_interaction(
                    "emergency_alert_raised",
                    now,
                    alert_id=alert.alert_id,
                    alert_type=alert_type,
                    severity=severity.value,
                ),
            },
            expected_version=episode.version,
        )

        logger.critical(
            "EMERGENCY_ALERT_RAISED",
            extra={
                "episode_id": episode_id,
                "alert_id": alert.alert_id,
                "alert_type": alert_type,
                "severity": severity.value,
                "supervisors": supervisors,
            },
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.EMERGENCY_ALERT_RAISED,
                episode_id=episode_id,
                target_entity=alert.alert_id,
                alert_type=alert_type,
                severity=severity.value,
                supervisors=supervisors,
            )

        self._dispatcher.dispatch(
            NotificationKind.EMERGENCY_ALERT,
            episode,
            supervisors=supervisors,
            alert_type=alert_type,
            severity=severity,
            response_target_minutes=response_target,
            additional_info=alert.additional_info,
        )

        return AlertResult(
            alert=alert,
            supervisors_notified=len(supervisors),
            response_target_minutes=response_target,
        )

    def get_emergency_status(self, episode_id: str) -> EmergencyStatus:
        """Summarize the emergency state of one episode.

        ``response_status`` is ``resolved`` with no open alert, ``pending``
        while any open alert is still unacknowledged, else ``acknowledged``.
        """
        episode = self._load_episode(episode_id)
        alerts = self._records.list_alerts(episode_id=episode_id)
        open_alerts = [a for a in alerts if a.status in OPEN_ALERT_STATUSES]

        if not open_alerts:
            response_status = AlertStatus.RESOLVED.value
        elif any(a.status == AlertStatus.ACTIVE for a in open_alerts):
            response_status = "pending"
        else:
            response_status = AlertStatus.ACKNOWLEDGED.value

        supervisors: list[str] = []
        for alert in open_alerts:
            for supervisor_id in alert.assigned_supervisors:
                if supervisor_id not in supervisors:
                    supervisors.append(supervisor_id)

        return EmergencyStatus(
            episode_id=episode_id,
            is_emergency=episode.urgency_level == UrgencyLevel.EMERGENCY or bool(open_alerts),
            active_alerts=open_alerts,
            response_status=response_status,
            assigned_supervisors=supervisors,
            estimated_response_minutes=min(
                (a.response_target_minutes for a in open_alerts), default=None
            ),
            last_alert_time=max((a.created_at for a in alerts), default=None),
        )

    def get_emergency_queue(
        self,
        supervisor_id: Optional[str] = None,
        limit: int = DEFAULT_QUEUE_LIMIT,
    ) -> list[EmergencyQueueEntry]:
        """Open alerts across all episodes, most severe and longest waiting first.

        Args:
            supervisor_id: Only alerts assigned to this supervisor.
            limit: Maximum number of entries.
        """
        if limit < 1:
            raise InvalidInputError(f"limit must be >= 1, got {limit}")
        now = self._clock()
        entries: list[EmergencyQueueEntry] = []
        episodes: dict[str, Optional[Episode]] = {}

        for alert in self._records.list_alerts(statuses=OPEN_ALERT_STATUSES):
            if supervisor_id is not None and supervisor_id not in alert.assigned_supervisors:
                continue
            if alert.episode_id not in episodes:
                episodes[alert.episode_id] = self._episodes.get(alert.episode_id)
            episode = episodes[alert.episode_id]
            if episode is None:
                logger.warning(
                    "EMERGENCY_ALERT_ORPHANED",
                    extra={"alert_id": alert.alert_id, "episode_id": alert.episode_id},
                )
                continue
            entries.append(EmergencyQueueEntry(
                episode_id=episode.episode_id,
                patient_id=episode.patient_id,
                alert_id=alert.alert_id,
                alert_type=alert.alert_type,
                severity=alert.severity,
                status=alert.status,
                assigned_supervisors=alert.assigned_supervisors,
                wait_minutes=minutes_between(alert.created_at, now),
                complaint_summary=episode.symptoms.primary_complaint,
                created_at=alert.created_at,
            ))

        entries.sort(key=lambda e: (-e.severity.rank, -e.wait_minutes))
        return entries[:limit]

    def update_emergency_response(
        self,
        episode_id: str,
        supervisor_id: str,
        action: ResponseAction | str,
        notes: Optional[str] = None,
    ) -> EmergencyResponseResult:
        """Record a supervisor's acknowledgement or resolution of an emergency.

        Raises:
            MissingFieldError: If ``supervisor_id`` is empty.
            InvalidInputError: If ``action`` is not acknowledge/resolve.
            NotFoundError: If the episode does not exist.
            PreconditionFailedError: If the episode has no open alert.
        """
        if not supervisor_id:
            raise MissingFieldError("supervisor_id")
        try:
            action = ResponseAction(action)
        except ValueError:
            raise InvalidInputError(f"Unknown response action '{action}'")

        episode = self._load_episode(episode_id)
        open_alerts = self._records.list_alerts(episode_id=episode_id, statuses=OPEN_ALERT_STATUSES)
        if not open_alerts:
            raise PreconditionFailedError(f"Episode '{episode_id}' has no open emergency alert")

        now = self._clock()
        if action == ResponseAction.RESOLVE:
            targets, new_status = open_alerts, AlertStatus.RESOLVED
        else:
            targets = [a for a in open_alerts if a.status == AlertStatus.ACTIVE]
            new_status = AlertStatus.ACKNOWLEDGED

        updated = [a.model_copy(update={"status": new_status, "updated_at": now}) for a in targets]
        for alert in updated:
            self._records.save_alert(alert)

        response = EmergencyResponse(
            supervisor_id=supervisor_id,
            action=action,
            notes=notes,
            timestamp=now,
            alert_ids=[a.alert_id for a in updated],
        )
        emergency_status = new_status

        episode = self._load_episode(episode_id)
        fields: dict[str, Any] = {
            "emergency_status": emergency_status,
            "emergency_responses": [*episode.emergency_responses, response],
            "updated_at": now,
            "interactions": episode.with_interaction(
                "emergency_response",
                now,
                actor=supervisor_id,
                action=action.value,
                alert_ids=response.alert_ids,
            ),
        }
        current = episode.emergency_alert
        if current is not None:
            for alert in updated:
                if alert.alert_id == current.alert_id:
                    fields["emergency_alert"] = alert
        episode = self._episodes.update(episode_id, fields, expected_version=episode.version)

        logger.info(
            "EMERGENCY_RESPONSE_RECORDED",
            extra={
                "episode_id": episode_id,
                "supervisor_id": supervisor_id,
                "action": action.value,
                "alerts_updated": len(updated),
            },
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.EMERGENCY_RESPONSE_RECORDED,
                episode_id=episode_id,
                actor_id=supervisor_id,
                action=action.value,
                alert_ids=response.alert_ids,
                notes=notes,
            )

        self._dispatcher.dispatch(
            NotificationKind.RESPONSE_CONFIRMATION,
            episode,
            supervisors=[supervisor_id],
            responder=supervisor_id,
            action=action,
            notes=notes,
            emergency_status=emergency_status,
        )

        return EmergencyResponseResult(
            response=response,
            updated_alerts=updated,
            emergency_status=emergency_status,
        )
