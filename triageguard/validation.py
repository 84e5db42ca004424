"""
Validation Queue Manager -- the human review gate on automated triage.

Every triaged episode waits in a queue until a supervisor either approves
the automated assessment or overrides it.  The decision is written once
per review cycle into ``triage.human_validation``:

* **approved** -> episode stays ``active``; the care team is told the
  validation is complete.
* **override** -> episode becomes ``escalated`` and an escalation-style
  notification goes to the emergency channel.  With an escalation
  coordinator wired in, the override opens a real escalation protocol.

**Queue order:**  urgency priority (emergency 100, urgent 75, routine 50,
self-care 25) descending, then time queued ascending.  Estimated wait is
``(position - 1) * average_validation_minutes``.

**Errors, checked in order:**  missing episode id, invalid decision data,
unknown episode, episode without triage or already validated.  A failed
check never mutates the episode.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel, ValidationError

from triageguard.audit import AuditEventType, AuditLog
from triageguard.config import DEFAULT_POLICY, EscalationPolicy
from triageguard.errors import InvalidInputError, MissingFieldError, NotFoundError, PreconditionFailedError
from triageguard.escalation import EscalationCoordinator
from triageguard.models import (
    Episode,
    EpisodeStatus,
    HumanValidation,
    UrgencyLevel,
    ValidationStatus,
    minutes_between,
    utcnow,
)
from triageguard.notifications import NotificationDispatcher, NotificationKind
from triageguard.store import EpisodeStore

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_LIMIT = 20


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SubmissionResult(BaseModel):
    episode_id: str
    supervisor_id: Optional[str]
    urgency_level: UrgencyLevel
    queue_position: int
    estimated_wait_minutes: int


class DecisionResult(BaseModel):
    episode_id: str
    approved: bool
    new_status: EpisodeStatus
    validation: HumanValidation
    escalation_id: Optional[str] = None


class ValidationStatusResult(BaseModel):
    episode_id: str
    validation_status: ValidationStatus
    validation: Optional[HumanValidation] = None
    queue_position: Optional[int] = None
    estimated_wait_minutes: Optional[int] = None


class QueueItem(BaseModel):
    episode_id: str
    patient_id: str
    urgency_level: UrgencyLevel
    assigned_supervisor: Optional[str]
    queued_at: datetime
    wait_minutes: int
    primary_complaint: str
    final_score: int


class QueueStatistics(BaseModel):
    total_pending: int = 0
    emergency_count: int = 0
    urgent_count: int = 0
    routine_count: int = 0
    self_care_count: int = 0
    average_wait_minutes: int = 0


class ReassignmentResult(BaseModel):
    episode_id: str
    previous_supervisor: str
    new_supervisor: Optional[str]
    backup_supervisors: list[str]
    wait_minutes: int


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class ValidationQueueManager:
    """Queues episodes for review and records supervisor decisions.

    Args:
        episodes: Episode store.
        dispatcher: Notification dispatcher.
        policy: Supplies backup rosters and the average validation time.
        escalations: Optional ``EscalationCoordinator``; when set, an
            override opens an escalation protocol.
        audit_log: Optional audit trail.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        episodes: EpisodeStore,
        dispatcher: NotificationDispatcher,
        policy: EscalationPolicy = DEFAULT_POLICY,
        escalations: Optional[EscalationCoordinator] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._episodes = episodes
        self._dispatcher = dispatcher
        self._policy = policy
        self._escalations = escalations
        self._audit_log = audit_log
        self._clock = clock or utcnow

    # -- helpers --

    def _emit_audit(self, event_type: AuditEventType, episode_id: str,
                    actor_id: str = "SYSTEM", **metadata) -> None:
        if self._audit_log is not None:
            self._audit_log.record(event_type, episode_id=episode_id, actor_id=actor_id, **metadata)

    def _load_episode(self, episode_id: str) -> Episode:
        if not episode_id:
            raise MissingFieldError("episode_id")
        episode = self._episodes.get(episode_id)
        if episode is None:
            raise NotFoundError("Episode", episode_id)
        return episode

    @staticmethod
    def _is_pending(episode: Episode) -> bool:
        return (
            episode.validation_status == ValidationStatus.PENDING
            and episode.triage is not None
            and episode.triage.human_validation is None
        )

    def _pending_episodes(self) -> list[Episode]:
        pending = [e for e in self._episodes.scan() if self._is_pending(e)]
        pending.sort(key=lambda e: (-e.urgency_level.queue_priority, e.queued_at or e.created_at))
        return pending

    def _position_of(self, episode_id: str) -> Optional[int]:
        for idx, episode in enumerate(self._pending_episodes(), start=1):
            if episode.episode_id == episode_id:
                return idx
        return None

    def _estimated_wait(self, position: int) -> int:
        return (position - 1) * self._policy.average_validation_minutes

    # -- operations --

    def submit_for_validation(
        self,
        episode_id: str,
        supervisor_id: Optional[str] = None,
    ) -> SubmissionResult:
        """Queue an episode for supervisor review and notify the reviewers.

        Emergency episodes are announced on the emergency channel with
        immediate-response framing; everything else on the general channel.

        Raises:
            MissingFieldError: If ``episode_id`` is empty.
            NotFoundError: If the episode does not exist.
            PreconditionFailedError: If the episode has no triage or has
                already been validated.
            DependencyFailureError: If storage or the primary publish fails.
        """
        episode = self._load_episode(episode_id)
        if episode.triage is None:
            raise PreconditionFailedError(f"Episode '{episode_id}' has no triage assessment to validate")
        if episode.triage.human_validation is not None:
            raise PreconditionFailedError(f"Episode '{episode_id}' has already been validated")

        now = self._clock()
        fields: dict = {}
        if episode.validation_status != ValidationStatus.PENDING:
            fields.update(queued_at=now, validation_status=ValidationStatus.PENDING)
        if supervisor_id and supervisor_id != episode.assigned_supervisor:
            fields["assigned_supervisor"] = supervisor_id
        if fields:
            fields["updated_at"] = now
            fields["interactions"] = episode.with_interaction(
                "validation_submitted", now, supervisor_id=supervisor_id or "unassigned"
            )
            episode = self._episodes.update(episode_id, fields, expected_version=episode.version)

        urgency = episode.triage.urgency_level
        kind = (
            NotificationKind.EMERGENCY_ALERT
            if urgency == UrgencyLevel.EMERGENCY
            else NotificationKind.VALIDATION_REQUIRED
        )
        self._dispatcher.dispatch(kind, episode)

        position = self._position_of(episode_id) or 1
        logger.info(
            "VALIDATION_SUBMITTED",
            extra={
                "episode_id": episode_id,
                "supervisor_id": episode.assigned_supervisor,
                "urgency_level": urgency.value,
                "queue_position": position,
            },
        )
        self._emit_audit(
            AuditEventType.VALIDATION_SUBMITTED,
            episode_id,
            urgency_level=urgency.value,
            supervisor_id=episode.assigned_supervisor,
        )
        return SubmissionResult(
            episode_id=episode_id,
            supervisor_id=episode.assigned_supervisor,
            urgency_level=urgency,
            queue_position=position,
            estimated_wait_minutes=self._estimated_wait(position),
        )

    def record_decision(
        self,
        episode_id: str,
        supervisor_id: str,
        approved: bool,
        override_reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> DecisionResult:
        """Record a supervisor's approval or override of the automated triage.

        Raises:
            MissingFieldError: If ``episode_id`` is empty.
            InvalidInputError: If the supervisor ID is not a UUID, or an
                override has no reason.
            NotFoundError: If the episode does not exist.
            PreconditionFailedError: If the episode has no triage or already
                carries a validation.
            DependencyFailureError: If storage or the primary publish fails.
        """
        if not episode_id:
            raise MissingFieldError("episode_id")
        now = self._clock()
        try:
            validation = HumanValidation(
                supervisor_id=supervisor_id,
                approved=approved,
                override_reason=override_reason,
                notes=notes,
                timestamp=now,
            )
        except ValidationError as exc:
            raise InvalidInputError(f"invalid validation data: {exc.errors()[0]['msg']}") from exc

        episode = self._load_episode(episode_id)
        if episode.triage is None:
            raise PreconditionFailedError(f"Episode '{episode_id}' has no triage assessment to validate")
        if episode.triage.human_validation is not None:
            raise PreconditionFailedError(f"Episode '{episode_id}' has already been validated")

        new_status = EpisodeStatus.ACTIVE if approved else EpisodeStatus.ESCALATED
        episode = self._episodes.update(
            episode_id,
            {
                "triage": episode.triage.model_copy(update={"human_validation": validation}),
                "status": new_status,
                "validation_status": ValidationStatus.COMPLETED,
                "updated_at": now,
                "interactions": episode.with_interaction(
                    "validation_decided",
                    now,
                    actor=supervisor_id,
                    approved=approved,
                    override_reason=override_reason,
                ),
            },
            expected_version=episode.version,
        )

        logger.info(
            "VALIDATION_DECIDED",
            extra={"episode_id": episode_id, "supervisor_id": supervisor_id, "approved": approved},
        )
        self._emit_audit(
            AuditEventType.VALIDATION_DECIDED,
            episode_id,
            actor_id=supervisor_id,
            approved=approved,
            override_reason=override_reason,
            notes=notes,
        )

        escalation_id = None
        if approved:
            self._dispatcher.dispatch(
                NotificationKind.VALIDATION_COMPLETED,
                episode,
                supervisors=[supervisor_id],
                approved=True,
                validated_by=supervisor_id,
                decision="APPROVED",
                notes=notes,
            )
        elif self._escalations is not None:
            urgency = episode.triage.urgency_level
            result = self._escalations.process_escalation(
                episode_id,
                f"Validation override: {override_reason}",
                urgent_response=urgency in (UrgencyLevel.EMERGENCY, UrgencyLevel.URGENT),
            )
            escalation_id = result.escalation_id
        else:
            self._dispatcher.dispatch(
                NotificationKind.ESCALATION_REQUIRED,
                episode,
                supervisors=[supervisor_id],
                approved=False,
                reason=f"Validation override by supervisor {supervisor_id}",
                override_reason=override_reason,
                wait_minutes=minutes_between(episode.queued_at or episode.created_at, now),
            )

        return DecisionResult(
            episode_id=episode_id,
            approved=approved,
            new_status=new_status,
            validation=validation,
            escalation_id=escalation_id,
        )

    def get_status(self, episode_id: str) -> ValidationStatusResult:
        """Validation state of one episode, with queue position while pending."""
        episode = self._load_episode(episode_id)
        validation = episode.human_validation
        if validation is not None:
            return ValidationStatusResult(
                episode_id=episode_id,
                validation_status=ValidationStatus.COMPLETED,
                validation=validation,
            )
        position = self._position_of(episode_id)
        return ValidationStatusResult(
            episode_id=episode_id,
            validation_status=ValidationStatus.PENDING,
            queue_position=position,
            estimated_wait_minutes=self._estimated_wait(position) if position else None,
        )

    def get_queue(
        self,
        supervisor_id: Optional[str] = None,
        urgency_level: Optional[UrgencyLevel | str] = None,
        limit: int = DEFAULT_QUEUE_LIMIT,
    ) -> list[QueueItem]:
        """Episodes awaiting validation in review order.

        Args:
            supervisor_id: Only episodes assigned to this supervisor.
            urgency_level: Only episodes of this urgency.
            limit: Maximum number of items.
        """
        if limit < 1:
            raise InvalidInputError(f"limit must be >= 1, got {limit}")
        if urgency_level is not None:
            try:
                urgency_level = UrgencyLevel(urgency_level)
            except ValueError:
                raise InvalidInputError(f"Unknown urgency level '{urgency_level}'")

        now = self._clock()
        items = []
        for episode in self._pending_episodes():
            if supervisor_id is not None and episode.assigned_supervisor != supervisor_id:
                continue
            if urgency_level is not None and episode.urgency_level != urgency_level:
                continue
            queued_at = episode.queued_at or episode.created_at
            items.append(QueueItem(
                episode_id=episode.episode_id,
                patient_id=episode.patient_id,
                urgency_level=episode.urgency_level,
                assigned_supervisor=episode.assigned_supervisor,
                queued_at=queued_at,
                wait_minutes=minutes_between(queued_at, now),
                primary_complaint=episode.symptoms.primary_complaint,
                final_score=episode.triage.final_score,
            ))
            if len(items) == limit:
                break
        return items

    def get_queue_statistics(self) -> QueueStatistics:
        now = self._clock()
        pending = self._pending_episodes()
        if not pending:
            return QueueStatistics()
        counts = {level: 0 for level in UrgencyLevel}
        total_wait = 0
        for episode in pending:
            counts[episode.urgency_level] += 1
            total_wait += minutes_between(episode.queued_at or episode.created_at, now)
        return QueueStatistics(
            total_pending=len(pending),
            emergency_count=counts[UrgencyLevel.EMERGENCY],
            urgent_count=counts[UrgencyLevel.URGENT],
            routine_count=counts[UrgencyLevel.ROUTINE],
            self_care_count=counts[UrgencyLevel.SELF_CARE],
            average_wait_minutes=round(total_wait / len(pending)),
        )

    def send_queue_status_update(self) -> QueueStatistics:
        """Broadcast current queue statistics on the general channel."""
        stats = self.get_queue_statistics()
        self._dispatcher.dispatch(NotificationKind.QUEUE_STATUS_UPDATE, None, supervisors=[], **stats.model_dump())
        return stats

    def handle_supervisor_unavailable(self, supervisor_id: str) -> list[ReassignmentResult]:
        """Hand a supervisor's pending reviews to the backup roster.

        Each pending episode assigned to ``supervisor_id`` moves to the first
        backup for its urgency, and the backups are paged with the wait so
        far.
        """
        if not supervisor_id:
            raise MissingFieldError("supervisor_id")
        now = self._clock()
        results = []
        for episode in self._pending_episodes():
            if episode.assigned_supervisor != supervisor_id:
                continue
            roster = self._policy.backup_for(episode.urgency_level)
            backups = [s for s in roster.supervisors if s != supervisor_id]
            new_supervisor = backups[0] if backups else None
            wait = minutes_between(episode.queued_at or episode.created_at, now)

            episode = self._episodes.update(
                episode.episode_id,
                {
                    "assigned_supervisor": new_supervisor,
                    "updated_at": now,
                    "interactions": episode.with_interaction(
                        "supervisor_reassigned",
                        now,
                        previous_supervisor=supervisor_id,
                        new_supervisor=new_supervisor,
                    ),
                },
                expected_version=episode.version,
            )
            self._dispatcher.dispatch(
                NotificationKind.ESCALATION_REQUIRED,
                episode,
                supervisors=backups,
                reason=f"Supervisor {supervisor_id} unavailable",
                original_supervisor=supervisor_id,
                backup_supervisors=backups,
                wait_minutes=wait,
            )
            logger.warning(
                "SUPERVISOR_REASSIGNED",
                extra={
                    "episode_id": episode.episode_id,
                    "previous_supervisor": supervisor_id,
                    "new_supervisor": new_supervisor,
                    "wait_minutes": wait,
                    "max_wait_minutes": roster.max_wait_minutes,
                },
            )
            self._emit_audit(
                AuditEventType.SUPERVISOR_REASSIGNED,
                episode.episode_id,
                previous_supervisor=supervisor_id,
                new_supervisor=new_supervisor,
            )
            results.append(ReassignmentResult(
                episode_id=episode.episode_id,
                previous_supervisor=supervisor_id,
                new_supervisor=new_supervisor,
                backup_supervisors=backups,
                wait_minutes=wait,
            ))
        return results
