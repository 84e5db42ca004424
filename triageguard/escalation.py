"""
Escalation Coordinator -- drives episodes up the supervisor ladder.

An escalation is an ``EscalationProtocol`` record: one level, one roster,
one fixed timeout.  The coordinator opens them, moves them through their
lifecycle, and sweeps for timeouts.

**State machine:**

    active -> in-progress -> completed
       |            |
       +------------+------> failed

``completed`` and ``failed`` are terminal.  Repeating the current status
is a no-op; anything that would leave a terminal status is rejected.

**Timeout sweep:**  ``check_escalation_timeouts()`` is invoked on a
schedule (more often than the shortest timeout).  Each active escalation
past its timeout is replaced by a new urgent escalation one level up,
then marked failed.  CRITICAL has nothing above it, so a timed-out
CRITICAL escalation is failed and re-announced to its own roster, the
highest tier there is.  Escalations about to time out get one warning
first.

The episode mirrors its current escalation: ``current_escalation``,
``escalation_status`` and ``escalation_level`` always describe the most
recently opened protocol.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, Field

from triageguard.audit import AuditEventType, AuditLog
from triageguard.config import DEFAULT_POLICY, EscalationPolicy
from triageguard.errors import (
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    WorkflowError,
)
from triageguard.models import (
    OPEN_ESCALATION_STATUSES,
    Episode,
    EscalationLevel,
    EscalationProtocol,
    EscalationRef,
    EscalationStatus,
    UrgencyLevel,
    minutes_between,
    utcnow,
)
from triageguard.notifications import NotificationDispatcher, NotificationKind
from triageguard.store import EpisodeStore, RecordStore

logger = logging.getLogger(__name__)

TIMEOUT_FAILURE_REASON = "Escalation timeout exceeded"


# ---------------------------------------------------------------------------
# Valid status transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[EscalationStatus, set[EscalationStatus]] = {
    EscalationStatus.ACTIVE: {
        EscalationStatus.IN_PROGRESS,
        EscalationStatus.COMPLETED,
        EscalationStatus.FAILED,
    },
    EscalationStatus.IN_PROGRESS: {EscalationStatus.COMPLETED, EscalationStatus.FAILED},
    EscalationStatus.COMPLETED: set(),  # terminal
    EscalationStatus.FAILED: set(),  # terminal
}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class EscalationResult(BaseModel):
    escalation: EscalationProtocol
    escalation_level: EscalationLevel
    assigned_supervisors: list[str]
    expected_response_minutes: int

    @property
    def escalation_id(self) -> str:
        return self.escalation.escalation_id


class TimeoutSweepResult(BaseModel):
    checked: int = 0
    timed_out: list[str] = Field(default_factory=list)
    escalated: list[str] = Field(
        default_factory=list,
        description="IDs of the escalations opened one level up.",
    )
    exhausted: list[str] = Field(
        default_factory=list,
        description="Timed-out CRITICAL escalations with no level above.",
    )
    warnings_sent: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)


def determine_escalation_level(
    episode: Episode,
    target_level: Optional[EscalationLevel | str] = None,
    policy: EscalationPolicy = DEFAULT_POLICY,
) -> EscalationLevel:
    """Pick the level for a new escalation.

    A recognized explicit level wins; anything else falls back to the
    episode's urgency and severity.
    """
    explicit = EscalationLevel.parse(target_level) if target_level is not None else None
    if explicit is not None:
        return explicit
    urgency = episode.urgency_level
    if urgency == UrgencyLevel.EMERGENCY:
        if episode.symptoms.severity >= policy.critical_level_severity:
            return EscalationLevel.CRITICAL
        return EscalationLevel.LEVEL_2
    return EscalationLevel.LEVEL_1


def expected_response_minutes(timeout_minutes: int, urgent_response: bool) -> int:
    """Urgent escalations promise a response in half the timeout (floored)."""
    return timeout_minutes // 2 if urgent_response else timeout_minutes


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class EscalationCoordinator:
    """Opens, transitions and sweeps escalation protocols.

    Args:
        episodes: Episode store.
        records: Record store for the protocols (table or embedded).
        dispatcher: Notification dispatcher.
        policy: Rosters, timeouts and paths.
        audit_log: Optional audit trail.
        clock: Returns the current UTC time.
    """

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

    # -- helpers --

    def _emit_audit(self, event_type: AuditEventType, escalation: EscalationProtocol,
                    actor_id: str = "SYSTEM", **metadata) -> None:
        if self._audit_log is not None:
            self._audit_log.record(
                event_type,
                episode_id=escalation.episode_id,
                actor_id=actor_id,
                target_entity=escalation.escalation_id,
                **metadata,
            )

    def _load_episode(self, episode_id: str) -> Episode:
        episode = self._episodes.get(episode_id)
        if episode is None:
            raise NotFoundError("Episode", episode_id)
        return episode

    def _load_escalation(self, escalation_id: str) -> EscalationProtocol:
        escalation = self._records.get_escalation(escalation_id)
        if escalation is None:
            raise NotFoundError("Escalation", escalation_id)
        return escalation

    # -- operations --

    def process_escalation(
        self,
        episode_id: str,
        reason: str,
        target_level: Optional[EscalationLevel | str] = None,
        urgent_response: bool = False,
        previous_escalation_id: Optional[str] = None,
    ) -> EscalationResult:
        """Open a new escalation for an episode and page its roster.

        Args:
            episode_id: Episode to escalate.
            reason: Why; shown to the paged supervisors.
            target_level: Explicit level.  Unrecognized values fall back to
                the level derived from the episode.
            urgent_response: Halves the promised response time.
            previous_escalation_id: The timed-out escalation this one replaces.

        Returns:
            An ``EscalationResult`` with the persisted protocol.

        Raises:
            NotFoundError: If the episode does not exist.
            DependencyFailureError: If the store or the primary publish fails.
                A failed publish leaves the escalation persisted.
        """
        episode = self._load_episode(episode_id)
        now = self._clock()
        level = determine_escalation_level(episode, target_level, self._policy)
        timeout = self._policy.timeout_for(level)
        supervisors = self._policy.roster_for(level)

        escalation = EscalationProtocol(
            episode_id=episode_id,
            escalation_level=level,
            reason=reason,
            urgent_response=urgent_response,
            status=EscalationStatus.ACTIVE,
            assigned_supervisors=supervisors,
            escalation_path=self._policy.path_for(episode.urgency_level),
            timeout_minutes=timeout,
            created_at=now,
            updated_at=now,
            previous_escalation_id=previous_escalation_id,
        )
        self._records.save_escalation(escalation)

        # reload: the embedded record store writes to the episode too
        episode = self._load_episode(episode_id)
        episode = self._episodes.update(
            episode_id,
            {
                "current_escalation": EscalationRef(escalation_id=escalation.escalation_id, level=level),
                "escalation_status": EscalationStatus.ACTIVE,
                "escalation_level": level,
                "updated_at": now,
                "interactions": episode.with_interaction(
                    "escalation_opened",
                    now,
                    escalation_id=escalation.escalation_id,
                    level=level.value,
                    reason=reason,
                ),
            },
            expected_version=episode.version,
        )

        expected = expected_response_minutes(timeout, urgent_response)
        logger.info(
            "ESCALATION_OPENED",
            extra={
                "episode_id": episode_id,
                "escalation_id": escalation.escalation_id,
                "level": level.value,
                "urgent_response": urgent_response,
                "timeout_minutes": timeout,
            },
        )
        self._emit_audit(
            AuditEventType.ESCALATION_OPENED,
            escalation,
            level=level.value,
            reason=reason,
            urgent_response=urgent_response,
            supervisors=supervisors,
        )

        self._dispatcher.dispatch(
            NotificationKind.ESCALATION_REQUIRED,
            episode,
            supervisors=supervisors,
            reason=reason,
            escalation_level=level,
            expected_response_minutes=expected,
            wait_minutes=minutes_between(episode.created_at, now),
        )

        return EscalationResult(
            escalation=escalation,
            escalation_level=level,
            assigned_supervisors=supervisors,
            expected_response_minutes=expected,
        )

    def update_escalation_status(
        self,
        escalation_id: str,
        status: EscalationStatus | str,
        failure_reason: Optional[str] = None,
        actor_id: str = "SYSTEM",
    ) -> EscalationProtocol:
        """Move an escalation to ``in-progress``, ``completed`` or ``failed``.

        Repeating the current status returns the escalation unchanged.

        Raises:
            InvalidInputError: If ``status`` is not a settable status.
            NotFoundError: If the escalation does not exist.
            InvalidTransitionError: If the escalation is terminal or the
                transition is otherwise not allowed.
        """
        try:
            target = EscalationStatus(status)
        except ValueError:
            raise InvalidInputError(f"Unknown escalation status '{status}'")
        if target == EscalationStatus.ACTIVE:
            raise InvalidInputError("Escalations cannot be moved back to 'active'")

        escalation = self._load_escalation(escalation_id)
        if escalation.status == target:
            return escalation

        allowed = _VALID_TRANSITIONS[escalation.status]
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition escalation from {escalation.status.value} to {target.value}. "
                f"Allowed transitions: {sorted(s.value for s in allowed)}"
            )

        now = self._clock()
        previous = escalation.status
        changes: dict = {"status": target, "updated_at": now}
        if target == EscalationStatus.COMPLETED:
            changes["completed_at"] = now
        if target == EscalationStatus.FAILED:
            changes["failure_reason"] = failure_reason or "unspecified"
        escalation = escalation.model_copy(update=changes)
        self._records.save_escalation(escalation)

        self._mirror_onto_episode(escalation, now)

        logger.info(
            "ESCALATION_STATUS_CHANGED",
            extra={
                "escalation_id": escalation_id,
                "episode_id": escalation.episode_id,
                "from_status": previous.value,
                "to_status": target.value,
            },
        )
        self._emit_audit(
            AuditEventType.ESCALATION_STATUS_CHANGED,
            escalation,
            actor_id=actor_id,
            from_status=previous.value,
            to_status=target.value,
            failure_reason=escalation.failure_reason,
        )
        return escalation

    def _mirror_onto_episode(self, escalation: EscalationProtocol, now: datetime) -> None:
        episode = self._episodes.get(escalation.episode_id)
        if episode is None:
            logger.warning(
                "ESCALATION_EPISODE_MISSING",
                extra={"escalation_id": escalation.escalation_id, "episode_id": escalation.episode_id},
            )
            return
        current = episode.current_escalation
        if current is None or current.escalation_id != escalation.escalation_id:
            return
        self._episodes.update(
            episode.episode_id,
            {
                "escalation_status": escalation.status,
                "updated_at": now,
                "interactions": episode.with_interaction(
                    "escalation_status_changed",
                    now,
                    escalation_id=escalation.escalation_id,
                    status=escalation.status.value,
                ),
            },
            expected_version=episode.version,
        )

    def get_active_escalations(self, episode_id: str) -> list[EscalationProtocol]:
        """Escalations for the episode that are ``active`` or ``in-progress``."""
        return self._records.list_escalations(episode_id=episode_id, statuses=OPEN_ESCALATION_STATUSES)

    def get_escalation_history(self, episode_id: str) -> list[EscalationProtocol]:
        """Every escalation ever opened for the episode, oldest first."""
        return self._records.list_escalations(episode_id=episode_id)

    # -- timeout sweep --

    def check_escalation_timeouts(self, now: Optional[datetime] = None) -> TimeoutSweepResult:
        """Escalate or fail every active escalation that has outlived its timeout.

        One escalation failing to process does not stop the sweep; the
        error is logged and reported in the result.

        Args:
            now: Evaluation time; defaults to the coordinator's clock.

        Returns:
            A ``TimeoutSweepResult`` summarizing what the sweep did.
        """
        now = now or self._clock()
        result = TimeoutSweepResult()

        for escalation in self._records.list_escalations(statuses=[EscalationStatus.ACTIVE]):
            result.checked += 1
            remaining = escalation.created_at + timedelta(minutes=escalation.timeout_minutes) - now

            if remaining < timedelta(0):
                self._handle_timeout(escalation, minutes_between(escalation.created_at, now), result)
            elif (
                not escalation.timeout_warning_sent
                and remaining <= timedelta(minutes=self._policy.timeout_warning_minutes)
            ):
                self._send_timeout_warning(escalation, remaining, result)

        if result.timed_out or result.errors:
            logger.info(
                "ESCALATION_TIMEOUT_SWEEP",
                extra={
                    "checked": result.checked,
                    "timed_out": len(result.timed_out),
                    "escalated": len(result.escalated),
                    "errors": len(result.errors),
                },
            )
        return result

    def _handle_timeout(self, escalation: EscalationProtocol, elapsed: int,
                        result: TimeoutSweepResult) -> None:
        result.timed_out.append(escalation.escalation_id)
        next_level = escalation.escalation_level.next()

        logger.warning(
            "ESCALATION_TIMED_OUT",
            extra={
                "escalation_id": escalation.escalation_id,
                "episode_id": escalation.episode_id,
                "level": escalation.escalation_level.value,
                "elapsed_minutes": elapsed,
                "next_level": next_level.value if next_level else None,
            },
        )
        self._emit_audit(
            AuditEventType.ESCALATION_TIMED_OUT,
            escalation,
            elapsed_minutes=elapsed,
            next_level=next_level.value if next_level else None,
        )

        try:
            if next_level is not None:
                opened = self.process_escalation(
                    escalation.episode_id,
                    f"Escalation timeout: {escalation.reason}",
                    next_level,
                    urgent_response=True,
                    previous_escalation_id=escalation.escalation_id,
                )
                result.escalated.append(opened.escalation_id)
        except WorkflowError as exc:
            logger.error(
                "ESCALATION_TIMEOUT_PROCESSING_FAILED",
                extra={"escalation_id": escalation.escalation_id, "error": str(exc)},
            )
            result.errors[escalation.escalation_id] = str(exc)

        try:
            self.update_escalation_status(
                escalation.escalation_id, EscalationStatus.FAILED, TIMEOUT_FAILURE_REASON
            )
            if next_level is None:
                result.exhausted.append(escalation.escalation_id)
                self._announce_exhausted(escalation)
        except WorkflowError as exc:
            logger.error(
                "ESCALATION_TIMEOUT_PROCESSING_FAILED",
                extra={"escalation_id": escalation.escalation_id, "error": str(exc)},
            )
            result.errors[escalation.escalation_id] = str(exc)

    def _announce_exhausted(self, escalation: EscalationProtocol) -> None:
        episode = self._load_episode(escalation.episode_id)
        logger.critical(
            "CRITICAL_ESCALATION_EXHAUSTED",
            extra={
                "escalation_id": escalation.escalation_id,
                "episode_id": escalation.episode_id,
                "supervisors": escalation.assigned_supervisors,
            },
        )
        self._dispatcher.dispatch(
            NotificationKind.ESCALATION_REQUIRED,
            episode,
            supervisors=list(escalation.assigned_supervisors),
            reason=f"CRITICAL escalation timed out with no higher level: {escalation.reason}",
            escalation_level=escalation.escalation_level,
            wait_minutes=minutes_between(episode.created_at, self._clock()),
        )

    def _send_timeout_warning(self, escalation: EscalationProtocol, remaining: timedelta,
                              result: TimeoutSweepResult) -> None:
        minutes_remaining = math.ceil(remaining.total_seconds() / 60)
        try:
            episode = self._load_episode(escalation.episode_id)
            self._dispatcher.dispatch(
                NotificationKind.TIMEOUT_WARNING,
                episode,
                supervisors=list(escalation.assigned_supervisors),
                escalation_id=escalation.escalation_id,
                escalation_level=escalation.escalation_level,
                minutes_remaining=minutes_remaining,
                timeout_at=escalation.created_at + timedelta(minutes=escalation.timeout_minutes),
            )
        except WorkflowError as exc:
            logger.error(
                "ESCALATION_TIMEOUT_WARNING_FAILED",
                extra={"escalation_id": escalation.escalation_id, "error": str(exc)},
            )
            result.errors[escalation.escalation_id] = str(exc)
            return

        self._records.save_escalation(escalation.model_copy(update={"timeout_warning_sent": True}))
        result.warnings_sent.append(escalation.escalation_id)
        self._emit_audit(
            AuditEventType.ESCALATION_TIMEOUT_WARNING,
            escalation,
            minutes_remaining=minutes_remaining,
        )
