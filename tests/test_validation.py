"""
Tests for triageguard.validation -- Validation Queue Manager.

Covers: submission (queueing, channel by urgency, queue position and
estimated wait), decisions (approve, override with and without an
escalation coordinator, input checks, double validation), status lookup,
queue ordering and filters, statistics broadcast, and reassignment when a
supervisor becomes unavailable.
"""

from __future__ import annotations

import pytest

from triageguard.bus import Channel, InMemoryMessageBus
from triageguard.errors import (
    InvalidInputError,
    MissingFieldError,
    NotFoundError,
    PreconditionFailedError,
)
from triageguard.models import (
    EpisodeStatus,
    EscalationLevel,
    UrgencyLevel,
    ValidationStatus,
)
from triageguard.notifications import NotificationDispatcher
from triageguard.store import InMemoryEpisodeStore
from triageguard.validation import ValidationQueueManager

from conftest import OTHER_SUPERVISOR_UUID, SUPERVISOR_UUID, FakeClock, make_episode


# ---------------------------------------------------------------------------
# 1. Submission
# ---------------------------------------------------------------------------

class TestSubmitForValidation:
    def test_routine_goes_to_general_channel(self, workflow, add_episode, bus):
        episode = add_episode()
        result = workflow.validations.submit_for_validation(episode.episode_id, "sup-a")

        assert result.queue_position == 1
        assert result.estimated_wait_minutes == 0
        assert result.supervisor_id == "sup-a"
        assert [m.channel for m in bus.messages] == [Channel.GENERAL]
        assert bus.messages[0].attributes["notification_type"] == "validation_required"

        stored = workflow.episodes.get(episode.episode_id)
        assert stored.validation_status == ValidationStatus.PENDING
        assert stored.queued_at is not None
        assert stored.assigned_supervisor == "sup-a"

    def test_emergency_goes_to_emergency_channel(self, workflow, add_episode, bus):
        episode = add_episode(urgency=UrgencyLevel.EMERGENCY)
        workflow.validations.submit_for_validation(episode.episode_id, "sup-a")
        primary = bus.of_type("emergency_alert")
        assert len(primary) == 1
        assert primary[0].channel == Channel.EMERGENCY
        assert primary[0].subject.startswith("[EMERGENCY] ")

    def test_position_follows_urgency(self, workflow, add_episode, clock):
        routine = add_episode(patient_id="r")
        urgent = add_episode(urgency=UrgencyLevel.URGENT, patient_id="u")
        workflow.validations.submit_for_validation(routine.episode_id)
        clock.advance(minutes=1)
        result = workflow.validations.submit_for_validation(urgent.episode_id)
        assert result.queue_position == 1
        assert workflow.validations.get_status(routine.episode_id).queue_position == 2
        assert workflow.validations.get_status(routine.episode_id).estimated_wait_minutes == 15

    def test_resubmission_keeps_queue_time(self, workflow, add_episode, clock):
        episode = add_episode()
        workflow.validations.submit_for_validation(episode.episode_id)
        queued_at = workflow.episodes.get(episode.episode_id).queued_at
        clock.advance(minutes=5)
        workflow.validations.submit_for_validation(episode.episode_id)
        assert workflow.episodes.get(episode.episode_id).queued_at == queued_at

    def test_empty_episode_id(self, workflow):
        with pytest.raises(MissingFieldError, match="episode_id is required"):
            workflow.validations.submit_for_validation("")

    def test_missing_episode(self, workflow):
        with pytest.raises(NotFoundError, match="not found"):
            workflow.validations.submit_for_validation("missing")

    def test_untriaged_episode(self, workflow, add_episode, bus):
        episode = add_episode(urgency=None)
        with pytest.raises(PreconditionFailedError, match="no triage"):
            workflow.validations.submit_for_validation(episode.episode_id)
        assert bus.messages == []
        assert workflow.episodes.get(episode.episode_id).queued_at is None

    def test_already_validated(self, workflow, add_episode):
        episode = add_episode()
        workflow.validations.record_decision(episode.episode_id, SUPERVISOR_UUID, True)
        with pytest.raises(PreconditionFailedError, match="already been validated"):
            workflow.validations.submit_for_validation(episode.episode_id)


# ---------------------------------------------------------------------------
# 2. Decisions
# ---------------------------------------------------------------------------

class TestRecordDecision:
    def test_approval(self, workflow, add_episode, bus):
        episode = add_episode()
        workflow.validations.submit_for_validation(episode.episode_id)
        bus.clear()
        result = workflow.validations.record_decision(
            episode.episode_id, SUPERVISOR_UUID, True, notes="agree"
        )

        assert result.new_status == EpisodeStatus.ACTIVE
        assert result.escalation_id is None
        stored = workflow.episodes.get(episode.episode_id)
        assert stored.validation_status == ValidationStatus.COMPLETED
        assert stored.human_validation.supervisor_id == SUPERVISOR_UUID

        completed = bus.of_type("validation_completed")
        assert len(completed) == 1
        assert completed[0].attributes["approved"] == "true"
        assert "Decision: APPROVED" in completed[0].body

    def test_override_opens_escalation(self, workflow, add_episode):
        episode = add_episode(urgency=UrgencyLevel.URGENT)
        result = workflow.validations.record_decision(
            episode.episode_id, SUPERVISOR_UUID, False, override_reason="underestimated pain"
        )

        assert result.new_status == EpisodeStatus.ESCALATED
        escalation = workflow.records.get_escalation(result.escalation_id)
        assert escalation.reason == "Validation override: underestimated pain"
        assert escalation.urgent_response is True
        assert escalation.escalation_level == EscalationLevel.LEVEL_1
        assert workflow.episodes.get(episode.episode_id).status == EpisodeStatus.ESCALATED

    def test_routine_override_is_not_urgent(self, workflow, add_episode):
        episode = add_episode()
        result = workflow.validations.record_decision(
            episode.episode_id, SUPERVISOR_UUID, False, override_reason="needs GP"
        )
        assert workflow.records.get_escalation(result.escalation_id).urgent_response is False

    def test_override_without_coordinator_notifies(self):
        episodes = InMemoryEpisodeStore()
        bus = InMemoryMessageBus()
        clock = FakeClock()
        manager = ValidationQueueManager(episodes, NotificationDispatcher(bus, clock=clock), clock=clock)
        episode = make_episode()
        episodes.put(episode)

        result = manager.record_decision(episode.episode_id, SUPERVISOR_UUID, False, override_reason="x")
        assert result.escalation_id is None
        message = bus.of_type("escalation_required")[0]
        assert message.attributes["approved"] == "false"
        assert "Override Reason: x" in message.body

    def test_override_requires_reason(self, workflow, add_episode, bus):
        episode = add_episode()
        before = workflow.episodes.get(episode.episode_id)
        with pytest.raises(InvalidInputError, match="invalid validation data"):
            workflow.validations.record_decision(episode.episode_id, SUPERVISOR_UUID, False)

        after = workflow.episodes.get(episode.episode_id)
        assert after.version == before.version
        assert after.status == before.status
        assert after.triage.human_validation is None
        assert bus.messages == []

    def test_supervisor_must_be_uuid(self, workflow, add_episode):
        episode = add_episode()
        with pytest.raises(InvalidInputError, match="UUID"):
            workflow.validations.record_decision(episode.episode_id, "dr_house", True)

    def test_input_checked_before_lookup(self, workflow):
        with pytest.raises(InvalidInputError):
            workflow.validations.record_decision("missing", "dr_house", True)

    def test_second_decision_rejected(self, workflow, add_episode):
        episode = add_episode()
        workflow.validations.record_decision(episode.episode_id, SUPERVISOR_UUID, True)
        with pytest.raises(PreconditionFailedError):
            workflow.validations.record_decision(episode.episode_id, OTHER_SUPERVISOR_UUID, True)


# ---------------------------------------------------------------------------
# 3. Status and queue
# ---------------------------------------------------------------------------

class TestStatusAndQueue:
    def test_status_after_decision(self, workflow, add_episode):
        episode = add_episode()
        workflow.validations.submit_for_validation(episode.episode_id)
        workflow.validations.record_decision(episode.episode_id, SUPERVISOR_UUID, True)
        status = workflow.validations.get_status(episode.episode_id)
        assert status.validation_status == ValidationStatus.COMPLETED
        assert status.validation.approved is True
        assert status.queue_position is None

    def test_status_of_unsubmitted_episode(self, workflow, add_episode):
        episode = add_episode()
        status = workflow.validations.get_status(episode.episode_id)
        assert status.validation_status == ValidationStatus.PENDING
        assert status.queue_position is None

    def test_queue_order_and_filters(self, workflow, add_episode, clock):
        routine = add_episode(patient_id="r")
        emergency = add_episode(urgency=UrgencyLevel.EMERGENCY, patient_id="e")
        urgent = add_episode(urgency=UrgencyLevel.URGENT, patient_id="u")
        workflow.validations.submit_for_validation(routine.episode_id, "sup-a")
        workflow.validations.submit_for_validation(urgent.episode_id, "sup-b")
        workflow.validations.submit_for_validation(emergency.episode_id, "sup-a")
        clock.advance(minutes=4)

        queue = workflow.validations.get_queue()
        assert [item.patient_id for item in queue] == ["e", "u", "r"]
        assert queue[0].wait_minutes == 4

        assert [i.patient_id for i in workflow.validations.get_queue(supervisor_id="sup-a")] == ["e", "r"]
        assert [i.patient_id for i in workflow.validations.get_queue(urgency_level="urgent")] == ["u"]
        assert len(workflow.validations.get_queue(limit=1)) == 1

    def test_queue_rejects_bad_arguments(self, workflow):
        with pytest.raises(InvalidInputError):
            workflow.validations.get_queue(limit=0)
        with pytest.raises(InvalidInputError, match="Unknown urgency level"):
            workflow.validations.get_queue(urgency_level="whenever")

    def test_statistics_broadcast(self, workflow, add_episode, clock, bus):
        a = add_episode(urgency=UrgencyLevel.EMERGENCY, patient_id="a")
        b = add_episode(patient_id="b")
        workflow.validations.submit_for_validation(a.episode_id)
        clock.advance(minutes=10)
        workflow.validations.submit_for_validation(b.episode_id)
        bus.clear()

        stats = workflow.validations.send_queue_status_update()
        assert stats.total_pending == 2
        assert stats.emergency_count == 1
        assert stats.routine_count == 1
        assert stats.average_wait_minutes == 5

        message = bus.of_type("queue_status_update")[0]
        assert message.channel == Channel.GENERAL
        assert message.subject == "Validation Queue Status Update"
        assert "Total Pending: 2" in message.body

    def test_empty_queue_statistics(self, workflow):
        assert workflow.validations.get_queue_statistics().total_pending == 0


# ---------------------------------------------------------------------------
# 4. Supervisor unavailable
# ---------------------------------------------------------------------------

class TestSupervisorUnavailable:
    def test_reassigns_to_first_backup(self, workflow, add_episode, clock, bus):
        urgent = add_episode(urgency=UrgencyLevel.URGENT, patient_id="u")
        other = add_episode(patient_id="o")
        workflow.validations.submit_for_validation(urgent.episode_id, "sup-gone")
        workflow.validations.submit_for_validation(other.episode_id, "sup-here")
        clock.advance(minutes=12)
        bus.clear()

        results = workflow.validations.handle_supervisor_unavailable("sup-gone")

        assert len(results) == 1
        assert results[0].new_supervisor == "urgent-supervisor-1"
        assert results[0].wait_minutes == 12
        assert workflow.episodes.get(urgent.episode_id).assigned_supervisor == "urgent-supervisor-1"
        assert workflow.episodes.get(other.episode_id).assigned_supervisor == "sup-here"

        message = bus.of_type("escalation_required")[0]
        assert "Original Assignment: sup-gone" in message.body
        assert "Backup Supervisors: urgent-supervisor-1, urgent-supervisor-2" in message.body

    def test_unavailable_backup_is_skipped(self, workflow, add_episode):
        episode = add_episode(urgency=UrgencyLevel.URGENT)
        workflow.validations.submit_for_validation(episode.episode_id, "urgent-supervisor-1")
        results = workflow.validations.handle_supervisor_unavailable("urgent-supervisor-1")
        assert results[0].new_supervisor == "urgent-supervisor-2"
        assert results[0].backup_supervisors == ["urgent-supervisor-2"]

    def test_nothing_assigned(self, workflow):
        assert workflow.validations.handle_supervisor_unavailable("nobody") == []
