"""
Tests for triageguard.report -- Escalation History Report.

Covers: report fields for an untouched episode, highest level across the
ladder, chronological timeline ordering, and the workflow-level report
after a validation override, a timeout and an emergency response.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from triageguard.errors import NotFoundError
from triageguard.models import EscalationLevel, EscalationProtocol, EscalationStatus
from triageguard.report import generate_escalation_report

from conftest import SUPERVISOR_UUID, T0, make_episode


class TestGenerateReport:
    def test_untouched_episode(self):
        episode = make_episode()
        report = generate_escalation_report(episode, [], [], now=T0)
        data = report.to_dict()

        assert data["report_type"] == "Escalation History Report"
        assert data["escalation_count"] == 0
        assert data["highest_level"] is None
        assert data["urgency_level"] == "routine"
        assert [e["event"] for e in data["timeline"]] == ["episode_created"]
        assert data["generated_at"] == T0.isoformat()

    def test_highest_level_and_ordering(self):
        episode = make_episode()
        later = EscalationProtocol(
            episode_id=episode.episode_id,
            escalation_level=EscalationLevel.LEVEL_3,
            reason="second",
            timeout_minutes=20,
            created_at=T0 + timedelta(minutes=20),
        )
        earlier = EscalationProtocol(
            episode_id=episode.episode_id,
            escalation_level=EscalationLevel.LEVEL_2,
            reason="first",
            timeout_minutes=15,
            status=EscalationStatus.COMPLETED,
            created_at=T0 + timedelta(minutes=5),
            completed_at=T0 + timedelta(minutes=10),
        )
        report = generate_escalation_report(episode, [later, earlier], [])

        assert report.highest_level == "level-3"
        assert [e["event"] for e in report.timeline] == [
            "episode_created", "escalation_opened", "escalation_completed", "escalation_opened",
        ]
        assert "EscalationReport(" in repr(report)


class TestWorkflowReport:
    def test_full_history(self, workflow, add_episode, clock):
        episode = add_episode()
        clock.advance(minutes=1)
        workflow.validations.record_decision(
            episode.episode_id, SUPERVISOR_UUID, False, override_reason="worse than scored"
        )
        clock.advance(minutes=11)
        workflow.escalations.check_escalation_timeouts()
        workflow.emergencies.process_emergency_alert(episode.episode_id, "deterioration")
        clock.advance(minutes=1)
        workflow.emergencies.update_emergency_response(episode.episode_id, "sup-1", "acknowledge")

        report = workflow.escalation_report(episode.episode_id)
        events = [e["event"] for e in report.timeline]

        assert report.escalation_count == 2
        assert report.alert_count == 1
        assert report.current_level == "level-2"
        assert report.highest_level == "level-2"
        assert report.episode_status == "escalated"
        assert events[:3] == ["episode_created", "validation_decided", "escalation_opened"]
        assert "escalation_failed" in events
        assert events[-1] == "emergency_acknowledge"

    def test_missing_episode(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.escalation_report("missing")
