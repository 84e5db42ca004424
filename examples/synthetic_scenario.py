"""
Synthetic Scenario: Emergency Triage Escalation Walkthrough
===========================================================

This script runs the TriageGuard workflow engine end to end on an
in-memory backend using entirely synthetic data.  No real patient data
is used.

The scenario simulates an evening shift at a remote triage service: one
emergency episode and one urgent episode arrive, the urgent supervisor
goes off shift, and the emergency escalation is left unanswered long
enough to climb the ladder.

Steps demonstrated:
  1. Load the escalation policy from YAML
  2. Submit episodes for supervisor validation
  3. Process the emergency case (alert + assessor-driven escalation)
  4. Reassign a queue when a supervisor becomes unavailable
  5. Record a validation override
  6. Run the timeout sweep on a simulated clock
  7. Acknowledge and resolve the emergency
  8. Print the escalation history report and export the audit trail

Usage:
    python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from triageguard.audit import AuditLog
from triageguard.bus import InMemoryMessageBus
from triageguard.config import load_policy_from_yaml
from triageguard.models import (
    AIAssessment,
    Episode,
    Symptoms,
    TriageAssessment,
    UrgencyLevel,
)
from triageguard.settings import AppSettings, configure_logging
from triageguard.workflow import build_workflow

SUPERVISOR_ID = "5d0c9b3e-2f61-4a8e-9b7d-3c4e5f6a7b8c"


class ShiftClock:
    """Simulated wall clock so the walkthrough can skip ahead in minutes."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 15, 21, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += timedelta(minutes=minutes)
        print(f"\n... {minutes} minutes pass (clock: {self.now.strftime('%H:%M')}) ...")


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _episode(patient_id: str, urgency: UrgencyLevel, complaint: str, severity: int,
             confidence: float, created_at: datetime) -> Episode:
    return Episode(
        patient_id=patient_id,
        symptoms=Symptoms(primary_complaint=complaint, duration="1 hour", severity=severity),
        triage=TriageAssessment(
            urgency_level=urgency,
            rule_based_score=severity * 10,
            ai_assessment=AIAssessment(used=True, confidence=confidence, reasoning="(synthetic)"),
            final_score=severity * 10,
        ),
        created_at=created_at,
        updated_at=created_at,
    )


def main() -> None:
    settings = AppSettings()
    configure_logging(settings.log_level)

    _banner("TriageGuard Synthetic Scenario: Evening Shift")
    print("DISCLAIMER: All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load policy and assemble the engine
    # ------------------------------------------------------------------
    _banner("Step 1: Load Escalation Policy")

    policy = load_policy_from_yaml(Path(__file__).parent / "escalation_policy.yaml")
    print(f"Critical keywords: {policy.critical_keywords}")
    print(f"Level timeouts: {policy.level_timeouts}")

    clock = ShiftClock()
    bus = InMemoryMessageBus()
    audit_log = AuditLog()
    workflow = build_workflow(settings, policy=policy, bus=bus, audit_log=audit_log, clock=clock)

    # ------------------------------------------------------------------
    # Step 2: Intake and validation queue
    # ------------------------------------------------------------------
    _banner("Step 2: Submit Episodes for Validation")

    emergency = _episode("synthetic-patient-A", UrgencyLevel.EMERGENCY,
                         "sudden shortness of breath", severity=7, confidence=0.62,
                         created_at=clock())
    urgent = _episode("synthetic-patient-B", UrgencyLevel.URGENT,
                      "deep cut on forearm", severity=5, confidence=0.91,
                      created_at=clock())
    for episode in (emergency, urgent):
        workflow.episodes.put(episode)

    for episode, supervisor in ((emergency, "emergency-supervisor-1"), (urgent, "urgent-supervisor-1")):
        submitted = workflow.validations.submit_for_validation(episode.episode_id, supervisor)
        print(f"Submitted {episode.patient_id}: position {submitted.queue_position}, "
              f"estimated wait {submitted.estimated_wait_minutes} min")

    stats = workflow.validations.send_queue_status_update()
    print(f"Queue: {stats.total_pending} pending "
          f"({stats.emergency_count} emergency, {stats.urgent_count} urgent)")

    # ------------------------------------------------------------------
    # Step 3: Emergency case
    # ------------------------------------------------------------------
    _banner("Step 3: Process Emergency Case")

    case = workflow.process_emergency_case(emergency.episode_id)
    print(f"Alert {case.alert.alert_id}: paged {case.alert.supervisors_notified} supervisor(s), "
          f"target {case.alert.response_target_minutes} min")
    print(f"Assessment: required={case.assessment.required}, reason='{case.assessment.reason}'")
    if case.escalation:
        print(f"Escalated to {case.escalation.escalation_level.value}, "
              f"expected response {case.escalation.expected_response_minutes} min")

    # ------------------------------------------------------------------
    # Step 4: Supervisor goes off shift
    # ------------------------------------------------------------------
    _banner("Step 4: Supervisor Unavailable")

    clock.advance(5)
    for moved in workflow.validations.handle_supervisor_unavailable("urgent-supervisor-1"):
        print(f"Episode {moved.episode_id}: {moved.previous_supervisor} -> {moved.new_supervisor} "
              f"(waited {moved.wait_minutes} min)")

    # ------------------------------------------------------------------
    # Step 5: Validation override
    # ------------------------------------------------------------------
    _banner("Step 5: Validation Override")

    decision = workflow.validations.record_decision(
        urgent.episode_id,
        SUPERVISOR_ID,
        approved=False,
        override_reason="(synthetic) bleeding not controlled by pressure",
    )
    print(f"Decision recorded: new status {decision.new_status.value}, "
          f"escalation {decision.escalation_id}")

    # ------------------------------------------------------------------
    # Step 6: Timeout sweep
    # ------------------------------------------------------------------
    _banner("Step 6: Escalation Timeout Sweep")

    for minutes in (4, 8):
        clock.advance(minutes)
        sweep = workflow.escalations.check_escalation_timeouts()
        print(f"Sweep: checked={sweep.checked} warnings={len(sweep.warnings_sent)} "
              f"timed_out={len(sweep.timed_out)} escalated={len(sweep.escalated)} "
              f"exhausted={len(sweep.exhausted)}")

    # ------------------------------------------------------------------
    # Step 7: Emergency response
    # ------------------------------------------------------------------
    _banner("Step 7: Emergency Response")

    workflow.emergencies.update_emergency_response(emergency.episode_id, "emergency-supervisor-2", "acknowledge")
    print(f"Status: {workflow.emergencies.get_emergency_status(emergency.episode_id).response_status}")
    workflow.emergencies.update_emergency_response(
        emergency.episode_id, "emergency-supervisor-2", "resolve", notes="(synthetic) ambulance dispatched"
    )
    print(f"Status: {workflow.emergencies.get_emergency_status(emergency.episode_id).response_status}")

    # ------------------------------------------------------------------
    # Step 8: Report and audit export
    # ------------------------------------------------------------------
    _banner("Step 8: Escalation History Report")

    report = workflow.escalation_report(emergency.episode_id)
    print(json.dumps(report.to_dict(), indent=2, default=str))

    _banner("Audit Trail Export")
    export = audit_log.export_for_review(emergency.episode_id)
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    _banner("Scenario Complete")
    print(f"Messages published: {len(bus.messages)}")
    print("All data was synthetic.")


if __name__ == "__main__":
    main()
