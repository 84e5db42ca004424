"""Shared fixtures: a controllable clock, episode factories and an in-memory workflow."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from triageguard.audit import AuditLog
from triageguard.bus import InMemoryMessageBus
from triageguard.config import DEFAULT_POLICY
from triageguard.models import (
    AIAssessment,
    Episode,
    Symptoms,
    TriageAssessment,
    UrgencyLevel,
)
from triageguard.store import EmbeddedRecordStore, InMemoryEpisodeStore, TableRecordStore
from triageguard.workflow import TriageWorkflow

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

SUPERVISOR_UUID = "3f2b8c1e-7d4a-4e6b-9c2d-1a5e8f7b6c4d"
OTHER_SUPERVISOR_UUID = "9a7e6d5c-4b3a-4c2d-8e1f-0a9b8c7d6e5f"


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


def make_episode(
    urgency: Optional[UrgencyLevel] = UrgencyLevel.ROUTINE,
    complaint: str = "mild headache",
    severity: int = 4,
    ai_used: bool = False,
    ai_confidence: Optional[float] = None,
    created_at: datetime = T0,
    patient_id: str = "patient-001",
    final_score: int = 40,
) -> Episode:
    triage = None
    if urgency is not None:
        triage = TriageAssessment(
            urgency_level=urgency,
            rule_based_score=final_score,
            ai_assessment=AIAssessment(
                used=ai_used,
                confidence=ai_confidence,
                reasoning="synthetic reasoning" if ai_used else None,
            ),
            final_score=final_score,
        )
    return Episode(
        patient_id=patient_id,
        symptoms=Symptoms(primary_complaint=complaint, duration="2 hours", severity=severity),
        triage=triage,
        created_at=created_at,
        updated_at=created_at,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> InMemoryMessageBus:
    return InMemoryMessageBus()


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog()


@pytest.fixture(params=["table", "embedded"])
def workflow(request, clock, bus, audit_log) -> TriageWorkflow:
    """In-memory workflow, run once per record layout."""
    episodes = InMemoryEpisodeStore()
    records = TableRecordStore() if request.param == "table" else EmbeddedRecordStore(episodes)
    return TriageWorkflow(episodes, records, bus, DEFAULT_POLICY, audit_log=audit_log, clock=clock)


@pytest.fixture
def add_episode(workflow):
    """Persist an episode built by ``make_episode`` and return it."""
    def _add(**kwargs) -> Episode:
        episode = make_episode(**kwargs)
        workflow.episodes.put(episode)
        return episode
    return _add
