"""
Workflow assembly -- builds the coordinators over the configured backends.

``build_workflow()`` is the one place that decides which store, record
layout and message bus the engine runs on.  Everything downstream depends
only on the interfaces.

It also hosts ``process_emergency_case()``, which spans two tracks: it
raises an emergency alert and, when the assessor says so, opens an
escalation for the same episode.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel

from triageguard.assessor import EscalationAssessment, assess_escalation_need
from triageguard.audit import AuditLog
from triageguard.bus import Channel, InMemoryMessageBus, MessageBus, SNSMessageBus
from triageguard.config import DEFAULT_POLICY, EscalationPolicy, load_policy_from_yaml
from triageguard.dynamodb import DynamoDBEpisodeStore, DynamoDBRecordStore
from triageguard.emergency import AlertResult, EmergencyAlertCoordinator
from triageguard.errors import NotFoundError, PreconditionFailedError
from triageguard.escalation import EscalationCoordinator, EscalationResult
from triageguard.models import AlertSeverity, UrgencyLevel, utcnow
from triageguard.notifications import NotificationDispatcher
from triageguard.report import EscalationReport, generate_escalation_report
from triageguard.settings import AppSettings
from triageguard.store import (
    EmbeddedRecordStore,
    EpisodeStore,
    InMemoryEpisodeStore,
    RecordStore,
    TableRecordStore,
)
from triageguard.validation import ValidationQueueManager

logger = logging.getLogger(__name__)

EMERGENCY_CASE_ALERT_TYPE = "emergency_case"


class EmergencyCaseResult(BaseModel):
    episode_id: str
    alert: AlertResult
    assessment: EscalationAssessment
    escalation: Optional[EscalationResult] = None


class TriageWorkflow:
    """The assembled engine: stores, bus, dispatcher and the three coordinators."""

    def __init__(
        self,
        episodes: EpisodeStore,
        records: RecordStore,
        bus: MessageBus,
        policy: EscalationPolicy = DEFAULT_POLICY,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.episodes = episodes
        self.records = records
        self.bus = bus
        self.policy = policy
        self.audit_log = audit_log
        self.clock = clock or utcnow

        self.dispatcher = NotificationDispatcher(bus, audit_log=audit_log, clock=self.clock)
        self.escalations = EscalationCoordinator(
            episodes, records, self.dispatcher, policy, audit_log=audit_log, clock=self.clock
        )
        self.emergencies = EmergencyAlertCoordinator(
            episodes, records, self.dispatcher, policy, audit_log=audit_log, clock=self.clock
        )
        self.validations = ValidationQueueManager(
            episodes,
            self.dispatcher,
            policy,
            escalations=self.escalations,
            audit_log=audit_log,
            clock=self.clock,
        )

    def process_emergency_case(self, episode_id: str) -> EmergencyCaseResult:
        """Raise a high-severity alert for an emergency episode and escalate if needed.

        Raises:
            NotFoundError: If the episode does not exist.
            PreconditionFailedError: If the episode is not triaged EMERGENCY.
        """
        episode = self.episodes.get(episode_id)
        if episode is None:
            raise NotFoundError("Episode", episode_id)
        if episode.urgency_level != UrgencyLevel.EMERGENCY:
            raise PreconditionFailedError(
                f"Episode '{episode_id}' is not an emergency case "
                f"(urgency: {episode.urgency_level.value if episode.urgency_level else 'none'})"
            )

        alert = self.emergencies.process_emergency_alert(
            episode_id,
            EMERGENCY_CASE_ALERT_TYPE,
            AlertSeverity.HIGH,
            additional_info={
                "symptoms": episode.symptoms.primary_complaint,
                "severity": episode.symptoms.severity,
                "final_score": episode.triage.final_score,
            },
        )

        assessment = assess_escalation_need(self.episodes.get(episode_id), self.policy, self.clock())
        escalation = None
        if assessment.required:
            escalation = self.escalations.process_escalation(
                episode_id,
                assessment.reason,
                assessment.target_level,
                assessment.urgent_response,
            )

        logger.info(
            "EMERGENCY_CASE_PROCESSED",
            extra={
                "episode_id": episode_id,
                "alert_id": alert.alert_id,
                "escalation_required": assessment.required,
                "escalation_id": escalation.escalation_id if escalation else None,
            },
        )
        return EmergencyCaseResult(
            episode_id=episode_id,
            alert=alert,
            assessment=assessment,
            escalation=escalation,
        )

    def escalation_report(self, episode_id: str) -> EscalationReport:
        """Timeline of everything the engine has done to one episode."""
        episode = self.episodes.get(episode_id)
        if episode is None:
            raise NotFoundError("Episode", episode_id)
        return generate_escalation_report(
            episode,
            self.escalations.get_escalation_history(episode_id),
            self.records.list_alerts(episode_id=episode_id),
            now=self.clock(),
        )


def build_workflow(
    settings: Optional[AppSettings] = None,
    policy: Optional[EscalationPolicy] = None,
    bus: Optional[MessageBus] = None,
    audit_log: Optional[AuditLog] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> TriageWorkflow:
    """Assemble a ``TriageWorkflow`` from settings.

    Args:
        settings: Runtime settings; read from the environment when omitted.
        policy: Routing tables; loaded from ``settings.policy_path`` or
            ``DEFAULT_POLICY`` when omitted.
        bus: Message bus override (tests, local runs).
        audit_log: Optional audit trail.
        clock: Returns the current UTC time.
    """
    settings = settings or AppSettings()
    if policy is None:
        policy = load_policy_from_yaml(settings.policy_path) if settings.policy_path else DEFAULT_POLICY

    aws = settings.aws
    if settings.storage_backend == "dynamodb":
        episodes: EpisodeStore = DynamoDBEpisodeStore(
            aws.episodes_table, region=aws.region, endpoint_url=aws.endpoint_url
        )
    else:
        episodes = InMemoryEpisodeStore()

    if settings.record_storage == "embedded":
        records: RecordStore = EmbeddedRecordStore(episodes)
    elif settings.storage_backend == "dynamodb":
        records = DynamoDBRecordStore(
            aws.escalations_table, aws.alerts_table, region=aws.region, endpoint_url=aws.endpoint_url
        )
    else:
        records = TableRecordStore()

    if bus is None:
        if aws.general_topic_arn and aws.emergency_topic_arn:
            bus = SNSMessageBus(
                {Channel.GENERAL: aws.general_topic_arn, Channel.EMERGENCY: aws.emergency_topic_arn},
                region=aws.region,
                endpoint_url=aws.endpoint_url,
            )
        else:
            bus = InMemoryMessageBus()

    logger.info(
        "WORKFLOW_BUILT",
        extra={
            "environment": settings.environment,
            "storage_backend": settings.storage_backend,
            "record_storage": settings.record_storage,
            "bus": type(bus).__name__,
        },
    )
    return TriageWorkflow(episodes, records, bus, policy, audit_log=audit_log, clock=clock)
