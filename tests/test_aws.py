"""Unit tests for the DynamoDB stores and the SNS bus using moto."""

from __future__ import annotations

import boto3
import pytest
from moto import mock_aws

from triageguard.bus import Channel, SNSMessageBus
from triageguard.dynamodb import DynamoDBEpisodeStore, DynamoDBRecordStore
from triageguard.errors import ConcurrencyConflictError, DependencyFailureError, NotFoundError
from triageguard.models import (
    AlertStatus,
    EmergencyAlert,
    EpisodeStatus,
    EscalationLevel,
    EscalationProtocol,
    EscalationStatus,
    UrgencyLevel,
)
from triageguard.settings import AppSettings, AWSConfig
from triageguard.workflow import build_workflow

from conftest import SUPERVISOR_UUID, T0, FakeClock, make_episode

REGION = "us-east-1"
EPISODES = "triageguard-episodes-test"
ESCALATIONS = "triageguard-escalations-test"
ALERTS = "triageguard-alerts-test"

# ---------- helpers ----------

def _create_table(client, name: str, pk: str):
    client.create_table(
        TableName=name,
        KeySchema=[{"AttributeName": pk, "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": pk, "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )


# ---------- fixtures ----------

@pytest.fixture
def aws():
    with mock_aws():
        client = boto3.client("dynamodb", region_name=REGION)
        _create_table(client, EPISODES, "episode_id")
        _create_table(client, ESCALATIONS, "escalation_id")
        _create_table(client, ALERTS, "alert_id")
        yield client


@pytest.fixture
def episodes(aws):
    return DynamoDBEpisodeStore(EPISODES, region=REGION)


@pytest.fixture
def records(aws):
    return DynamoDBRecordStore(ESCALATIONS, ALERTS, region=REGION)


@pytest.fixture
def topics(aws):
    sns = boto3.client("sns", region_name=REGION)
    general = sns.create_topic(Name="triageguard-general")["TopicArn"]
    emergency = sns.create_topic(Name="triageguard-emergency")["TopicArn"]
    return {Channel.GENERAL: general, Channel.EMERGENCY: emergency}


# ---------- episode store ----------

class TestDynamoDBEpisodeStore:
    def test_round_trip_preserves_floats_and_dates(self, episodes):
        episode = make_episode(urgency=UrgencyLevel.EMERGENCY, ai_used=True, ai_confidence=0.55)
        episodes.put(episode)

        fetched = episodes.get(episode.episode_id)
        assert fetched.triage.ai_assessment.confidence == 0.55
        assert fetched.created_at == T0
        assert fetched.urgency_level == UrgencyLevel.EMERGENCY

    def test_get_missing(self, episodes):
        assert episodes.get("missing") is None

    def test_update_bumps_version(self, episodes):
        episode = make_episode()
        episodes.put(episode)
        updated = episodes.update(episode.episode_id, {"status": EpisodeStatus.ESCALATED}, expected_version=0)
        assert updated.version == 1
        assert episodes.get(episode.episode_id).status == EpisodeStatus.ESCALATED

    def test_stale_write_rejected(self, episodes):
        episode = make_episode()
        episodes.put(episode)
        episodes.update(episode.episode_id, {"assigned_supervisor": "a"})
        with pytest.raises(ConcurrencyConflictError):
            episodes.update(episode.episode_id, {"assigned_supervisor": "b"}, expected_version=0)

    def test_update_missing(self, episodes):
        with pytest.raises(NotFoundError):
            episodes.update("missing", {"status": EpisodeStatus.ACTIVE})

    def test_scan(self, episodes):
        for i in range(3):
            episodes.put(make_episode(patient_id=f"p{i}"))
        assert len(episodes.scan()) == 3

    def test_missing_table_is_dependency_failure(self, aws):
        store = DynamoDBEpisodeStore("no-such-table", region=REGION)
        with pytest.raises(DependencyFailureError):
            store.get("anything")


# ---------- record store ----------

class TestDynamoDBRecordStore:
    def test_escalation_filters(self, records):
        active = EscalationProtocol(
            episode_id="ep-1", escalation_level=EscalationLevel.LEVEL_1, reason="a", timeout_minutes=10,
        )
        failed = EscalationProtocol(
            episode_id="ep-1", escalation_level=EscalationLevel.LEVEL_2, reason="b", timeout_minutes=15,
            status=EscalationStatus.FAILED,
        )
        other = EscalationProtocol(
            episode_id="ep-2", escalation_level=EscalationLevel.LEVEL_1, reason="c", timeout_minutes=10,
        )
        for escalation in (active, failed, other):
            records.save_escalation(escalation)

        assert records.get_escalation(failed.escalation_id).status == EscalationStatus.FAILED
        assert len(records.list_escalations(episode_id="ep-1")) == 2
        open_ep1 = records.list_escalations(episode_id="ep-1", statuses=[EscalationStatus.ACTIVE])
        assert [e.escalation_id for e in open_ep1] == [active.escalation_id]
        assert len(records.list_escalations(statuses=[EscalationStatus.ACTIVE])) == 2

    def test_alert_filters(self, records):
        records.save_alert(EmergencyAlert(
            episode_id="ep-1", alert_type="x", response_target_minutes=5, additional_info={"score": 8.5},
        ))
        records.save_alert(EmergencyAlert(
            episode_id="ep-1", alert_type="y", response_target_minutes=5, status=AlertStatus.RESOLVED,
        ))
        open_alerts = records.list_alerts(episode_id="ep-1", statuses=[AlertStatus.ACTIVE])
        assert len(open_alerts) == 1
        assert open_alerts[0].additional_info == {"score": 8.5}
        assert records.get_escalation("missing") is None


# ---------- SNS bus ----------

class TestSNSMessageBus:
    def test_publish_returns_message_id(self, topics):
        bus = SNSMessageBus(topics, region=REGION)
        message_id = bus.publish(Channel.EMERGENCY, "ALERT - Épisode 1", "body", {
            "notification_type": "emergency_alert",
            "episode_id": "",
        })
        assert message_id

    def test_missing_topic_rejected(self):
        with pytest.raises(ValueError, match="topic ARN missing"):
            SNSMessageBus({Channel.GENERAL: "arn:aws:sns:us-east-1:123456789012:general"})

    def test_unknown_topic_is_dependency_failure(self, aws):
        bus = SNSMessageBus({
            Channel.GENERAL: "arn:aws:sns:us-east-1:123456789012:does-not-exist",
            Channel.EMERGENCY: "arn:aws:sns:us-east-1:123456789012:does-not-exist",
        }, region=REGION)
        with pytest.raises(DependencyFailureError):
            bus.publish(Channel.GENERAL, "subject", "body", {})


# ---------- end to end ----------

class TestAWSWorkflow:
    def test_override_escalation_on_dynamodb_and_sns(self, topics):
        settings = AppSettings(
            storage_backend="dynamodb",
            aws=AWSConfig(
                region=REGION,
                episodes_table=EPISODES,
                escalations_table=ESCALATIONS,
                alerts_table=ALERTS,
                general_topic_arn=topics[Channel.GENERAL],
                emergency_topic_arn=topics[Channel.EMERGENCY],
            ),
        )
        clock = FakeClock()
        workflow = build_workflow(settings, clock=clock)
        assert isinstance(workflow.bus, SNSMessageBus)

        episode = make_episode(urgency=UrgencyLevel.URGENT)
        workflow.episodes.put(episode)
        workflow.validations.submit_for_validation(episode.episode_id, "sup-a")
        decision = workflow.validations.record_decision(
            episode.episode_id, SUPERVISOR_UUID, False, override_reason="pain escalating"
        )

        stored = workflow.episodes.get(episode.episode_id)
        assert stored.status == EpisodeStatus.ESCALATED
        assert stored.current_escalation.escalation_id == decision.escalation_id

        clock.advance(minutes=11)
        sweep = workflow.escalations.check_escalation_timeouts()
        assert sweep.timed_out == [decision.escalation_id]
        assert workflow.episodes.get(episode.episode_id).escalation_level == EscalationLevel.LEVEL_2

    def test_embedded_records_on_dynamodb(self, aws):
        settings = AppSettings(
            storage_backend="dynamodb",
            record_storage="embedded",
            aws=AWSConfig(region=REGION, episodes_table=EPISODES),
        )
        workflow = build_workflow(settings, clock=FakeClock())
        episode = make_episode(urgency=UrgencyLevel.EMERGENCY, complaint="unconscious", severity=9)
        workflow.episodes.put(episode)

        result = workflow.process_emergency_case(episode.episode_id)
        stored = workflow.episodes.get(episode.episode_id)
        assert [a.alert_id for a in stored.emergency_alerts] == [result.alert.alert_id]
        assert [e.escalation_id for e in stored.escalations] == [result.escalation.escalation_id]
