"""
Message bus interface with in-memory and SNS implementations.

Notifications go out on two channels: ``GENERAL`` for routine supervisor
traffic and ``EMERGENCY`` for anything that needs an immediate response.
A bus implementation raises ``DependencyFailureError`` when a publish does
not go through; deciding whether that failure matters is the dispatcher's
job.
"""

from __future__ import annotations

import enum
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional, Protocol, runtime_checkable

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field

from triageguard.errors import DependencyFailureError
from triageguard.models import utcnow

logger = logging.getLogger(__name__)

# SNS subject limit is 100 characters.
MAX_SUBJECT_LENGTH = 99


class Channel(str, enum.Enum):
    GENERAL = "general"
    EMERGENCY = "emergency"


@runtime_checkable
class MessageBus(Protocol):
    def publish(
        self,
        channel: Channel,
        subject: str,
        body: str,
        attributes: dict[str, str],
    ) -> str: ...


class PublishedMessage(BaseModel):
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    channel: Channel
    subject: str
    body: str
    attributes: dict[str, str] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=utcnow)


class InMemoryMessageBus:
    """Records every publish; used by tests and local runs.

    ``fail_when`` lets a test reject selected publishes, for example every
    message addressed to one supervisor.
    """

    def __init__(self, fail_when: Optional[Callable[[PublishedMessage], bool]] = None) -> None:
        self.messages: list[PublishedMessage] = []
        self.fail_when = fail_when

    def publish(self, channel: Channel, subject: str, body: str, attributes: dict[str, str]) -> str:
        message = PublishedMessage(
            channel=channel, subject=subject, body=body, attributes=dict(attributes)
        )
        if self.fail_when is not None and self.fail_when(message):
            raise DependencyFailureError(f"Publish to {channel.value} channel rejected")
        self.messages.append(message)
        return message.message_id

    def on_channel(self, channel: Channel) -> list[PublishedMessage]:
        return [m for m in self.messages if m.channel == channel]

    def of_type(self, notification_type: str) -> list[PublishedMessage]:
        return [m for m in self.messages if m.attributes.get("notification_type") == notification_type]

    def clear(self) -> None:
        self.messages.clear()


class SNSMessageBus:
    """Publishes to one SNS topic per channel."""

    def __init__(
        self,
        topic_arns: dict[Channel, str],
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        client=None,
    ) -> None:
        missing = [c.value for c in Channel if not topic_arns.get(c)]
        if missing:
            raise ValueError(f"SNS topic ARN missing for channel(s): {missing}")
        self.topic_arns = dict(topic_arns)
        self.region = region
        self.endpoint_url = endpoint_url
        self._sns_client = client

    @property
    def sns_client(self):
        """Lazy initialization of the SNS client."""
        if self._sns_client is None:
            kwargs: dict = {"region_name": self.region}
            if self.endpoint_url:
                kwargs["endpoint_url"] = self.endpoint_url
            self._sns_client = boto3.client("sns", **kwargs)
        return self._sns_client

    @staticmethod
    def _message_attributes(attributes: dict[str, str]) -> dict[str, dict[str, str]]:
        # SNS rejects empty string attribute values
        return {
            key: {"DataType": "String", "StringValue": str(value)}
            for key, value in attributes.items()
            if value not in (None, "")
        }

    def publish(self, channel: Channel, subject: str, body: str, attributes: dict[str, str]) -> str:
        topic_arn = self.topic_arns[channel]
        safe_subject = subject.encode("ascii", "ignore").decode("ascii")[:MAX_SUBJECT_LENGTH]
        try:
            response = self.sns_client.publish(
                TopicArn=topic_arn,
                Subject=safe_subject,
                Message=body,
                MessageAttributes=self._message_attributes(attributes),
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(
                "SNS_PUBLISH_FAILED",
                extra={
                    "topic_arn": topic_arn,
                    "channel": channel.value,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            raise DependencyFailureError(f"SNS publish to {topic_arn} failed: {exc}") from exc
        return response["MessageId"]
