"""Runtime settings using pydantic-settings with grouped env prefixes."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class AWSConfig(BaseSettings):
    """DynamoDB tables and SNS topics for the AWS-backed deployment."""

    model_config = {"env_prefix": "TRIAGEGUARD_AWS_"}

    region: str = "us-east-1"
    endpoint_url: Optional[str] = None  # LocalStack override
    episodes_table: str = "triageguard-episodes"
    escalations_table: str = "triageguard-escalations"
    alerts_table: str = "triageguard-emergency-alerts"
    general_topic_arn: str = ""
    emergency_topic_arn: str = ""


class AppSettings(BaseSettings):
    """Root application settings."""

    model_config = {"env_prefix": "TRIAGEGUARD_"}

    environment: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["memory", "dynamodb"] = "memory"
    # "embedded" keeps escalations and alerts inside the episode record
    record_storage: Literal["table", "embedded"] = "table"
    policy_path: Optional[str] = None

    aws: AWSConfig = Field(default_factory=AWSConfig)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for scripts and scheduled entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
