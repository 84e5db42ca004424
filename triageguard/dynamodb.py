"""DynamoDB backends implementing EpisodeStore and RecordStore."""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from triageguard.errors import ConcurrencyConflictError, DependencyFailureError, NotFoundError
from triageguard.models import EmergencyAlert, Episode, EscalationProtocol
from triageguard.store import check_version, merge_episode

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _decode_decimals(value: Any) -> Any:
    """Convert Decimal values in a DynamoDB item to int/float."""
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, dict):
        return {k: _decode_decimals(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode_decimals(v) for v in value]
    return value


def _to_item(model: BaseModel) -> dict[str, Any]:
    """Serialize a model to a DynamoDB item (floats become Decimal)."""
    return json.loads(model.model_dump_json(), parse_float=Decimal)


def _resource(region: str, endpoint_url: Optional[str]):
    kwargs: dict = {"region_name": region}
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    return boto3.resource("dynamodb", **kwargs)


def _call(operation: str, table: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except (ClientError, BotoCoreError) as exc:
        logger.error(
            "DYNAMODB_CALL_FAILED",
            extra={"operation": operation, "table": table, "error": str(exc)},
        )
        raise DependencyFailureError(f"DynamoDB {operation} on {table} failed: {exc}") from exc


def _scan_all(table, **kwargs) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        resp = table.scan(**kwargs)
        items.extend(resp.get("Items", []))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


class DynamoDBEpisodeStore:
    """Episode table keyed by ``episode_id`` with version-conditioned writes."""

    def __init__(self, table_name: str, region: str = "us-east-1",
                 endpoint_url: Optional[str] = None) -> None:
        self._table_name = table_name
        self._table = _resource(region, endpoint_url).Table(table_name)

    def get(self, episode_id: str) -> Optional[Episode]:
        resp = _call(
            "get_item",
            self._table_name,
            lambda: self._table.get_item(Key={"episode_id": episode_id}, ConsistentRead=True),
        )
        item = resp.get("Item")
        return Episode.model_validate(_decode_decimals(item)) if item else None

    def put(self, episode: Episode) -> Episode:
        _call("put_item", self._table_name, lambda: self._table.put_item(Item=_to_item(episode)))
        return episode

    def update(
        self,
        episode_id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Episode:
        current = self.get(episode_id)
        if current is None:
            raise NotFoundError("Episode", episode_id)
        check_version(episode_id, expected_version, current.version)
        updated = merge_episode(current, fields)
        try:
            self._table.put_item(
                Item=_to_item(updated),
                ConditionExpression=Attr("version").eq(current.version),
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                logger.warning(
                    "EPISODE_VERSION_CONFLICT",
                    extra={"episode_id": episode_id, "expected_version": current.version},
                )
                raise ConcurrencyConflictError(episode_id, current.version) from exc
            logger.error(
                "DYNAMODB_CALL_FAILED",
                extra={"operation": "put_item", "table": self._table_name, "error": str(exc)},
            )
            raise DependencyFailureError(f"DynamoDB put_item on {self._table_name} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise DependencyFailureError(f"DynamoDB put_item on {self._table_name} failed: {exc}") from exc
        return updated

    def scan(self) -> list[Episode]:
        items = _call("scan", self._table_name, lambda: _scan_all(self._table))
        return [Episode.model_validate(_decode_decimals(i)) for i in items]


class DynamoDBRecordStore:
    """Dedicated escalation and emergency alert tables."""

    def __init__(self, escalations_table: str, alerts_table: str,
                 region: str = "us-east-1", endpoint_url: Optional[str] = None) -> None:
        ddb = _resource(region, endpoint_url)
        self._escalations_name = escalations_table
        self._alerts_name = alerts_table
        self._escalations = ddb.Table(escalations_table)
        self._alerts = ddb.Table(alerts_table)

    @staticmethod
    def _filter(episode_id, statuses):
        condition = None
        if episode_id is not None:
            condition = Attr("episode_id").eq(episode_id)
        if statuses is not None:
            status_cond = Attr("status").is_in([getattr(s, "value", s) for s in statuses])
            condition = status_cond if condition is None else condition & status_cond
        return {"FilterExpression": condition} if condition is not None else {}

    def save_escalation(self, escalation: EscalationProtocol) -> EscalationProtocol:
        _call(
            "put_item",
            self._escalations_name,
            lambda: self._escalations.put_item(Item=_to_item(escalation)),
        )
        return escalation

    def get_escalation(self, escalation_id: str) -> Optional[EscalationProtocol]:
        resp = _call(
            "get_item",
            self._escalations_name,
            lambda: self._escalations.get_item(Key={"escalation_id": escalation_id}),
        )
        item = resp.get("Item")
        return EscalationProtocol.model_validate(_decode_decimals(item)) if item else None

    def list_escalations(self, episode_id=None, statuses=None) -> list[EscalationProtocol]:
        kwargs = self._filter(episode_id, statuses)
        items = _call("scan", self._escalations_name, lambda: _scan_all(self._escalations, **kwargs))
        records = [EscalationProtocol.model_validate(_decode_decimals(i)) for i in items]
        return sorted(records, key=lambda r: r.created_at)

    def save_alert(self, alert: EmergencyAlert) -> EmergencyAlert:
        _call("put_item", self._alerts_name, lambda: self._alerts.put_item(Item=_to_item(alert)))
        return alert

    def list_alerts(self, episode_id=None, statuses=None) -> list[EmergencyAlert]:
        kwargs = self._filter(episode_id, statuses)
        items = _call("scan", self._alerts_name, lambda: _scan_all(self._alerts, **kwargs))
        records = [EmergencyAlert.model_validate(_decode_decimals(i)) for i in items]
        return sorted(records, key=lambda r: r.created_at)
