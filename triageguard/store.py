"""
Episode and record storage interfaces with in-memory implementations.

Two collaborators sit behind the coordinators:

* ``EpisodeStore`` -- the primary episode table.  Writes are
  read-merge-write guarded by ``Episode.version``; a caller that read the
  episode before deciding what to write passes ``expected_version`` and
  gets ``ConcurrencyConflictError`` if someone else wrote first.
* ``RecordStore`` -- escalation protocols and emergency alerts.  The
  preferred layout is a dedicated table (``TableRecordStore``).  Deployments
  without the secondary tables embed the records as lists on the episode
  (``EmbeddedRecordStore``).  Coordinators never know which one they hold;
  the choice is made once when the workflow is built.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from triageguard.errors import ConcurrencyConflictError, NotFoundError
from triageguard.models import (
    AlertStatus,
    EmergencyAlert,
    Episode,
    EscalationProtocol,
    EscalationStatus,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class EpisodeStore(Protocol):
    """Primary episode storage."""

    def get(self, episode_id: str) -> Optional[Episode]: ...

    def put(self, episode: Episode) -> Episode: ...

    def update(
        self,
        episode_id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Episode: ...

    def scan(self) -> list[Episode]: ...


@runtime_checkable
class RecordStore(Protocol):
    """Escalation protocol and emergency alert storage."""

    def save_escalation(self, escalation: EscalationProtocol) -> EscalationProtocol: ...

    def get_escalation(self, escalation_id: str) -> Optional[EscalationProtocol]: ...

    def list_escalations(
        self,
        episode_id: Optional[str] = None,
        statuses: Optional[Iterable[EscalationStatus]] = None,
    ) -> list[EscalationProtocol]: ...

    def save_alert(self, alert: EmergencyAlert) -> EmergencyAlert: ...

    def list_alerts(
        self,
        episode_id: Optional[str] = None,
        statuses: Optional[Iterable[AlertStatus]] = None,
    ) -> list[EmergencyAlert]: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def merge_episode(current: Episode, fields: dict[str, Any]) -> Episode:
    """Apply ``fields`` to a copy of ``current`` and bump its version."""
    unknown = set(fields) - set(Episode.model_fields)
    if unknown:
        raise ValueError(f"Unknown episode fields: {sorted(unknown)}")
    update = dict(fields)
    update["version"] = current.version + 1
    return current.model_copy(update=update).model_copy(deep=True)


def check_version(episode_id: str, expected: Optional[int], actual: int) -> None:
    if expected is not None and expected != actual:
        raise ConcurrencyConflictError(episode_id, expected, actual)


def _filter_records(records: Iterable[Any], episode_id: Optional[str], statuses: Optional[Iterable[Any]]):
    wanted = set(statuses) if statuses is not None else None
    out = []
    for record in records:
        if episode_id is not None and record.episode_id != episode_id:
            continue
        if wanted is not None and record.status not in wanted:
            continue
        out.append(record.model_copy(deep=True))
    out.sort(key=lambda r: r.created_at)
    return out


# ---------------------------------------------------------------------------
# In-memory episode store
# ---------------------------------------------------------------------------

class InMemoryEpisodeStore:
    """Dict-backed ``EpisodeStore`` for tests and local runs.

    Returns copies so callers cannot mutate stored state in place.
    """

    def __init__(self) -> None:
        self._episodes: dict[str, Episode] = {}

    def get(self, episode_id: str) -> Optional[Episode]:
        episode = self._episodes.get(episode_id)
        return episode.model_copy(deep=True) if episode else None

    def put(self, episode: Episode) -> Episode:
        self._episodes[episode.episode_id] = episode.model_copy(deep=True)
        return episode

    def update(
        self,
        episode_id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Episode:
        current = self._episodes.get(episode_id)
        if current is None:
            raise NotFoundError("Episode", episode_id)
        check_version(episode_id, expected_version, current.version)
        updated = merge_episode(current, fields)
        self._episodes[episode_id] = updated
        return updated.model_copy(deep=True)

    def scan(self) -> list[Episode]:
        return [e.model_copy(deep=True) for e in self._episodes.values()]

    def __len__(self) -> int:
        return len(self._episodes)


# ---------------------------------------------------------------------------
# Record stores
# ---------------------------------------------------------------------------

class TableRecordStore:
    """In-memory stand-in for the dedicated escalation and alert tables."""

    def __init__(self) -> None:
        self._escalations: dict[str, EscalationProtocol] = {}
        self._alerts: dict[str, EmergencyAlert] = {}

    def save_escalation(self, escalation: EscalationProtocol) -> EscalationProtocol:
        self._escalations[escalation.escalation_id] = escalation.model_copy(deep=True)
        return escalation

    def get_escalation(self, escalation_id: str) -> Optional[EscalationProtocol]:
        escalation = self._escalations.get(escalation_id)
        return escalation.model_copy(deep=True) if escalation else None

    def list_escalations(self, episode_id=None, statuses=None) -> list[EscalationProtocol]:
        return _filter_records(self._escalations.values(), episode_id, statuses)

    def save_alert(self, alert: EmergencyAlert) -> EmergencyAlert:
        self._alerts[alert.alert_id] = alert.model_copy(deep=True)
        return alert

    def list_alerts(self, episode_id=None, statuses=None) -> list[EmergencyAlert]:
        return _filter_records(self._alerts.values(), episode_id, statuses)


class EmbeddedRecordStore:
    """``RecordStore`` that keeps records as lists on the episode itself.

    Used when the secondary tables are unavailable.  Lookups scan the
    episodes and filter client-side.
    """

    def __init__(self, episodes: EpisodeStore) -> None:
        self._episodes = episodes

    def _load(self, episode_id: str) -> Episode:
        episode = self._episodes.get(episode_id)
        if episode is None:
            raise NotFoundError("Episode", episode_id)
        return episode

    def _source(self, episode_id: Optional[str]) -> list[Episode]:
        if episode_id is not None:
            episode = self._episodes.get(episode_id)
            return [episode] if episode else []
        return self._episodes.scan()

    @staticmethod
    def _upsert(records: list, record, key: str) -> list:
        ident = getattr(record, key)
        replaced = [record if getattr(r, key) == ident else r for r in records]
        if not any(getattr(r, key) == ident for r in records):
            replaced.append(record)
        return replaced

    def save_escalation(self, escalation: EscalationProtocol) -> EscalationProtocol:
        episode = self._load(escalation.episode_id)
        self._episodes.update(
            episode.episode_id,
            {"escalations": self._upsert(episode.escalations, escalation, "escalation_id")},
            expected_version=episode.version,
        )
        logger.debug(
            "ESCALATION_EMBEDDED",
            extra={"episode_id": episode.episode_id, "escalation_id": escalation.escalation_id},
        )
        return escalation

    def get_escalation(self, escalation_id: str) -> Optional[EscalationProtocol]:
        for episode in self._episodes.scan():
            for escalation in episode.escalations:
                if escalation.escalation_id == escalation_id:
                    return escalation
        return None

    def list_escalations(self, episode_id=None, statuses=None) -> list[EscalationProtocol]:
        records = [e for ep in self._source(episode_id) for e in ep.escalations]
        return _filter_records(records, episode_id, statuses)

    def save_alert(self, alert: EmergencyAlert) -> EmergencyAlert:
        episode = self._load(alert.episode_id)
        self._episodes.update(
            episode.episode_id,
            {"emergency_alerts": self._upsert(episode.emergency_alerts, alert, "alert_id")},
            expected_version=episode.version,
        )
        return alert

    def list_alerts(self, episode_id=None, statuses=None) -> list[EmergencyAlert]:
        records = [a for ep in self._source(episode_id) for a in ep.emergency_alerts]
        return _filter_records(records, episode_id, statuses)
