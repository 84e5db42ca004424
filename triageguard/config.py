"""
Escalation Policy -- the injected tables that drive every routing decision.

Nothing in the coordinators hard-codes a roster, a timeout, or a wait
budget.  They all read an ``EscalationPolicy``:

* **Level rosters and timeouts** -- who is paged at each rung of the
  escalation ladder and how long they have before the case climbs.
* **Escalation paths** -- the ladder an episode of a given urgency walks.
* **Maximum waits** -- how long an episode may sit before the wait budget
  alone triggers escalation.
* **Emergency severity tiers** -- how many emergency supervisors an alert
  pages and the response target it promises.
* **Critical keywords** -- complaint phrases that escalate an emergency
  straight to CRITICAL.
* **Backup rosters** -- who takes over a queue when a supervisor becomes
  unavailable.

Deployments load their own tables from YAML with ``load_policy_from_yaml``;
``DEFAULT_POLICY`` carries the production defaults.

DISCLAIMER: These tables configure workflow routing only.  They are not
clinical protocols.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from triageguard.models import AlertSeverity, EscalationLevel, UrgencyLevel


# ---------------------------------------------------------------------------
# Table entries
# ---------------------------------------------------------------------------

class SeverityTier(BaseModel):
    """Emergency alert fan-out for one severity."""

    supervisor_count: int = Field(
        ...,
        ge=1,
        description="How many emergency supervisors (from the top of the roster) are paged.",
    )
    response_target_minutes: int = Field(
        ...,
        gt=0,
        description="Response time promised to the episode for this severity.",
    )


class BackupRoster(BaseModel):
    """Fallback reviewers for an urgency class."""

    supervisors: list[str] = Field(..., min_length=1)
    max_wait_minutes: int = Field(..., gt=0)


def _default_level_rosters() -> dict[EscalationLevel, list[str]]:
    return {
        EscalationLevel.LEVEL_1: ["emergency-supervisor-1", "emergency-supervisor-2"],
        EscalationLevel.LEVEL_2: ["senior-supervisor-1", "senior-supervisor-2", "emergency-supervisor-1"],
        EscalationLevel.LEVEL_3: ["chief-supervisor-1", "senior-supervisor-1", "senior-supervisor-2"],
        EscalationLevel.CRITICAL: ["chief-supervisor-1", "chief-supervisor-2", "emergency-director-1"],
    }


def _default_escalation_paths() -> dict[UrgencyLevel, list[EscalationLevel]]:
    return {
        UrgencyLevel.EMERGENCY: [
            EscalationLevel.LEVEL_1,
            EscalationLevel.LEVEL_2,
            EscalationLevel.LEVEL_3,
            EscalationLevel.CRITICAL,
        ],
        UrgencyLevel.URGENT: [
            EscalationLevel.LEVEL_1,
            EscalationLevel.LEVEL_2,
            EscalationLevel.LEVEL_3,
        ],
        UrgencyLevel.ROUTINE: [EscalationLevel.LEVEL_1, EscalationLevel.LEVEL_2],
    }


# ---------------------------------------------------------------------------
# Policy model
# ---------------------------------------------------------------------------

class EscalationPolicy(BaseModel):
    """Complete routing configuration for one deployment."""

    level_rosters: dict[EscalationLevel, list[str]] = Field(
        default_factory=_default_level_rosters,
        description="Supervisors paged at each escalation level.",
    )
    level_timeouts: dict[EscalationLevel, int] = Field(
        default_factory=lambda: {
            EscalationLevel.LEVEL_1: 10,
            EscalationLevel.LEVEL_2: 15,
            EscalationLevel.LEVEL_3: 20,
            EscalationLevel.CRITICAL: 5,
        },
        description=(
            "Minutes an escalation may stay active before it times out and "
            "climbs.  CRITICAL is the shortest because nothing sits above it."
        ),
    )
    escalation_paths: dict[UrgencyLevel, list[EscalationLevel]] = Field(
        default_factory=_default_escalation_paths,
        description="Ladder recorded on each escalation, by episode urgency.",
    )
    default_escalation_path: list[EscalationLevel] = Field(
        default_factory=lambda: [EscalationLevel.LEVEL_1, EscalationLevel.LEVEL_2],
    )
    max_wait_minutes: dict[UrgencyLevel, int] = Field(
        default_factory=lambda: {
            UrgencyLevel.EMERGENCY: 5,
            UrgencyLevel.URGENT: 30,
            UrgencyLevel.ROUTINE: 120,
        },
        description="Wait budget after which an unattended episode escalates.",
    )
    default_max_wait_minutes: int = Field(default=60, gt=0)
    critical_keywords: list[str] = Field(
        default_factory=lambda: [
            "chest pain",
            "difficulty breathing",
            "unconscious",
            "severe bleeding",
            "stroke",
            "heart attack",
            "seizure",
            "severe trauma",
            "poisoning",
        ],
        description="Complaint phrases (case-insensitive substrings) that escalate an emergency to CRITICAL.",
    )
    critical_severity_threshold: int = Field(
        default=8,
        ge=1,
        le=10,
        description="Reported severity at or above which an emergency escalates to CRITICAL.",
    )
    critical_level_severity: int = Field(
        default=9,
        ge=1,
        le=10,
        description="Severity at or above which an emergency with no explicit level is escalated at CRITICAL.",
    )
    ai_confidence_threshold: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="AI confidence below which an emergency triage is escalated for review.",
    )
    emergency_supervisors: list[str] = Field(
        default_factory=lambda: [
            "emergency-supervisor-1",
            "emergency-supervisor-2",
            "emergency-supervisor-3",
        ],
    )
    severity_tiers: dict[AlertSeverity, SeverityTier] = Field(
        default_factory=lambda: {
            AlertSeverity.CRITICAL: SeverityTier(supervisor_count=3, response_target_minutes=2),
            AlertSeverity.HIGH: SeverityTier(supervisor_count=2, response_target_minutes=5),
            AlertSeverity.MEDIUM: SeverityTier(supervisor_count=1, response_target_minutes=10),
        },
    )
    backup_rosters: dict[UrgencyLevel, BackupRoster] = Field(
        default_factory=lambda: {
            UrgencyLevel.EMERGENCY: BackupRoster(
                supervisors=["emergency-supervisor-1", "emergency-supervisor-2"], max_wait_minutes=5
            ),
            UrgencyLevel.URGENT: BackupRoster(
                supervisors=["urgent-supervisor-1", "urgent-supervisor-2"], max_wait_minutes=15
            ),
            UrgencyLevel.ROUTINE: BackupRoster(
                supervisors=["routine-supervisor-1", "routine-supervisor-2"], max_wait_minutes=60
            ),
            UrgencyLevel.SELF_CARE: BackupRoster(
                supervisors=["routine-supervisor-1"], max_wait_minutes=120
            ),
        },
    )
    average_validation_minutes: int = Field(
        default=15,
        gt=0,
        description="Average time a supervisor spends per validation; drives queue wait estimates.",
    )
    timeout_warning_minutes: int = Field(
        default=2,
        ge=0,
        description="Minutes before an escalation timeout at which a one-time warning is sent.",
    )

    @field_validator("critical_keywords")
    @classmethod
    def normalize_keywords(cls, v: list[str]) -> list[str]:
        cleaned = [k.strip().lower() for k in v if k.strip()]
        if not cleaned:
            raise ValueError("critical_keywords must contain at least one keyword")
        return cleaned

    @field_validator("level_timeouts")
    @classmethod
    def timeouts_positive(cls, v: dict[EscalationLevel, int]) -> dict[EscalationLevel, int]:
        for level, minutes in v.items():
            if minutes <= 0:
                raise ValueError(f"timeout for {level.value} must be > 0, got {minutes}")
        return v

    @model_validator(mode="after")
    def every_level_configured(self) -> "EscalationPolicy":
        for level in EscalationLevel:
            if not self.level_rosters.get(level):
                raise ValueError(f"level_rosters is missing a roster for {level.value}")
            if level not in self.level_timeouts:
                raise ValueError(f"level_timeouts is missing a timeout for {level.value}")
        for severity in AlertSeverity:
            tier = self.severity_tiers.get(severity)
            if tier is None:
                raise ValueError(f"severity_tiers is missing a tier for {severity.value}")
            if tier.supervisor_count > len(self.emergency_supervisors):
                raise ValueError(
                    f"severity tier {severity.value} pages {tier.supervisor_count} supervisors "
                    f"but only {len(self.emergency_supervisors)} emergency supervisors are configured"
                )
        return self

    # -- lookups --

    def roster_for(self, level: EscalationLevel) -> list[str]:
        return list(self.level_rosters[level])

    def timeout_for(self, level: EscalationLevel) -> int:
        return self.level_timeouts[level]

    def path_for(self, urgency: UrgencyLevel | None) -> list[EscalationLevel]:
        if urgency is None:
            return list(self.default_escalation_path)
        return list(self.escalation_paths.get(urgency, self.default_escalation_path))

    def max_wait_for(self, urgency: UrgencyLevel | None) -> int:
        if urgency is None:
            return self.default_max_wait_minutes
        return self.max_wait_minutes.get(urgency, self.default_max_wait_minutes)

    def emergency_roster_for(self, severity: AlertSeverity) -> tuple[list[str], int]:
        """Return ``(supervisors, response_target_minutes)`` for an alert severity."""
        tier = self.severity_tiers[severity]
        return list(self.emergency_supervisors[: tier.supervisor_count]), tier.response_target_minutes

    def backup_for(self, urgency: UrgencyLevel) -> BackupRoster:
        roster = self.backup_rosters.get(urgency)
        if roster is None:
            roster = self.backup_rosters[UrgencyLevel.ROUTINE]
        return roster


# ---------------------------------------------------------------------------
# Default policy
# ---------------------------------------------------------------------------

DEFAULT_POLICY = EscalationPolicy()
"""Built-in production tables.

Deployments with different staffing should load their own rosters; the
timeouts and wait budgets here are the conservative baseline.
"""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_policy_from_yaml(path: str | Path) -> EscalationPolicy:
    """Load an escalation policy from a YAML file.

    The file must contain a top-level ``escalation_policy`` mapping.  Any
    table it omits keeps its default.

    Example YAML structure::

        escalation_policy:
          level_timeouts:
            level-1: 8
            level-2: 12
            level-3: 18
            critical: 4
          critical_keywords:
            - "chest pain"
            - "anaphylaxis"

    Args:
        path: Path to the YAML file.

    Returns:
        A validated ``EscalationPolicy``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If the policy fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "escalation_policy" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'escalation_policy' mapping."
        )

    data = raw["escalation_policy"] or {}
    if not isinstance(data, dict):
        raise ValueError("'escalation_policy' must be a mapping.")

    return EscalationPolicy.model_validate(data)
