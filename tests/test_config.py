"""
Tests for triageguard.config -- Escalation Policy tables.

Covers: default tables, lookups with fallbacks, keyword normalization,
rejection of incomplete or inconsistent policies, and YAML loading.
"""

import tempfile
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from triageguard.config import (
    DEFAULT_POLICY,
    EscalationPolicy,
    SeverityTier,
    load_policy_from_yaml,
)
from triageguard.models import AlertSeverity, EscalationLevel, UrgencyLevel


# ---------------------------------------------------------------------------
# 1. Default tables
# ---------------------------------------------------------------------------

class TestDefaultPolicy:
    def test_level_timeouts(self):
        assert DEFAULT_POLICY.timeout_for(EscalationLevel.LEVEL_1) == 10
        assert DEFAULT_POLICY.timeout_for(EscalationLevel.LEVEL_2) == 15
        assert DEFAULT_POLICY.timeout_for(EscalationLevel.LEVEL_3) == 20
        assert DEFAULT_POLICY.timeout_for(EscalationLevel.CRITICAL) == 5

    def test_level_rosters(self):
        assert DEFAULT_POLICY.roster_for(EscalationLevel.LEVEL_1) == [
            "emergency-supervisor-1", "emergency-supervisor-2",
        ]
        assert DEFAULT_POLICY.roster_for(EscalationLevel.CRITICAL) == [
            "chief-supervisor-1", "chief-supervisor-2", "emergency-director-1",
        ]

    def test_max_wait_with_default(self):
        assert DEFAULT_POLICY.max_wait_for(UrgencyLevel.EMERGENCY) == 5
        assert DEFAULT_POLICY.max_wait_for(UrgencyLevel.URGENT) == 30
        assert DEFAULT_POLICY.max_wait_for(UrgencyLevel.ROUTINE) == 120
        assert DEFAULT_POLICY.max_wait_for(UrgencyLevel.SELF_CARE) == 60
        assert DEFAULT_POLICY.max_wait_for(None) == 60

    def test_escalation_paths(self):
        assert DEFAULT_POLICY.path_for(UrgencyLevel.EMERGENCY)[-1] == EscalationLevel.CRITICAL
        assert DEFAULT_POLICY.path_for(UrgencyLevel.URGENT)[-1] == EscalationLevel.LEVEL_3
        assert DEFAULT_POLICY.path_for(UrgencyLevel.SELF_CARE) == [
            EscalationLevel.LEVEL_1, EscalationLevel.LEVEL_2,
        ]

    def test_emergency_roster_by_severity(self):
        supervisors, target = DEFAULT_POLICY.emergency_roster_for(AlertSeverity.CRITICAL)
        assert len(supervisors) == 3 and target == 2
        supervisors, target = DEFAULT_POLICY.emergency_roster_for(AlertSeverity.HIGH)
        assert supervisors == ["emergency-supervisor-1", "emergency-supervisor-2"] and target == 5
        supervisors, target = DEFAULT_POLICY.emergency_roster_for(AlertSeverity.MEDIUM)
        assert supervisors == ["emergency-supervisor-1"] and target == 10

    def test_backup_rosters(self):
        assert DEFAULT_POLICY.backup_for(UrgencyLevel.URGENT).supervisors == [
            "urgent-supervisor-1", "urgent-supervisor-2",
        ]
        assert DEFAULT_POLICY.backup_for(UrgencyLevel.SELF_CARE).max_wait_minutes == 120

    def test_lookups_return_copies(self):
        roster = DEFAULT_POLICY.roster_for(EscalationLevel.LEVEL_1)
        roster.append("intruder")
        assert "intruder" not in DEFAULT_POLICY.roster_for(EscalationLevel.LEVEL_1)


# ---------------------------------------------------------------------------
# 2. Validation
# ---------------------------------------------------------------------------

class TestPolicyValidation:
    def test_keywords_are_normalized(self):
        policy = EscalationPolicy(critical_keywords=["  Chest Pain ", "ANAPHYLAXIS", ""])
        assert policy.critical_keywords == ["chest pain", "anaphylaxis"]

    def test_empty_keyword_list_rejected(self):
        with pytest.raises(ValidationError, match="at least one keyword"):
            EscalationPolicy(critical_keywords=[])

    def test_missing_level_roster_rejected(self):
        with pytest.raises(ValidationError, match="missing a roster for critical"):
            EscalationPolicy(level_rosters={
                EscalationLevel.LEVEL_1: ["a"],
                EscalationLevel.LEVEL_2: ["b"],
                EscalationLevel.LEVEL_3: ["c"],
            })

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValidationError, match="must be > 0"):
            EscalationPolicy(level_timeouts={
                EscalationLevel.LEVEL_1: 0,
                EscalationLevel.LEVEL_2: 15,
                EscalationLevel.LEVEL_3: 20,
                EscalationLevel.CRITICAL: 5,
            })

    def test_tier_larger_than_roster_rejected(self):
        with pytest.raises(ValidationError, match="pages 3 supervisors"):
            EscalationPolicy(emergency_supervisors=["only-one", "two"])

    def test_custom_tiers_accepted(self):
        policy = EscalationPolicy(
            emergency_supervisors=["solo"],
            severity_tiers={
                AlertSeverity.CRITICAL: SeverityTier(supervisor_count=1, response_target_minutes=1),
                AlertSeverity.HIGH: SeverityTier(supervisor_count=1, response_target_minutes=3),
                AlertSeverity.MEDIUM: SeverityTier(supervisor_count=1, response_target_minutes=8),
            },
        )
        assert policy.emergency_roster_for(AlertSeverity.CRITICAL) == (["solo"], 1)


# ---------------------------------------------------------------------------
# 3. YAML loading
# ---------------------------------------------------------------------------

class TestYamlLoading:
    def _write(self, data) -> Path:
        tmp = tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False)
        yaml.safe_dump(data, tmp)
        tmp.close()
        return Path(tmp.name)

    def test_partial_override_keeps_defaults(self):
        path = self._write({
            "escalation_policy": {
                "level_timeouts": {"level-1": 8, "level-2": 12, "level-3": 18, "critical": 4},
                "critical_keywords": ["Anaphylaxis"],
            }
        })
        policy = load_policy_from_yaml(path)
        assert policy.timeout_for(EscalationLevel.LEVEL_1) == 8
        assert policy.critical_keywords == ["anaphylaxis"]
        assert policy.max_wait_for(UrgencyLevel.EMERGENCY) == 5

    def test_empty_section_gives_defaults(self):
        path = self._write({"escalation_policy": None})
        assert load_policy_from_yaml(path) == DEFAULT_POLICY

    def test_missing_top_level_key(self):
        path = self._write({"policies": []})
        with pytest.raises(ValueError, match="escalation_policy"):
            load_policy_from_yaml(path)

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_policy_from_yaml("/nonexistent/policy.yaml")

    def test_invalid_values_rejected(self):
        path = self._write({"escalation_policy": {"ai_confidence_threshold": 1.5}})
        with pytest.raises(ValidationError):
            load_policy_from_yaml(path)

    def test_example_policy_file_loads(self):
        path = Path(__file__).parent.parent / "examples" / "escalation_policy.yaml"
        policy = load_policy_from_yaml(path)
        assert policy.timeout_for(EscalationLevel.CRITICAL) == 5
