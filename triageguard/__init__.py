"""
TriageGuard Escalation & Alerting Workflow Engine
=================================================

Coordinates human review and emergency response for automatically triaged
patient episodes: supervisor validation of the triage, an ordered ladder
of escalation levels with per-level rosters and timeouts, emergency alerts
with severity-based fan-out, and a notification for every transition a
human must hear about.

DISCLAIMER: This software routes cases to human supervisors.  It does not
diagnose or treat, and every automated triage is subject to supervisor
validation.
"""

__version__ = "0.1.0"
