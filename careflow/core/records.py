"""Record collection names and field helpers shared by the services."""

from datetime import datetime, timezone

PATIENTS = "patients"
LEADS = "leads"
TRIAGE = "triage"
TASKS = "tasks"
APPOINTMENTS = "appointments"
CONSENTS = "consents"
PLANS = "plans"
QUOTES = "quotes"
PROCEDURES = "procedures"
FOLLOWUPS = "followups"
KPI_EVENTS = "kpi-events"
AUTOMATION_PROCESSED = "automation-processed"
AUTOMATION_STATE = "automation-state"

SCHEDULER_CURSOR_ID = "scheduler-cursor"

AUTOMATION_USER = "automation"

# 9999-12-31T23:59:59.999Z, the last instant datetime can hold
MAX_MILLIS = 253_402_300_799_999


def to_millis(moment: datetime) -> int:
    """Epoch milliseconds for an aware datetime."""
    return int(moment.timestamp() * 1000)


def from_millis(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
