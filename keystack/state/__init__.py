"""Preflight reports and per-run state records."""

from keystack.state.models import (
    CheckResult,
    CheckStatus,
    PreflightReport,
    StateRecord,
)
from keystack.state.store import (
    config_dir,
    latest_state_record,
    load_state_record,
    write_preflight_report,
    write_state_record,
)

__all__ = [
    "CheckResult",
    "CheckStatus",
    "PreflightReport",
    "StateRecord",
    "config_dir",
    "latest_state_record",
    "load_state_record",
    "write_preflight_report",
    "write_state_record",
]
