"""Persistent storage for preflight reports and state records.

Writes JSON to ``~/.config/keystack/`` (XDG_CONFIG_HOME / keystack).

File naming::

    preflight_<stack>_<run_id>.json
    state_<stack>_<run_id>.json

All JSON is serialised with **sorted keys** for deterministic, diff-friendly output.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from keystack.state.models import PreflightReport, StateRecord

logger = logging.getLogger(__name__)

_APP_DIR = "keystack"


# ---------------------------------------------------------------------------
# Directory resolution
# ---------------------------------------------------------------------------


def config_dir() -> Path:
    """Return the XDG config directory for keystack.

    Uses ``XDG_CONFIG_HOME`` if set, otherwise ``~/.config``.
    Creates the directory if it does not exist.
    """
    base = os.environ.get("XDG_CONFIG_HOME", "")
    if not base:
        base = str(Path.home() / ".config")
    path = Path(base) / _APP_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


# ---------------------------------------------------------------------------
# Write helpers
# ---------------------------------------------------------------------------


def safe_name(name: Optional[str]) -> str:
    """Sanitise a stack name for use in a filename."""
    if not name:
        return "unknown"
    return "".join(c if (c.isalnum() or c in "-_") else "_" for c in name)


def write_preflight_report(report: PreflightReport) -> Path:
    """Persist *report* as sorted-key JSON and return the written path."""
    dest = config_dir() / f"preflight_{safe_name(report.stack_name)}_{report.run_id}.json"
    dest.write_text(report.to_sorted_json() + "\n", encoding="utf-8")
    logger.info("Preflight report written to %s", dest)
    return dest


def write_state_record(record: StateRecord) -> Path:
    """Persist *record* as sorted-key JSON and return the written path."""
    dest = config_dir() / f"state_{safe_name(record.stack_name)}_{record.run_id}.json"
    dest.write_text(record.to_sorted_json() + "\n", encoding="utf-8")
    logger.info("State record written to %s", dest)
    return dest


def load_state_record(path: str | Path) -> StateRecord:
    """Load a :class:`StateRecord` from *path*."""
    return StateRecord.model_validate_json(Path(path).read_text(encoding="utf-8"))


def latest_state_record(stack_name: str) -> Optional[StateRecord]:
    """Return the most recent state record for *stack_name*, if any.

    Run ids are UTC timestamps, so lexical order is chronological.
    """
    matches = sorted(config_dir().glob(f"state_{safe_name(stack_name)}_*.json"))
    if not matches:
        return None
    return load_state_record(matches[-1])
