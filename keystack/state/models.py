"""Preflight report and deployment state models.

A preflight report serialises as::

    {
      "run_id": "YYYYMMDDHHMMSS",
      "stack_name": "keystack-my-key",
      "region": "us-west-2",
      "availability_zone": "us-west-2a",
      "aws_profile": "profile",
      "account_id": "<12 digits>",
      "caller_arn": "<sts caller arn>",
      "checks": [
        {
          "id": "keys.public_key",
          "status": "PASS|WARN|FAIL",
          "details": { ... },
          "remediation": "string"
        }
      ]
    }
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utc_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")


# ---------------------------------------------------------------------------
# CheckStatus enum
# ---------------------------------------------------------------------------


class CheckStatus(str, Enum):
    """Severity of one check; only FAIL blocks a submit unconditionally."""

    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


# ---------------------------------------------------------------------------
# CheckResult
# ---------------------------------------------------------------------------


class CheckResult(BaseModel):
    """One line of a preflight report.

    Attributes:
        id: Dotted identifier, e.g. ``keys.public_key`` or ``ec2.key_pair_name``.
        status: See :class:`CheckStatus`.
        details: Arbitrary structured data (fingerprints, CIDRs, etc.).
        remediation: What the user should change. Empty on PASS.
    """

    id: str
    status: CheckStatus
    details: Dict[str, Any] = Field(default_factory=dict)
    remediation: str = ""


# ---------------------------------------------------------------------------
# PreflightReport
# ---------------------------------------------------------------------------


class PreflightReport(BaseModel):
    """Full preflight report written to the keystack config directory."""

    run_id: str = Field(default_factory=_utc_run_id)
    stack_name: str = ""
    region: str = ""
    availability_zone: str = ""
    aws_profile: str = ""
    account_id: str = ""
    caller_arn: str = ""
    checks: List[CheckResult] = Field(default_factory=list)

    # -- status queries --

    @property
    def passed(self) -> bool:
        """No check failed; warnings may still be present."""
        return not any(c.status == CheckStatus.FAIL for c in self.checks)

    @property
    def has_warnings(self) -> bool:
        """Any check ended in WARN."""
        return any(c.status == CheckStatus.WARN for c in self.checks)

    @property
    def failed_checks(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.FAIL]

    @property
    def warned_checks(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.WARN]

    def add(
        self,
        check_id: str,
        status: CheckStatus,
        *,
        details: Optional[Dict[str, Any]] = None,
        remediation: str = "",
    ) -> CheckResult:
        """Append a :class:`CheckResult` and return it."""
        result = CheckResult(
            id=check_id,
            status=status,
            details=details or {},
            remediation=remediation,
        )
        self.checks.append(result)
        return result

    def to_sorted_json(self, indent: int = 2) -> str:
        """Serialise with sorted keys for deterministic output."""
        return json.dumps(self.model_dump(mode="json"), indent=indent, sort_keys=True)


# ---------------------------------------------------------------------------
# StateRecord — persisted per deploy
# ---------------------------------------------------------------------------


class StateRecord(BaseModel):
    """Per-run snapshot written to ``state_<stack>_<run_id>.json``.

    Records what was submitted and what the stack reported back, so a later
    ``status`` or ``delete`` can be run without the original inputs.
    """

    run_id: str = Field(default_factory=_utc_run_id)
    stack_name: str = ""
    region: str = ""
    availability_zone: str = ""
    aws_profile: str = ""
    account_id: str = ""

    # -- Key ---------------------------------------------------------------
    key_name: str = ""
    key_fingerprint: str = ""

    # -- Submission --------------------------------------------------------
    template_path: str = ""
    operation: str = ""
    final_status: str = ""

    # -- Outputs -----------------------------------------------------------
    outputs: Dict[str, str] = Field(default_factory=dict)

    def to_sorted_json(self, indent: int = 2) -> str:
        """Serialise with sorted keys for deterministic output."""
        return json.dumps(self.model_dump(mode="json"), indent=indent, sort_keys=True)
