"""EC2 lookups used by preflight.

* The target availability zone must exist and be available in the region.
* No key pair with the requested name may exist outside this stack:
  ``AWS::EC2::KeyPair`` creation fails on a duplicate name.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from keystack.state.models import CheckStatus, PreflightReport

logger = logging.getLogger(__name__)

#: Tag CloudFormation puts on every resource it creates.
STACK_NAME_TAG = "aws:cloudformation:stack-name"

_KEY_NOT_FOUND = "InvalidKeyPair.NotFound"


def availability_zone_state(ec2_client: Any, availability_zone: str) -> Optional[str]:
    """Return the zone's ``State`` (e.g. ``available``) or ``None`` if unknown."""
    try:
        resp = ec2_client.describe_availability_zones(
            Filters=[{"Name": "zone-name", "Values": [availability_zone]}],
        )
    except ClientError as exc:
        logger.debug("describe_availability_zones failed: %s", exc)
        return None
    for zone in resp.get("AvailabilityZones", []):
        if zone.get("ZoneName") == availability_zone:
            return zone.get("State")
    return None


def find_key_pair(ec2_client: Any, key_name: str) -> Optional[Dict[str, Any]]:
    """Return the EC2 key-pair description for *key_name*, or ``None``.

    Errors other than "not found" propagate.
    """
    try:
        resp = ec2_client.describe_key_pairs(KeyNames=[key_name])
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") == _KEY_NOT_FOUND:
            return None
        raise
    pairs = resp.get("KeyPairs", [])
    return pairs[0] if pairs else None


def key_pair_owner_stack(key_pair: Dict[str, Any]) -> str:
    """Return the owning stack name from the key pair's tags ('' if none)."""
    for tag in key_pair.get("Tags", []) or []:
        if tag.get("Key") == STACK_NAME_TAG:
            return tag.get("Value", "")
    return ""


def key_pair_conflict(ec2_client: Any, key_name: str, stack_name: str) -> Optional[str]:
    """Return a description of the conflict, or ``None`` when the name is usable.

    A key pair already owned by *stack_name* is not a conflict (stack update).
    """
    existing = find_key_pair(ec2_client, key_name)
    if existing is None:
        return None
    owner = key_pair_owner_stack(existing)
    if owner == stack_name:
        return None
    if owner:
        return f"Key pair '{key_name}' already belongs to stack '{owner}'"
    return f"Key pair '{key_name}' already exists outside CloudFormation"


# ---------------------------------------------------------------------------
# Preflight step factory
# ---------------------------------------------------------------------------


def make_ec2_preflight_step(
    aws_ctx: Any,
    availability_zone: str,
    key_name: str,
    stack_name: str,
):
    """Return a preflight step checking the AZ and the key-pair name.

    Adds ``ec2.availability_zone`` and ``ec2.key_pair_name`` checks.
    """

    def step(report: PreflightReport) -> PreflightReport:
        ec2 = aws_ctx.client("ec2")

        state = availability_zone_state(ec2, availability_zone)
        if state == "available":
            report.add(
                "ec2.availability_zone",
                CheckStatus.PASS,
                details={"availability_zone": availability_zone},
            )
        else:
            report.add(
                "ec2.availability_zone",
                CheckStatus.FAIL,
                details={"availability_zone": availability_zone, "state": state},
                remediation=(
                    f"Availability zone {availability_zone} is not available in "
                    f"{aws_ctx.region}. Pick another zone with --region-az."
                ),
            )

        try:
            conflict = key_pair_conflict(ec2, key_name, stack_name)
        except ClientError as exc:
            report.add(
                "ec2.key_pair_name",
                CheckStatus.FAIL,
                details={"key_name": key_name, "error": str(exc)},
                remediation="Check ec2:DescribeKeyPairs permission.",
            )
            return report

        if conflict:
            report.add(
                "ec2.key_pair_name",
                CheckStatus.FAIL,
                details={"key_name": key_name, "conflict": conflict},
                remediation=(
                    f"{conflict}. Choose another --key-name or delete the existing key pair."
                ),
            )
        else:
            report.add(
                "ec2.key_pair_name", CheckStatus.PASS, details={"key_name": key_name}
            )
        return report

    return step
