"""CloudFormation stack submission and polling.

Submission picks the operation from the stack's current status::

    absent                     → CreateStack
    *_COMPLETE (stable)        → UpdateStack   ("No updates" → noop)
    *_IN_PROGRESS              → error, stack busy
    ROLLBACK_COMPLETE / *FAILED → error, delete the stack first

Polling reads ``DescribeStacks`` until the stack leaves its in-progress
state, and collects ``*_FAILED`` resource events so a failure can be
reported with the provider's own reasons.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from keystack.state.models import CheckStatus, PreflightReport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STACK_NAME_PREFIX = "keystack-"
MAX_STACK_NAME_LENGTH = 128

#: Stable statuses from which an update can be submitted.
COMPLETE_STATUSES = frozenset({
    "CREATE_COMPLETE",
    "UPDATE_COMPLETE",
    "UPDATE_ROLLBACK_COMPLETE",
    "IMPORT_COMPLETE",
    "IMPORT_ROLLBACK_COMPLETE",
})

#: Statuses meaning an operation is still running.
IN_PROGRESS_STATUSES = frozenset({
    "CREATE_IN_PROGRESS",
    "UPDATE_IN_PROGRESS",
    "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS",
    "UPDATE_ROLLBACK_IN_PROGRESS",
    "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS",
    "ROLLBACK_IN_PROGRESS",
    "DELETE_IN_PROGRESS",
    "REVIEW_IN_PROGRESS",
    "IMPORT_IN_PROGRESS",
    "IMPORT_ROLLBACK_IN_PROGRESS",
})

#: Terminal statuses that mean the last operation failed.
FAILED_STATUSES = frozenset({
    "CREATE_FAILED",
    "ROLLBACK_COMPLETE",
    "ROLLBACK_FAILED",
    "UPDATE_ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_FAILED",
    "UPDATE_FAILED",
    "DELETE_FAILED",
    "IMPORT_ROLLBACK_FAILED",
})

#: Statuses a stack cannot be updated from; it must be deleted first.
UNRECOVERABLE_STATUSES = frozenset({
    "CREATE_FAILED",
    "ROLLBACK_COMPLETE",
    "ROLLBACK_FAILED",
    "DELETE_FAILED",
    "UPDATE_ROLLBACK_FAILED",
})

#: Final status that counts as success for each operation.
SUCCESS_STATUS: Dict[str, str] = {
    "create": "CREATE_COMPLETE",
    "update": "UPDATE_COMPLETE",
    "delete": "DELETE_COMPLETE",
}

#: Default seconds between status polls.
DEFAULT_POLL_INTERVAL: float = 10.0

#: Default give-up time for a single operation.
DEFAULT_TIMEOUT: float = 1800.0

#: Maximum consecutive describe failures before aborting the wait.
MAX_CONSECUTIVE_FAILURES: int = 5

#: Slack for local vs. CloudFormation clock drift when filtering stack events.
EVENT_CLOCK_SKEW = timedelta(seconds=60)

_NO_UPDATES = "No updates are to be performed"

#: Stack output key → :class:`StackOutputs` attribute.
OUTPUT_KEYS: Dict[str, str] = {
    "VpcId": "vpc_id",
    "SubnetId": "subnet_id",
    "SecurityGroupId": "security_group_id",
    "InstanceId": "instance_id",
    "PublicIp": "public_ip",
    "PublicDnsName": "public_dns",
    "KeyPairId": "key_pair_id",
}


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class StackOutputs:
    """Outputs extracted from the stack."""

    vpc_id: str = ""
    subnet_id: str = ""
    security_group_id: str = ""
    instance_id: str = ""
    public_ip: str = ""
    public_dns: str = ""
    key_pair_id: str = ""
    raw: Dict[str, str] = field(default_factory=dict)


@dataclass
class WaitResult:
    """Outcome of :func:`wait_for_stack`."""

    final_status: Optional[str]
    elapsed_seconds: float
    success: bool
    failure_reasons: List[str] = field(default_factory=list)
    error: str = ""


@dataclass
class DeployResult:
    """Outcome of :func:`deploy_stack`."""

    stack_name: str
    operation: str
    final_status: Optional[str]
    outputs: StackOutputs = field(default_factory=StackOutputs)
    elapsed_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Name derivation
# ---------------------------------------------------------------------------


def derive_stack_name(key_name: str) -> str:
    """Derive a stack name from the key name.

    Characters outside ``[A-Za-z0-9-]`` become dashes; runs of dashes are
    collapsed.

    Examples:
        >>> derive_stack_name("my-key")
        'keystack-my-key'
        >>> derive_stack_name("alice@laptop")
        'keystack-alice-laptop'
    """
    cleaned = re.sub(r"[^A-Za-z0-9-]+", "-", key_name)
    cleaned = re.sub(r"-{2,}", "-", cleaned).strip("-")
    if not cleaned:
        raise ValueError(f"Cannot derive a stack name from key name '{key_name}'")
    return (STACK_NAME_PREFIX + cleaned)[:MAX_STACK_NAME_LENGTH].rstrip("-")


def validate_stack_name(stack_name: str) -> str:
    """Return *stack_name* if CloudFormation accepts it, else raise ValueError."""
    if not re.match(r"^[A-Za-z][A-Za-z0-9-]*$", stack_name or ""):
        raise ValueError(
            f"Stack name '{stack_name}' must start with a letter and contain "
            "only letters, digits and dashes"
        )
    if len(stack_name) > MAX_STACK_NAME_LENGTH:
        raise ValueError(f"Stack name exceeds {MAX_STACK_NAME_LENGTH} characters")
    return stack_name


# ---------------------------------------------------------------------------
# describe / status helpers
# ---------------------------------------------------------------------------


def _error_message(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Message", str(exc))


def _is_missing_stack(exc: ClientError) -> bool:
    return "does not exist" in _error_message(exc)


def describe_stack_status(cfn_client: Any, stack_name: str) -> Optional[str]:
    """Return the StackStatus string, or None if the stack doesn't exist.

    Other API errors propagate.
    """
    try:
        resp = cfn_client.describe_stacks(StackName=stack_name)
    except ClientError as exc:
        if _is_missing_stack(exc):
            return None
        raise
    stacks = resp.get("Stacks", [])
    if stacks:
        return stacks[0].get("StackStatus")
    return None


def get_stack_outputs(cfn_client: Any, stack_name: str) -> StackOutputs:
    """Extract outputs from the stack (empty when it has none)."""
    resp = cfn_client.describe_stacks(StackName=stack_name)
    stacks = resp.get("Stacks", [])
    if not stacks:
        return StackOutputs()
    raw = {
        o["OutputKey"]: o["OutputValue"]
        for o in stacks[0].get("Outputs", [])
    }
    kwargs = {attr: raw.get(key, "") for key, attr in OUTPUT_KEYS.items()}
    return StackOutputs(raw=raw, **kwargs)


def failed_event_reasons(
    cfn_client: Any,
    stack_name: str,
    *,
    since: Optional[datetime] = None,
) -> List[str]:
    """Return ``"<LogicalId>: <reason>"`` for ``*_FAILED`` resource events.

    Only events newer than *since* (a datetime) are considered when given.
    Errors while reading events are logged and yield an empty list.
    """
    reasons: List[str] = []
    try:
        paginator = cfn_client.get_paginator("describe_stack_events")
        for page in paginator.paginate(StackName=stack_name):
            for event in page.get("StackEvents", []):
                if since is not None and event.get("Timestamp") and event["Timestamp"] < since:
                    continue
                status = event.get("ResourceStatus", "")
                if not status.endswith("_FAILED"):
                    continue
                reason = event.get("ResourceStatusReason", "")
                reasons.append(f"{event.get('LogicalResourceId', '?')}: {reason}")
    except (ClientError, BotoCoreError) as exc:
        logger.debug("Could not read stack events for %s: %s", stack_name, exc)
    # Events are newest first; report in causal order
    reasons.reverse()
    return reasons


# ---------------------------------------------------------------------------
# Template validation
# ---------------------------------------------------------------------------


def validate_template_body(cfn_client: Any, template_body: str) -> List[str]:
    """Run provider-side ``ValidateTemplate`` and return required capabilities.

    Raises:
        ValueError: When CloudFormation rejects the template.
    """
    try:
        resp = cfn_client.validate_template(TemplateBody=template_body)
    except ClientError as exc:
        raise ValueError(f"CloudFormation rejected the template: {_error_message(exc)}") from exc
    return list(resp.get("Capabilities", []))


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


def _tag_list(tags: Optional[Dict[str, str]]) -> List[Dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in sorted((tags or {}).items())]


def submit_stack(
    cfn_client: Any,
    stack_name: str,
    template_body: str,
    *,
    tags: Optional[Dict[str, str]] = None,
    capabilities: Optional[List[str]] = None,
) -> str:
    """Create or update *stack_name*; return ``create``, ``update`` or ``noop``.

    Raises:
        RuntimeError: Stack busy, unrecoverable, or the API call failed.
    """
    status = describe_stack_status(cfn_client, stack_name)
    kwargs: Dict[str, Any] = {
        "StackName": stack_name,
        "TemplateBody": template_body,
        "Tags": _tag_list(tags),
    }
    if capabilities:
        kwargs["Capabilities"] = list(capabilities)

    if status is None:
        logger.info("Creating stack %s ...", stack_name)
        try:
            cfn_client.create_stack(**kwargs)
        except ClientError as exc:
            raise RuntimeError(
                f"CreateStack {stack_name} failed: {_error_message(exc)}"
            ) from exc
        return "create"

    if status in IN_PROGRESS_STATUSES:
        raise RuntimeError(
            f"Stack {stack_name} is busy ({status}); wait for it to finish and retry"
        )

    if status in UNRECOVERABLE_STATUSES:
        raise RuntimeError(
            f"Stack {stack_name} is in {status} and cannot be updated; "
            "delete it first (keystack delete)"
        )

    if status not in COMPLETE_STATUSES:
        raise RuntimeError(
            f"Stack {stack_name} is in {status}, not a stable complete state; "
            "cannot submit an update"
        )

    logger.info("Stack %s is %s, submitting update ...", stack_name, status)
    try:
        cfn_client.update_stack(**kwargs)
    except ClientError as exc:
        if _NO_UPDATES in _error_message(exc):
            logger.info("Stack %s is already up to date.", stack_name)
            return "noop"
        raise RuntimeError(
            f"UpdateStack {stack_name} failed: {_error_message(exc)}"
        ) from exc
    return "update"


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


def wait_for_stack(
    cfn_client: Any,
    stack_name: str,
    operation: str,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    on_status: Optional[Callable[[str, float], None]] = None,
    since: Optional[datetime] = None,
) -> WaitResult:
    """Poll until *stack_name* reaches a terminal status for *operation*.

    *operation* is ``create``, ``update`` or ``delete``.  For ``delete`` a
    stack that no longer exists counts as ``DELETE_COMPLETE``.
    *on_status* is called with ``(status, elapsed)`` after every poll.
    On failure only ``*_FAILED`` events newer than *since* are reported.
    """
    if operation not in SUCCESS_STATUS:
        raise ValueError(f"Unknown stack operation '{operation}'")
    target = SUCCESS_STATUS[operation]
    start = clock()
    consecutive_failures = 0
    status: Optional[str] = None

    while True:
        elapsed = clock() - start
        try:
            status = describe_stack_status(cfn_client, stack_name)
            consecutive_failures = 0
        except (ClientError, BotoCoreError) as exc:
            consecutive_failures += 1
            logger.warning(
                "DescribeStacks failed (%d/%d): %s",
                consecutive_failures, MAX_CONSECUTIVE_FAILURES, exc,
            )
            if consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                return WaitResult(
                    final_status=status,
                    elapsed_seconds=elapsed,
                    success=False,
                    error=f"Too many consecutive DescribeStacks failures: {exc}",
                )
            sleep(poll_interval)
            continue

        if status is None:
            status = "DELETE_COMPLETE" if operation == "delete" else None
            if status is None:
                return WaitResult(
                    final_status=None,
                    elapsed_seconds=elapsed,
                    success=False,
                    error=f"Stack {stack_name} disappeared during {operation}",
                )

        if on_status is not None:
            on_status(status, elapsed)

        if status not in IN_PROGRESS_STATUSES:
            success = status == target
            reasons = (
                [] if success
                else failed_event_reasons(cfn_client, stack_name, since=since)
            )
            return WaitResult(
                final_status=status,
                elapsed_seconds=elapsed,
                success=success,
                failure_reasons=reasons,
            )

        if elapsed >= timeout:
            return WaitResult(
                final_status=status,
                elapsed_seconds=elapsed,
                success=False,
                error=f"Timed out after {int(elapsed)}s waiting for {stack_name} ({status})",
            )

        logger.debug("Stack %s: %s (%.0fs)", stack_name, status, elapsed)
        sleep(poll_interval)


# ---------------------------------------------------------------------------
# High-level operations
# ---------------------------------------------------------------------------


def _failure_message(stack_name: str, operation: str, result: WaitResult) -> str:
    msg = f"Stack {stack_name} {operation} failed (status={result.final_status})"
    if result.error:
        msg += f": {result.error}"
    if result.failure_reasons:
        msg += "; " + "; ".join(result.failure_reasons)
    return msg


def deploy_stack(
    aws_ctx: Any,
    stack_name: str,
    template_body: str,
    *,
    tags: Optional[Dict[str, str]] = None,
    capabilities: Optional[List[str]] = None,
    wait: bool = True,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
    on_status: Optional[Callable[[str, float], None]] = None,
) -> DeployResult:
    """Submit *template_body* as *stack_name* and wait for the result.

    Raises:
        RuntimeError: If submission fails or the stack ends in a failed status.
    """
    cfn = aws_ctx.client("cloudformation")
    submitted_at = datetime.now(timezone.utc) - EVENT_CLOCK_SKEW
    operation = submit_stack(
        cfn, stack_name, template_body, tags=tags, capabilities=capabilities,
    )

    if operation == "noop":
        return DeployResult(
            stack_name=stack_name,
            operation=operation,
            final_status=describe_stack_status(cfn, stack_name),
            outputs=get_stack_outputs(cfn, stack_name),
        )

    if not wait:
        return DeployResult(
            stack_name=stack_name,
            operation=operation,
            final_status=describe_stack_status(cfn, stack_name),
        )

    logger.info("Waiting for stack %s to %s ...", stack_name, operation)
    result = wait_for_stack(
        cfn, stack_name, operation,
        poll_interval=poll_interval, timeout=timeout, sleep=sleep, on_status=on_status,
        since=submitted_at,
    )
    if not result.success:
        raise RuntimeError(_failure_message(stack_name, operation, result))

    logger.info("Stack %s %s succeeded in %.0fs.", stack_name, operation, result.elapsed_seconds)
    return DeployResult(
        stack_name=stack_name,
        operation=operation,
        final_status=result.final_status,
        outputs=get_stack_outputs(cfn, stack_name),
        elapsed_seconds=result.elapsed_seconds,
    )


def delete_stack(
    aws_ctx: Any,
    stack_name: str,
    *,
    wait: bool = True,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
    on_status: Optional[Callable[[str, float], None]] = None,
) -> Optional[str]:
    """Delete *stack_name*; return the final status (``None`` if it never existed).

    Raises:
        RuntimeError: If the deletion fails.
    """
    cfn = aws_ctx.client("cloudformation")
    status = describe_stack_status(cfn, stack_name)
    if status is None:
        logger.info("Stack %s does not exist, nothing to delete.", stack_name)
        return None

    logger.info("Deleting stack %s (%s) ...", stack_name, status)
    submitted_at = datetime.now(timezone.utc) - EVENT_CLOCK_SKEW
    try:
        cfn.delete_stack(StackName=stack_name)
    except ClientError as exc:
        raise RuntimeError(f"DeleteStack {stack_name} failed: {_error_message(exc)}") from exc

    if not wait:
        return "DELETE_IN_PROGRESS"

    result = wait_for_stack(
        cfn, stack_name, "delete",
        poll_interval=poll_interval, timeout=timeout, sleep=sleep, on_status=on_status,
        since=submitted_at,
    )
    if not result.success:
        raise RuntimeError(_failure_message(stack_name, "delete", result))
    return result.final_status


# ---------------------------------------------------------------------------
# Preflight step factory
# ---------------------------------------------------------------------------


def make_cfn_preflight_step(aws_ctx: Any, stack_name: str, template_body: str):
    """Return a preflight step that validates the template with CloudFormation
    and checks that the stack is in a submittable state.

    Adds ``cfn.validate_template`` and ``cfn.stack_state`` checks.
    """

    def step(report: PreflightReport) -> PreflightReport:
        cfn = aws_ctx.client("cloudformation")
        try:
            capabilities = validate_template_body(cfn, template_body)
        except ValueError as exc:
            report.add(
                "cfn.validate_template",
                CheckStatus.FAIL,
                details={"error": str(exc)},
                remediation="Fix the template errors reported by CloudFormation.",
            )
            return report
        report.add(
            "cfn.validate_template",
            CheckStatus.PASS,
            details={"capabilities": capabilities},
        )

        try:
            status = describe_stack_status(cfn, stack_name)
        except ClientError as exc:
            report.add(
                "cfn.stack_state",
                CheckStatus.FAIL,
                details={"stack_name": stack_name, "error": str(exc)},
                remediation="Check cloudformation:DescribeStacks permission.",
            )
            return report

        details = {"stack_name": stack_name, "status": status}
        if status in IN_PROGRESS_STATUSES:
            report.add(
                "cfn.stack_state", CheckStatus.FAIL, details=details,
                remediation=f"Stack is busy ({status}); retry when it settles.",
            )
        elif status in UNRECOVERABLE_STATUSES:
            report.add(
                "cfn.stack_state", CheckStatus.FAIL, details=details,
                remediation=f"Stack is in {status}; run 'keystack delete' first.",
            )
        elif status is not None and status not in COMPLETE_STATUSES:
            report.add(
                "cfn.stack_state", CheckStatus.FAIL, details=details,
                remediation=f"Stack is in {status}; it can only be updated from a complete state.",
            )
        else:
            details["action"] = "create" if status is None else "update"
            report.add("cfn.stack_state", CheckStatus.PASS, details=details)
        return report

    return step
