"""Orchestrator for load → render → submit.

Execution model:

1. **Load** — read the config file and the public key, resolve parameters.
2. **Render** — substitute parameters into the template, check its structure.
3. **Preflight** — local checks, then AWS checks (template validation,
   stack state, availability zone, key-pair name).
4. **Submit** — create or update the stack, poll to a terminal status,
   record state.

A single FAIL aborts before any AWS mutation.  WARN aborts unless
``--pass-on-warn`` is set.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from botocore.exceptions import BotoCoreError, ClientError

from keystack import ui
from keystack.config.loader import default_config_path, load_config, resolve_parameters
from keystack.config.models import ConfigFile, TemplateParameters
from keystack.keys.loader import PublicKey, load_public_key, read_public_key
from keystack.render.renderer import (
    load_template_text,
    render_template,
    write_rendered_template,
)
from keystack.render.template import check_template, load_cfn_yaml, resources_by_type
from keystack.state.models import CheckStatus, PreflightReport, StateRecord
from keystack.state.store import (
    latest_state_record,
    write_preflight_report,
    write_state_record,
)

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_VALIDATION_FAILURE = 1
EXIT_AWS_FAILURE = 2
EXIT_TOOLCHAIN = 4

#: Tag added to every stack so keystack-managed stacks are recognisable.
MANAGED_TAG = "keystack:key-name"

# Each step is a callable: (PreflightReport) -> PreflightReport
PreflightStep = Callable[[PreflightReport], PreflightReport]


def _run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")


# ---------------------------------------------------------------------------
# Load
# ---------------------------------------------------------------------------


@dataclass
class StackInputs:
    """Everything needed to render and submit one stack."""

    config: ConfigFile
    params: TemplateParameters
    public_key: PublicKey
    stack_name: str
    key_source: str
    template_path: str = ""
    tags: Dict[str, str] = field(default_factory=dict)


def load_key(source: str) -> PublicKey:
    """Load a public key from a path, or from stdin when *source* is ``-``."""
    if source == "-":
        return read_public_key(sys.stdin)
    return load_public_key(source)


def prepare_inputs(
    *,
    config_path: Optional[str] = None,
    key_file: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    stack_name: Optional[str] = None,
    template_path: Optional[str] = None,
) -> StackInputs:
    """Load config and key, resolve parameters and the stack name.

    Raises:
        FileNotFoundError: Config-named key file or template missing.
        ValueError: Invalid key, parameters or stack name.
    """
    from keystack.aws.cloudformation import derive_stack_name, validate_stack_name

    cfg = load_config(config_path or default_config_path())
    dc = cfg.keystack

    key_source = key_file or dc.public_key_file
    if not key_source:
        raise ValueError(
            "No public key given. Pass --key-file or set keystack.public_key_file."
        )
    key = load_key(key_source)
    params = resolve_parameters(cfg, key.openssh, overrides)

    name = stack_name or dc.stack_name or derive_stack_name(params.key_name)
    validate_stack_name(name)

    tags = dict(dc.tags)
    tags[MANAGED_TAG] = params.key_name
    return StackInputs(
        config=cfg,
        params=params,
        public_key=key,
        stack_name=name,
        key_source=key_source,
        template_path=template_path or dc.template_path,
        tags=tags,
    )


def render_inputs(inputs: StackInputs) -> str:
    """Render the stack template for *inputs*."""
    text = load_template_text(inputs.template_path or None)
    return render_template(text, inputs.params.to_substitutions())


def private_key_guess(key_source: str) -> Optional[Path]:
    """Return the private key path implied by a ``.pub`` path, if any."""
    if key_source == "-" or not key_source.endswith(".pub"):
        return None
    return Path(key_source[: -len(".pub")]).expanduser()


# ---------------------------------------------------------------------------
# Local preflight steps
# ---------------------------------------------------------------------------


def make_public_key_step(key: PublicKey) -> PreflightStep:
    """``keys.public_key``: FAIL unless EC2 can import the key."""

    def step(report: PreflightReport) -> PreflightReport:
        details = {
            "algorithm": key.algorithm,
            "bits": key.bits,
            "fingerprint": key.fingerprint,
            "comment": key.comment,
        }
        if key.ec2_compatible:
            report.add("keys.public_key", CheckStatus.PASS, details=details)
        else:
            report.add(
                "keys.public_key",
                CheckStatus.FAIL,
                details=details,
                remediation=(
                    f"EC2 cannot import {key.algorithm} keys. "
                    "Generate an rsa or ed25519 key (keystack keygen)."
                ),
            )
        return report

    return step


def make_network_step(params: TemplateParameters) -> PreflightStep:
    """``params.network``: WARN when SSH is open to the whole internet."""

    def step(report: PreflightReport) -> PreflightReport:
        details = {
            "vpc_cidr": params.vpc_cidr,
            "subnet_cidr": params.subnet_cidr,
            "ssh_ingress_cidr": params.ssh_ingress_cidr,
        }
        if params.ssh_open_to_world:
            report.add(
                "params.network",
                CheckStatus.WARN,
                details=details,
                remediation=(
                    "SSH is open to 0.0.0.0/0. Restrict it with --ssh-cidr "
                    "<your-ip>/32 or pass --pass-on-warn."
                ),
            )
        else:
            report.add("params.network", CheckStatus.PASS, details=details)
        return report

    return step


def make_template_step(rendered: str) -> PreflightStep:
    """``template.structure``: the rendered template parses and is consistent."""

    def step(report: PreflightReport) -> PreflightReport:
        try:
            problems = check_template(load_cfn_yaml(rendered))
        except ValueError as exc:
            problems = [str(exc)]
        if problems:
            report.add(
                "template.structure",
                CheckStatus.FAIL,
                details={"problems": problems},
                remediation="Fix the template: " + "; ".join(problems),
            )
        else:
            report.add("template.structure", CheckStatus.PASS)
        return report

    return step


def local_steps(inputs: StackInputs, rendered: str) -> List[PreflightStep]:
    return [
        make_public_key_step(inputs.public_key),
        make_network_step(inputs.params),
        make_template_step(rendered),
    ]


# ---------------------------------------------------------------------------
# Preflight runner
# ---------------------------------------------------------------------------


def run_preflight(
    report: PreflightReport,
    *,
    pass_on_warn: bool = False,
    steps: List[PreflightStep],
) -> PreflightReport:
    """Execute *steps* in order; stop at the first FAIL.

    The report is always written to the keystack config directory.
    """
    for step in steps:
        report = step(report)

        if not report.passed:
            logger.error("Preflight FAIL detected, aborting.")
            for chk in report.failed_checks:
                logger.error("  [FAIL] %s: %s", chk.id, chk.remediation)
            write_preflight_report(report)
            return report

    if report.has_warnings and not pass_on_warn:
        logger.warning("Preflight WARN detected and --pass-on-warn not set.")
        for chk in report.warned_checks:
            logger.warning("  [WARN] %s: %s", chk.id, chk.remediation)
        write_preflight_report(report)
        return report

    write_preflight_report(report)
    logger.info("Preflight passed: %d checks OK.", len(report.checks))
    return report


def should_abort(report: PreflightReport, *, pass_on_warn: bool = False) -> bool:
    """Return *True* if the report indicates the workflow should stop."""
    if not report.passed:
        return True
    return report.has_warnings and not pass_on_warn


def exit_code_for(report: PreflightReport, *, pass_on_warn: bool = False) -> int:
    """Map a preflight report to the appropriate exit code."""
    if should_abort(report, pass_on_warn=pass_on_warn):
        return EXIT_VALIDATION_FAILURE
    return EXIT_SUCCESS


def extract_detail(report: PreflightReport, check_id: str, key: str) -> Any:
    """Return ``details[key]`` of the first check with *check_id*, or ``None``."""
    for chk in report.checks:
        if chk.id == check_id:
            return chk.details.get(key)
    return None


def _print_report(report: PreflightReport) -> None:
    for chk in report.checks:
        ui.check_line(chk)


# ---------------------------------------------------------------------------
# Shared setup
# ---------------------------------------------------------------------------


def _load_and_render(**kwargs: Any) -> Optional[tuple]:
    """Return ``(inputs, rendered)`` or ``None`` after reporting the error."""
    try:
        inputs = prepare_inputs(**kwargs)
        rendered = render_inputs(inputs)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("Input error: %s", exc)
        ui.fail(str(exc))
        return None
    return inputs, rendered


def _aws_preflight(
    inputs: StackInputs,
    rendered: str,
    *,
    profile: Optional[str],
    pass_on_warn: bool,
):
    """Build the AWS context and run every preflight step.

    Returns ``(aws_ctx, report, rc)``; *rc* is ``None`` when it is safe to
    continue.
    """
    from keystack.aws.cloudformation import make_cfn_preflight_step
    from keystack.aws.context import AWSContext
    from keystack.aws.ec2 import make_ec2_preflight_step

    params = inputs.params
    ui.phase("PREFLIGHT")
    try:
        aws_ctx = AWSContext.build(params.region, profile=profile)
    except RuntimeError as exc:
        logger.error("AWS context failed: %s", exc)
        ui.fail(str(exc))
        return None, None, EXIT_AWS_FAILURE

    logger.info(
        "AWS context: account=%s principal=%s region=%s",
        aws_ctx.account_id, aws_ctx.principal, aws_ctx.region,
    )

    report = PreflightReport(
        stack_name=inputs.stack_name,
        region=aws_ctx.region,
        availability_zone=params.availability_zone,
        aws_profile=aws_ctx.profile or "",
        account_id=aws_ctx.account_id,
        caller_arn=aws_ctx.caller_arn,
    )
    steps = local_steps(inputs, rendered) + [
        make_cfn_preflight_step(aws_ctx, inputs.stack_name, rendered),
        make_ec2_preflight_step(
            aws_ctx, params.availability_zone, params.key_name, inputs.stack_name,
        ),
    ]
    report = run_preflight(report, pass_on_warn=pass_on_warn, steps=steps)
    _print_report(report)

    if should_abort(report, pass_on_warn=pass_on_warn):
        ui.fail("Preflight did not pass.")
        return aws_ctx, report, exit_code_for(report, pass_on_warn=pass_on_warn)
    ui.ok(f"Preflight passed ({len(report.checks)} checks).")
    return aws_ctx, report, None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def run_render(
    *,
    config_path: Optional[str] = None,
    key_file: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    stack_name: Optional[str] = None,
    template_path: Optional[str] = None,
    output: Optional[str] = None,
) -> int:
    """Render the template locally (no AWS calls) and write it out."""
    loaded = _load_and_render(
        config_path=config_path, key_file=key_file, overrides=overrides,
        stack_name=stack_name, template_path=template_path,
    )
    if loaded is None:
        return EXIT_VALIDATION_FAILURE
    inputs, rendered = loaded

    report = make_template_step(rendered)(PreflightReport(stack_name=inputs.stack_name))
    if not report.passed:
        for problem in report.checks[0].details["problems"]:
            ui.fail(problem)
        return EXIT_VALIDATION_FAILURE

    if output:
        dest = Path(output)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(rendered, encoding="utf-8")
    else:
        dest = write_rendered_template(rendered, inputs.stack_name, _run_id())

    ui.ok(f"Rendered {inputs.stack_name} → {dest}")
    ui.detail("key", f"{inputs.public_key.algorithm} {inputs.public_key.fingerprint}")
    for rtype, names in sorted(resources_by_type(load_cfn_yaml(rendered)).items()):
        ui.detail(rtype, ", ".join(names))
    return EXIT_SUCCESS


def run_preflight_only(
    *,
    config_path: Optional[str] = None,
    key_file: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    stack_name: Optional[str] = None,
    template_path: Optional[str] = None,
    profile: Optional[str] = None,
    pass_on_warn: bool = False,
) -> int:
    """Run every preflight check without submitting anything."""
    loaded = _load_and_render(
        config_path=config_path, key_file=key_file, overrides=overrides,
        stack_name=stack_name, template_path=template_path,
    )
    if loaded is None:
        return EXIT_VALIDATION_FAILURE
    inputs, rendered = loaded
    _, _, rc = _aws_preflight(inputs, rendered, profile=profile, pass_on_warn=pass_on_warn)
    return EXIT_SUCCESS if rc is None else rc


def run_deploy(
    *,
    config_path: Optional[str] = None,
    key_file: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    stack_name: Optional[str] = None,
    template_path: Optional[str] = None,
    profile: Optional[str] = None,
    pass_on_warn: bool = False,
    wait: bool = True,
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
) -> int:
    """End-to-end: load → render → preflight → submit → record state."""
    from keystack.aws.cloudformation import (
        DEFAULT_POLL_INTERVAL,
        DEFAULT_TIMEOUT,
        deploy_stack,
    )

    loaded = _load_and_render(
        config_path=config_path, key_file=key_file, overrides=overrides,
        stack_name=stack_name, template_path=template_path,
    )
    if loaded is None:
        return EXIT_VALIDATION_FAILURE
    inputs, rendered = loaded

    aws_ctx, report, rc = _aws_preflight(
        inputs, rendered, profile=profile, pass_on_warn=pass_on_warn,
    )
    if rc is not None:
        return rc

    template_file = write_rendered_template(rendered, inputs.stack_name, report.run_id)
    capabilities = extract_detail(report, "cfn.validate_template", "capabilities") or []

    ui.phase("DEPLOY")
    ui.step(f"Submitting stack {inputs.stack_name} in {aws_ctx.region} ...")

    def _on_status(status: str, elapsed: float) -> None:
        ui.progress_line(f"{status} ({ui.elapsed_str(elapsed)})")

    try:
        result = deploy_stack(
            aws_ctx,
            inputs.stack_name,
            rendered,
            tags=inputs.tags,
            capabilities=capabilities,
            wait=wait,
            timeout=timeout or DEFAULT_TIMEOUT,
            poll_interval=poll_interval or DEFAULT_POLL_INTERVAL,
            on_status=_on_status,
        )
    except (RuntimeError, ClientError, BotoCoreError) as exc:
        ui.clear_progress()
        logger.error("Deploy failed: %s", exc)
        ui.error_panel("Deploy failed", str(exc))
        return EXIT_AWS_FAILURE
    ui.clear_progress()

    record = StateRecord(
        run_id=report.run_id,
        stack_name=inputs.stack_name,
        region=aws_ctx.region,
        availability_zone=inputs.params.availability_zone,
        aws_profile=aws_ctx.profile or "",
        account_id=aws_ctx.account_id,
        key_name=inputs.params.key_name,
        key_fingerprint=inputs.public_key.fingerprint,
        template_path=str(template_file),
        operation=result.operation,
        final_status=result.final_status or "",
        outputs=result.outputs.raw,
    )
    write_state_record(record)

    if not wait:
        ui.ok(f"Stack {result.operation} submitted ({result.final_status}).")
        return EXIT_SUCCESS

    _print_ssh_banner(inputs, result)
    return EXIT_SUCCESS


def _print_ssh_banner(inputs: StackInputs, result: Any) -> None:
    from keystack.keys.keygen import check_private_key_permissions

    outputs = result.outputs
    host = outputs.public_dns or outputs.public_ip
    private_key = private_key_guess(inputs.key_source)
    key_arg = str(private_key) if private_key else "<private-key>"

    lines = [
        f"Stack:    {inputs.stack_name} ({result.final_status}, {result.operation})",
        f"Instance: {outputs.instance_id or '-'}",
        f"Key:      {inputs.params.key_name} ({inputs.public_key.fingerprint})",
    ]
    if host:
        lines.append("")
        lines.append(f"ssh -i {key_arg} ec2-user@{host}")
    ui.success_panel("Stack ready", "\n".join(lines))

    if private_key is not None:
        for problem in check_private_key_permissions(private_key):
            ui.warn(problem)


def run_status(
    stack_name: str,
    *,
    region: Optional[str] = None,
    profile: Optional[str] = None,
) -> int:
    """Print the stack's status and outputs."""
    from keystack.aws.cloudformation import (
        FAILED_STATUSES,
        describe_stack_status,
        get_stack_outputs,
    )
    from keystack.aws.context import AWSContext

    region = region or _recorded_region(stack_name)
    try:
        aws_ctx = AWSContext.build(region, profile=profile)
        cfn = aws_ctx.client("cloudformation")
        status = describe_stack_status(cfn, stack_name)
        outputs = get_stack_outputs(cfn, stack_name) if status else None
    except (RuntimeError, ClientError, BotoCoreError) as exc:
        logger.error("Status lookup failed: %s", exc)
        ui.fail(str(exc))
        return EXIT_AWS_FAILURE

    if status is None:
        ui.fail(f"Stack {stack_name} not found in {aws_ctx.region}.")
        return EXIT_VALIDATION_FAILURE

    if status in FAILED_STATUSES:
        ui.warn(f"{stack_name}: {status}")
    else:
        ui.ok(f"{stack_name}: {status}")
    if outputs is not None and outputs.raw:
        ui.outputs_table(stack_name, outputs.raw)
    return EXIT_SUCCESS


def run_delete(
    stack_name: str,
    *,
    region: Optional[str] = None,
    profile: Optional[str] = None,
    wait: bool = True,
) -> int:
    """Delete the stack (and with it the imported key pair and instance)."""
    from keystack.aws.cloudformation import delete_stack
    from keystack.aws.context import AWSContext

    region = region or _recorded_region(stack_name)
    try:
        aws_ctx = AWSContext.build(region, profile=profile)
    except RuntimeError as exc:
        logger.error("AWS context failed: %s", exc)
        ui.fail(str(exc))
        return EXIT_AWS_FAILURE

    def _on_status(status: str, elapsed: float) -> None:
        ui.progress_line(f"{status} ({ui.elapsed_str(elapsed)})")

    ui.step(f"Deleting stack {stack_name} in {aws_ctx.region} ...")
    try:
        final = delete_stack(aws_ctx, stack_name, wait=wait, on_status=_on_status)
    except (RuntimeError, ClientError, BotoCoreError) as exc:
        ui.clear_progress()
        logger.error("Delete failed: %s", exc)
        ui.error_panel("Delete failed", str(exc))
        return EXIT_AWS_FAILURE
    ui.clear_progress()

    if final is None:
        ui.warn(f"Stack {stack_name} does not exist.")
    else:
        ui.ok(f"{stack_name}: {final}")
    return EXIT_SUCCESS


def _recorded_region(stack_name: str) -> Optional[str]:
    """Region of the latest recorded deploy of *stack_name*, if any."""
    record = latest_state_record(stack_name)
    if record is not None and record.region:
        logger.debug("Using recorded region %s for %s", record.region, stack_name)
        return record.region
    return None
