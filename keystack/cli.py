"""CLI entry point for keystack, built on cli-core-yo.

Usage::

    keystack keygen --out ~/.ssh/keystack
    keystack render --key-file ~/.ssh/keystack.pub --key-name me --region-az us-west-2a
    keystack preflight --config keystack.yaml --profile my-profile
    keystack deploy --config keystack.yaml --ssh-cidr 203.0.113.7/32
    keystack status --stack-name keystack-me --region us-west-2
    keystack delete --stack-name keystack-me --region us-west-2
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Dict, Optional

import typer
from cli_core_yo import output
from cli_core_yo.app import create_app
from cli_core_yo.runtime import _reset, initialize
from cli_core_yo.spec import CliSpec, XdgSpec

# ── App specification ────────────────────────────────────────────────────────

spec = CliSpec(
    prog_name="keystack",
    app_display_name="keystack",
    dist_name="keystack",
    root_help=(
        "Generate or load an SSH public key, render it into a CloudFormation "
        "template and deploy an EC2 instance reachable with that key."
    ),
    xdg=XdgSpec(app_dir_name="keystack"),
)

app = create_app(spec)


# ── Root callback (global options) ───────────────────────────────────────────


@app.callback()
def _root_callback(
    json_flag: bool = typer.Option(
        False, "--json", "-j", help="Output as JSON."
    ),
) -> None:
    """keystack: SSH key → CloudFormation stack."""
    _reset()
    debug = os.environ.get("CLI_CORE_YO_DEBUG") == "1"
    xdg_paths = app._cli_core_yo_xdg_paths  # type: ignore[attr-defined]
    initialize(spec, xdg_paths, json_mode=json_flag, debug=debug)


# ── Shared option helpers ────────────────────────────────────────────────────

_CONFIG = typer.Option(
    None, "--config", help="Path to keystack config YAML. Default: $KEYSTACK_CONFIG or keystack.yaml."
)
_KEY_FILE = typer.Option(
    None, "--key-file", help="Public key file (.pub). Use '-' to read from stdin."
)
_KEY_NAME = typer.Option(None, "--key-name", help="EC2 key pair name.")
_REGION_AZ = typer.Option(None, "--region-az", help="Availability zone (e.g. us-west-2a).")
_INSTANCE_TYPE = typer.Option(None, "--instance-type", help="EC2 instance type.")
_VPC_CIDR = typer.Option(None, "--vpc-cidr", help="VPC CIDR block.")
_SUBNET_CIDR = typer.Option(None, "--subnet-cidr", help="Subnet CIDR block (inside the VPC).")
_SSH_CIDR = typer.Option(None, "--ssh-cidr", help="CIDR allowed to reach port 22.")
_IMAGE_ID = typer.Option(None, "--image-id", help="AMI id or {{resolve:ssm:...}} reference.")
_STACK_NAME = typer.Option(None, "--stack-name", help="Stack name. Default: keystack-<key-name>.")
_TEMPLATE = typer.Option(None, "--template", help="Template file. Default: built-in template.")
_PROFILE = typer.Option(None, "--profile", help="AWS CLI profile. Defaults to AWS_PROFILE.")
_DEBUG = typer.Option(False, "--debug", help="Enable debug logging.")


def _overrides(
    key_name: Optional[str],
    region_az: Optional[str],
    instance_type: Optional[str],
    vpc_cidr: Optional[str],
    subnet_cidr: Optional[str],
    ssh_cidr: Optional[str],
    image_id: Optional[str],
) -> Dict[str, Any]:
    """Map CLI flags onto template parameter names (unset flags dropped)."""
    values = {
        "key_name": key_name,
        "availability_zone": region_az,
        "instance_type": instance_type,
        "vpc_cidr": vpc_cidr,
        "subnet_cidr": subnet_cidr,
        "ssh_ingress_cidr": ssh_cidr,
        "image_id": image_id,
    }
    return {k: v for k, v in values.items() if v}


def _configure_logging(debug: bool) -> None:
    if debug:
        logging.basicConfig(level=logging.DEBUG)
        logging.getLogger("keystack").setLevel(logging.DEBUG)


# ── keygen command ───────────────────────────────────────────────────────────


@app.command()
def keygen(
    out: str = typer.Option(
        "~/.ssh/keystack", "--out", help="Private key path; the public key goes to <out>.pub."
    ),
    key_type: str = typer.Option("rsa", "--type", help="Key type: rsa, ed25519 or ecdsa."),
    bits: Optional[int] = typer.Option(
        None, "--bits", help="Key size: rsa default 4096, ecdsa 256/384/521 (default 256)."
    ),
    comment: str = typer.Option("", "--comment", help="Key comment."),
    force: bool = typer.Option(
        False, "--force", help="Overwrite an existing key pair. The old private key is lost."
    ),
    debug: bool = _DEBUG,
) -> None:
    """Generate an SSH key pair with ssh-keygen.

    The private key never leaves this machine and cannot be recovered if
    lost; keep a backup.
    """
    from keystack.keys.keygen import generate_key_pair
    from keystack.workflow.deploy import (
        EXIT_SUCCESS,
        EXIT_TOOLCHAIN,
        EXIT_VALIDATION_FAILURE,
    )

    _configure_logging(debug)

    try:
        pair = generate_key_pair(
            out, key_type=key_type, bits=bits, comment=comment, overwrite=force,
        )
    except FileNotFoundError as exc:
        output.error(str(exc))
        raise typer.Exit(EXIT_TOOLCHAIN) from exc
    except (FileExistsError, ValueError, RuntimeError) as exc:
        output.error(str(exc))
        raise typer.Exit(EXIT_VALIDATION_FAILURE) from exc

    output.success(f"Private key: {pair.private_path}")
    output.success(f"Public key:  {pair.public_path}")
    output.detail(f"{pair.public_key.algorithm} {pair.public_key.bits} bits {pair.public_key.fingerprint}")
    raise typer.Exit(EXIT_SUCCESS)


# ── render command ───────────────────────────────────────────────────────────


@app.command()
def render(
    config: Optional[str] = _CONFIG,
    key_file: Optional[str] = _KEY_FILE,
    key_name: Optional[str] = _KEY_NAME,
    region_az: Optional[str] = _REGION_AZ,
    instance_type: Optional[str] = _INSTANCE_TYPE,
    vpc_cidr: Optional[str] = _VPC_CIDR,
    subnet_cidr: Optional[str] = _SUBNET_CIDR,
    ssh_cidr: Optional[str] = _SSH_CIDR,
    image_id: Optional[str] = _IMAGE_ID,
    stack_name: Optional[str] = _STACK_NAME,
    template: Optional[str] = _TEMPLATE,
    out: Optional[str] = typer.Option(
        None, "--output", "-o", help="Write the rendered template here."
    ),
    debug: bool = _DEBUG,
) -> None:
    """Render the stack template locally. No AWS calls are made."""
    from keystack.workflow.deploy import run_render

    _configure_logging(debug)
    rc = run_render(
        config_path=config,
        key_file=key_file,
        overrides=_overrides(
            key_name, region_az, instance_type, vpc_cidr, subnet_cidr, ssh_cidr, image_id,
        ),
        stack_name=stack_name,
        template_path=template,
        output=out,
    )
    raise typer.Exit(rc)


# ── preflight command ────────────────────────────────────────────────────────


@app.command()
def preflight(
    config: Optional[str] = _CONFIG,
    key_file: Optional[str] = _KEY_FILE,
    key_name: Optional[str] = _KEY_NAME,
    region_az: Optional[str] = _REGION_AZ,
    instance_type: Optional[str] = _INSTANCE_TYPE,
    vpc_cidr: Optional[str] = _VPC_CIDR,
    subnet_cidr: Optional[str] = _SUBNET_CIDR,
    ssh_cidr: Optional[str] = _SSH_CIDR,
    image_id: Optional[str] = _IMAGE_ID,
    stack_name: Optional[str] = _STACK_NAME,
    template: Optional[str] = _TEMPLATE,
    profile: Optional[str] = _PROFILE,
    pass_on_warn: bool = typer.Option(
        False, "--pass-on-warn", help="Treat warnings as non-fatal."
    ),
    debug: bool = _DEBUG,
) -> None:
    """Run preflight validation only (no stack changes).

    Exits 0 on success, 1 on validation failure, 2 on AWS errors.
    """
    from keystack.workflow.deploy import run_preflight_only

    _configure_logging(debug)
    rc = run_preflight_only(
        config_path=config,
        key_file=key_file,
        overrides=_overrides(
            key_name, region_az, instance_type, vpc_cidr, subnet_cidr, ssh_cidr, image_id,
        ),
        stack_name=stack_name,
        template_path=template,
        profile=profile,
        pass_on_warn=pass_on_warn,
    )
    raise typer.Exit(rc)


# ── deploy command ───────────────────────────────────────────────────────────


@app.command()
def deploy(
    config: Optional[str] = _CONFIG,
    key_file: Optional[str] = _KEY_FILE,
    key_name: Optional[str] = _KEY_NAME,
    region_az: Optional[str] = _REGION_AZ,
    instance_type: Optional[str] = _INSTANCE_TYPE,
    vpc_cidr: Optional[str] = _VPC_CIDR,
    subnet_cidr: Optional[str] = _SUBNET_CIDR,
    ssh_cidr: Optional[str] = _SSH_CIDR,
    image_id: Optional[str] = _IMAGE_ID,
    stack_name: Optional[str] = _STACK_NAME,
    template: Optional[str] = _TEMPLATE,
    profile: Optional[str] = _PROFILE,
    pass_on_warn: bool = typer.Option(
        False, "--pass-on-warn", help="Continue on preflight warnings instead of failing."
    ),
    wait: bool = typer.Option(
        True, "--wait/--no-wait", help="Poll until the stack reaches a final status."
    ),
    timeout: float = typer.Option(1800.0, "--timeout", help="Seconds to wait for the stack."),
    poll_interval: float = typer.Option(10.0, "--poll-interval", help="Seconds between polls."),
    debug: bool = _DEBUG,
) -> None:
    """Render, validate and deploy the stack.

    Environment variables:
      AWS_PROFILE        Default AWS profile when --profile is omitted.
      KEYSTACK_CONFIG    Default config file when --config is omitted.
    """
    from keystack.workflow.deploy import run_deploy

    _configure_logging(debug)
    output.action(f"Deploying {stack_name or 'stack'} ...")
    rc = run_deploy(
        config_path=config,
        key_file=key_file,
        overrides=_overrides(
            key_name, region_az, instance_type, vpc_cidr, subnet_cidr, ssh_cidr, image_id,
        ),
        stack_name=stack_name,
        template_path=template,
        profile=profile,
        pass_on_warn=pass_on_warn,
        wait=wait,
        timeout=timeout,
        poll_interval=poll_interval,
    )
    raise typer.Exit(rc)


# ── status command ───────────────────────────────────────────────────────────


@app.command()
def status(
    stack_name: str = typer.Option(..., "--stack-name", help="Stack to inspect."),
    region: Optional[str] = typer.Option(
        None, "--region", help="AWS region. Default: region of the last recorded deploy."
    ),
    profile: Optional[str] = _PROFILE,
    debug: bool = _DEBUG,
) -> None:
    """Show the stack's status and outputs."""
    from keystack.workflow.deploy import run_status

    _configure_logging(debug)
    raise typer.Exit(run_status(stack_name, region=region, profile=profile))


# ── delete command ───────────────────────────────────────────────────────────


@app.command()
def delete(
    stack_name: str = typer.Option(..., "--stack-name", help="Stack to delete."),
    region: Optional[str] = typer.Option(
        None, "--region", help="AWS region. Default: region of the last recorded deploy."
    ),
    profile: Optional[str] = _PROFILE,
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for deletion to finish."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    debug: bool = _DEBUG,
) -> None:
    """Delete the stack, its instance and its imported key pair.

    The local key files are left untouched.
    """
    from keystack.workflow.deploy import EXIT_SUCCESS, run_delete

    _configure_logging(debug)
    if not yes and not typer.confirm(f"Delete stack {stack_name}?"):
        output.warn("Aborted.")
        raise typer.Exit(EXIT_SUCCESS)
    raise typer.Exit(run_delete(stack_name, region=region, profile=profile, wait=wait))


# ── Entry point ──────────────────────────────────────────────────────────────


def main() -> int:
    """Run the CLI and return an exit code."""
    try:
        app()
        return 0
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 0


if __name__ == "__main__":
    sys.exit(main())
