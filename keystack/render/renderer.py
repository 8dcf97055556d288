"""CloudFormation template renderer — replaces ``${KEYSTACK_*}`` tokens.

It performs **text-level**, single-pass token replacement so YAML key ordering and
comments are preserved byte-for-byte across runs.  CloudFormation's own
``${AWS::Region}`` / ``${Resource.Attr}`` tokens inside ``!Sub`` are left
untouched.

Every token in the packaged template sits inside a YAML double-quoted
scalar, so substituted values are escaped for that context.
"""

from __future__ import annotations

import re
from importlib import resources
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from keystack.state.store import config_dir

# ── constants ────────────────────────────────────────────────────────

#: Every substitution key understood by the packaged template.
ALL_SUBSTITUTION_KEYS: FrozenSet[str] = frozenset(
    {
        "KEYSTACK_ENVIRONMENT_NAME",
        "KEYSTACK_AVAILABILITY_ZONE",
        "KEYSTACK_VPC_CIDR",
        "KEYSTACK_SUBNET_CIDR",
        "KEYSTACK_SSH_INGRESS_CIDR",
        "KEYSTACK_INSTANCE_TYPE",
        "KEYSTACK_IMAGE_ID",
        "KEYSTACK_KEY_NAME",
        "KEYSTACK_PUBLIC_KEY",
    },
)

#: Keys the renderer refuses to run without.
REQUIRED_KEYS: FrozenSet[str] = ALL_SUBSTITUTION_KEYS

#: Package resource holding the default template.
DEFAULT_TEMPLATE_NAME = "ec2_key_instance.yml"

_TOKEN_RE = re.compile(r"\$\{(KEYSTACK_[A-Z0-9_]+)\}")


# ── public API ───────────────────────────────────────────────────────


def escape_value(value: str) -> str:
    """Escape *value* for a YAML double-quoted scalar."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def find_tokens(template_text: str) -> List[str]:
    """Return the sorted, de-duplicated ``KEYSTACK_*`` keys in *template_text*."""
    return sorted(set(_TOKEN_RE.findall(template_text)))


def render_template(
    template_text: str,
    substitutions: Dict[str, str],
    *,
    required_keys: Optional[FrozenSet[str]] = None,
) -> str:
    """Replace all ``${KEYSTACK_*}`` tokens in *template_text*.

    Parameters
    ----------
    template_text:
        Raw template content.
    substitutions:
        Mapping of key → value, keys including the ``KEYSTACK_`` prefix
        (e.g. ``{"KEYSTACK_KEY_NAME": "my-key", ...}``).
    required_keys:
        Keys that **must** be present in *substitutions* with a non-empty
        value.  Defaults to :data:`REQUIRED_KEYS`.

    Returns
    -------
    str
        Template text with every ``${KEY}`` replaced by its escaped value.
        Values are inserted verbatim even when they look like tokens.

    Raises
    ------
    ValueError
        If a required key is missing or empty, or if the template holds a
        ``${KEYSTACK_*}`` token with no substitution.
    """
    if required_keys is None:
        required_keys = REQUIRED_KEYS

    # ── validate required keys ───────────────────────────────────
    missing: List[str] = sorted(
        k for k in required_keys if not substitutions.get(k)
    )
    if missing:
        raise ValueError(
            f"Missing required substitution key(s): {', '.join(missing)}"
        )

    unknown = [k for k in find_tokens(template_text) if k not in substitutions]
    if unknown:
        raise ValueError(
            f"Unresolved template token(s): {', '.join(unknown)}"
        )

    # ── single pass: substituted values are never rescanned ──────
    return _TOKEN_RE.sub(
        lambda m: escape_value(substitutions[m.group(1)]), template_text
    )


def load_template_text(template_path: Optional[str | Path] = None) -> str:
    """Return the raw text of *template_path*, or the packaged default.

    Raises
    ------
    FileNotFoundError
        If *template_path* is given and does not exist.
    """
    if template_path:
        src = Path(template_path).expanduser()
        if not src.is_file():
            raise FileNotFoundError(f"Template not found: {template_path}")
        return src.read_text(encoding="utf-8")
    return (
        resources.files("keystack.templates")
        .joinpath(DEFAULT_TEMPLATE_NAME)
        .read_text(encoding="utf-8")
    )


def write_rendered_template(
    rendered: str,
    stack_name: str,
    timestamp: str,
    *,
    out_dir: Optional[Path] = None,
) -> Path:
    """Write *rendered* to ``<out_dir>/<stack>_template_<ts>.yml``.

    *out_dir* defaults to the keystack config directory.
    """
    target_dir = out_dir if out_dir is not None else config_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    dest = target_dir / f"{stack_name}_template_{timestamp}.yml"
    dest.write_text(rendered, encoding="utf-8")
    return dest
