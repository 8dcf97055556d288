"""Config file loading and parameter resolution.

Precedence for every template parameter::

    CLI override  >  config file ``keystack.parameters``  >  model default

The public key itself is never stored in the config file; the file only
names where to read it from (``public_key_file``).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from keystack.config.models import ConfigFile, TemplateParameters

logger = logging.getLogger(__name__)

#: Environment variable naming the default config file.
CONFIG_ENV_VAR = "KEYSTACK_CONFIG"

#: Fallback config path when neither ``--config`` nor the env var is given.
DEFAULT_CONFIG_PATH = "keystack.yaml"


def default_config_path() -> str:
    """Return ``$KEYSTACK_CONFIG`` or :data:`DEFAULT_CONFIG_PATH`."""
    return os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH


def load_config(path: str | Path) -> ConfigFile:
    """Load and parse a keystack config YAML file.

    A missing file yields an empty :class:`ConfigFile`.

    Raises:
        ValueError: If the YAML is malformed or fails model validation.
    """
    path = Path(path).expanduser()
    raw: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Config file {path} is not valid YAML: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        logger.debug("Loaded config from %s", path)
    else:
        logger.debug("Config file %s not found, using defaults", path)

    return ConfigFile.model_validate(raw)


def merge_parameters(
    cfg: ConfigFile,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Return raw parameter values with *overrides* applied.

    ``None`` and empty-string overrides are ignored so unset CLI flags fall
    through to the config file.
    """
    merged: Dict[str, Any] = {
        k: v for k, v in cfg.keystack.parameters.items() if v not in (None, "")
    }
    for key, val in (overrides or {}).items():
        if val is None or val == "":
            continue
        merged[key] = val
    return merged


def resolve_parameters(
    cfg: ConfigFile,
    public_key: str,
    overrides: Optional[Mapping[str, Any]] = None,
) -> TemplateParameters:
    """Build validated :class:`TemplateParameters`.

    Raises:
        ValueError: (``pydantic.ValidationError``) on any invalid value.
    """
    values = merge_parameters(cfg, overrides)
    values["public_key"] = public_key
    return TemplateParameters.model_validate(values)
