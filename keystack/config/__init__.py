"""Configuration loading, parameter models and validation."""

from keystack.config.loader import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_PATH,
    default_config_path,
    load_config,
    merge_parameters,
    resolve_parameters,
)
from keystack.config.models import (
    DEFAULT_IMAGE_ID,
    ConfigFile,
    DeploymentConfig,
    TemplateParameters,
)

__all__ = [
    "CONFIG_ENV_VAR",
    "ConfigFile",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_IMAGE_ID",
    "DeploymentConfig",
    "TemplateParameters",
    "default_config_path",
    "load_config",
    "merge_parameters",
    "resolve_parameters",
]
