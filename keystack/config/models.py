"""Pydantic models for keystack configuration.

Defines:
- :class:`TemplateParameters` — the validated values substituted into the
  CloudFormation template
- :class:`DeploymentConfig` / :class:`ConfigFile` — the YAML config file
"""

from __future__ import annotations

import ipaddress
import re
from typing import Any, Dict

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from keystack.keys.loader import parse_public_key

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_ENVIRONMENT_NAME = "keystack"
DEFAULT_VPC_CIDR = "10.0.0.0/16"
DEFAULT_SUBNET_CIDR = "10.0.0.0/24"
DEFAULT_SSH_INGRESS_CIDR = "0.0.0.0/0"
DEFAULT_INSTANCE_TYPE = "t3.micro"

#: CloudFormation dynamic reference to the latest Amazon Linux 2023 AMI.
DEFAULT_IMAGE_ID = (
    "{{resolve:ssm:/aws/service/ami-amazon-linux-latest/"
    "al2023-ami-kernel-default-x86_64}}"
)

#: VPC and subnet prefix bounds enforced by EC2.
MIN_PREFIX = 16
MAX_PREFIX = 28

_AZ_RE = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d+[a-z]$")
_INSTANCE_TYPE_RE = re.compile(r"^[a-z][a-z0-9-]*\.[a-z0-9]+$")
_ENV_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]{0,63}$")
_IMAGE_ID_RE = re.compile(r"^(ami-[0-9a-f]{8,17}|\{\{resolve:ssm:[^}]+\}\})$")


def _network(value: str, field_name: str) -> ipaddress.IPv4Network:
    try:
        net = ipaddress.ip_network(value, strict=True)
    except ValueError as exc:
        raise ValueError(f"{field_name} '{value}' is not a valid network: {exc}") from exc
    if not isinstance(net, ipaddress.IPv4Network):
        raise ValueError(f"{field_name} '{value}' must be an IPv4 network")
    return net


class TemplateParameters(BaseModel):
    """Values rendered into the stack template.

    All fields are immutable once validated.  The subnet range must be
    contained in the VPC range.
    """

    model_config = ConfigDict(frozen=True)

    environment_name: str = Field(default=DEFAULT_ENVIRONMENT_NAME)
    availability_zone: str
    vpc_cidr: str = Field(default=DEFAULT_VPC_CIDR)
    subnet_cidr: str = Field(default=DEFAULT_SUBNET_CIDR)
    ssh_ingress_cidr: str = Field(default=DEFAULT_SSH_INGRESS_CIDR)
    instance_type: str = Field(default=DEFAULT_INSTANCE_TYPE)
    image_id: str = Field(default=DEFAULT_IMAGE_ID)
    key_name: str
    public_key: str

    @field_validator("environment_name")
    @classmethod
    def _check_environment_name(cls, v: str) -> str:
        if not _ENV_NAME_RE.match(v):
            raise ValueError(
                "environment_name must start with a letter and contain only "
                "letters, digits and dashes (max 64 chars)"
            )
        return v

    @field_validator("availability_zone")
    @classmethod
    def _check_availability_zone(cls, v: str) -> str:
        if not _AZ_RE.match(v):
            raise ValueError(
                f"availability_zone '{v}' must look like 'us-west-2a'"
            )
        return v

    @field_validator("vpc_cidr", "subnet_cidr")
    @classmethod
    def _check_block_cidr(cls, v: str, info: ValidationInfo) -> str:
        net = _network(v, info.field_name)
        if not MIN_PREFIX <= net.prefixlen <= MAX_PREFIX:
            raise ValueError(
                f"{info.field_name} '{v}' prefix must be between "
                f"/{MIN_PREFIX} and /{MAX_PREFIX}"
            )
        return str(net)

    @field_validator("ssh_ingress_cidr")
    @classmethod
    def _check_ingress_cidr(cls, v: str) -> str:
        return str(_network(v, "ssh_ingress_cidr"))

    @field_validator("instance_type")
    @classmethod
    def _check_instance_type(cls, v: str) -> str:
        if not _INSTANCE_TYPE_RE.match(v):
            raise ValueError(f"instance_type '{v}' must look like 't3.micro'")
        return v

    @field_validator("image_id")
    @classmethod
    def _check_image_id(cls, v: str) -> str:
        if not _IMAGE_ID_RE.match(v):
            raise ValueError(
                f"image_id '{v}' must be an AMI id or a '{{{{resolve:ssm:...}}}}' reference"
            )
        return v

    @field_validator("key_name")
    @classmethod
    def _check_key_name(cls, v: str) -> str:
        if not 1 <= len(v) <= 255:
            raise ValueError("key_name must be 1-255 characters")
        if any(not (32 <= ord(ch) < 127) for ch in v) or '"' in v or "\\" in v:
            raise ValueError("key_name must be printable ASCII without quotes or backslashes")
        return v

    @field_validator("public_key")
    @classmethod
    def _check_public_key(cls, v: str) -> str:
        return parse_public_key(v).openssh

    @model_validator(mode="after")
    def _subnet_inside_vpc(self) -> "TemplateParameters":
        vpc = ipaddress.ip_network(self.vpc_cidr)
        subnet = ipaddress.ip_network(self.subnet_cidr)
        if not subnet.subnet_of(vpc):
            raise ValueError(
                f"subnet_cidr {self.subnet_cidr} is not contained in vpc_cidr {self.vpc_cidr}"
            )
        return self

    # -- derived values ----------------------------------------------------

    @property
    def region(self) -> str:
        """Region part of :attr:`availability_zone` (``us-west-2a`` → ``us-west-2``)."""
        return self.availability_zone[:-1]

    @property
    def ssh_open_to_world(self) -> bool:
        return ipaddress.ip_network(self.ssh_ingress_cidr).prefixlen == 0

    def to_substitutions(self) -> Dict[str, str]:
        """Map every field onto its ``KEYSTACK_*`` template token."""
        return {
            "KEYSTACK_ENVIRONMENT_NAME": self.environment_name,
            "KEYSTACK_AVAILABILITY_ZONE": self.availability_zone,
            "KEYSTACK_VPC_CIDR": self.vpc_cidr,
            "KEYSTACK_SUBNET_CIDR": self.subnet_cidr,
            "KEYSTACK_SSH_INGRESS_CIDR": self.ssh_ingress_cidr,
            "KEYSTACK_INSTANCE_TYPE": self.instance_type,
            "KEYSTACK_IMAGE_ID": self.image_id,
            "KEYSTACK_KEY_NAME": self.key_name,
            "KEYSTACK_PUBLIC_KEY": self.public_key,
        }


class DeploymentConfig(BaseModel):
    """The ``keystack:`` section of the config YAML.

    Structure::

        keystack:
          stack_name: my-box
          template_path: ""
          public_key_file: ~/.ssh/id_ed25519.pub
          tags: {owner: me}
          parameters:
            availability_zone: us-west-2a
            key_name: my-key
    """

    stack_name: str = ""
    template_path: str = ""
    public_key_file: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags", mode="before")
    @classmethod
    def _stringify_tags(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v or {}

    @field_validator("parameters", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return v or {}


class ConfigFile(BaseModel):
    """Root model wrapping the ``keystack:`` key."""

    keystack: DeploymentConfig = Field(default_factory=DeploymentConfig)

    @field_validator("keystack", mode="before")
    @classmethod
    def _none_to_default(cls, v: Any) -> Any:
        return v or {}
