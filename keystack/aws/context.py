"""AWS session and caller identity.

:class:`AWSContext` bundles a boto3 session with the STS caller identity so
every downstream call shares one region and one set of credentials.

Region resolution precedence:
1. Explicit region (or the region part of ``--region-az``)
2. ``AWS_DEFAULT_REGION`` / ``AWS_REGION`` env vars
3. Error — a stack is always created in a deliberate region

Profile resolution precedence:
1. Explicit ``--profile``
2. ``AWS_PROFILE`` env var
3. ``None`` — boto3's default credential chain (env keys, SSO, instance role)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Region / profile helpers
# ---------------------------------------------------------------------------


def split_availability_zone(availability_zone: str) -> tuple[str, str]:
    """Split ``us-west-2b`` into ``("us-west-2", "b")``.

    Raises :class:`ValueError` if the last character is not a letter.
    """
    if not availability_zone:
        raise ValueError("availability zone must not be empty")
    zone = availability_zone[-1]
    if not zone.isalpha():
        raise ValueError(
            f"Availability zone '{availability_zone}' must end with a zone letter"
        )
    region = availability_zone[:-1]
    if not region:
        raise ValueError(f"Availability zone '{availability_zone}' has no region")
    return region, zone


def resolve_region(region: Optional[str] = None) -> str:
    """Return the AWS region: *region* → ``AWS_DEFAULT_REGION`` → ``AWS_REGION``."""
    resolved = (
        region
        or os.environ.get("AWS_DEFAULT_REGION")
        or os.environ.get("AWS_REGION")
    )
    if not resolved:
        raise RuntimeError(
            "No AWS region given. Pass --region-az or export AWS_DEFAULT_REGION."
        )
    return resolved


def resolve_profile(profile: Optional[str] = None) -> Optional[str]:
    """Return the AWS profile name, or ``None`` for the default chain."""
    return profile or os.environ.get("AWS_PROFILE") or None


# ---------------------------------------------------------------------------
# AWSContext
# ---------------------------------------------------------------------------


@dataclass
class AWSContext:
    """Resolved AWS identity plus a session factory.

    Attributes:
        region: AWS region (e.g. ``us-west-2``).
        profile: Profile name, or ``None`` for the default credential chain.
        account_id: 12-digit AWS account ID.
        caller_arn: Full ARN from ``sts:GetCallerIdentity``.
        principal: User or role-session name taken from *caller_arn*.
    """

    region: str
    profile: Optional[str] = None
    account_id: str = ""
    caller_arn: str = ""
    principal: str = ""
    _session: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def build(
        cls,
        region: Optional[str] = None,
        profile: Optional[str] = None,
    ) -> "AWSContext":
        """Create a session and confirm the credentials with STS.

        Raises :class:`RuntimeError` on missing region, credential or
        network failures.
        """
        resolved_region = resolve_region(region)
        resolved_profile = resolve_profile(profile)

        try:
            session = boto3.Session(
                profile_name=resolved_profile, region_name=resolved_region
            )
            identity = session.client("sts").get_caller_identity()
        except (BotoCoreError, ClientError) as exc:
            raise RuntimeError(
                f"AWS credentials invalid or inaccessible in region {resolved_region}: {exc}"
            ) from exc

        caller_arn = identity["Arn"]
        ctx = cls(
            region=resolved_region,
            profile=resolved_profile,
            account_id=identity["Account"],
            caller_arn=caller_arn,
            principal=principal_from_arn(caller_arn),
            _session=session,
        )
        logger.debug("AWS identity %s in %s", ctx.caller_arn, ctx.region)
        return ctx

    @property
    def session(self) -> boto3.Session:
        if self._session is None:
            self._session = boto3.Session(
                profile_name=self.profile, region_name=self.region
            )
        return self._session

    def client(self, service: str, **kwargs: Any) -> Any:
        """Create a boto3 client for *service*."""
        return self.session.client(service, **kwargs)


def principal_from_arn(arn: str) -> str:
    """Extract the user or role-session name from an ARN.

    Examples::

        arn:aws:iam::123456789012:user/alice        → alice
        arn:aws:sts::123456789012:assumed-role/r/s   → s
        arn:aws:iam::123456789012:root               → root
    """
    parts = arn.split("/")
    if len(parts) >= 2:
        return parts[-1]
    return arn.rsplit(":", maxsplit=1)[-1]
