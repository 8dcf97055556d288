"""Tests for keystack.aws.context — boto3 is mocked."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, NoCredentialsError

from keystack.aws.context import (
    AWSContext,
    principal_from_arn,
    resolve_profile,
    resolve_region,
    split_availability_zone,
)

_IDENTITY = {
    "Account": "123456789012",
    "Arn": "arn:aws:iam::123456789012:user/alice",
    "UserId": "AIDAEXAMPLE",
}


class TestSplitAvailabilityZone:
    def test_split(self):
        assert split_availability_zone("us-west-2b") == ("us-west-2", "b")

    def test_empty(self):
        with pytest.raises(ValueError, match="must not be empty"):
            split_availability_zone("")

    def test_no_zone_letter(self):
        with pytest.raises(ValueError, match="zone letter"):
            split_availability_zone("us-west-2")

    def test_no_region(self):
        with pytest.raises(ValueError, match="has no region"):
            split_availability_zone("a")


class TestResolve:
    def test_region_explicit(self, monkeypatch):
        monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")
        assert resolve_region("us-east-2") == "us-east-2"

    def test_region_from_env(self, monkeypatch):
        monkeypatch.delenv("AWS_DEFAULT_REGION", raising=False)
        monkeypatch.setenv("AWS_REGION", "ca-central-1")
        assert resolve_region() == "ca-central-1"

    def test_region_missing(self, monkeypatch):
        monkeypatch.delenv("AWS_DEFAULT_REGION", raising=False)
        monkeypatch.delenv("AWS_REGION", raising=False)
        with pytest.raises(RuntimeError, match="No AWS region"):
            resolve_region()

    def test_profile_env(self, monkeypatch):
        monkeypatch.setenv("AWS_PROFILE", "work")
        assert resolve_profile() == "work"
        assert resolve_profile("home") == "home"

    def test_profile_default_chain(self, monkeypatch):
        monkeypatch.delenv("AWS_PROFILE", raising=False)
        assert resolve_profile() is None


class TestAWSContextBuild:
    @patch("keystack.aws.context.boto3.Session")
    def test_build(self, mock_session_cls, monkeypatch):
        monkeypatch.delenv("AWS_PROFILE", raising=False)
        session = MagicMock()
        session.client.return_value.get_caller_identity.return_value = _IDENTITY
        mock_session_cls.return_value = session

        ctx = AWSContext.build(region="us-west-2")

        mock_session_cls.assert_called_once_with(profile_name=None, region_name="us-west-2")
        session.client.assert_called_once_with("sts")
        assert ctx.account_id == "123456789012"
        assert ctx.principal == "alice"
        assert ctx.session is session

    @patch("keystack.aws.context.boto3.Session")
    def test_client_error(self, mock_session_cls):
        session = MagicMock()
        session.client.return_value.get_caller_identity.side_effect = ClientError(
            {"Error": {"Code": "ExpiredToken", "Message": "expired"}}, "GetCallerIdentity"
        )
        mock_session_cls.return_value = session
        with pytest.raises(RuntimeError, match="credentials invalid"):
            AWSContext.build(region="us-west-2", profile="p")

    @patch("keystack.aws.context.boto3.Session")
    def test_no_credentials(self, mock_session_cls):
        session = MagicMock()
        session.client.return_value.get_caller_identity.side_effect = NoCredentialsError()
        mock_session_cls.return_value = session
        with pytest.raises(RuntimeError, match="us-west-2"):
            AWSContext.build(region="us-west-2")

    @patch("keystack.aws.context.boto3.Session")
    def test_client_passes_through(self, mock_session_cls):
        ctx = AWSContext(region="us-west-2", profile="p")
        ctx.client("ec2")
        mock_session_cls.assert_called_once_with(profile_name="p", region_name="us-west-2")
        mock_session_cls.return_value.client.assert_called_once_with("ec2")


class TestPrincipalFromArn:
    @pytest.mark.parametrize(
        "arn, expected",
        [
            ("arn:aws:iam::1:user/alice", "alice"),
            ("arn:aws:sts::1:assumed-role/Admin/bob-session", "bob-session"),
            ("arn:aws:iam::1:root", "root"),
        ],
    )
    def test_principal(self, arn, expected):
        assert principal_from_arn(arn) == expected
