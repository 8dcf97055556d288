"""Tests for keystack.aws.cloudformation — clients are MagicMocks, time is faked."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from keystack.aws.cloudformation import (
    MAX_CONSECUTIVE_FAILURES,
    delete_stack,
    deploy_stack,
    derive_stack_name,
    describe_stack_status,
    failed_event_reasons,
    get_stack_outputs,
    make_cfn_preflight_step,
    submit_stack,
    validate_stack_name,
    validate_template_body,
    wait_for_stack,
)
from keystack.state.models import CheckStatus, PreflightReport


def _missing():
    return ClientError(
        {"Error": {"Code": "ValidationError", "Message": "Stack with id s does not exist"}},
        "DescribeStacks",
    )


def _stack(status, outputs=None):
    stack = {"StackName": "s", "StackStatus": status}
    if outputs:
        stack["Outputs"] = [{"OutputKey": k, "OutputValue": v} for k, v in outputs.items()]
    return {"Stacks": [stack]}


def _statuses(cfn, *statuses):
    """Make describe_stacks walk through *statuses* (None = stack missing)."""
    effects = [_missing() if s is None else _stack(s) for s in statuses]
    cfn.describe_stacks.side_effect = effects


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _no_events(cfn):
    cfn.get_paginator.return_value.paginate.return_value = [{"StackEvents": []}]


# ── names ────────────────────────────────────────────────────────────


class TestStackNames:
    @pytest.mark.parametrize(
        "key, expected",
        [
            ("my-key", "keystack-my-key"),
            ("alice@laptop", "keystack-alice-laptop"),
            ("a  b__c", "keystack-a-b-c"),
        ],
    )
    def test_derive(self, key, expected):
        assert derive_stack_name(key) == expected

    def test_derive_empty(self):
        with pytest.raises(ValueError):
            derive_stack_name("@@@")

    def test_derive_truncates(self):
        assert len(derive_stack_name("k" * 300)) == 128

    def test_validate(self):
        assert validate_stack_name("keystack-a") == "keystack-a"
        with pytest.raises(ValueError, match="must start with a letter"):
            validate_stack_name("1-bad")
        with pytest.raises(ValueError, match="exceeds"):
            validate_stack_name("a" * 129)


# ── describe helpers ─────────────────────────────────────────────────


class TestDescribe:
    def test_status(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("CREATE_COMPLETE")
        assert describe_stack_status(cfn, "s") == "CREATE_COMPLETE"

    def test_missing(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = _missing()
        assert describe_stack_status(cfn, "s") is None

    def test_other_error_propagates(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DescribeStacks"
        )
        with pytest.raises(ClientError):
            describe_stack_status(cfn, "s")

    def test_outputs(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack(
            "CREATE_COMPLETE", {"InstanceId": "i-1", "PublicIp": "198.51.100.4", "Extra": "x"}
        )
        out = get_stack_outputs(cfn, "s")
        assert out.instance_id == "i-1"
        assert out.public_ip == "198.51.100.4"
        assert out.vpc_id == ""
        assert out.raw["Extra"] == "x"

    def test_failed_event_reasons_causal_order(self):
        cfn = MagicMock()
        cfn.get_paginator.return_value.paginate.return_value = [
            {
                "StackEvents": [
                    {"LogicalResourceId": "s", "ResourceStatus": "ROLLBACK_IN_PROGRESS"},
                    {"LogicalResourceId": "Instance", "ResourceStatus": "CREATE_FAILED",
                     "ResourceStatusReason": "Resource creation cancelled"},
                    {"LogicalResourceId": "KeyPair", "ResourceStatus": "CREATE_FAILED",
                     "ResourceStatusReason": "k already exists"},
                ]
            }
        ]
        assert failed_event_reasons(cfn, "s") == [
            "KeyPair: k already exists",
            "Instance: Resource creation cancelled",
        ]

    def test_failed_event_reasons_error(self):
        cfn = MagicMock()
        cfn.get_paginator.return_value.paginate.side_effect = _missing()
        assert failed_event_reasons(cfn, "s") == []

    def test_validate_template_body(self):
        cfn = MagicMock()
        cfn.validate_template.return_value = {"Capabilities": ["CAPABILITY_IAM"]}
        assert validate_template_body(cfn, "body") == ["CAPABILITY_IAM"]

    def test_validate_template_rejected(self):
        cfn = MagicMock()
        cfn.validate_template.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "Template format error"}},
            "ValidateTemplate",
        )
        with pytest.raises(ValueError, match="Template format error"):
            validate_template_body(cfn, "body")


# ── submit_stack ─────────────────────────────────────────────────────


class TestSubmitStack:
    def test_create_when_absent(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = _missing()
        assert submit_stack(cfn, "s", "body", tags={"b": "2", "a": "1"}) == "create"
        kwargs = cfn.create_stack.call_args.kwargs
        assert kwargs["Tags"] == [{"Key": "a", "Value": "1"}, {"Key": "b", "Value": "2"}]
        assert "Capabilities" not in kwargs

    def test_update_when_complete(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("CREATE_COMPLETE")
        assert submit_stack(cfn, "s", "body", capabilities=["CAPABILITY_IAM"]) == "update"
        assert cfn.update_stack.call_args.kwargs["Capabilities"] == ["CAPABILITY_IAM"]
        cfn.create_stack.assert_not_called()

    def test_noop(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("UPDATE_COMPLETE")
        cfn.update_stack.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "No updates are to be performed."}},
            "UpdateStack",
        )
        assert submit_stack(cfn, "s", "body") == "noop"

    def test_update_error(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("UPDATE_COMPLETE")
        cfn.update_stack.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "bad property"}}, "UpdateStack"
        )
        with pytest.raises(RuntimeError, match="bad property"):
            submit_stack(cfn, "s", "body")

    def test_busy(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("UPDATE_IN_PROGRESS")
        with pytest.raises(RuntimeError, match="busy"):
            submit_stack(cfn, "s", "body")

    def test_unrecoverable(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("ROLLBACK_COMPLETE")
        with pytest.raises(RuntimeError, match="delete it first"):
            submit_stack(cfn, "s", "body")
        cfn.update_stack.assert_not_called()

    def test_non_complete_status_not_updated(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("IMPORT_ROLLBACK_FAILED")
        with pytest.raises(RuntimeError, match="not a stable complete state"):
            submit_stack(cfn, "s", "body")
        cfn.update_stack.assert_not_called()

    def test_create_error(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = _missing()
        cfn.create_stack.side_effect = ClientError(
            {"Error": {"Code": "LimitExceeded", "Message": "too many stacks"}}, "CreateStack"
        )
        with pytest.raises(RuntimeError, match="too many stacks"):
            submit_stack(cfn, "s", "body")


# ── wait_for_stack ───────────────────────────────────────────────────


class TestWaitForStack:
    def test_create_success(self):
        cfn = MagicMock()
        _statuses(cfn, "CREATE_IN_PROGRESS", "CREATE_IN_PROGRESS", "CREATE_COMPLETE")
        clock = FakeClock()
        seen = []
        result = wait_for_stack(
            cfn, "s", "create", poll_interval=5, sleep=clock.sleep, clock=clock,
            on_status=lambda st, el: seen.append((st, el)),
        )
        assert result.success
        assert result.final_status == "CREATE_COMPLETE"
        assert result.elapsed_seconds == 10
        assert seen == [("CREATE_IN_PROGRESS", 0), ("CREATE_IN_PROGRESS", 5), ("CREATE_COMPLETE", 10)]

    def test_rollback_collects_reasons(self):
        cfn = MagicMock()
        _statuses(cfn, "CREATE_IN_PROGRESS", "ROLLBACK_IN_PROGRESS", "ROLLBACK_COMPLETE")
        cfn.get_paginator.return_value.paginate.return_value = [
            {"StackEvents": [{"LogicalResourceId": "Instance", "ResourceStatus": "CREATE_FAILED",
                              "ResourceStatusReason": "insufficient capacity"}]}
        ]
        clock = FakeClock()
        result = wait_for_stack(cfn, "s", "create", sleep=clock.sleep, clock=clock)
        assert not result.success
        assert result.final_status == "ROLLBACK_COMPLETE"
        assert result.failure_reasons == ["Instance: insufficient capacity"]

    def test_reasons_limited_to_current_run(self):
        cfn = MagicMock()
        _statuses(cfn, "UPDATE_ROLLBACK_COMPLETE")
        now = datetime.now(timezone.utc)
        cfn.get_paginator.return_value.paginate.return_value = [
            {"StackEvents": [
                {"LogicalResourceId": "Instance", "ResourceStatus": "UPDATE_FAILED",
                 "ResourceStatusReason": "this run", "Timestamp": now},
                {"LogicalResourceId": "KeyPair", "ResourceStatus": "CREATE_FAILED",
                 "ResourceStatusReason": "last month", "Timestamp": now - timedelta(days=30)},
            ]}
        ]
        clock = FakeClock()
        result = wait_for_stack(
            cfn, "s", "update", sleep=clock.sleep, clock=clock,
            since=now - timedelta(minutes=1),
        )
        assert result.failure_reasons == ["Instance: this run"]

    def test_update_rollback_complete_is_failure(self):
        cfn = MagicMock()
        _statuses(cfn, "UPDATE_ROLLBACK_COMPLETE")
        _no_events(cfn)
        clock = FakeClock()
        assert not wait_for_stack(cfn, "s", "update", sleep=clock.sleep, clock=clock).success

    def test_delete_missing_is_complete(self):
        cfn = MagicMock()
        _statuses(cfn, "DELETE_IN_PROGRESS", None)
        clock = FakeClock()
        result = wait_for_stack(cfn, "s", "delete", sleep=clock.sleep, clock=clock)
        assert result.success
        assert result.final_status == "DELETE_COMPLETE"

    def test_create_disappeared(self):
        cfn = MagicMock()
        _statuses(cfn, None)
        clock = FakeClock()
        result = wait_for_stack(cfn, "s", "create", sleep=clock.sleep, clock=clock)
        assert not result.success
        assert "disappeared" in result.error

    def test_timeout(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("CREATE_IN_PROGRESS")
        clock = FakeClock()
        result = wait_for_stack(
            cfn, "s", "create", poll_interval=10, timeout=30, sleep=clock.sleep, clock=clock
        )
        assert not result.success
        assert result.final_status == "CREATE_IN_PROGRESS"
        assert "Timed out after 30s" in result.error
        assert clock.sleeps == [10, 10, 10]

    def test_transient_errors_tolerated(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [
            EndpointConnectionError(endpoint_url="https://cloudformation"),
            _stack("CREATE_COMPLETE"),
        ]
        clock = FakeClock()
        assert wait_for_stack(cfn, "s", "create", sleep=clock.sleep, clock=clock).success

    def test_too_many_errors(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = ClientError(
            {"Error": {"Code": "Throttling", "Message": "Rate exceeded"}}, "DescribeStacks"
        )
        clock = FakeClock()
        result = wait_for_stack(cfn, "s", "create", sleep=clock.sleep, clock=clock)
        assert not result.success
        assert "consecutive" in result.error
        assert cfn.describe_stacks.call_count == MAX_CONSECUTIVE_FAILURES

    def test_unknown_operation(self):
        with pytest.raises(ValueError, match="Unknown stack operation"):
            wait_for_stack(MagicMock(), "s", "import")


# ── deploy_stack / delete_stack ──────────────────────────────────────


def _ctx(cfn):
    ctx = MagicMock()
    ctx.client.return_value = cfn
    return ctx


class TestDeployStack:
    def test_create_and_wait(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [
            _missing(),
            _stack("CREATE_IN_PROGRESS"),
            _stack("CREATE_COMPLETE"),
            _stack("CREATE_COMPLETE", {"InstanceId": "i-9"}),
        ]
        result = deploy_stack(_ctx(cfn), "s", "body", sleep=lambda _s: None)
        assert result.operation == "create"
        assert result.final_status == "CREATE_COMPLETE"
        assert result.outputs.instance_id == "i-9"

    def test_failure_raises_with_reasons(self):
        cfn = MagicMock()
        _statuses(cfn, None, "ROLLBACK_COMPLETE")
        cfn.get_paginator.return_value.paginate.return_value = [
            {"StackEvents": [{"LogicalResourceId": "KeyPair", "ResourceStatus": "CREATE_FAILED",
                              "ResourceStatusReason": "duplicate key"}]}
        ]
        with pytest.raises(RuntimeError, match="KeyPair: duplicate key"):
            deploy_stack(_ctx(cfn), "s", "body", sleep=lambda _s: None)

    def test_no_wait(self):
        cfn = MagicMock()
        _statuses(cfn, None, "CREATE_IN_PROGRESS")
        result = deploy_stack(_ctx(cfn), "s", "body", wait=False)
        assert result.final_status == "CREATE_IN_PROGRESS"
        assert result.outputs.instance_id == ""

    def test_noop_returns_outputs(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("UPDATE_COMPLETE", {"PublicIp": "203.0.113.9"})
        cfn.update_stack.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "No updates are to be performed."}},
            "UpdateStack",
        )
        result = deploy_stack(_ctx(cfn), "s", "body")
        assert result.operation == "noop"
        assert result.outputs.public_ip == "203.0.113.9"

    def test_failure_ignores_earlier_events(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [_stack("UPDATE_COMPLETE"), _stack("UPDATE_ROLLBACK_COMPLETE")]
        old = datetime(2020, 1, 1, tzinfo=timezone.utc)
        cfn.get_paginator.return_value.paginate.return_value = [
            {"StackEvents": [
                {"LogicalResourceId": "Instance", "ResourceStatus": "UPDATE_FAILED",
                 "ResourceStatusReason": "bad instance type", "Timestamp": datetime.now(timezone.utc)},
                {"LogicalResourceId": "KeyPair", "ResourceStatus": "CREATE_FAILED",
                 "ResourceStatusReason": "stale failure", "Timestamp": old},
            ]}
        ]
        with pytest.raises(RuntimeError) as excinfo:
            deploy_stack(_ctx(cfn), "s", "body", sleep=lambda _s: None)
        assert "bad instance type" in str(excinfo.value)
        assert "stale failure" not in str(excinfo.value)


class TestDeleteStack:
    def test_absent(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = _missing()
        assert delete_stack(_ctx(cfn), "s") is None
        cfn.delete_stack.assert_not_called()

    def test_delete_and_wait(self):
        cfn = MagicMock()
        _statuses(cfn, "CREATE_COMPLETE", "DELETE_IN_PROGRESS", None)
        assert delete_stack(_ctx(cfn), "s", sleep=lambda _s: None) == "DELETE_COMPLETE"
        cfn.delete_stack.assert_called_once_with(StackName="s")

    def test_no_wait(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("CREATE_COMPLETE")
        assert delete_stack(_ctx(cfn), "s", wait=False) == "DELETE_IN_PROGRESS"

    def test_delete_failed(self):
        cfn = MagicMock()
        _statuses(cfn, "CREATE_COMPLETE", "DELETE_FAILED")
        _no_events(cfn)
        with pytest.raises(RuntimeError, match="DELETE_FAILED"):
            delete_stack(_ctx(cfn), "s", sleep=lambda _s: None)


# ── preflight step ───────────────────────────────────────────────────


class TestCfnPreflightStep:
    def _run(self, cfn) -> PreflightReport:
        return make_cfn_preflight_step(_ctx(cfn), "s", "body")(PreflightReport())

    def test_new_stack(self):
        cfn = MagicMock()
        cfn.validate_template.return_value = {}
        cfn.describe_stacks.side_effect = _missing()
        report = self._run(cfn)
        assert report.passed
        assert report.checks[-1].details["action"] == "create"

    def test_existing_stack_updates(self):
        cfn = MagicMock()
        cfn.validate_template.return_value = {}
        cfn.describe_stacks.return_value = _stack("CREATE_COMPLETE")
        assert self._run(cfn).checks[-1].details["action"] == "update"

    def test_busy_stack(self):
        cfn = MagicMock()
        cfn.validate_template.return_value = {}
        cfn.describe_stacks.return_value = _stack("DELETE_IN_PROGRESS")
        assert self._run(cfn).failed_checks[0].id == "cfn.stack_state"

    def test_rollback_complete(self):
        cfn = MagicMock()
        cfn.validate_template.return_value = {}
        cfn.describe_stacks.return_value = _stack("ROLLBACK_COMPLETE")
        assert "keystack delete" in self._run(cfn).failed_checks[0].remediation

    def test_import_rollback_failed(self):
        cfn = MagicMock()
        cfn.validate_template.return_value = {}
        cfn.describe_stacks.return_value = _stack("IMPORT_ROLLBACK_FAILED")
        assert self._run(cfn).failed_checks[0].id == "cfn.stack_state"

    def test_template_rejected_stops(self):
        cfn = MagicMock()
        cfn.validate_template.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "Unresolved resource"}},
            "ValidateTemplate",
        )
        report = self._run(cfn)
        assert [c.id for c in report.checks] == ["cfn.validate_template"]
        assert report.checks[0].status == CheckStatus.FAIL
        cfn.describe_stacks.assert_not_called()
