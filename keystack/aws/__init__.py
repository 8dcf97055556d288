"""AWS service interactions (STS, EC2, CloudFormation)."""

from keystack.aws.cloudformation import (
    COMPLETE_STATUSES,
    FAILED_STATUSES,
    IN_PROGRESS_STATUSES,
    UNRECOVERABLE_STATUSES,
    DeployResult,
    StackOutputs,
    WaitResult,
    delete_stack,
    deploy_stack,
    derive_stack_name,
    describe_stack_status,
    get_stack_outputs,
    make_cfn_preflight_step,
    submit_stack,
    validate_stack_name,
    validate_template_body,
    wait_for_stack,
)
from keystack.aws.context import (
    AWSContext,
    resolve_profile,
    resolve_region,
    split_availability_zone,
)
from keystack.aws.ec2 import (
    find_key_pair,
    key_pair_conflict,
    make_ec2_preflight_step,
)

__all__ = [
    "AWSContext",
    "COMPLETE_STATUSES",
    "DeployResult",
    "FAILED_STATUSES",
    "IN_PROGRESS_STATUSES",
    "StackOutputs",
    "UNRECOVERABLE_STATUSES",
    "WaitResult",
    "delete_stack",
    "deploy_stack",
    "derive_stack_name",
    "describe_stack_status",
    "find_key_pair",
    "get_stack_outputs",
    "key_pair_conflict",
    "make_cfn_preflight_step",
    "make_ec2_preflight_step",
    "resolve_profile",
    "resolve_region",
    "split_availability_zone",
    "submit_stack",
    "validate_stack_name",
    "validate_template_body",
    "wait_for_stack",
]
