"""Orchestration workflows (render, preflight, deploy, status, delete)."""

from keystack.workflow.deploy import (
    EXIT_AWS_FAILURE,
    EXIT_SUCCESS,
    EXIT_TOOLCHAIN,
    EXIT_VALIDATION_FAILURE,
    exit_code_for,
    prepare_inputs,
    run_delete,
    run_deploy,
    run_preflight,
    run_preflight_only,
    run_render,
    run_status,
    should_abort,
)

__all__ = [
    "EXIT_AWS_FAILURE",
    "EXIT_SUCCESS",
    "EXIT_TOOLCHAIN",
    "EXIT_VALIDATION_FAILURE",
    "exit_code_for",
    "prepare_inputs",
    "run_delete",
    "run_deploy",
    "run_preflight",
    "run_preflight_only",
    "run_render",
    "run_status",
    "should_abort",
]
