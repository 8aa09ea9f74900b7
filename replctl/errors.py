#!/usr/bin/env python3
"""
Error taxonomy for replctl.

Low-level errors raised by the command executor propagate unchanged up to
the operation runner, which wraps them in StepFailed with the step context.
"""

from typing import Optional


class ReplctlError(Exception):
    """Base class for every error raised by replctl."""


class ConfigError(ReplctlError):
    """Topology configuration is missing or inconsistent."""


class InvalidArgument(ReplctlError):
    """Operator input rejected before anything was executed."""


class NodeConnectionError(ReplctlError, ConnectionError):
    """Node unreachable. Transient; the caller decides whether to retry."""

    def __init__(self, node: str, message: str):
        super().__init__(f"{node}: {message}")
        self.node = node


class AuthError(ReplctlError):
    """Credentials rejected by the node. Needs a credential fix."""

    def __init__(self, node: str, message: str):
        super().__init__(f"{node}: {message}")
        self.node = node


class CommandError(ReplctlError):
    """Administrative command exited non-zero."""

    def __init__(self, node: str, exit_code: int, stderr: str, command: str = ""):
        detail = stderr.strip() or "no error output"
        super().__init__(f"{node}: command failed with exit code {exit_code}: {detail}")
        self.node = node
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = command


class ParseError(ReplctlError):
    """Replication status output was not in a recognized format."""


class VerificationTimeout(ReplctlError):
    """Replication link did not reach the expected state in time."""


class RecoveryTimeout(ReplctlError):
    """Restart recovery exhausted its retry budget."""


class OperationInProgress(ReplctlError):
    """Another operation already holds the target replica."""


class SnapshotConsumed(ReplctlError):
    """A snapshot may be restored only once."""


class StepFailed(ReplctlError):
    """
    A step of an operation failed.

    Attributes:
        operation_id: Operation the step belongs to
        step: Name of the failed step
        cause: The underlying error
        last_completed: Last step that finished, or None
    """

    def __init__(
        self,
        operation_id: str,
        step: str,
        cause: Exception,
        last_completed: Optional[str] = None,
    ):
        where = last_completed or "nothing completed"
        super().__init__(
            f"operation {operation_id} failed at step '{step}' "
            f"(last completed: {where}): {type(cause).__name__}: {cause}"
        )
        self.operation_id = operation_id
        self.step = step
        self.cause = cause
        self.last_completed = last_completed

    @property
    def is_timeout(self) -> bool:
        return isinstance(self.cause, VerificationTimeout)
