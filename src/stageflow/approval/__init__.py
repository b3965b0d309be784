"""Approval gates for steps that need an external decision."""

from stageflow.approval.gate import ApprovalGate, ApprovalHandler, ApprovalPolicy
from stageflow.approval.queue import (
    ApprovalNotFoundError,
    ApprovalQueue,
    ApprovalRequest,
)

__all__ = [
    "ApprovalGate",
    "ApprovalHandler",
    "ApprovalPolicy",
    "ApprovalNotFoundError",
    "ApprovalQueue",
    "ApprovalRequest",
]
