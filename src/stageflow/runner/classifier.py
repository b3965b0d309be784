"""Failure classification for task executor errors.

Two classifiers live here:

- ``classify`` maps a single executor failure to a category and a
  recoverable flag. The Retry Controller uses it to decide whether a
  call is worth retrying.
- ``is_fatal_error`` inspects an error message for operational red
  flags (authentication, permissions, filesystem, network). The
  orchestrator uses it to stop the whole pipeline, independently of
  whether the single call was recoverable.

Unrecognized failures are treated as recoverable.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class FailureCategory(str, Enum):
    """Closed set of failure categories understood by the classifier."""

    MAX_TURNS_EXCEEDED = "MaxTurnsExceeded"
    GUARDRAIL_VIOLATION = "GuardrailViolation"
    TOOL_INVOCATION_ERROR = "ToolInvocationError"
    MODEL_BEHAVIOR_ERROR = "ModelBehaviorError"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    RETRY_EXHAUSTED = "RetryExhausted"
    UNKNOWN = "Unknown"


RECOVERABLE_BY_CATEGORY = {
    FailureCategory.MAX_TURNS_EXCEEDED: False,
    FailureCategory.GUARDRAIL_VIOLATION: True,
    FailureCategory.TOOL_INVOCATION_ERROR: True,
    FailureCategory.MODEL_BEHAVIOR_ERROR: True,
    FailureCategory.TIMEOUT: True,
    FailureCategory.CANCELLED: False,
    FailureCategory.RETRY_EXHAUSTED: False,
    FailureCategory.UNKNOWN: True,
}

# Alternative spellings seen in executor error names and messages.
_CATEGORY_ALIASES = {
    "maxturnsexceeded": FailureCategory.MAX_TURNS_EXCEEDED,
    "maxturnsexceedederror": FailureCategory.MAX_TURNS_EXCEEDED,
    "guardrailviolation": FailureCategory.GUARDRAIL_VIOLATION,
    "guardrailexecutionerror": FailureCategory.GUARDRAIL_VIOLATION,
    "toolinvocationerror": FailureCategory.TOOL_INVOCATION_ERROR,
    "toolcallerror": FailureCategory.TOOL_INVOCATION_ERROR,
    "modelbehaviorerror": FailureCategory.MODEL_BEHAVIOR_ERROR,
    "timeout": FailureCategory.TIMEOUT,
    "timeouterror": FailureCategory.TIMEOUT,
    "cancelled": FailureCategory.CANCELLED,
    "cancellederror": FailureCategory.CANCELLED,
    "retryexhausted": FailureCategory.RETRY_EXHAUSTED,
}

_MESSAGE_TAG = re.compile(r"\b([A-Za-z]+(?:Error|Exceeded|Violation|Exhausted))\b")

FATAL_ERROR_PATTERNS = (
    re.compile(r"authentication failed", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
    re.compile(r"file ?system error", re.IGNORECASE),
    re.compile(r"network connection failed", re.IGNORECASE),
    re.compile(r"network (is )?unreachable", re.IGNORECASE),
)


@dataclass(frozen=True)
class FailureClassification:
    """Result of classifying one failure.

    Attributes:
        category: The matched failure category.
        recoverable: Whether retrying the call may succeed.
    """

    category: FailureCategory
    recoverable: bool


def _lookup(tag: Optional[str]) -> Optional[FailureCategory]:
    if not tag:
        return None
    return _CATEGORY_ALIASES.get(str(tag).replace("_", "").lower())


def category_for(value: Union[str, FailureCategory, None]) -> FailureCategory:
    """Resolve a category tag to a FailureCategory, UNKNOWN when unmatched."""
    if isinstance(value, FailureCategory):
        return value
    return _lookup(value) or FailureCategory.UNKNOWN


def classify(error: Union[BaseException, str, None]) -> FailureClassification:
    """Classify an executor failure.

    The category is resolved from, in order: the exception's ``category``
    attribute, the class names in its MRO, and a category tag found in
    the message text.

    Args:
        error: An exception or an error message.

    Returns:
        FailureClassification for the error.

    Example:
        >>> classify("MaxTurnsExceeded: 10 turns").recoverable
        False
        >>> classify(RuntimeError("socket closed")).category.value
        'Unknown'
    """
    category: Optional[FailureCategory] = None

    if isinstance(error, BaseException):
        category = _lookup(getattr(error, "category", None))
        if category is None:
            for klass in type(error).__mro__:
                category = _lookup(klass.__name__)
                if category is not None:
                    break
        message = str(error)
    else:
        message = error or ""

    if category is None:
        for tag in _MESSAGE_TAG.findall(message):
            category = _lookup(tag)
            if category is not None:
                break

    category = category or FailureCategory.UNKNOWN
    return FailureClassification(
        category=category,
        recoverable=RECOVERABLE_BY_CATEGORY[category],
    )


def is_fatal_error(message: Optional[str]) -> bool:
    """Check whether an error message signals an operational failure.

    Fatal errors stop the pipeline regardless of the per-call
    recoverable flag.

    Example:
        >>> is_fatal_error("401: Authentication failed for token")
        True
        >>> is_fatal_error("model returned malformed JSON")
        False
    """
    if not message:
        return False
    return any(pattern.search(message) for pattern in FATAL_ERROR_PATTERNS)
