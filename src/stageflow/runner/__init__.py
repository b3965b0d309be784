"""Executor call runner.

This module manages single stage calls:
- Failure classification (category and recoverable flag)
- Fatal operational error detection
- Per-attempt timeout and cancellation
- Bounded retries with capped exponential backoff
"""
