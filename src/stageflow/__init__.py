"""Multi-stage agent workflow orchestration.

This package drives a request through a fixed sequence of stages
(intake → research → design → build → verify → review → release →
publish), providing:
- Run state with a cursor over pre-allocated steps
- Executor calls with timeouts, bounded retries and failure classification
- Approval gates for steps that need a human decision
- Quality-driven rework loops bounded by an iteration budget
- Progress events, Prometheus metrics and an HTTP service hosting runs
"""
