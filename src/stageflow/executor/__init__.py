"""Task executors.

The TaskExecutor protocol is the only view the orchestrator has of the
collaborator that performs a stage's work. HttpTaskExecutor delegates
to a remote executor service.
"""
