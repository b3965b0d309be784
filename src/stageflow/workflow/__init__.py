"""Pipeline definitions and the workflow orchestrator.

- PipelineDefinition / default_pipeline: ordered stage slots, rework
  stage and iteration budget
- build_stage_input: deterministic stage inputs from earlier results
- WorkflowOrchestrator: drives a run to a terminal status
"""

from stageflow.workflow.definition import PipelineDefinition, default_pipeline
from stageflow.workflow.inputs import STAGE_DEPENDENCIES, build_stage_input
from stageflow.workflow.orchestrator import WorkflowOrchestrator

__all__ = [
    "PipelineDefinition",
    "default_pipeline",
    "STAGE_DEPENDENCIES",
    "build_stage_input",
    "WorkflowOrchestrator",
]
