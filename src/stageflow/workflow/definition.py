"""Pipeline definitions.

A PipelineDefinition is the ordered list of stage slots a run executes,
plus the stage a quality failure rewinds to and the rewind budget. It
is validated once, at construction: a malformed definition is a
programmer error and raises pydantic.ValidationError.
"""

from typing import List

from pydantic import BaseModel, Field, model_validator

from stageflow.state.models import Stage, StageSpec, stage_index


class PipelineDefinition(BaseModel):
    """Ordered stage slots for a pipeline run.

    Attributes:
        stages: Stage specs in execution order.
        rework_stage: Stage the cursor rewinds to after a quality failure.
        max_iterations: Maximum number of rewinds per run.

    Example:
        >>> definition = PipelineDefinition(
        ...     stages=[
        ...         StageSpec(stage=Stage.BUILD, executor_name="Implementer"),
        ...         StageSpec(stage=Stage.VERIFY, executor_name="Tester"),
        ...     ],
        ...     rework_stage=Stage.BUILD,
        ...     max_iterations=1,
        ... )
    """

    stages: List[StageSpec] = Field(..., min_length=1)
    rework_stage: Stage = Stage.BUILD
    max_iterations: int = Field(default=3, ge=0)

    @model_validator(mode="after")
    def validate_stage_order(self) -> "PipelineDefinition":
        """Require strictly increasing stage order and a rework stage that
        sits in the pipeline no later than its first quality check.
        """
        ranks = [stage_index(spec.stage) for spec in self.stages]
        for previous, current in zip(ranks, ranks[1:]):
            if current <= previous:
                raise ValueError(
                    "stages must be unique and listed in stage order"
                )
        if self.rework_stage not in {spec.stage for spec in self.stages}:
            raise ValueError(
                f"rework_stage {self.rework_stage.value} is not part of the pipeline"
            )
        checks = [
            stage_index(spec.stage)
            for spec in self.stages
            if spec.stage in (Stage.VERIFY, Stage.REVIEW)
        ]
        if checks and stage_index(self.rework_stage) > checks[0]:
            raise ValueError(
                f"rework_stage {self.rework_stage.value} must not come after "
                "the first verify or review stage"
            )
        return self


def default_pipeline(
    require_approval: bool = False,
    max_iterations: int = 3,
) -> PipelineDefinition:
    """Build the standard eight-stage pipeline.

    When ``require_approval`` is set, the design and release stages wait
    for an external approval before the run continues.

    Args:
        require_approval: Gate design and release on approval.
        max_iterations: Rewind budget.

    Returns:
        PipelineDefinition rewinding to the build stage.
    """
    return PipelineDefinition(
        stages=[
            StageSpec(stage=Stage.INTAKE, executor_name="Triage"),
            StageSpec(stage=Stage.RESEARCH, executor_name="Researcher"),
            StageSpec(
                stage=Stage.DESIGN,
                executor_name="Architect",
                requires_approval=require_approval,
            ),
            StageSpec(stage=Stage.BUILD, executor_name="Implementer"),
            StageSpec(stage=Stage.VERIFY, executor_name="Tester"),
            StageSpec(stage=Stage.REVIEW, executor_name="Reviewer"),
            StageSpec(
                stage=Stage.RELEASE,
                executor_name="DevOps",
                requires_approval=require_approval,
            ),
            StageSpec(stage=Stage.PUBLISH, executor_name="Docs"),
        ],
        rework_stage=Stage.BUILD,
        max_iterations=max_iterations,
    )
