"""Stage input construction.

Each stage's input is a deterministic function of the original request
and the results of the earlier stages it depends on. The dependency map
always points backwards in stage order, so the data flow is acyclic
even though the step sequence can loop through a rewind.
"""

import json
from typing import Dict, Tuple

from stageflow.state.models import RunState, Stage


STAGE_DEPENDENCIES: Dict[Stage, Tuple[Stage, ...]] = {
    Stage.INTAKE: (),
    Stage.RESEARCH: (Stage.INTAKE,),
    Stage.DESIGN: (Stage.INTAKE, Stage.RESEARCH),
    Stage.BUILD: (Stage.RESEARCH, Stage.DESIGN),
    Stage.VERIFY: (Stage.BUILD,),
    Stage.REVIEW: (Stage.BUILD, Stage.VERIFY),
    Stage.RELEASE: (Stage.BUILD, Stage.REVIEW),
    Stage.PUBLISH: (Stage.DESIGN, Stage.BUILD, Stage.VERIFY, Stage.RELEASE),
}


def build_stage_input(stage: Stage, state: RunState) -> str:
    """Serialize the input for a stage.

    Only dependencies that already have a result are included. The JSON
    is rendered with sorted keys so the same state always produces the
    same input.

    Args:
        stage: The stage about to run.
        state: Current run state.

    Returns:
        JSON document with the stage, request, iteration and inputs.
    """
    inputs = {
        dependency.value: state.results[dependency]
        for dependency in STAGE_DEPENDENCIES[Stage(stage)]
        if dependency in state.results
    }
    document = {
        "stage": Stage(stage).value,
        "request": state.original_request,
        "iteration": state.iteration_count,
        "inputs": inputs,
    }
    return json.dumps(document, sort_keys=True, default=str, ensure_ascii=False)
