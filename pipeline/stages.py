"""
Fixed stage order of the report pipeline.

query -> classify -> extract -> completed, with ``failed`` as an absorbing
terminal outside the sequence.
"""
from django.db import models


class Stage(models.TextChoices):
    QUERY = "query", "Query"
    CLASSIFY = "classify", "Classify"
    EXTRACT = "extract", "Extract"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


FIRST_STAGE = Stage.QUERY

# Stages that have a Job and an executor behind them
PROCESSING_STAGES = (Stage.QUERY, Stage.CLASSIFY, Stage.EXTRACT)

# Only the automation stage drives a browser account
ACCOUNT_STAGES = frozenset({Stage.QUERY})

_SUCCESSORS = {
    Stage.QUERY: Stage.CLASSIFY,
    Stage.CLASSIFY: Stage.EXTRACT,
    Stage.EXTRACT: Stage.COMPLETED,
    Stage.COMPLETED: None,
    Stage.FAILED: None,
}

_ORDER = {stage: index for index, stage in enumerate(PROCESSING_STAGES + (Stage.COMPLETED,))}

if set(_SUCCESSORS) != set(Stage):
    missing = sorted(set(Stage) - set(_SUCCESSORS))
    raise RuntimeError(f"Stage successor table is missing {missing}")


def successor(stage):
    """Return the stage after ``stage``, or None for terminal stages."""
    return _SUCCESSORS[Stage(stage)]


def requires_account(stage) -> bool:
    return Stage(stage) in ACCOUNT_STAGES


def stage_position(stage) -> int:
    """Position in the pipeline order; ``failed`` sorts after everything."""
    stage = Stage(stage)
    if stage == Stage.FAILED:
        return len(_ORDER)
    return _ORDER[stage]


def is_terminal(stage) -> bool:
    return Stage(stage) in (Stage.COMPLETED, Stage.FAILED)
