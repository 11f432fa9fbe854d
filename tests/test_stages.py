from pipeline.stages import (
    FIRST_STAGE, PROCESSING_STAGES, Stage, is_terminal, requires_account, stage_position, successor,
)


def test_pipeline_order():
    order = [FIRST_STAGE]
    while successor(order[-1]) is not None:
        order.append(successor(order[-1]))
    assert order == [Stage.QUERY, Stage.CLASSIFY, Stage.EXTRACT, Stage.COMPLETED]


def test_every_stage_has_a_successor_entry():
    for stage in Stage:
        successor(stage)
    assert successor(Stage.FAILED) is None


def test_accepts_stored_strings():
    assert successor("classify") == Stage.EXTRACT
    assert requires_account("query")
    assert not requires_account("extract")


def test_positions_are_strictly_increasing_and_failed_is_last():
    positions = [stage_position(s) for s in PROCESSING_STAGES + (Stage.COMPLETED,)]
    assert positions == sorted(set(positions))
    assert stage_position(Stage.FAILED) > stage_position(Stage.COMPLETED)


def test_terminal_stages():
    assert is_terminal(Stage.COMPLETED) and is_terminal(Stage.FAILED)
    assert not any(is_terminal(s) for s in PROCESSING_STAGES)
