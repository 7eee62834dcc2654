"""状态机测试：只能前进，终态不可离开。"""

import pytest

from framestep.core import FailureReason, PipelineState
from framestep.pipeline import PipelineStateMachine


def test_forward_transitions() -> None:
    machine = PipelineStateMachine()
    for state in (
        PipelineState.METADATA_RESOLVED,
        PipelineState.CAPTURING,
        PipelineState.CAPTURING,
        PipelineState.FINALIZING,
        PipelineState.COMPLETE,
    ):
        machine.advance(state)

    assert machine.is_terminal
    assert machine.history[-1] is PipelineState.COMPLETE
    assert machine.history.count(PipelineState.CAPTURING) == 1


@pytest.mark.parametrize("target", [PipelineState.CAPTURING, PipelineState.COMPLETE, PipelineState.IDLE])
def test_illegal_transition_from_idle(target: PipelineState) -> None:
    with pytest.raises(RuntimeError):
        PipelineStateMachine().advance(target)


def test_fail_records_reason() -> None:
    machine = PipelineStateMachine()
    machine.advance(PipelineState.METADATA_RESOLVED)
    machine.fail(FailureReason(kind="SeekTimeout", message="stalled"))

    assert machine.state is PipelineState.FAILED
    assert machine.failure.kind == "SeekTimeout"
    with pytest.raises(RuntimeError):
        machine.advance(PipelineState.CAPTURING)
    with pytest.raises(RuntimeError):
        machine.fail(FailureReason(kind="Cancelled", message=""))


def test_failed_only_through_fail() -> None:
    with pytest.raises(RuntimeError):
        PipelineStateMachine().advance(PipelineState.FAILED)
