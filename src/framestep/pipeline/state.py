"""流水线状态机：只能前进，任何非终态都可以进入 FAILED。"""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional

from framestep.core import FailureReason, PipelineState

_TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.METADATA_RESOLVED}),
    PipelineState.METADATA_RESOLVED: frozenset({PipelineState.CAPTURING}),
    PipelineState.CAPTURING: frozenset({PipelineState.CAPTURING, PipelineState.FINALIZING}),
    PipelineState.FINALIZING: frozenset({PipelineState.COMPLETE}),
    PipelineState.COMPLETE: frozenset(),
    PipelineState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({PipelineState.COMPLETE, PipelineState.FAILED})


class PipelineStateMachine:
    """单次运行的状态记录；非法迁移抛 RuntimeError。"""

    def __init__(self) -> None:
        self._state = PipelineState.IDLE
        self._failure: Optional[FailureReason] = None
        self._history: List[PipelineState] = [PipelineState.IDLE]

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def failure(self) -> Optional[FailureReason]:
        return self._failure

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def history(self) -> List[PipelineState]:
        """按顺序记录经过的不同状态，CAPTURING 的循环只记一次。"""
        return list(self._history)

    def advance(self, target: PipelineState) -> None:
        if target is PipelineState.FAILED:
            raise RuntimeError("use fail() to enter the FAILED state")
        if target not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"illegal transition {self._state.value} -> {target.value}")
        if target is not self._state:
            self._history.append(target)
        self._state = target

    def fail(self, reason: FailureReason) -> None:
        if self.is_terminal:
            raise RuntimeError(f"cannot fail from terminal state {self._state.value}")
        self._state = PipelineState.FAILED
        self._failure = reason
        self._history.append(PipelineState.FAILED)
