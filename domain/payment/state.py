"""
交易/退款状态转换表

所有状态写入（同步处理结果与渠道回调）都经过这里，两条路径在此收敛：
- pending 可以转到任何其他状态
- requires_action 只能前进到 succeeded / failed，回退到 pending 视为 no-op
- succeeded 是终态；收到 failed 时返回 CONFLICT，不写入
- failed 收到迟到的 succeeded 时允许转换（渠道最终确认扣款成功）
- 重复应用当前状态为 no-op
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

from .entity import RefundStatus, TransactionStatus


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    CONFLICT = "conflict"


_PENDING = "pending"
_REQUIRES_ACTION = "requires_action"
_SUCCEEDED = "succeeded"
_FAILED = "failed"

# (current, target) -> outcome; pairs not listed are no-ops
_TABLE: dict[tuple[str, str], TransitionOutcome] = {
    (_PENDING, _SUCCEEDED): TransitionOutcome.APPLIED,
    (_PENDING, _FAILED): TransitionOutcome.APPLIED,
    (_PENDING, _REQUIRES_ACTION): TransitionOutcome.APPLIED,
    (_REQUIRES_ACTION, _SUCCEEDED): TransitionOutcome.APPLIED,
    (_REQUIRES_ACTION, _FAILED): TransitionOutcome.APPLIED,
    (_FAILED, _SUCCEEDED): TransitionOutcome.APPLIED,
    (_SUCCEEDED, _FAILED): TransitionOutcome.CONFLICT,
}

Status = Union[TransactionStatus, RefundStatus, str]


def _value(status: Status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def decide_transition(current: Status, target: Status) -> TransitionOutcome:
    """根据转换表判断 current -> target 的结果"""
    return _TABLE.get((_value(current), _value(target)), TransitionOutcome.NOOP)


def allowed_sources(target: Status) -> frozenset[str]:
    """允许转换到 target 的源状态集合，用于 UPDATE ... WHERE status IN (...)"""
    t = _value(target)
    return frozenset(
        src for (src, dst), outcome in _TABLE.items()
        if dst == t and outcome is TransitionOutcome.APPLIED
    )


E = TypeVar("E")


@dataclass
class TransitionResult(Generic[E]):
    """一次状态写入的结果：是否生效、之前的状态以及写入后的实体"""

    outcome: TransitionOutcome
    previous_status: Optional[str]
    entity: Optional[E]

    @property
    def applied(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED

    @property
    def conflict(self) -> bool:
        return self.outcome is TransitionOutcome.CONFLICT
