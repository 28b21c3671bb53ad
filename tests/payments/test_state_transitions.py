import pytest

from domain.payment.entity import RefundStatus, TransactionStatus
from domain.payment.state import TransitionOutcome, allowed_sources, decide_transition


@pytest.mark.parametrize(
    "current,target,expected",
    [
        ("pending", "succeeded", TransitionOutcome.APPLIED),
        ("pending", "failed", TransitionOutcome.APPLIED),
        ("pending", "requires_action", TransitionOutcome.APPLIED),
        ("requires_action", "succeeded", TransitionOutcome.APPLIED),
        ("requires_action", "failed", TransitionOutcome.APPLIED),
        ("requires_action", "pending", TransitionOutcome.NOOP),
        ("failed", "succeeded", TransitionOutcome.APPLIED),
        ("failed", "pending", TransitionOutcome.NOOP),
        ("succeeded", "failed", TransitionOutcome.CONFLICT),
        ("succeeded", "pending", TransitionOutcome.NOOP),
        ("succeeded", "requires_action", TransitionOutcome.NOOP),
    ],
)
def test_transition_table(current, target, expected):
    assert decide_transition(current, target) is expected


@pytest.mark.parametrize("status", ["pending", "succeeded", "failed", "requires_action"])
def test_reapplying_current_status_is_noop(status):
    assert decide_transition(status, status) is TransitionOutcome.NOOP


def test_accepts_enums():
    assert decide_transition(TransactionStatus.SUCCEEDED, TransactionStatus.FAILED) is TransitionOutcome.CONFLICT
    assert decide_transition(RefundStatus.PENDING, RefundStatus.SUCCEEDED) is TransitionOutcome.APPLIED


def test_allowed_sources():
    assert allowed_sources("succeeded") == {"pending", "requires_action", "failed"}
    assert allowed_sources(TransactionStatus.FAILED) == {"pending", "requires_action"}
    assert allowed_sources("requires_action") == {"pending"}
    assert allowed_sources("pending") == frozenset()
