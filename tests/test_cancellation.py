import pytest

from visit_route_ai.cancellation import CancellationToken, PlanningCancelled


def test_token_starts_active():
    token = CancellationToken()
    assert not token.cancelled
    token.raise_if_cancelled()


def test_cancel_sets_flag():
    token = CancellationToken()
    token.cancel()
    assert token.cancelled
    with pytest.raises(PlanningCancelled):
        token.raise_if_cancelled()


def test_deadline_expires():
    token = CancellationToken(timeout=0)
    assert token.cancelled


def test_long_deadline_not_expired():
    token = CancellationToken(timeout=3600)
    assert not token.cancelled
