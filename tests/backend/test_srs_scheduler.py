from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from memsnap.srs import (
    DAY_SCALE_POLICY,
    MINUTE_SCALE_POLICY,
    Difficulty,
    ReviewState,
    clamp_ease,
    compute_next_review,
    days_to_timedelta,
    get_policy,
    initialize,
    is_due,
)

NOW = datetime(2024, 5, 1, 9, 30, tzinfo=UTC)


def _state(*, review_count: int, interval: float, ease: float) -> ReviewState:
    return ReviewState(
        last_review_date=NOW - timedelta(days=interval),
        next_review_date=NOW,
        interval=interval,
        ease_factor=ease,
        review_count=review_count,
    )


def test_initialize_returns_fresh_state_within_warmup_window() -> None:
    """新規作成直後は review_count=0 / ease=2.5 で、ウォームアップ後に最初の復習が来る。"""

    state = initialize(NOW, MINUTE_SCALE_POLICY)

    assert state.review_count == 0
    assert state.ease_factor == 2.5
    assert state.last_review_date == NOW
    assert NOW < state.next_review_date <= NOW + timedelta(minutes=1)


def test_initialize_day_policy_uses_ten_minute_warmup() -> None:
    state = initialize(NOW, DAY_SCALE_POLICY)

    assert state.next_review_date - NOW == timedelta(minutes=10)
    assert state.interval == pytest.approx(DAY_SCALE_POLICY.initial_interval_days)


def test_initialize_without_now_uses_current_time() -> None:
    before = datetime.now(UTC)
    state = initialize()
    after = datetime.now(UTC)

    assert before <= state.last_review_date <= after
    assert state.next_review_date > state.last_review_date


def test_first_easy_review_uses_tier_one_constant_and_keeps_max_ease() -> None:
    state = initialize(NOW - timedelta(hours=1), DAY_SCALE_POLICY)

    result = compute_next_review(state, Difficulty.easy, NOW, DAY_SCALE_POLICY)

    assert result.review_count == 1
    assert result.ease_factor == 2.5
    assert result.interval == DAY_SCALE_POLICY.first_review_intervals[2]
    assert result.last_review_date == NOW
    assert result.next_review_date == NOW + days_to_timedelta(result.interval)


def test_mature_hard_review_dampens_interval() -> None:
    state = _state(review_count=5, interval=10, ease=2.0)

    result = compute_next_review(state, Difficulty.hard, NOW, DAY_SCALE_POLICY)

    assert result.ease_factor == pytest.approx(1.8)
    assert result.interval == pytest.approx(9.0)
    assert result.next_review_date == NOW + timedelta(days=9)
    assert result.review_count == 6


def test_mature_medium_and_easy_reviews() -> None:
    state = _state(review_count=3, interval=4, ease=2.0)

    medium = compute_next_review(state, Difficulty.medium, NOW, DAY_SCALE_POLICY)
    easy = compute_next_review(state, Difficulty.easy, NOW, DAY_SCALE_POLICY)

    assert medium.ease_factor == pytest.approx(1.95)
    assert medium.interval == pytest.approx(4 * 1.95 * 0.8)
    assert easy.ease_factor == pytest.approx(2.15)
    assert easy.interval == pytest.approx(4 * 2.15)


def test_is_due_boundary_is_inclusive() -> None:
    state = initialize(NOW, DAY_SCALE_POLICY)

    assert is_due(state, state.next_review_date) is True
    assert is_due(state, state.next_review_date - timedelta(milliseconds=1)) is False
    assert is_due(state, state.next_review_date + timedelta(days=3)) is True


def test_is_due_is_idempotent() -> None:
    state = initialize(NOW, DAY_SCALE_POLICY)
    moment = NOW + timedelta(hours=1)

    assert is_due(state, moment) == is_due(state, moment)
    assert state == initialize(NOW, DAY_SCALE_POLICY)


@pytest.mark.parametrize("difficulty", list(Difficulty))
@pytest.mark.parametrize("ease", [0.5, 1.3, 1.9, 2.5, 4.0])
def test_ease_factor_stays_within_bounds(difficulty: Difficulty, ease: float) -> None:
    state = _state(review_count=4, interval=6, ease=ease)

    result = compute_next_review(state, difficulty, NOW, DAY_SCALE_POLICY)

    assert DAY_SCALE_POLICY.min_ease <= result.ease_factor <= DAY_SCALE_POLICY.max_ease


def test_out_of_range_stored_ease_is_clamped_before_adjustment() -> None:
    """範囲外の保存値でも先に丸めてから増減させる（4.0 + Hard は 2.3）。"""

    state = _state(review_count=4, interval=6, ease=4.0)

    result = compute_next_review(state, Difficulty.hard, NOW, DAY_SCALE_POLICY)

    assert result.ease_factor == pytest.approx(2.3)


@pytest.mark.parametrize("review_count", [0, 1, 2, 5, 12])
@pytest.mark.parametrize("policy", [DAY_SCALE_POLICY, MINUTE_SCALE_POLICY], ids=["day", "minute"])
def test_hard_medium_easy_intervals_are_ordered(review_count: int, policy) -> None:
    state = _state(review_count=review_count, interval=3, ease=1.6)

    hard, medium, easy = (
        compute_next_review(state, difficulty, NOW, policy)
        for difficulty in (Difficulty.hard, Difficulty.medium, Difficulty.easy)
    )

    assert hard.interval <= medium.interval <= easy.interval


@pytest.mark.parametrize("difficulty", list(Difficulty))
def test_next_review_date_is_strictly_after_now(difficulty: Difficulty) -> None:
    state = _state(review_count=9, interval=0.0, ease=1.3)

    result = compute_next_review(state, difficulty, NOW, DAY_SCALE_POLICY)

    assert result.next_review_date > NOW
    assert result.interval >= DAY_SCALE_POLICY.min_interval_days


def test_tier_boundary_between_second_review_and_mature_formula() -> None:
    """review_count=1 は固定テーブル、2 からは interval*ease の式に切り替わる。"""

    second = compute_next_review(
        _state(review_count=1, interval=1.0, ease=2.5), Difficulty.easy, NOW, DAY_SCALE_POLICY
    )
    mature = compute_next_review(
        _state(review_count=2, interval=5.0, ease=2.5), Difficulty.easy, NOW, DAY_SCALE_POLICY
    )

    assert second.interval == DAY_SCALE_POLICY.second_review_intervals[2]
    assert mature.interval == pytest.approx(5.0 * 2.5)


def test_review_count_increments_on_every_review() -> None:
    state = initialize(NOW, DAY_SCALE_POLICY)
    moment = NOW
    for expected in range(1, 6):
        moment = max(moment, state.next_review_date)
        state = compute_next_review(state, Difficulty.medium, moment, DAY_SCALE_POLICY)
        assert state.review_count == expected


def test_minute_policy_offsets_are_exact() -> None:
    state = initialize(NOW, MINUTE_SCALE_POLICY)

    first = compute_next_review(state, Difficulty.medium, NOW, MINUTE_SCALE_POLICY)
    second = compute_next_review(first, Difficulty.easy, NOW, MINUTE_SCALE_POLICY)

    assert first.next_review_date - NOW == timedelta(minutes=5)
    assert second.next_review_date - NOW == timedelta(minutes=30)


def test_compute_next_review_accepts_string_difficulty() -> None:
    state = initialize(NOW, DAY_SCALE_POLICY)

    result = compute_next_review(state, "hard", NOW, DAY_SCALE_POLICY)  # type: ignore[arg-type]

    assert result.interval == DAY_SCALE_POLICY.first_review_intervals[0]


def test_unknown_difficulty_is_rejected() -> None:
    with pytest.raises(ValueError):
        compute_next_review(initialize(NOW), "impossible", NOW)  # type: ignore[arg-type]


def test_compute_next_review_does_not_mutate_input() -> None:
    state = _state(review_count=3, interval=2, ease=2.0)
    snapshot = replace(state)

    compute_next_review(state, Difficulty.easy, NOW, DAY_SCALE_POLICY)

    assert state == snapshot


def test_clamp_ease_and_policy_lookup() -> None:
    assert clamp_ease(0.1) == 1.3
    assert clamp_ease(9.0) == 2.5
    assert clamp_ease(2.0) == 2.0
    assert get_policy("minute") is MINUTE_SCALE_POLICY
    with pytest.raises(ValueError):
        get_policy("hour")


@pytest.mark.parametrize("difficulty, index", [(Difficulty.hard, 0), (Difficulty.medium, 1), (Difficulty.easy, 2)])
@pytest.mark.parametrize("policy", [DAY_SCALE_POLICY, MINUTE_SCALE_POLICY], ids=["day", "minute"])
def test_first_review_ignores_stored_interval_and_ease(difficulty: Difficulty, index: int, policy) -> None:
    """review_count=0 は保存済みの interval/ease に関係なくテーブル値を使う。"""

    state = _state(review_count=0, interval=40, ease=1.3)

    result = compute_next_review(state, difficulty, NOW, policy)

    assert result.interval == policy.first_review_intervals[index]
    assert result.next_review_date == NOW + days_to_timedelta(policy.first_review_intervals[index])


def test_long_easy_streak_is_capped_and_stays_representable() -> None:
    """Easy を続けても間隔は max_interval_days で頭打ちになり、日時が溢れない。"""

    state = initialize(NOW, DAY_SCALE_POLICY)
    moment = NOW
    for _ in range(40):
        moment = max(moment, state.next_review_date)
        state = compute_next_review(state, Difficulty.easy, moment, DAY_SCALE_POLICY)
        assert state.interval <= DAY_SCALE_POLICY.max_interval_days
        assert state.next_review_date > moment

    assert state.review_count == 40
    assert state.interval == DAY_SCALE_POLICY.max_interval_days


def test_mature_cap_keeps_difficulty_order() -> None:
    state = _state(review_count=6, interval=DAY_SCALE_POLICY.max_interval_days, ease=2.5)

    hard, medium, easy = (
        compute_next_review(state, difficulty, NOW, DAY_SCALE_POLICY)
        for difficulty in (Difficulty.hard, Difficulty.medium, Difficulty.easy)
    )

    assert hard.interval <= medium.interval <= easy.interval == DAY_SCALE_POLICY.max_interval_days


def test_custom_cap_applies_to_mature_intervals() -> None:
    policy = replace(DAY_SCALE_POLICY, max_interval_days=30.0)

    result = compute_next_review(_state(review_count=4, interval=20, ease=2.5), Difficulty.easy, NOW, policy)

    assert result.interval == 30.0
    assert result.next_review_date == NOW + timedelta(days=30)


def test_sub_millisecond_interval_rounds_up_to_one_millisecond() -> None:
    assert days_to_timedelta(1e-10) == timedelta(milliseconds=1)
    assert days_to_timedelta(0) == timedelta(0)
    assert days_to_timedelta(1.0) == timedelta(days=1)
