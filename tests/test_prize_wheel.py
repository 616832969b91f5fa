import random

import pytest

from conftest import make_segments
from prize_wheel import (
    InvalidSegmentSet,
    Segment,
    SegmentKind,
    SegmentSet,
    SpinController,
    SpinOutcome,
    SpinState,
    TimerScheduler,
    plan_rotation,
    select_segment,
)


# ----------------------------------------------------------------------
# SegmentSet
# ----------------------------------------------------------------------

def test_from_records_renumbers_order_from_zero():
    segments = SegmentSet.from_records([
        {'id': 'b', 'title': 'Coffee', 'type': 'prize', 'probability': 10, 'order': 5},
        {'id': 'a', 'title': 'Thanks', 'type': 'no-prize', 'probability': 30, 'order': 1},
    ])
    assert [s.title for s in segments] == ['Thanks', 'Coffee']
    assert [s.order for s in segments] == [0, 1]
    assert segments[1].is_prize
    assert segments.total_weight == 40


def test_segment_set_rejects_gaps_in_order():
    with pytest.raises(InvalidSegmentSet):
        SegmentSet([Segment(id='1', title='A', kind=SegmentKind.PRIZE, weight=1, order=1)])


@pytest.mark.parametrize('segments', [
    SegmentSet([]),
    make_segments(('A', 'prize', 0), ('B', 'no-prize', 0)),
    make_segments(('A', 'prize', 5), ('B', 'no-prize', -1)),
])
def test_validate_rejects_unspinnable_sets(segments):
    with pytest.raises(InvalidSegmentSet):
        segments.validate()


# ----------------------------------------------------------------------
# Weighted selection
# ----------------------------------------------------------------------

def test_select_follows_cumulative_weights(dessert_wheel):
    assert select_segment(dessert_wheel, lambda: 0.1).title == 'Dessert'
    assert select_segment(dessert_wheel, lambda: 0.5).title == 'Thanks'


def test_select_boundary_goes_to_earlier_segment():
    segments = make_segments(('Dessert', 'prize', 25), ('Thanks', 'no-prize', 75))
    # r == 25 exactly: the running total of the first segment reaches it
    assert select_segment(segments, lambda: 0.25).title == 'Dessert'


def test_select_zero_returns_first_weighted_segment():
    segments = make_segments(('Nothing', 'no-prize', 0), ('Coffee', 'prize', 10), ('Thanks', 'no-prize', 5))
    assert select_segment(segments, lambda: 0.0).title == 'Coffee'


def test_select_near_one_returns_last_segment():
    segments = make_segments(('A', 'prize', 1), ('B', 'no-prize', 1), ('C', 'prize', 1))
    assert select_segment(segments, lambda: 0.999999).title == 'C'


def test_select_never_raises_when_random_overshoots(dessert_wheel):
    assert select_segment(dessert_wheel, lambda: 1.0000001).title == 'Thanks'


def test_select_rejects_empty_set():
    with pytest.raises(InvalidSegmentSet):
        select_segment(SegmentSet([]), lambda: 0.5)


def test_select_frequencies_match_weights():
    segments = make_segments(('Drink', 'prize', 25), ('Thanks', 'no-prize', 50), ('Dessert', 'prize', 25))
    rng = random.Random(1234)
    draws = 20000
    counts = {}
    for _ in range(draws):
        title = select_segment(segments, rng.random).title
        counts[title] = counts.get(title, 0) + 1

    assert counts['Drink'] / draws == pytest.approx(0.25, abs=0.02)
    assert counts['Thanks'] / draws == pytest.approx(0.50, abs=0.02)
    assert counts['Dessert'] / draws == pytest.approx(0.25, abs=0.02)


# ----------------------------------------------------------------------
# Rotation planning
# ----------------------------------------------------------------------

def test_plan_two_segments_from_rest():
    rotation = plan_rotation(0, 0, 2)
    assert rotation % 360 == pytest.approx(270)
    assert rotation >= 1800 + 270
    assert rotation == pytest.approx(2070)


def test_plan_adds_a_turn_when_four_are_not_enough():
    # 260 to the next turn + 4 turns + 45 is short of 1800
    rotation = plan_rotation(100, 3, 4)
    assert rotation == pytest.approx(2205)
    assert rotation - 100 >= 1800


@pytest.mark.parametrize('count', [1, 2, 3, 6, 7, 12])
def test_plan_lands_on_segment_center(count):
    for index in range(count):
        for current in (0, 45.5, 359, 2070, 12345.25):
            rotation = plan_rotation(current, index, count)
            expected = (360 - (index * 360 / count + 180 / count)) % 360
            assert rotation % 360 == pytest.approx(expected, abs=1e-6)
            assert rotation - current >= 1800


def test_plan_is_strictly_increasing_over_many_spins():
    rng = random.Random(7)
    rotation = 0.0
    for _ in range(200):
        next_rotation = plan_rotation(rotation, rng.randrange(8), 8)
        assert next_rotation > rotation
        rotation = next_rotation


def test_plan_jitter_stays_inside_segment():
    span = 180
    center = plan_rotation(0, 0, 2)
    for jitter in (-1.0, -0.3, 0.6, 1.0, 5.0):
        offset = plan_rotation(0, 0, 2, jitter=jitter) - center
        assert abs(offset) < span / 2


@pytest.mark.parametrize('index, count', [(2, 2), (-1, 3), (0, 0)])
def test_plan_rejects_invalid_arguments(index, count):
    with pytest.raises(ValueError):
        plan_rotation(0, index, count)


# ----------------------------------------------------------------------
# SpinController
# ----------------------------------------------------------------------

def test_spin_picks_outcome_at_start(dessert_wheel, manual_scheduler):
    controller = SpinController(dessert_wheel, scheduler=manual_scheduler, random_unit=lambda: 0.1)
    future = controller.spin()

    assert controller.state == SpinState.SPINNING
    assert not future.done()
    assert controller.current_outcome.segment.title == 'Dessert'
    assert controller.current_outcome.is_winner
    assert controller.rotation == pytest.approx(2070)

    manual_scheduler.run_all()
    outcome = future.result(timeout=0)
    assert outcome == controller.current_outcome
    assert controller.state == SpinState.IDLE


def test_spin_uses_configured_duration(dessert_wheel, manual_scheduler):
    controller = SpinController(dessert_wheel, scheduler=manual_scheduler, duration_seconds=4.5)
    controller.spin()
    assert manual_scheduler.calls[0].delay_seconds == 4.5


def test_second_spin_while_spinning_is_rejected(dessert_wheel, manual_scheduler):
    draws = iter([0.1, 0.9])
    controller = SpinController(dessert_wheel, scheduler=manual_scheduler, random_unit=lambda: next(draws))
    first = controller.spin()
    outcome = controller.current_outcome

    assert controller.spin() is None
    assert controller.current_outcome is outcome
    assert len(manual_scheduler.calls) == 1

    manual_scheduler.run_all()
    assert first.result(timeout=0).segment.title == 'Dessert'


def test_sequential_spins_rotate_forward(dessert_wheel, manual_scheduler):
    controller = SpinController(dessert_wheel, scheduler=manual_scheduler)
    rotations = []
    for _ in range(5):
        future = controller.spin()
        manual_scheduler.run_all()
        rotations.append(future.result(timeout=0).final_rotation)

    assert rotations == sorted(rotations)
    assert len(set(rotations)) == 5
    assert controller.total_spins == 5


def test_invalid_segments_fail_before_spinning(manual_scheduler):
    controller = SpinController(make_segments(('A', 'prize', 0)), scheduler=manual_scheduler)
    with pytest.raises(InvalidSegmentSet):
        controller.spin()
    assert controller.state == SpinState.IDLE
    assert controller.rotation == 0
    assert manual_scheduler.calls == []


class BrokenScheduler:
    def schedule(self, delay_seconds, callback):
        raise RuntimeError("can't start new thread")


def test_scheduling_failure_leaves_wheel_idle(dessert_wheel):
    controller = SpinController(dessert_wheel, scheduler=BrokenScheduler())
    with pytest.raises(RuntimeError):
        controller.spin()

    assert controller.state == SpinState.IDLE
    assert controller.rotation == 0
    assert controller.total_spins == 0
    assert controller.current_outcome is None


def test_cancel_disposes_pending_completion(dessert_wheel, manual_scheduler):
    controller = SpinController(dessert_wheel, scheduler=manual_scheduler)
    future = controller.spin()

    assert controller.cancel() is True
    assert future.cancelled()
    assert manual_scheduler.calls[0].cancelled
    assert controller.state == SpinState.IDLE
    assert controller.cancel() is False


def test_late_completion_after_cancel_is_ignored(dessert_wheel, manual_scheduler):
    controller = SpinController(dessert_wheel, scheduler=manual_scheduler)
    future = controller.spin()
    controller.cancel()

    manual_scheduler.calls[0].run()
    assert future.cancelled()
    assert controller.state == SpinState.IDLE


def test_timer_scheduler_releases_outcome(dessert_wheel):
    controller = SpinController(dessert_wheel, scheduler=TimerScheduler(), duration_seconds=0.01)
    future = controller.spin()
    assert isinstance(future.result(timeout=5), SpinOutcome)
    assert controller.state == SpinState.IDLE
