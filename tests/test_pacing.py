import pytest

from conftest import make_timeline
from pacing import Pacer, PacingMode, count_repeats

BURST_THEN_ONE = make_timeline(
    (0, "GET", "/a", "200"),
    (0, "GET", "/b", "200"),
    (1000, "GET", "/a", "200"),
)


def test_literal_keeps_bursts_and_gaps():
    """Test same-second events fire together and the next second waits 1s."""
    pacer = Pacer(BURST_THEN_ONE.events)

    assert pacer.delays() == [0, 1000]
    assert pacer.delay_after(2) is None


def test_literal_ratio_scales_gaps():
    timeline = make_timeline((0, "GET", "/", "200"), (3000, "GET", "/", "200"), (4000, "GET", "/", "200"))

    assert Pacer(timeline.events, ratio=2).delays() == [1500, 500]
    assert Pacer(timeline.events, ratio=0.5).delays() == [6000, 2000]


def test_scale_mode_spreads_burst():
    """Test a two-event burst is spread over its second."""
    pacer = Pacer(BURST_THEN_ONE.events, mode=PacingMode.SCALE)

    assert pacer.delays() == [500, 500]
    assert pacer.planned_sleep_ms == 1000


@pytest.mark.parametrize("burst_size", [1, 3, 4, 10])
def test_scale_mode_burst_sums_to_one_second(burst_size):
    """Test a burst of any size followed by the next second takes about one second."""
    rows = [(0, "GET", f"/{i}", "200") for i in range(burst_size)] + [(1000, "GET", "/next", "200")]
    pacer = Pacer(make_timeline(*rows).events, ratio=2, mode=PacingMode.SCALE)

    delays = pacer.delays()

    assert len(delays) == burst_size
    assert sum(delays) == pytest.approx(500, abs=burst_size)


def test_scale_mode_carries_remaining_gap():
    """Test the gap beyond the one-second window is added to the last wait."""
    timeline = make_timeline((0, "GET", "/", "200"), (0, "GET", "/", "200"), (5000, "GET", "/", "200"))

    assert Pacer(timeline.events, mode=PacingMode.SCALE).delays() == [500, 4500]


def test_skip_mode_never_waits():
    timeline = make_timeline((0, "GET", "/", "200"), (60000, "GET", "/", "200"), (61000, "GET", "/", "200"))

    assert Pacer(timeline.events, mode=PacingMode.SKIP).delays() == [0, 0]


def test_out_of_order_gap_clamped():
    """Test an unsorted log never produces a negative wait."""
    timeline = make_timeline((5000, "GET", "/", "200"), (1000, "GET", "/", "200"))

    assert Pacer(timeline.events).delays() == [0]
    assert Pacer(timeline.events, mode=PacingMode.SCALE).delays() == [0]


def test_single_event_has_no_delay():
    pacer = Pacer(make_timeline((0, "GET", "/", "200")).events)

    assert pacer.delays() == []
    assert pacer.delay_after(0) is None


def test_ratio_must_be_positive():
    with pytest.raises(ValueError):
        Pacer(BURST_THEN_ONE.events, ratio=0)


def test_count_repeats():
    assert count_repeats(BURST_THEN_ONE.events) == {0: 2, 1000: 1}
