from transfer.models import TransferDirection, TransferState
from transfer.progress import ProgressSampler, SpeedTracker


def _state(size: int) -> TransferState:
    return TransferState(
        connection_id="c1",
        file_id="f1",
        file_name="a.bin",
        direction=TransferDirection.RECEIVING,
        expected_size=size,
    )


def test_speed_over_window():
    tracker = SpeedTracker(window=2.0)
    tracker.record(0, now=10.0)
    tracker.record(1000, now=10.5)
    tracker.record(1000, now=11.0)
    assert tracker.get_speed() == 2000.0


def test_old_samples_leave_the_window():
    tracker = SpeedTracker(window=1.0)
    tracker.record(5000, now=0.0)
    tracker.record(100, now=5.0)
    tracker.record(100, now=5.5)
    assert tracker.get_speed() == 200.0


def test_single_sample_has_no_speed():
    tracker = SpeedTracker()
    tracker.record(100, now=1.0)
    assert tracker.get_speed() == 0.0


def test_sampler_is_rate_limited():
    state = _state(1000)
    sampler = ProgressSampler(interval=60.0)
    state.bytes_transferred = 500
    assert sampler.record(state, 500) is False
    assert state.progress_percent == 0.0
    assert sampler.samples_taken == 0


def test_sampler_fills_advisory_fields():
    state = _state(1000)
    sampler = ProgressSampler(interval=0.0)
    state.bytes_transferred = 250
    assert sampler.record(state, 250) is True
    assert state.progress_percent == 25.0
    assert sampler.samples_taken == 1
