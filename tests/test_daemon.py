"""Tests for the capture state machine driven by a fake clock"""

from datetime import timedelta

import pytest

from daylapse.config import Config
from daylapse.main import DayContext, State

from .conftest import at


@pytest.fixture
def config(tmp_path):
    # One minute of video at 1 fps keeps a full simulated day to 60 frames
    return Config(
        location_name="Test Town",
        source_url="https://video.example/live",
        latitude=39.1,
        longitude=-120.0,
        resolver='direct',
        target_fps=1,
        target_video_length_sec=60,
        min_interval_sec=5,
        pre_run_min=30,
        post_run_min=45,
        work_path=str(tmp_path / 'frames'),
        output_path=str(tmp_path / 'videos'),
    )


def run_until(daemon, ctx, state, max_steps=20):
    for _ in range(max_steps):
        ctx = daemon.step(ctx)
        if ctx.state is state:
            return ctx
    raise AssertionError(f"state {state} not reached, stuck in {ctx.state}")


class TestFullDay:
    def test_day_produces_one_video(self, daemon, clock, day, grabber, encoder, storage, metrics):
        ctx = run_until(daemon, DayContext(), State.DAY_COMPLETE)

        assert ctx.date == day
        assert ctx.complete
        assert ctx.params.interval_seconds == 915
        assert ctx.params.total_frames_target == 60
        assert len(grabber.attempts) == 60
        assert grabber.attempts[0][0] == at(day, 5, 30)
        assert len(encoder.calls) == 1
        assert storage.output_path_for(day).exists()
        assert not (storage.work_path / day.isoformat()).exists()
        assert metrics.daemon_state == 'day_complete'

    def test_waits_for_window_before_capturing(self, daemon, clock, day, grabber):
        ctx = daemon.step(DayContext())
        assert ctx.state is State.WAITING_FOR_WINDOW
        assert ctx.schedule.capture_start == at(day, 5, 30)

        ctx = daemon.step(ctx)
        assert clock.now() == at(day, 5, 30)
        assert grabber.attempts == []

        ctx = daemon.step(ctx)
        assert ctx.state is State.CAPTURING

    def test_no_capture_after_complete_until_date_advances(self, daemon, clock, day, grabber):
        ctx = run_until(daemon, DayContext(), State.DAY_COMPLETE)
        attempts = len(grabber.attempts)

        ctx = daemon.step(ctx)

        assert clock.now() == at(day + timedelta(days=1), 0)
        assert len(grabber.attempts) == attempts
        assert ctx.state is State.DAY_COMPLETE

        ctx = daemon.step(ctx)

        assert ctx.date == day + timedelta(days=1)
        assert ctx.state is State.WAITING_FOR_WINDOW
        assert not ctx.complete
        assert len(grabber.attempts) == attempts

    def test_second_day_captures_again(self, daemon, day, grabber, storage):
        ctx = run_until(daemon, DayContext(), State.DAY_COMPLETE)
        ctx = daemon.step(ctx)
        ctx = run_until(daemon, ctx, State.DAY_COMPLETE)

        assert ctx.date == day + timedelta(days=1)
        assert len(grabber.attempts) == 120
        assert storage.output_path_for(day).exists()
        assert storage.output_path_for(ctx.date).exists()


class TestScheduling:
    def test_sun_lookup_failure_retried_after_backoff(self, daemon, clock, sun_client, metrics):
        sun_client.failures = 2

        ctx = daemon.step(DayContext())
        assert ctx.state is State.COMPUTING_SCHEDULE
        ctx = daemon.step(ctx)
        assert ctx.state is State.COMPUTING_SCHEDULE
        ctx = daemon.step(ctx)

        assert ctx.state is State.WAITING_FOR_WINDOW
        assert clock.sleeps[:2] == [300, 300]
        assert metrics.lookup_failures_total == 2

    def test_late_start_uses_clamped_window(self, daemon, clock, day):
        clock.advance(12 * 3600)

        ctx = daemon.step(DayContext())

        assert ctx.schedule.capture_start == at(day, 12)
        assert ctx.schedule.capture_end == at(day, 20, 45)
        # 31500 s / 60 frames
        assert ctx.params.interval_seconds == 525
        assert ctx.params.total_frames_target == 60

    def test_late_start_captures_no_more_than_target(self, daemon, clock, grabber):
        clock.advance(12 * 3600)

        ctx = run_until(daemon, DayContext(), State.DAY_COMPLETE)

        assert len(grabber.attempts) <= ctx.params.total_frames_target

    def test_started_after_window_waits_for_tomorrow(self, daemon, clock, day, grabber):
        clock.advance(21 * 3600)
        tomorrow = day + timedelta(days=1)

        ctx = daemon.step(DayContext())
        assert ctx.state is State.WAITING_FOR_WINDOW
        assert ctx.params is None
        assert ctx.schedule.capture_end == at(day, 20, 45)

        ctx = daemon.step(ctx)
        assert ctx.state is State.IDLE
        assert clock.now() == at(tomorrow, 5, 30)

        ctx = daemon.step(ctx)
        assert ctx.date == tomorrow
        assert ctx.state is State.WAITING_FOR_WINDOW
        assert ctx.schedule.capture_start == at(tomorrow, 5, 30)

        ctx = daemon.step(ctx)
        assert ctx.state is State.CAPTURING
        assert grabber.attempts == []

    def test_no_window_goes_idle(self, daemon, clock, day, sun_client, grabber):
        # Window closes before it opens
        sun_client.sunrise = (12, 0)
        sun_client.sunset = (10, 0)

        ctx = daemon.step(DayContext())
        assert ctx.state is State.IDLE

        ctx = daemon.step(ctx)
        assert clock.now() == at(day + timedelta(days=1), 0)
        assert grabber.attempts == []

    def test_window_shorter_than_interval_goes_idle(self, daemon, sun_client, grabber):
        # 11:30:00 - 11:30:03 is shorter than the 5 s interval floor
        sun_client.sunrise = (12, 0)
        sun_client.sunset = (10, 45, 3)

        ctx = daemon.step(DayContext())

        assert ctx.state is State.IDLE
        assert ctx.params is None
        assert grabber.attempts == []


class TestAssemblyOutcomes:
    def test_assembly_failure_abandons_day(self, daemon, clock, day, encoder, grabber, storage):
        encoder.fail = True

        ctx = run_until(daemon, DayContext(), State.IDLE)

        assert not ctx.complete
        assert len(encoder.calls) == 1
        assert not storage.output_path_for(day).exists()
        assert not (storage.work_path / day.isoformat()).exists()

        attempts = len(grabber.attempts)
        ctx = daemon.step(ctx)
        assert len(encoder.calls) == 1
        assert len(grabber.attempts) == attempts
        assert clock.now() == at(day + timedelta(days=1), 0)

    def test_no_frames_means_no_video(self, daemon, day, grabber, encoder, storage, sun_client):
        # 75 minute window, every grab fails
        sun_client.sunrise = (6, 0)
        sun_client.sunset = (6, 0)
        grabber.default = False

        ctx = run_until(daemon, DayContext(), State.IDLE, max_steps=10)

        assert not ctx.complete
        assert encoder.calls == []
        assert len(grabber.attempts) > 0
        assert not storage.output_path_for(day).exists()

    def test_frames_assembled_under_capture_date_after_midnight(self, daemon, clock, day, storage):
        ctx = run_until(daemon, DayContext(), State.ASSEMBLING)
        clock.advance(6 * 3600)
        assert clock.today() != day

        ctx = daemon.step(ctx)

        assert ctx.state is State.DAY_COMPLETE
        assert ctx.date == day
        assert storage.output_path_for(day).exists()

        ctx = daemon.step(ctx)
        assert ctx.date == day + timedelta(days=1)


class TestRun:
    def test_returns_when_shutdown_requested(self, daemon, clock, storage, day):
        stale = storage.work_path / (day - timedelta(days=3)).isoformat()
        stale.mkdir(parents=True)
        clock.shutdown_event.set()

        daemon.run()

        assert not stale.exists()

    def test_storage_error_is_logged_and_retried(self, daemon, clock, sun_client):
        def broken_fetch(latitude, longitude, day):
            clock.shutdown_event.set()
            raise OSError("disk full")

        sun_client.fetch = broken_fetch

        daemon.run()

        assert clock.interrupted

    def test_stop_sets_shutdown(self, daemon, clock):
        daemon.stop()
        assert clock.interrupted
