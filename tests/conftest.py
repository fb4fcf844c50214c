"""
Shared fixtures: a clock that only advances when the code under test sleeps,
and scripted stand-ins for the external tools and HTTP services.
"""

from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from daylapse.assembly import AssemblyTrigger
from daylapse.capture import FrameCaptureLoop, StreamHandle
from daylapse.clock import Clock
from daylapse.config import Config
from daylapse.errors import AssemblyFailure, FrameAcquisitionFailure, TransientLookupFailure
from daylapse.lookups import Location, SunTimes
from daylapse.main import TimelapseDaemon
from daylapse.metrics import MetricsCollector
from daylapse.schedule import Backoff
from daylapse.storage import StorageManager


UTC = timezone.utc


def at(day: date, hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, second, tzinfo=UTC)


class FakeClock(Clock):
    """Clock whose time moves only through sleep()."""

    def __init__(self, start: datetime):
        super().__init__(tz=start.tzinfo)
        self.current = start
        self.sleeps = []

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float):
        if seconds <= 0 or self.interrupted:
            return
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)

    def advance(self, seconds: float):
        self.current += timedelta(seconds=seconds)


class FakeGrabber:
    """
    Scripted frame grabber.

    outcomes is consumed one entry per attempt (True = frame written);
    once exhausted every attempt succeeds unless default is False.
    """

    def __init__(self, clock, outcomes=(), default=True):
        self.clock = clock
        self.outcomes = list(outcomes)
        self.default = default
        self.attempts = []

    def grab(self, handle: StreamHandle, output: Path):
        self.attempts.append((self.clock.now(), handle.url, output))
        ok = self.outcomes.pop(0) if self.outcomes else self.default
        if not ok:
            raise FrameAcquisitionFailure(f"No frame written to {output.name}")
        output.write_bytes(b'\xff\xd8fake-jpeg\xff\xd9')


class FakeResolver:
    """Fails `failures` times, then hands out numbered handles."""

    def __init__(self, clock, failures=0, max_uses=50):
        self.clock = clock
        self.failures = failures
        self.max_uses = max_uses
        self.calls = 0

    def resolve(self, source_url: str) -> StreamHandle:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientLookupFailure("resolver unavailable")
        return StreamHandle(
            url=f"https://stream.example/{self.calls}.m3u8",
            source_url=source_url,
            resolved_at=self.clock.now(),
            max_uses=self.max_uses,
        )


class FakeSunClient:
    """Returns fixed local sunrise/sunset times for any date."""

    def __init__(self, sunrise=(6, 0), sunset=(20, 0), failures=0):
        self.sunrise = sunrise
        self.sunset = sunset
        self.failures = failures
        self.requests = []

    def fetch(self, latitude, longitude, day):
        self.requests.append(day)
        if self.failures > 0:
            self.failures -= 1
            raise TransientLookupFailure("sun service unavailable")
        return SunTimes(
            date=day,
            sunrise=at(day, *self.sunrise),
            sunset=at(day, *self.sunset),
        )


class FakeEncoder:
    """Writes a placeholder video, or raises AssemblyFailure when fail=True."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def encode(self, frames, fps, output):
        self.calls.append((list(frames), fps, output))
        if self.fail:
            raise AssemblyFailure("encoder broken")
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b'video')
        return output


@pytest.fixture
def day():
    return date(2024, 6, 1)


@pytest.fixture
def clock(day):
    return FakeClock(at(day, 0))


@pytest.fixture
def config(tmp_path):
    return Config(
        location_name="Test Town",
        source_url="https://video.example/live",
        latitude=39.1,
        longitude=-120.0,
        resolver='direct',
        target_fps=60,
        target_video_length_sec=90,
        min_interval_sec=5,
        pre_run_min=30,
        post_run_min=45,
        work_path=str(tmp_path / 'frames'),
        output_path=str(tmp_path / 'videos'),
    )


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def storage(config, metrics):
    return StorageManager(config, metrics)


@pytest.fixture
def grabber(clock):
    return FakeGrabber(clock)


@pytest.fixture
def resolver(clock):
    return FakeResolver(clock)


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def sun_client():
    return FakeSunClient()


@pytest.fixture
def capture_loop(config, clock, storage, metrics, resolver, grabber):
    return FrameCaptureLoop(
        config, clock, storage, metrics,
        resolver=resolver,
        grabber=grabber,
        frame_retry=Backoff(2, "Frame not produced"),
        handle_backoff=Backoff(300, "Stream handle resolution failed"),
    )


@pytest.fixture
def daemon(config, clock, storage, metrics, capture_loop, encoder, sun_client):
    location = Location("Test Town", config.latitude, config.longitude, "Test Town")
    return TimelapseDaemon(
        config,
        clock,
        location,
        sun_client,
        capture_loop,
        AssemblyTrigger(encoder, storage, metrics),
        storage,
        metrics,
        lookup_backoff=Backoff(300, "Sun time lookup failed"),
    )
