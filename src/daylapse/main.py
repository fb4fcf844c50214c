#!/usr/bin/env python3
"""
Daylight Timelapse Daemon - Main Entry Point

This module implements the capture state machine and the process entry point.
Once a day the daemon:
- Looks up sunrise/sunset for the configured location
- Computes a capture window and a capture interval that fits the window
  into a fixed-length video
- Captures stills from the live stream for the whole window
- Assembles them into one video and deletes the frames
- Sleeps until the next calendar date
"""

import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

import yaml

from . import __version__
from .assembly import AssemblyTrigger, VideoEncoder
from .capture import FrameCaptureLoop, FrameGrabber, StreamResolver
from .clock import Clock
from .config import Config
from .errors import (
    DegenerateParameters,
    InvalidSchedule,
    StartupError,
    TransientLookupFailure,
)
from .lookups import Geocoder, Location, SunTimesClient, resolve_location
from .metrics import MetricsCollector, start_metrics_server
from .schedule import (
    Backoff,
    LOOKUP_BACKOFF,
    CaptureParameters,
    DaySchedule,
    compute_parameters,
    compute_window,
)
from .storage import DayCaptureState, StorageManager
from .utils import check_required_tools, setup_logging


# ============================================================================
# Capture State Machine
# ============================================================================

class State(Enum):
    IDLE = "idle"
    COMPUTING_SCHEDULE = "computing_schedule"
    WAITING_FOR_WINDOW = "waiting_for_window"
    CAPTURING = "capturing"
    ASSEMBLING = "assembling"
    DAY_COMPLETE = "day_complete"


@dataclass(frozen=True)
class DayContext:
    """
    Everything the state machine knows about the current calendar day.

    A new context is created on every date rollover, so nothing from the
    previous day (including the complete flag) carries over.
    """
    date: Optional[date] = None
    state: State = State.IDLE
    schedule: Optional[DaySchedule] = None
    params: Optional[CaptureParameters] = None
    day_state: Optional[DayCaptureState] = None

    @property
    def complete(self) -> bool:
        return self.day_state is not None and self.day_state.complete


class TimelapseDaemon:
    """
    Top-level capture state machine.

    step() performs one transition and returns the next DayContext; run()
    loops it until shutdown. Exactly one state executes at a time.
    """

    def __init__(
        self,
        config: Config,
        clock: Clock,
        location: Location,
        sun_client: SunTimesClient,
        capture_loop: FrameCaptureLoop,
        assembly: AssemblyTrigger,
        storage: StorageManager,
        metrics: MetricsCollector,
        lookup_backoff: Backoff = LOOKUP_BACKOFF,
    ):
        self.config = config
        self.clock = clock
        self.location = location
        self.sun_client = sun_client
        self.capture_loop = capture_loop
        self.assembly = assembly
        self.storage = storage
        self.metrics = metrics
        self.lookup_backoff = lookup_backoff
        self._handlers = {
            State.IDLE: self._sleep_until_next_date,
            State.COMPUTING_SCHEDULE: self._compute_schedule,
            State.WAITING_FOR_WINDOW: self._wait_for_window,
            State.CAPTURING: self._capture,
            State.ASSEMBLING: self._assemble,
            State.DAY_COMPLETE: self._sleep_until_next_date,
        }

    def step(self, ctx: DayContext) -> DayContext:
        """
        Advance the state machine by one transition.

        A date rollover resets the context before the state runs, except
        while assembling: frames captured for a day are always assembled
        under that day's name.
        """
        today = self.clock.today()
        if ctx.date != today and ctx.state is not State.ASSEMBLING:
            if ctx.date is not None:
                logging.info("Date changed from %s to %s", ctx.date, today)
            ctx = DayContext(date=today, state=State.COMPUTING_SCHEDULE)
            self.metrics.set_schedule(None)

        next_ctx = self._handlers[ctx.state](ctx)
        if next_ctx.state is not ctx.state:
            logging.debug("State %s -> %s", ctx.state.value, next_ctx.state.value)
        self.metrics.set_state(next_ctx.state.value)
        return next_ctx

    def _compute_schedule(self, ctx: DayContext) -> DayContext:
        try:
            sun = self.sun_client.fetch(self.location.latitude, self.location.longitude, ctx.date)
        except TransientLookupFailure as e:
            logging.warning("Sun time lookup for %s failed: %s", ctx.date, e)
            self.metrics.increment_lookup_failures()
            self.lookup_backoff.wait(self.clock)
            return ctx

        pre_run, post_run = self.config.pre_run_min, self.config.post_run_min
        try:
            schedule = compute_window(sun.sunrise, sun.sunset, pre_run, post_run, now=self.clock.now())
        except InvalidSchedule as e:
            try:
                nominal = compute_window(sun.sunrise, sun.sunset, pre_run, post_run)
            except InvalidSchedule:
                logging.warning("No capture window on %s: %s", ctx.date, e)
                return replace(ctx, state=State.IDLE)
            # Only the late-start clamp emptied it: today's window is already over
            logging.info(
                "Today's capture window closed at %s",
                nominal.capture_end.strftime('%H:%M:%S')
            )
            return replace(ctx, state=State.WAITING_FOR_WINDOW, schedule=nominal)

        try:
            params = compute_parameters(
                schedule,
                self.config.target_fps,
                self.config.target_video_length_sec,
                self.config.min_interval_sec,
            )
        except DegenerateParameters as e:
            logging.warning("Skipping capture on %s: %s", ctx.date, e)
            return replace(ctx, state=State.IDLE, schedule=schedule)

        logging.info(
            "Window %s - %s (%.0f min): interval %ds, %d frames, ~%.1fs of video",
            schedule.capture_start.strftime('%H:%M:%S'),
            schedule.capture_end.strftime('%H:%M:%S'),
            schedule.window_seconds / 60,
            params.interval_seconds,
            params.total_frames_target,
            params.expected_video_length_seconds,
        )
        self.metrics.set_schedule(schedule, params)
        return replace(ctx, state=State.WAITING_FOR_WINDOW, schedule=schedule, params=params)

    def _next_window_start(self, today: date) -> datetime:
        """Tomorrow's capture start, or the next midnight if unknown."""
        tomorrow = today + timedelta(days=1)
        try:
            sun = self.sun_client.fetch(self.location.latitude, self.location.longitude, tomorrow)
        except TransientLookupFailure as e:
            logging.warning("Sun time lookup for %s failed: %s", tomorrow, e)
            self.metrics.increment_lookup_failures()
            return self.clock.next_midnight()
        return sun.sunrise - timedelta(minutes=self.config.pre_run_min)

    def _wait_for_window(self, ctx: DayContext) -> DayContext:
        now = self.clock.now()
        schedule = ctx.schedule

        if now < schedule.capture_start:
            wake_at = min(schedule.capture_start, self.clock.next_midnight())
            logging.info(
                "Waiting %.0f minutes for the capture window",
                (wake_at - now).total_seconds() / 60
            )
            self.clock.sleep_until(wake_at)
            return ctx

        if now >= schedule.capture_end:
            next_start = self._next_window_start(ctx.date)
            logging.info("Next capture window opens at %s", next_start.isoformat())
            self.clock.sleep_until(next_start)
            return replace(ctx, state=State.IDLE)

        return replace(ctx, state=State.CAPTURING)

    def _capture(self, ctx: DayContext) -> DayContext:
        day_state = self.capture_loop.capture(ctx.params, ctx.schedule)
        return replace(ctx, state=State.ASSEMBLING, day_state=day_state)

    def _assemble(self, ctx: DayContext) -> DayContext:
        day_state = ctx.day_state
        output = self.storage.output_path_for(day_state.date)
        if self.assembly.assemble(day_state, output, self.config.target_fps):
            self.storage.enforce_retention(day_state.date)
            self.storage.update_disk_usage()
            return replace(ctx, state=State.DAY_COMPLETE)

        logging.warning("No video for %s; capture resumes on the next day", day_state.date)
        return replace(ctx, state=State.IDLE)

    def _sleep_until_next_date(self, ctx: DayContext) -> DayContext:
        self.clock.sleep_until(self.clock.next_midnight())
        return ctx

    def run(self):
        """
        Run the state machine until shutdown is requested.

        Filesystem errors are logged and the current state is retried after
        the lookup backoff; anything else propagates.
        """
        ctx = DayContext()
        self.storage.purge_stale_work(self.clock.today())

        logging.info("Starting capture state machine...")
        logging.info("Location: %s (%.4f, %.4f)",
                     self.location.display_name, self.location.latitude, self.location.longitude)
        logging.info("Target: %ds of video at %d fps, interval >= %ds",
                     self.config.target_video_length_sec, self.config.target_fps,
                     self.config.min_interval_sec)

        while not self.clock.interrupted:
            try:
                ctx = self.step(ctx)
            except OSError as e:
                logging.error("Storage error in state %s: %s", ctx.state.value, e, exc_info=True)
                self.lookup_backoff.wait(self.clock)

        logging.info("Capture state machine stopped")

    def stop(self):
        """Request shutdown; wakes any sleep in progress."""
        logging.info("Stopping timelapse daemon...")
        self.clock.shutdown_event.set()


# ============================================================================
# Wiring
# ============================================================================

def build_daemon(config: Config, clock: Clock, metrics: MetricsCollector,
                 location: Location) -> TimelapseDaemon:
    """Construct the daemon and its collaborators from configuration."""
    storage = StorageManager(config, metrics)
    capture_loop = FrameCaptureLoop(
        config,
        clock,
        storage,
        metrics,
        resolver=StreamResolver(config, clock),
        grabber=FrameGrabber(config),
        frame_retry=Backoff(config.frame_retry_delay_sec, "Frame not produced"),
        handle_backoff=Backoff(config.handle_backoff_sec, "Stream handle resolution failed"),
    )
    assembly = AssemblyTrigger(VideoEncoder(config), storage, metrics)
    return TimelapseDaemon(
        config,
        clock,
        location,
        SunTimesClient(config, tz=clock.tz),
        capture_loop,
        assembly,
        storage,
        metrics,
        lookup_backoff=Backoff(config.lookup_backoff_sec, "Sun time lookup failed"),
    )


def print_today(config: Config, clock: Clock, location: Location):
    """Print today's window and capture rate (used by --check)."""
    sun = SunTimesClient(config, tz=clock.tz).fetch(location.latitude, location.longitude, clock.today())
    schedule = compute_window(sun.sunrise, sun.sunset, config.pre_run_min, config.post_run_min)
    params = compute_parameters(
        schedule, config.target_fps, config.target_video_length_sec, config.min_interval_sec
    )
    print(f"Location:       {location.display_name} ({location.latitude:.4f}, {location.longitude:.4f})")
    print(f"Sunrise/sunset: {schedule.sunrise:%H:%M:%S} / {schedule.sunset:%H:%M:%S}")
    print(f"Capture window: {schedule.capture_start:%H:%M:%S} - {schedule.capture_end:%H:%M:%S}")
    print(f"Interval:       {params.interval_seconds}s")
    print(f"Frames:         {params.total_frames_target}")
    print(f"Video length:   {params.expected_video_length_seconds}s at {params.target_fps} fps")


# ============================================================================
# Signal Handling
# ============================================================================

shutdown_event = threading.Event()


def signal_handler(signum, frame):
    """
    Handle shutdown signals gracefully.

    Ensures clean shutdown on SIGINT and SIGTERM.
    """
    logging.info("Received signal %d, initiating graceful shutdown...", signum)
    shutdown_event.set()


# ============================================================================
# Main Entry Point
# ============================================================================

def parse_arguments(argv=None):
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description='Daylight Timelapse Daemon',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
        Examples:
        # Run with default config
        daylapse

        # Run with custom config
        daylapse --config /path/to/daylapse.yaml

        # Show today's schedule and exit
        daylapse --config daylapse.yaml --check
        """
    )

    parser.add_argument(
        '--config',
        type=str,
        default='/etc/daylapse/daylapse.yaml',
        help='Path to YAML configuration file (default: /etc/daylapse/daylapse.yaml)'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )

    parser.add_argument(
        '--check',
        action='store_true',
        help='Run startup checks, print today\'s schedule and exit'
    )

    return parser.parse_args(argv)


def main(argv=None):
    """
    Main entry point for the timelapse daemon.

    Workflow:
    1. Parse arguments and setup logging
    2. Load configuration and check external tools
    3. Resolve the location's coordinates
    4. Start metrics server and signal handlers
    5. Run the capture state machine until shutdown

    Configuration, missing tools and unknown locations are fatal (exit 1).
    """
    args = parse_arguments(argv)

    try:
        config = Config.from_yaml(args.config)
    except FileNotFoundError:
        setup_logging(args.log_level)
        logging.error("Configuration file not found: %s", args.config)
        sys.exit(1)
    except yaml.YAMLError as e:
        setup_logging(args.log_level)
        logging.error("Failed to parse configuration file: %s", e)
        sys.exit(1)
    except StartupError as e:
        setup_logging(args.log_level)
        logging.error("Invalid configuration: %s", e)
        sys.exit(1)

    setup_logging(args.log_level, config.log_file)

    logging.info("=" * 70)
    logging.info("Daylight Timelapse Daemon v%s", __version__)
    logging.info("=" * 70)
    logging.info("Configuration loaded from: %s", args.config)

    metrics = MetricsCollector()
    clock = Clock(tz=config.tzinfo(), shutdown_event=shutdown_event)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        check_required_tools(config)
        location = resolve_location(
            config,
            Geocoder(config, clock),
            Backoff(config.lookup_backoff_sec, "Geocoding failed"),
            clock,
        )

        if args.check:
            print_today(config, clock, location)
            return

        start_metrics_server(config, metrics)

        daemon = build_daemon(config, clock, metrics, location)
        daemon.run()

    except StartupError as e:
        logging.error("Startup check failed: %s", e)
        sys.exit(1)
    except TransientLookupFailure as e:
        # Only reached when shutdown interrupts startup retries or --check fails
        logging.error("Lookup failed: %s", e)
        sys.exit(1)
    except (InvalidSchedule, DegenerateParameters) as e:
        logging.error("No capture today: %s", e)
        sys.exit(1)
    except Exception as e:
        logging.error("Fatal error: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
