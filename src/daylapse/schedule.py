#!/usr/bin/env python3
"""
Daylight Window and Capture Rate Calculation

This module turns a day's sunrise/sunset into:
- a capture window (DaySchedule), clamped so it never starts in the past
- capture parameters (CaptureParameters) that squeeze the window into a
  fixed-length video at a fixed frame rate without capturing more often
  than a configured floor

It also holds the explicit retry policies consumed by the scheduler and the
capture loop.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from .clock import Clock
from .errors import DegenerateParameters, InvalidSchedule


# ============================================================================
# Data Model
# ============================================================================

@dataclass(frozen=True)
class DaySchedule:
    """Capture window for one calendar day."""
    date: date
    sunrise: datetime
    sunset: datetime
    capture_start: datetime
    capture_end: datetime

    @property
    def window_seconds(self) -> float:
        return (self.capture_end - self.capture_start).total_seconds()

    def contains(self, moment: datetime) -> bool:
        return self.capture_start <= moment <= self.capture_end


@dataclass(frozen=True)
class CaptureParameters:
    """Per-day capture rate derived from a DaySchedule."""
    interval_seconds: int
    total_frames_target: int
    expected_video_length_seconds: float
    target_fps: int


# ============================================================================
# Daylight Window Calculator
# ============================================================================

def compute_window(
    sunrise: datetime,
    sunset: datetime,
    pre_run_minutes: float,
    post_run_minutes: float,
    now: Optional[datetime] = None,
) -> DaySchedule:
    """
    Compute the capture window for a day.

    The window opens pre_run_minutes before sunrise and closes
    post_run_minutes after sunset. When the daemon starts mid-window the
    start is clamped to now.

    Args:
        sunrise: Timezone-aware sunrise
        sunset: Timezone-aware sunset
        pre_run_minutes: Minutes to start before sunrise
        post_run_minutes: Minutes to keep capturing after sunset
        now: Current time; None skips the late-start clamp

    Returns:
        DaySchedule for the calendar day of sunrise

    Raises:
        InvalidSchedule: If the window is empty after clamping
    """
    capture_start = sunrise - timedelta(minutes=pre_run_minutes)
    capture_end = sunset + timedelta(minutes=post_run_minutes)

    if now is not None and now > capture_start:
        capture_start = now

    if capture_end <= capture_start:
        raise InvalidSchedule(
            f"Empty capture window: start {capture_start.isoformat()} "
            f">= end {capture_end.isoformat()}"
        )

    return DaySchedule(
        date=sunrise.date(),
        sunrise=sunrise,
        sunset=sunset,
        capture_start=capture_start,
        capture_end=capture_end,
    )


# ============================================================================
# Rate Controller
# ============================================================================

def compute_parameters(
    schedule: DaySchedule,
    target_fps: int,
    target_video_length_seconds: int,
    min_interval: int,
) -> CaptureParameters:
    """
    Derive the capture interval and frame quota for a schedule.

    The interval is the smallest whole number of seconds that fits the
    target frame count into the window, but never below min_interval. On
    short days this yields fewer frames (a shorter video) rather than a
    faster capture rate.

    Args:
        schedule: The day's capture window
        target_fps: Output video frame rate
        target_video_length_seconds: Desired output length
        min_interval: Floor for the capture interval in seconds

    Returns:
        CaptureParameters for the day

    Raises:
        DegenerateParameters: If the window or the frame target is not positive,
            or the window is shorter than a single interval
    """
    window_seconds = schedule.window_seconds
    frames_needed = target_fps * target_video_length_seconds

    if frames_needed <= 0:
        raise DegenerateParameters(f"Frame target must be positive, got {frames_needed}")
    if window_seconds <= 0:
        raise DegenerateParameters(f"Window must be positive, got {window_seconds:.0f}s")

    interval = math.ceil(window_seconds / frames_needed)
    interval = max(interval, min_interval)
    total_frames = math.floor(window_seconds / interval)
    if total_frames == 0:
        raise DegenerateParameters(
            f"Window of {window_seconds:.0f}s is shorter than one {interval}s interval"
        )
    expected_length = round(total_frames / target_fps, 1)

    return CaptureParameters(
        interval_seconds=interval,
        total_frames_target=total_frames,
        expected_video_length_seconds=expected_length,
        target_fps=target_fps,
    )


# ============================================================================
# Retry Policies
# ============================================================================

@dataclass(frozen=True)
class Backoff:
    """A fixed retry delay and the condition that triggers it."""
    delay_seconds: float
    trigger: str

    def wait(self, clock: Clock):
        logging.debug("%s; retrying in %.0f seconds", self.trigger, self.delay_seconds)
        clock.sleep(self.delay_seconds)


LOOKUP_BACKOFF = Backoff(300, "Sun time lookup failed")
HANDLE_BACKOFF = Backoff(300, "Stream handle resolution failed")
FRAME_RETRY = Backoff(2, "Frame not produced")
