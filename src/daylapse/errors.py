#!/usr/bin/env python3
"""
Error Taxonomy for the Daylight Timelapse Daemon

Only StartupError (and its subclasses) is fatal. Everything else is raised
inside the run loop and is either retried or causes the day to be skipped.
"""


class DaylapseError(Exception):
    """Base class for all daemon errors."""


class InvalidSchedule(DaylapseError):
    """Capture window is empty after clamping (e.g. polar day/night)."""


class DegenerateParameters(DaylapseError):
    """Window length or frame target leaves nothing to capture."""


class TransientLookupFailure(DaylapseError):
    """Geocoding, sun-time or stream-handle lookup failed; always retried."""


class FrameAcquisitionFailure(DaylapseError):
    """A single frame grab produced no usable image."""


class AssemblyFailure(DaylapseError):
    """The encoder did not produce a video; the day is abandoned."""


class StartupError(DaylapseError):
    """Fatal problem detected before the run loop starts."""


class ConfigError(StartupError):
    """Configuration file is missing required keys or has bad values."""


class LocationNotFound(StartupError):
    """Geocoding returned no match for the configured location name."""
