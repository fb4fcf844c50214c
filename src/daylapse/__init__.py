"""Daylight timelapse daemon."""

__version__ = "1.0.0"
