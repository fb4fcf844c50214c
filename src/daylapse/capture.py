#!/usr/bin/env python3
"""
Frame Capture for the Daylight Timelapse Daemon

This module implements:
- StreamHandle: an ephemeral direct URL to the live source, with an explicit
  use counter so it is refreshed before it goes stale
- StreamResolver: source URL -> StreamHandle (yt-dlp, or passthrough)
- FrameGrabber: one still frame from a StreamHandle via ffmpeg
- FrameCaptureLoop: repeated grabs at the day's interval until the window
  closes or the frame quota is met
"""

import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import cv2

from .errors import FrameAcquisitionFailure, TransientLookupFailure
from .schedule import Backoff, CaptureParameters, DaySchedule, FRAME_RETRY, HANDLE_BACKOFF
from .storage import DayCaptureState


# ============================================================================
# Stream Handle
# ============================================================================

@dataclass
class StreamHandle:
    """Direct-access URL for the live source, valid for max_uses captures."""
    url: str
    source_url: str
    resolved_at: datetime
    max_uses: int = 50
    uses: int = 0

    def record_use(self):
        self.uses += 1

    @property
    def stale(self) -> bool:
        return self.uses >= self.max_uses


class StreamResolver:
    """
    Resolves a source page URL into a directly fetchable stream URL.

    With resolver 'yt-dlp' the source is passed to `yt-dlp -g`; with
    'direct' the source URL is used as-is (RTSP cameras, plain HLS).
    """

    def __init__(self, config, clock):
        self.config = config
        self.clock = clock

    def resolve(self, source_url: str) -> StreamHandle:
        """
        Obtain a fresh handle.

        Raises:
            TransientLookupFailure: If the resolver fails or prints nothing
        """
        if self.config.resolver == 'direct':
            url = source_url
        else:
            url = self._run_yt_dlp(source_url)

        logging.info("Resolved stream handle for %s", source_url)
        return StreamHandle(
            url=url,
            source_url=source_url,
            resolved_at=self.clock.now(),
            max_uses=self.config.handle_max_uses,
        )

    def _run_yt_dlp(self, source_url: str) -> str:
        cmd = [self.config.yt_dlp_path, '-g', '-f', 'best', '--no-warnings', source_url]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.resolve_timeout_sec,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientLookupFailure("yt-dlp timed out") from e
        except OSError as e:
            raise TransientLookupFailure(f"Could not run yt-dlp: {e}") from e

        if result.returncode != 0:
            raise TransientLookupFailure(
                f"yt-dlp exited with {result.returncode}: {result.stderr.strip()[-300:]}"
            )

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise TransientLookupFailure("yt-dlp returned no stream URL")
        return lines[0]


# ============================================================================
# Frame Grabber
# ============================================================================

class FrameGrabber:
    """Grabs a single still image from a stream with ffmpeg."""

    def __init__(self, config):
        self.config = config

    def build_command(self, handle: StreamHandle, output: Path) -> list:
        cmd = [self.config.ffmpeg_path, '-y', '-loglevel', 'error']
        if handle.url.startswith('rtsp://'):
            cmd += ['-rtsp_transport', 'tcp']
        cmd += ['-i', handle.url, '-frames:v', '1', '-q:v', '2', str(output)]
        return cmd

    def grab(self, handle: StreamHandle, output: Path):
        """
        Write one frame to output.

        ffmpeg reports failure by not producing the file, so the result is
        judged by the artifact alone: it must exist, be non-empty and decode
        as an image.

        Raises:
            FrameAcquisitionFailure: If no usable image was written
        """
        try:
            subprocess.run(
                self.build_command(handle, output),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=self.config.frame_timeout_sec,
            )
        except subprocess.TimeoutExpired:
            logging.debug("ffmpeg frame grab timed out after %ds", self.config.frame_timeout_sec)
        except OSError as e:
            raise FrameAcquisitionFailure(f"Could not run ffmpeg: {e}") from e

        if not output.exists() or output.stat().st_size == 0:
            output.unlink(missing_ok=True)
            raise FrameAcquisitionFailure(f"No frame written to {output.name}")

        if cv2.imread(str(output)) is None:
            output.unlink(missing_ok=True)
            raise FrameAcquisitionFailure(f"Frame {output.name} is not a decodable image")


# ============================================================================
# Frame Capture Loop
# ============================================================================

class FrameCaptureLoop:
    """
    Drives frame grabs for one day's capture window.

    Owns the StreamHandle for the duration of a day; nothing else reads it.
    """

    def __init__(
        self,
        config,
        clock,
        storage,
        metrics,
        resolver: StreamResolver,
        grabber: FrameGrabber,
        frame_retry: Backoff = FRAME_RETRY,
        handle_backoff: Backoff = HANDLE_BACKOFF,
    ):
        self.config = config
        self.clock = clock
        self.storage = storage
        self.metrics = metrics
        self.resolver = resolver
        self.grabber = grabber
        self.frame_retry = frame_retry
        self.handle_backoff = handle_backoff
        self.handle: Optional[StreamHandle] = None

    def _active(self, day_state: DayCaptureState, params: CaptureParameters,
                schedule: DaySchedule) -> bool:
        if self.clock.interrupted:
            return False
        if day_state.frames_captured >= params.total_frames_target:
            return False
        return schedule.contains(self.clock.now())

    def _refresh_handle(self, schedule: DaySchedule) -> Optional[StreamHandle]:
        """
        Resolve a new handle, retrying while the window is open.

        Returns:
            The new handle, or None if the window closed first
        """
        while not self.clock.interrupted and schedule.contains(self.clock.now()):
            try:
                handle = self.resolver.resolve(self.config.source_url)
                self.metrics.increment_handle_refreshes()
                return handle
            except TransientLookupFailure as e:
                logging.warning("Stream handle resolution failed: %s", e)
                self.metrics.increment_lookup_failures()
                self.handle_backoff.wait(self.clock)
        return None

    def capture(self, params: CaptureParameters, schedule: DaySchedule) -> DayCaptureState:
        """
        Capture frames until the quota is met or the window closes.

        Args:
            params: Interval and frame quota for the day
            schedule: The day's capture window

        Returns:
            DayCaptureState holding the frames in capture order
        """
        day_state = self.storage.open_day(schedule.date)
        self.metrics.reset_day()
        self.handle = None

        logging.info(
            "Capturing up to %d frames every %ds until %s",
            params.total_frames_target,
            params.interval_seconds,
            schedule.capture_end.strftime('%H:%M:%S'),
        )

        while self._active(day_state, params, schedule):
            if self.handle is None or self.handle.stale:
                if self.handle is not None:
                    logging.info("Stream handle used %d times, refreshing", self.handle.uses)
                self.handle = self._refresh_handle(schedule)
                if self.handle is None:
                    break

            attempt_start = self.clock.now()
            frame_path = day_state.next_frame_path()
            try:
                self.grabber.grab(self.handle, frame_path)
            except FrameAcquisitionFailure as e:
                logging.warning("Frame capture failed: %s", e)
                self.metrics.increment_frame_failures()
                self.frame_retry.wait(self.clock)
                continue

            day_state.record_frame(frame_path)
            self.handle.record_use()
            self.metrics.increment_captured()
            logging.debug(
                "Captured %s (%d/%d)",
                frame_path.name, day_state.frames_captured, params.total_frames_target
            )

            # Sleep for remaining interval time
            elapsed = (self.clock.now() - attempt_start).total_seconds()
            self.clock.sleep(max(0, params.interval_seconds - elapsed))

        if day_state.frames_captured >= params.total_frames_target:
            reason = "quota reached"
        elif self.clock.interrupted:
            reason = "shutdown requested"
        else:
            reason = "window closed"
        logging.info(
            "Capture finished (%s): %d/%d frames",
            reason, day_state.frames_captured, params.total_frames_target
        )
        self.handle = None
        return day_state
