#!/usr/bin/env python3
"""
Video Assembly for the Daylight Timelapse Daemon

VideoEncoder turns an ordered list of frames into an H.264 MP4 with ffmpeg's
concat demuxer, so frame order is exactly the list order. AssemblyTrigger
wraps it with the day-level bookkeeping: mark the day complete on success
and release the frames either way.
"""

import logging
import subprocess
from pathlib import Path
from typing import List

from .errors import AssemblyFailure
from .storage import DayCaptureState


class VideoEncoder:
    """Encodes a frame list into a video with ffmpeg."""

    def __init__(self, config):
        self.config = config

    @staticmethod
    def write_concat_list(frames: List[Path], fps: int, list_path: Path):
        """
        Write an ffmpeg concat list giving each frame 1/fps seconds.

        The last frame is repeated without a duration; the concat demuxer
        ignores the final duration otherwise.
        """
        frame_duration = 1.0 / fps
        lines = []
        for frame in frames:
            lines.append(f"file '{frame.resolve()}'")
            lines.append(f"duration {frame_duration:.6f}")
        lines.append(f"file '{frames[-1].resolve()}'")
        list_path.write_text('\n'.join(lines) + '\n')

    def build_command(self, list_path: Path, fps: int, output: Path) -> list:
        return [
            self.config.ffmpeg_path, '-y', '-loglevel', 'error',
            '-f', 'concat', '-safe', '0',
            '-i', str(list_path),
            '-r', str(fps),
            '-c:v', 'libx264',
            '-pix_fmt', 'yuv420p',
            '-movflags', '+faststart',
            '-f', 'mp4',
            str(output),
        ]

    def encode(self, frames: List[Path], fps: int, output: Path) -> Path:
        """
        Encode frames into output.

        Writes to a temporary name first and renames on success, so a
        partial file never carries the final name.

        Args:
            frames: Image paths in capture order
            fps: Output frame rate
            output: Final video path

        Returns:
            The output path

        Raises:
            AssemblyFailure: If ffmpeg fails, the video is missing/empty,
                or the filesystem refuses a write
        """
        if not frames:
            raise AssemblyFailure("No frames to encode")

        list_path = frames[0].parent / 'frames.txt'
        partial = output.with_name(output.name + '.part')
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            self.write_concat_list(frames, fps, list_path)
        except OSError as e:
            raise AssemblyFailure(f"Could not prepare encoder input: {e}") from e

        logging.info("Encoding %d frames at %d fps into %s", len(frames), fps, output)
        try:
            result = subprocess.run(
                self.build_command(list_path, fps, partial),
                capture_output=True,
                text=True,
                timeout=self.config.encode_timeout_sec,
            )
        except subprocess.TimeoutExpired as e:
            partial.unlink(missing_ok=True)
            raise AssemblyFailure(f"ffmpeg timed out after {self.config.encode_timeout_sec}s") from e
        except OSError as e:
            raise AssemblyFailure(f"Could not run ffmpeg: {e}") from e

        if result.returncode != 0:
            partial.unlink(missing_ok=True)
            raise AssemblyFailure(f"ffmpeg exited with {result.returncode}: {result.stderr[-400:]}")

        if not partial.exists() or partial.stat().st_size == 0:
            partial.unlink(missing_ok=True)
            raise AssemblyFailure("ffmpeg reported success but wrote no video")

        try:
            partial.replace(output)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise AssemblyFailure(f"Could not move video into place: {e}") from e
        return output


class AssemblyTrigger:
    """Hands a finished day's frames to the encoder and cleans up after it."""

    def __init__(self, encoder: VideoEncoder, storage, metrics):
        self.encoder = encoder
        self.storage = storage
        self.metrics = metrics

    def assemble(self, day_state: DayCaptureState, output_path: Path, target_fps: int) -> bool:
        """
        Assemble a day's video.

        The frame working set is released whatever the outcome; a failed
        day is not retried.

        Args:
            day_state: The day's captured frames (ownership is taken)
            output_path: Where the video goes
            target_fps: Output frame rate

        Returns:
            True if the video was written and the day marked complete
        """
        try:
            if not day_state.frames:
                logging.warning("No frames captured for %s; no video produced", day_state.date)
                return False

            try:
                self.encoder.encode(list(day_state.frames), target_fps, output_path)
            except AssemblyFailure as e:
                logging.error("Assembly failed for %s: %s", day_state.date, e)
                self.metrics.increment_assembly_failures()
                return False

            size_mb = output_path.stat().st_size / (1024 * 1024)
            logging.info(
                "Video for %s written: %s (%d frames, %.1f s, %.1f MB)",
                day_state.date, output_path.name, day_state.frames_captured,
                day_state.frames_captured / target_fps, size_mb
            )
            day_state.complete = True
            self.metrics.record_video(str(output_path))
            return True
        finally:
            self.storage.release(day_state)
