#!/usr/bin/env python3
"""
Local Storage Management for the Daylight Timelapse Daemon

Two directory trees are managed:
- the working tree, one directory per day holding that day's frames;
  frames never outlive their day's assembly
- the output tree, one directory per location holding one video per day
"""

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List


VIDEO_NAME_PATTERN = re.compile(r'_(\d{4}-\d{2}-\d{2})\.mp4$')


@dataclass
class DayCaptureState:
    """
    Frames captured for one calendar day.

    frames is ordered by capture time; the assembly step relies on that
    order and never re-sorts.
    """
    date: date
    frame_directory: Path
    frames: List[Path] = field(default_factory=list)
    complete: bool = False

    @property
    def frames_captured(self) -> int:
        return len(self.frames)

    def next_frame_path(self) -> Path:
        return self.frame_directory / f"frame_{len(self.frames) + 1:06d}.jpg"

    def record_frame(self, path: Path):
        self.frames.append(path)


class StorageManager:
    """
    Manages frame working directories and finished videos.

    Handles:
    - Creating a clean working directory for each day
    - Deterministic output naming by location and date
    - Releasing a day's frames after assembly
    - Optional retention of finished videos
    """

    def __init__(self, config, metrics):
        """
        Initialize storage manager.

        Args:
            config: Configuration object with storage settings
            metrics: MetricsCollector instance for updating counters
        """
        self.config = config
        self.metrics = metrics
        self.work_path = config.work_dir
        self.output_path = config.output_dir
        self._ensure_directories()
        self.update_disk_usage()

    def _ensure_directories(self):
        """Create working and output directories if they don't exist."""
        try:
            self.work_path.mkdir(parents=True, exist_ok=True)
            self.output_path.mkdir(parents=True, exist_ok=True)
            logging.info("Frame working directory: %s", self.work_path)
            logging.info("Video output directory: %s", self.output_path)
        except OSError as e:
            logging.error("Failed to create storage directories: %s", e)
            raise

    def open_day(self, day: date) -> DayCaptureState:
        """
        Start a fresh frame collection for a day.

        Leftover frames from an interrupted run of the same day are wiped;
        they cannot be ordered reliably against the new session.
        """
        day_dir = self.work_path / day.isoformat()
        if day_dir.exists():
            logging.warning("Discarding leftover frames in %s", day_dir)
            shutil.rmtree(day_dir)
        day_dir.mkdir(parents=True)
        return DayCaptureState(date=day, frame_directory=day_dir)

    def output_path_for(self, day: date) -> Path:
        slug = self.config.location_slug
        return self.output_path / f"{slug}_{day.isoformat()}.mp4"

    def release(self, day_state: DayCaptureState):
        """Delete a day's frames and its working directory."""
        if day_state.frame_directory.exists():
            shutil.rmtree(day_state.frame_directory, ignore_errors=True)
            logging.info(
                "Released %d frames from %s",
                day_state.frames_captured, day_state.frame_directory
            )
        day_state.frames = []

    def purge_stale_work(self, today: date):
        """Remove working directories left behind by earlier days."""
        for item in sorted(self.work_path.iterdir()):
            if not item.is_dir():
                continue
            try:
                folder_date = datetime.strptime(item.name, "%Y-%m-%d").date()
            except ValueError:
                logging.warning("Skipping unexpected folder %s", item.name)
                continue
            if folder_date < today:
                shutil.rmtree(item, ignore_errors=True)
                logging.info("Deleted stale frame folder: %s", item.name)

    def enforce_retention(self, today: date) -> int:
        """
        Delete videos older than retention_days.

        A retention of 0 keeps every video.

        Returns:
            Number of videos deleted
        """
        if self.config.retention_days <= 0:
            return 0

        cutoff = today - timedelta(days=self.config.retention_days)
        deleted = 0
        for video in sorted(self.output_path.glob('*.mp4')):
            match = VIDEO_NAME_PATTERN.search(video.name)
            if not match:
                continue
            try:
                video_date = date.fromisoformat(match.group(1))
            except ValueError:
                continue
            if video_date < cutoff:
                try:
                    video.unlink()
                    deleted += 1
                    logging.info("Deleted old video: %s", video.name)
                except OSError as e:
                    logging.error("Failed to delete %s: %s", video, e)

        return deleted

    def update_disk_usage(self) -> float:
        """
        Total size of the location's videos, reported to metrics.

        Returns:
            Usage in MB
        """
        total_size = 0
        for video in self.output_path.glob('*.mp4'):
            try:
                total_size += video.stat().st_size
            except OSError:
                continue

        usage_mb = total_size / (1024 * 1024)
        self.metrics.update_disk_usage(usage_mb)
        logging.debug("Video storage usage: %.2f MB", usage_mb)
        return usage_mb
