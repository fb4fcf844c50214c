#!/usr/bin/env python3
"""
Configuration Management for the Daylight Timelapse Daemon

All settings are fixed at process start. See configs/daylapse.yaml for an
example configuration file.
"""

import re
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .errors import ConfigError


DEFAULT_GEOCODE_URL = "https://nominatim.openstreetmap.org/search"
DEFAULT_SUN_URL = "https://api.sunrise-sunset.org/json"
DEFAULT_USER_AGENT = "daylapse/1.0 (daylight timelapse daemon)"


@dataclass
class Config:
    """
    Configuration data class for the timelapse daemon.

    This class encapsulates all configuration parameters loaded from YAML.
    Only location.name and source.url are required.
    """
    # Location
    location_name: str
    # Source
    source_url: str

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: str = "local"

    resolver: str = "yt-dlp"
    handle_max_uses: int = 50

    # Video targets
    target_fps: int = 60
    target_video_length_sec: int = 90

    # Capture
    min_interval_sec: int = 5
    pre_run_min: float = 30
    post_run_min: float = 45
    frame_timeout_sec: int = 30

    # Retry
    lookup_backoff_sec: float = 300
    handle_backoff_sec: float = 300
    frame_retry_delay_sec: float = 2

    # Storage
    work_path: str = "/var/lib/daylapse/frames"
    output_path: str = "/var/lib/daylapse/videos"
    retention_days: int = 0

    # External services
    geocode_url: str = DEFAULT_GEOCODE_URL
    sun_url: str = DEFAULT_SUN_URL
    user_agent: str = DEFAULT_USER_AGENT
    http_timeout_sec: int = 10

    # External tools
    ffmpeg_path: str = "ffmpeg"
    yt_dlp_path: str = "yt-dlp"
    resolve_timeout_sec: int = 60
    encode_timeout_sec: int = 3600

    # Metrics
    metrics_enabled: bool = False
    metrics_port: int = 8080
    metrics_host: str = "0.0.0.0"

    # Logging
    log_file: Optional[str] = None

    @classmethod
    def from_yaml(cls, config_path: str) -> 'Config':
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Validated Config instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            yaml.YAMLError: If config file is malformed
            ConfigError: If required keys are missing or values are invalid
        """
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be a mapping")

        location = data.get('location') or {}
        source = data.get('source') or {}
        video = data.get('video') or {}
        capture = data.get('capture') or {}
        retry = data.get('retry') or {}
        storage = data.get('storage') or {}
        services = data.get('services') or {}
        tools = data.get('tools') or {}
        metrics = data.get('metrics') or {}
        logging_cfg = data.get('logging') or {}

        if not location.get('name'):
            raise ConfigError("location.name is required")
        if not source.get('url'):
            raise ConfigError("source.url is required")

        try:
            config = cls(
                # Location
                location_name=str(location['name']),
                latitude=_optional_float(location.get('latitude')),
                longitude=_optional_float(location.get('longitude')),
                timezone=location.get('timezone', 'local'),

                # Source
                source_url=str(source['url']),
                resolver=source.get('resolver', 'yt-dlp'),
                handle_max_uses=int(source.get('handle_max_uses', 50)),

                # Video
                target_fps=int(video.get('target_fps', 60)),
                target_video_length_sec=int(video.get('target_length_sec', 90)),

                # Capture
                min_interval_sec=int(capture.get('min_interval_sec', 5)),
                pre_run_min=float(capture.get('pre_run_min', 30)),
                post_run_min=float(capture.get('post_run_min', 45)),
                frame_timeout_sec=int(capture.get('frame_timeout_sec', 30)),

                # Retry
                lookup_backoff_sec=float(retry.get('lookup_backoff_sec', 300)),
                handle_backoff_sec=float(retry.get('handle_backoff_sec', 300)),
                frame_retry_delay_sec=float(retry.get('frame_retry_delay_sec', 2)),

                # Storage
                work_path=storage.get('work_path', '/var/lib/daylapse/frames'),
                output_path=storage.get('output_path', '/var/lib/daylapse/videos'),
                retention_days=int(storage.get('retention_days', 0)),

                # Services
                geocode_url=services.get('geocode_url', DEFAULT_GEOCODE_URL),
                sun_url=services.get('sun_url', DEFAULT_SUN_URL),
                user_agent=services.get('user_agent', DEFAULT_USER_AGENT),
                http_timeout_sec=int(services.get('timeout_sec', 10)),

                # Tools
                ffmpeg_path=tools.get('ffmpeg', 'ffmpeg'),
                yt_dlp_path=tools.get('yt_dlp', 'yt-dlp'),
                resolve_timeout_sec=int(tools.get('resolve_timeout_sec', 60)),
                encode_timeout_sec=int(tools.get('encode_timeout_sec', 3600)),

                # Metrics
                metrics_enabled=bool(metrics.get('enabled', False)),
                metrics_port=int(metrics.get('port', 8080)),
                metrics_host=metrics.get('host', '0.0.0.0'),

                # Logging
                log_file=logging_cfg.get('file'),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

        config.validate()
        return config

    def validate(self):
        """
        Check value ranges.

        Raises:
            ConfigError: On the first invalid value found
        """
        if self.target_fps <= 0:
            raise ConfigError("video.target_fps must be positive")
        if self.target_video_length_sec <= 0:
            raise ConfigError("video.target_length_sec must be positive")
        if self.min_interval_sec < 1:
            raise ConfigError("capture.min_interval_sec must be at least 1")
        if self.pre_run_min < 0 or self.post_run_min < 0:
            raise ConfigError("capture.pre_run_min and post_run_min must not be negative")
        if self.handle_max_uses < 1:
            raise ConfigError("source.handle_max_uses must be at least 1")
        if self.resolver not in ('yt-dlp', 'direct'):
            raise ConfigError(f"source.resolver must be 'yt-dlp' or 'direct', got {self.resolver!r}")
        if (self.latitude is None) != (self.longitude is None):
            raise ConfigError("location.latitude and location.longitude must be set together")
        if self.retention_days < 0:
            raise ConfigError("storage.retention_days must not be negative")
        self.tzinfo()

    def tzinfo(self) -> Optional[tzinfo]:
        """
        Resolve the configured timezone.

        Returns:
            A ZoneInfo, or None for the system local timezone
        """
        if self.timezone in (None, '', 'local'):
            return None
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown timezone: {self.timezone}") from e

    @property
    def location_slug(self) -> str:
        """Filesystem-safe form of the location name."""
        slug = re.sub(r'[^a-z0-9]+', '-', self.location_name.lower()).strip('-')
        return slug or 'location'

    @property
    def work_dir(self) -> Path:
        return Path(self.work_path)

    @property
    def output_dir(self) -> Path:
        return Path(self.output_path) / self.location_slug


def _optional_float(value) -> Optional[float]:
    if value is None or value == '':
        return None
    return float(value)
