#!/usr/bin/env python3
"""
Metrics Collection and HTTP Server for the Daylight Timelapse Daemon

Counters and state published by the daemon, served over HTTP for monitoring:
- Service health and uptime
- Daemon state and today's schedule
- Frame capture and stream handle statistics
- Video assembly results and storage usage
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional

from flask import Flask, jsonify
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Gauge,
    generate_latest,
)


class MetricsCollector:
    """
    Counters and current state of the timelapse daemon.

    The daemon thread writes; the HTTP thread only reads snapshots.
    """

    def __init__(self):
        """All counters start at zero; state starts as "starting"."""
        self._lock = threading.Lock()
        self.start_time = time.time()

        # Counters
        self.frames_captured_total = 0
        self.frame_failures_total = 0
        self.handle_refreshes_total = 0
        self.lookup_failures_total = 0
        self.videos_assembled_total = 0
        self.assembly_failures_total = 0

        # State
        self.daemon_state = "starting"
        self.frames_today = 0
        self.last_capture_time: Optional[str] = None
        self.last_video: Optional[str] = None
        self.schedule: Dict[str, Any] = {}
        self.disk_usage_mb = 0.0

    def increment_captured(self):
        """Count one frame kept for today's video."""
        with self._lock:
            self.frames_captured_total += 1
            self.frames_today += 1
            self.last_capture_time = datetime.now().isoformat()

    def increment_frame_failures(self):
        with self._lock:
            self.frame_failures_total += 1

    def increment_handle_refreshes(self):
        with self._lock:
            self.handle_refreshes_total += 1

    def increment_lookup_failures(self):
        with self._lock:
            self.lookup_failures_total += 1

    def record_video(self, path: str):
        with self._lock:
            self.videos_assembled_total += 1
            self.last_video = path

    def increment_assembly_failures(self):
        with self._lock:
            self.assembly_failures_total += 1

    def set_state(self, state: str):
        """Set the capture state machine's current state name."""
        with self._lock:
            self.daemon_state = state

    def set_schedule(self, schedule=None, params=None):
        """Publish today's window and capture rate (None clears them)."""
        with self._lock:
            self.schedule = {}
            if schedule is not None:
                self.schedule.update({
                    'date': schedule.date.isoformat(),
                    'sunrise': schedule.sunrise.isoformat(),
                    'sunset': schedule.sunset.isoformat(),
                    'capture_start': schedule.capture_start.isoformat(),
                    'capture_end': schedule.capture_end.isoformat(),
                })
            if params is not None:
                self.schedule.update({
                    'interval_seconds': params.interval_seconds,
                    'total_frames_target': params.total_frames_target,
                    'expected_video_length_seconds': params.expected_video_length_seconds,
                })

    def reset_day(self):
        with self._lock:
            self.frames_today = 0

    def update_disk_usage(self, usage_mb: float):
        """Update video storage usage in MB."""
        with self._lock:
            self.disk_usage_mb = usage_mb

    def get_uptime_seconds(self) -> float:
        """Seconds since the collector was created."""
        return time.time() - self.start_time

    def get_snapshot(self) -> Dict[str, Any]:
        """
        Copy every counter and state field under the lock.

        Returns:
            Plain dict safe to read from the HTTP thread
        """
        with self._lock:
            return {
                'uptime_seconds': self.get_uptime_seconds(),
                'frames_captured_total': self.frames_captured_total,
                'frame_failures_total': self.frame_failures_total,
                'handle_refreshes_total': self.handle_refreshes_total,
                'lookup_failures_total': self.lookup_failures_total,
                'videos_assembled_total': self.videos_assembled_total,
                'assembly_failures_total': self.assembly_failures_total,
                'daemon_state': self.daemon_state,
                'frames_today': self.frames_today,
                'last_capture_time': self.last_capture_time,
                'last_video': self.last_video,
                'schedule': dict(self.schedule),
                'disk_usage_mb': self.disk_usage_mb,
            }


def _build_registry(snapshot: Dict[str, Any]) -> CollectorRegistry:
    """Render a snapshot into a fresh Prometheus registry."""
    registry = CollectorRegistry()

    counters = [
        ('frames_captured_total', 'Frames captured from the stream'),
        ('frame_failures_total', 'Frame grabs that produced no usable image'),
        ('handle_refreshes_total', 'Stream handle resolutions'),
        ('lookup_failures_total', 'Failed geocoding, sun time or handle lookups'),
        ('videos_assembled_total', 'Daily videos written'),
        ('assembly_failures_total', 'Days abandoned because encoding failed'),
    ]
    for name, description in counters:
        # Exposed as gauges: the collector owns the running totals
        Gauge(f'daylapse_{name}', description, registry=registry).set(snapshot[name])

    Gauge('daylapse_frames_today', 'Frames captured for the current day',
          registry=registry).set(snapshot['frames_today'])
    Gauge('daylapse_disk_usage_bytes', 'Size of stored videos in bytes',
          registry=registry).set(int(snapshot['disk_usage_mb'] * 1024 * 1024))
    Gauge('daylapse_service_uptime_seconds', 'Service uptime in seconds',
          registry=registry).set(snapshot['uptime_seconds'])
    Gauge('daylapse_capturing', 'Is the daemon capturing (1=yes, 0=no)',
          registry=registry).set(1 if snapshot['daemon_state'] == 'capturing' else 0)

    interval = snapshot['schedule'].get('interval_seconds')
    if interval is not None:
        Gauge('daylapse_capture_interval_seconds', "Today's capture interval",
              registry=registry).set(interval)
        Gauge('daylapse_frames_target', "Today's frame quota",
              registry=registry).set(snapshot['schedule']['total_frames_target'])

    return registry


def create_metrics_app(config, metrics: MetricsCollector) -> Flask:
    """
    Build the Flask app serving the collector.

    Exposes three endpoints:
    - /health: Service health check
    - /metrics: Prometheus-compatible metrics
    - /stats: Human-readable JSON statistics

    Args:
        config: Configuration object
        metrics: MetricsCollector instance

    Returns:
        Flask application instance
    """
    app = Flask(__name__)

    # Disable Flask default logging to avoid cluttering logs
    logging.getLogger('werkzeug').setLevel(logging.ERROR)

    @app.route('/health', methods=['GET'])
    def health():
        """
        Health check endpoint.

        Degraded when frame grabs fail far more often than they succeed.
        """
        snapshot = metrics.get_snapshot()

        status = "healthy"
        failures = snapshot['frame_failures_total']
        if failures > 10 and failures > snapshot['frames_captured_total']:
            status = "degraded"

        return jsonify({
            'status': status,
            'uptime_seconds': snapshot['uptime_seconds'],
            'daemon_state': snapshot['daemon_state'],
            'last_capture_time': snapshot['last_capture_time'],
            'frames_today': snapshot['frames_today'],
            'disk_usage_mb': snapshot['disk_usage_mb'],
        })

    @app.route('/metrics', methods=['GET'])
    def prometheus_metrics():
        registry = _build_registry(metrics.get_snapshot())
        return generate_latest(registry), 200, {'Content-Type': CONTENT_TYPE_LATEST}

    @app.route('/stats', methods=['GET'])
    def stats():
        """
        Counters grouped by concern, plus today's schedule.
        """
        snapshot = metrics.get_snapshot()

        return jsonify({
            'service': {
                'uptime_seconds': snapshot['uptime_seconds'],
                'state': snapshot['daemon_state'],
                'location': config.location_name,
            },
            'today': snapshot['schedule'],
            'capture': {
                'frames_today': snapshot['frames_today'],
                'frames_captured': snapshot['frames_captured_total'],
                'frame_failures': snapshot['frame_failures_total'],
                'handle_refreshes': snapshot['handle_refreshes_total'],
                'last_capture_time': snapshot['last_capture_time'],
            },
            'video': {
                'target_fps': config.target_fps,
                'target_length_sec': config.target_video_length_sec,
                'videos_assembled': snapshot['videos_assembled_total'],
                'assembly_failures': snapshot['assembly_failures_total'],
                'last_video': snapshot['last_video'],
            },
            'storage': {
                'disk_usage_mb': snapshot['disk_usage_mb'],
                'retention_days': config.retention_days,
            },
            'lookups': {
                'failures': snapshot['lookup_failures_total'],
            },
        })

    return app


def start_metrics_server(config, metrics: MetricsCollector):
    """
    Serve the metrics app from a daemon thread when enabled.

    Args:
        config: Configuration object with metrics settings
        metrics: MetricsCollector instance
    """
    if not config.metrics_enabled:
        logging.info("Metrics server disabled in configuration")
        return

    app = create_metrics_app(config, metrics)

    def run_server():
        """Blocking Flask server loop (runs in its own thread)."""
        app.run(
            host=config.metrics_host,
            port=config.metrics_port,
            debug=False,
            use_reloader=False,
        )

    # Daemon thread: exits with the process
    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()

    logging.info("Metrics HTTP server started on %s:%d", config.metrics_host, config.metrics_port)
