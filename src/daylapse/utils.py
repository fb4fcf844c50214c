#!/usr/bin/env python3
"""
Utility Functions for the Daylight Timelapse Daemon

This module contains utility functions for:
- Logging setup
- Startup checks for required external tools
"""

import logging
import shutil
import sys
from typing import List, Optional

from .errors import StartupError


# ============================================================================
# Logging Setup
# ============================================================================

def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure structured logging for the service.

    Logs are written to stdout in a structured format suitable
    for systemd journald, and optionally mirrored to a file.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path of an additional log file
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers,
    )

    logging.info("Logging initialized at %s level", log_level)


# ============================================================================
# Startup Checks
# ============================================================================

def required_tools(config) -> List[str]:
    """External executables the configured daemon will invoke."""
    tools = [config.ffmpeg_path]
    if config.resolver == 'yt-dlp':
        tools.append(config.yt_dlp_path)
    return tools


def check_required_tools(config):
    """
    Verify every external tool is on PATH (or an existing path).

    Raises:
        StartupError: Naming the first missing tool
    """
    for tool in required_tools(config):
        found = shutil.which(tool)
        if found is None:
            raise StartupError(f"Required tool not found: {tool}")
        logging.info("Found %s at %s", tool, found)
