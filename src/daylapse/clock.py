#!/usr/bin/env python3
"""
Wall-clock time source.

Every scheduling decision reads time through a Clock so tests can substitute
a clock that advances only when the daemon sleeps.
"""

import logging
import threading
from datetime import date, datetime, time as dtime, timedelta, tzinfo
from typing import Optional


class Clock:
    """
    Timezone-aware wall clock with interruptible sleeps.

    Sleeps wait on the shutdown event, so setting it wakes the daemon at the
    next suspension point.
    """

    def __init__(self, tz: Optional[tzinfo] = None,
                 shutdown_event: Optional[threading.Event] = None):
        self.tz = tz
        self.shutdown_event = shutdown_event or threading.Event()

    def now(self) -> datetime:
        if self.tz is None:
            return datetime.now().astimezone()
        return datetime.now(self.tz)

    def today(self) -> date:
        return self.now().date()

    @property
    def interrupted(self) -> bool:
        return self.shutdown_event.is_set()

    def sleep(self, seconds: float):
        if seconds <= 0:
            return
        self.shutdown_event.wait(timeout=seconds)

    def sleep_until(self, target: datetime):
        """Sleep until the given aware datetime (no-op if already past)."""
        wait_seconds = (target - self.now()).total_seconds()
        if wait_seconds > 0:
            logging.debug("Sleeping %.0f seconds until %s", wait_seconds, target.isoformat())
        self.sleep(wait_seconds)

    def next_midnight(self) -> datetime:
        """Start of the next calendar day in the clock's timezone."""
        midnight = datetime.combine(self.today() + timedelta(days=1), dtime.min)
        if self.tz is None:
            # Re-localize: today's fixed offset is wrong across a DST change
            return midnight.astimezone()
        return midnight.replace(tzinfo=self.tz)
