#!/usr/bin/env python3
"""
HTTP Lookups for the Daylight Timelapse Daemon

Two external services are used:
- Geocoding (OpenStreetMap Nominatim): location name -> coordinates.
  Nominatim's usage policy allows at most one request per second.
- Sunrise/sunset (sunrise-sunset.org): coordinates + date -> UTC times,
  converted here to the daemon's timezone.

Network and protocol errors are reported as TransientLookupFailure so the
scheduler can retry them with its fixed backoff.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from typing import Optional

import requests

from .errors import LocationNotFound, TransientLookupFailure


@dataclass(frozen=True)
class Location:
    name: str
    latitude: float
    longitude: float
    display_name: str


@dataclass(frozen=True)
class SunTimes:
    date: date
    sunrise: datetime
    sunset: datetime


def _get_json(url: str, params: dict, user_agent: str, timeout: float):
    """
    GET a JSON document.

    Raises:
        TransientLookupFailure: On timeout, connection error, non-200 status
            or a body that is not JSON
    """
    try:
        response = requests.get(
            url,
            params=params,
            headers={'User-Agent': user_agent},
            timeout=timeout,
        )
    except requests.exceptions.Timeout as e:
        raise TransientLookupFailure(f"Request to {url} timed out") from e
    except requests.exceptions.RequestException as e:
        raise TransientLookupFailure(f"Request to {url} failed: {e}") from e

    if response.status_code != 200:
        raise TransientLookupFailure(
            f"{url} returned HTTP {response.status_code}: {response.text[:200]}"
        )

    try:
        return response.json()
    except ValueError as e:
        raise TransientLookupFailure(f"{url} returned invalid JSON") from e


# ============================================================================
# Geocoding
# ============================================================================

class Geocoder:
    """
    Resolves a human-readable place name to coordinates.

    Requests are paced to at least min_spacing_sec apart.
    """

    def __init__(self, config, clock, min_spacing_sec: float = 1.0):
        self.url = config.geocode_url
        self.user_agent = config.user_agent
        self.timeout = config.http_timeout_sec
        self.clock = clock
        self.min_spacing_sec = min_spacing_sec
        self._last_request: Optional[datetime] = None

    def _pace(self):
        if self._last_request is None:
            return
        elapsed = (self.clock.now() - self._last_request).total_seconds()
        if elapsed < self.min_spacing_sec:
            self.clock.sleep(self.min_spacing_sec - elapsed)

    def geocode(self, name: str) -> Location:
        """
        Look up a place name.

        Args:
            name: Free-form location, e.g. "Lake Tahoe, CA"

        Returns:
            Location of the best match

        Raises:
            LocationNotFound: If the service has no match
            TransientLookupFailure: On network or protocol errors
        """
        self._pace()
        self._last_request = self.clock.now()

        results = _get_json(
            self.url,
            {'q': name, 'format': 'json', 'limit': 1},
            self.user_agent,
            self.timeout,
        )

        if not results:
            raise LocationNotFound(f"No geocoding match for {name!r}")

        try:
            best = results[0]
            location = Location(
                name=name,
                latitude=float(best['lat']),
                longitude=float(best['lon']),
                display_name=best.get('display_name', name),
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise TransientLookupFailure(f"Malformed geocoding response: {e}") from e

        logging.info(
            "Geocoded %r to %.4f, %.4f (%s)",
            name, location.latitude, location.longitude, location.display_name
        )
        return location


def resolve_location(config, geocoder: Geocoder, backoff, clock) -> Location:
    """
    Return the configured coordinates, geocoding the name if needed.

    Transient failures are retried with the given backoff until they succeed
    or shutdown is requested.

    Raises:
        LocationNotFound: If the name has no match
        TransientLookupFailure: If shutdown interrupts the retries
    """
    if config.latitude is not None and config.longitude is not None:
        return Location(
            name=config.location_name,
            latitude=config.latitude,
            longitude=config.longitude,
            display_name=config.location_name,
        )

    while True:
        try:
            return geocoder.geocode(config.location_name)
        except TransientLookupFailure as e:
            logging.warning("Geocoding failed: %s", e)
            if clock.interrupted:
                raise
            backoff.wait(clock)


# ============================================================================
# Sunrise / Sunset
# ============================================================================

class SunTimesClient:
    """Fetches sunrise and sunset for a location and date."""

    def __init__(self, config, tz: Optional[tzinfo] = None):
        self.url = config.sun_url
        self.user_agent = config.user_agent
        self.timeout = config.http_timeout_sec
        self.tz = tz

    def _localize(self, value: str) -> datetime:
        moment = datetime.fromisoformat(value)
        if moment.tzinfo is None:
            raise ValueError(f"Timestamp without offset: {value}")
        if self.tz is None:
            return moment.astimezone()
        return moment.astimezone(self.tz)

    def _params(self, latitude: float, longitude: float, day: date) -> dict:
        params = {'lat': latitude, 'lng': longitude, 'date': day.isoformat(), 'formatted': 0}
        # tzid makes the service answer for the local calendar day
        zone_name = getattr(self.tz, 'key', None)
        if zone_name:
            params['tzid'] = zone_name
        return params

    def fetch(self, latitude: float, longitude: float, day: date) -> SunTimes:
        """
        Fetch sun times for a day.

        Args:
            latitude: Decimal degrees
            longitude: Decimal degrees
            day: Calendar date

        Returns:
            SunTimes with timezone-aware datetimes in the daemon's timezone

        Raises:
            TransientLookupFailure: On any failure, or when the sunrise returned
                is not on the requested local date
        """
        payload = _get_json(
            self.url,
            self._params(latitude, longitude, day),
            self.user_agent,
            self.timeout,
        )

        if payload.get('status') != 'OK':
            raise TransientLookupFailure(f"Sun lookup status {payload.get('status')!r}")

        try:
            results = payload['results']
            sun_times = SunTimes(
                date=day,
                sunrise=self._localize(results['sunrise']),
                sunset=self._localize(results['sunset']),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TransientLookupFailure(f"Malformed sun lookup response: {e}") from e

        if sun_times.sunrise.date() != day:
            raise TransientLookupFailure(
                f"Sun lookup for {day} returned a sunrise on {sun_times.sunrise.date()}"
            )

        logging.info(
            "Sun times for %s: sunrise %s, sunset %s",
            day, sun_times.sunrise.strftime('%H:%M:%S'), sun_times.sunset.strftime('%H:%M:%S')
        )
        return sun_times
