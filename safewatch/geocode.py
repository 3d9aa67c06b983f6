"""Reverse geocoding (lat/lon -> human-readable address) for alert messages.

Public Nominatim is rate-limited; results are cached by rounded coordinates
and every lookup is bounded by ``GEOCODER_TIMEOUT_SEC``. A failed lookup
returns ``None`` and the alert goes out with raw coordinates.
"""

from typing import Optional

import httpx

from safewatch import config
from safewatch.geo import coord_key


class ReverseGeocoder:
    def __init__(self, logger, *, url: str | None = None, precision: int | None = None, max_cached: int = 512) -> None:
        self.url = url or config.GEOCODER_URL
        self.precision = config.GEOCODE_PRECISION if precision is None else precision
        self.max_cached = max_cached
        self.logger = logger
        self._cache: dict[str, str] = {}
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.GEOCODER_TIMEOUT_SEC),
            headers={"User-Agent": "safewatch/1.0 (personal safety alerts)"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def reverse(self, latitude: float, longitude: float) -> Optional[str]:
        key = coord_key(latitude, longitude, self.precision)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            response = await self._client.get(
                self.url,
                params={"format": "jsonv2", "lat": f"{latitude:.6f}", "lon": f"{longitude:.6f}", "zoom": 18},
            )
        except httpx.HTTPError as exc:
            self.logger.warning("GEOCODE_FAILED key=%s error_type=%s error=%s", key, type(exc).__name__, exc)
            return None

        if response.status_code != 200:
            self.logger.warning("GEOCODE_NON_200 key=%s status=%s", key, response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            self.logger.warning("GEOCODE_BAD_JSON key=%s", key)
            return None

        name = str(payload.get("display_name") or "").strip() if isinstance(payload, dict) else ""
        if not name:
            return None
        if len(self._cache) >= self.max_cached:
            self._cache.pop(next(iter(self._cache)))
        self._cache[key] = name
        return name
