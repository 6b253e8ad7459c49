"""Geocodificador remoto: Kakao Local REST (búsqueda de direcciones).

- Puerta propia de cortesía (min_interval) serializada con asyncio.Lock
- 429 → RateLimitError (mínimo 5 s, respeta Retry-After en segundos o fecha HTTP)
  y retrasa también la puerta propia
- Resto de fallos (HTTP != 200, timeout, red, JSON inválido) → GeocodeError
- Sin resultados o coordenada degenerada → None
"""
from __future__ import annotations

import asyncio
import logging

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import aiohttp

from .address import Coordinate, is_valid_coord, normalize_address
from .queue import GeocodeError, RateLimitError

_LOGGER = logging.getLogger(__name__)

KAKAO_ADDRESS_URL = "https://dapi.kakao.com/v2/local/search/address.json"
KAKAO_TIMEOUT = 15  # seg
MIN_INTERVAL_S = 1.2
MIN_RATE_LIMIT_WAIT_MS = 5000


def parse_retry_after_ms(header: Optional[str]) -> float:
    """Retry-After en milisegundos (delta-seconds o fecha HTTP); 0 si no hay dato válido."""
    if not header:
        return 0.0
    header = header.strip()
    try:
        secs = int(header)
    except ValueError:
        try:
            ra_dt = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            return 0.0
        if ra_dt.tzinfo is None:
            ra_dt = ra_dt.replace(tzinfo=timezone.utc)
        secs = int((ra_dt - datetime.now(timezone.utc)).total_seconds())
    return float(secs * 1000) if secs > 0 else 0.0


def parse_documents(data: Any) -> Optional[Coordinate]:
    if not isinstance(data, dict) or not isinstance(data.get("documents"), list):
        raise GeocodeError("invalid_payload")
    documents = data["documents"]
    if not documents or not isinstance(documents[0], dict):
        return None
    first = documents[0]
    try:
        lat = float(first.get("y"))
        lng = float(first.get("x"))
    except (TypeError, ValueError):
        return None
    if not is_valid_coord(lat, lng):
        return None
    return {"lat": lat, "lng": lng}


class KakaoGeocoder:
    """Implementa `geocode_fn(address) -> Coordinate | None` para la GeocodeQueue."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: str,
        min_interval: float = MIN_INTERVAL_S,
    ) -> None:
        self._session = session
        self._api_key = (api_key or "").strip()
        self._min_interval = max(0.0, float(min_interval))
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    async def _wait_turn(self) -> None:
        loop = asyncio.get_running_loop()
        async with self._lock:
            now = loop.time()
            wait = max(0.0, self._next_allowed - now)
            self._next_allowed = now + wait + self._min_interval
        if wait > 0:
            await asyncio.sleep(wait)

    def _push_back(self, seconds: float) -> None:
        loop = asyncio.get_running_loop()
        self._next_allowed = max(self._next_allowed, loop.time() + seconds)

    async def __call__(self, address: str) -> Optional[Coordinate]:
        query = normalize_address(address)
        if not query:
            return None
        if not self._api_key:
            raise GeocodeError("missing_api_key")

        await self._wait_turn()

        params = {"query": query, "page": "1", "size": "1"}
        headers = {
            "Authorization": f"KakaoAK {self._api_key}",
            "Accept": "application/json",
        }
        try:
            async with self._session.get(
                KAKAO_ADDRESS_URL,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=KAKAO_TIMEOUT),
            ) as resp:
                if resp.status == 429:
                    retry_after_ms = max(
                        MIN_RATE_LIMIT_WAIT_MS,
                        parse_retry_after_ms(resp.headers.get("Retry-After")),
                    )
                    self._push_back(retry_after_ms / 1000.0)
                    raise RateLimitError(retry_after_ms)

                if resp.status != 200:
                    text = await resp.text()
                    raise GeocodeError(f"kakao_rest_failed:{resp.status}:{text[:120]}")

                try:
                    data = await resp.json(content_type=None)
                except ValueError as err:
                    raise GeocodeError("invalid_json_from_kakao") from err

        except asyncio.TimeoutError as err:
            raise GeocodeError("kakao_timeout") from err
        except aiohttp.ClientError as err:
            raise GeocodeError(f"kakao_error: {err}") from err

        coord = parse_documents(data)
        if coord is None:
            _LOGGER.debug("No Kakao match for %r", query)
        return coord
