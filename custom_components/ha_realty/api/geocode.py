"""Geocodificación bajo demanda a través de la cola compartida."""
from __future__ import annotations

import logging

from typing import Any, Dict

from homeassistant.components.http import HomeAssistantView

from ..const import DATA_QUEUE, DOMAIN
from ..geocode import GeocodeQueue, normalize_address
from .config import is_forbidden

_LOGGER = logging.getLogger(__name__)


def _no_store(view: HomeAssistantView, payload: Dict[str, Any], status_code: int = 200):
    resp = view.json(payload, status_code=status_code)
    resp.headers["Cache-Control"] = "no-store"
    return resp


class GeocodeEndpoint(HomeAssistantView):
    url = "/api/ha_realty/geocode"
    name = "api:ha_realty/geocode"
    requires_auth = True

    async def get(self, request):
        """
        Query params:
          - query (str): dirección a geocodificar
            source: cache | remote | negative (no encontrada hace poco, sin llamada remota)
          - progress=1 (opcional) -> estado de la cola en lugar de geocodificar
        """
        hass = request.app["hass"]
        if is_forbidden(request):
            return _no_store(self, {"error": "forbidden"}, 403)

        queue: GeocodeQueue | None = (hass.data.get(DOMAIN) or {}).get(DATA_QUEUE)
        if queue is None:
            return _no_store(self, {"error": "not_ready"}, 503)

        qs = request.rel_url.query or {}

        if qs.get("progress") == "1":
            payload = queue.get_progress().as_dict()
            payload["backoff_remaining"] = round(queue.backoff_remaining(), 3)
            payload["cache_len"] = len(queue.persistent_cache)
            payload["neg_len"] = len(queue.negative_cache)
            return _no_store(self, payload)

        query = (qs.get("query") or "").strip()
        if not query:
            return _no_store(self, {"error": "missing_query"}, 400)

        key = normalize_address(query)
        if not key:
            return _no_store(self, {"error": "invalid_query"}, 400)

        try:
            coord = queue.get_cached(key)
            source = "cache"
            if coord is None and queue.negative_cache.is_blocked(key):
                source = "negative"
            elif coord is None:
                coord = await queue.async_geocode(key)
                source = "remote"
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Geocode request failed for %r", key)
            return _no_store(self, {"error": "internal_error"}, 500)

        return _no_store(self, {"query": query, "key": key, "coord": coord, "source": source})
