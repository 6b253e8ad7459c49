"""Almacenamiento duradero de cadenas (clave -> texto) para la caché de coordenadas.

Los errores de lectura/escritura se propagan: quien decide ignorarlos es la caché.
"""
from __future__ import annotations

import logging

from typing import Dict, Optional

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store

from ..const import STORAGE_VERSION

_LOGGER = logging.getLogger(__name__)


class HassStoreStorage:
    """Un `Store` de Home Assistant por clave (.storage/<clave>)."""

    def __init__(self, hass: HomeAssistant, version: int = STORAGE_VERSION) -> None:
        self._hass = hass
        self._version = version
        self._stores: Dict[str, Store] = {}

    def _store(self, key: str) -> Store:
        store = self._stores.get(key)
        if store is None:
            store = self._stores[key] = Store(self._hass, self._version, key)
        return store

    async def async_read_string(self, key: str) -> Optional[str]:
        data = await self._store(key).async_load()
        if not isinstance(data, dict):
            return None
        payload = data.get("payload")
        return payload if isinstance(payload, str) else None

    async def async_write_string(self, key: str, value: str) -> None:
        await self._store(key).async_save({"payload": value})
