"""Cachés de geocodificación.

- PersistentCoordinateCache: dirección normalizada -> {lat, lng}, sobrevive a
  reinicios, sin expulsión, guardado con debounce (500 ms).
- NegativeResultCache: direcciones que fallaron recientemente, TTL corto,
  expiración perezosa al consultar (sin barrido periódico).
"""
from __future__ import annotations

import asyncio
import json
import logging

from typing import Any, Dict, Optional, Protocol

from ..const import GEOCODE_CACHE_KEY
from .address import Coordinate, coerce_coordinate, normalize_address
from .scheduler import LoopScheduler, TrailingDebouncer

_LOGGER = logging.getLogger(__name__)

PERSIST_DEBOUNCE_S = 0.5
NEG_CACHE_TTL_S = 600.0  # 10 min


class StringStorage(Protocol):
    async def async_read_string(self, key: str) -> Optional[str]: ...

    async def async_write_string(self, key: str, value: str) -> None: ...


class PersistentCoordinateCache:
    def __init__(
        self,
        storage: StringStorage,
        scheduler: LoopScheduler,
        storage_key: str = GEOCODE_CACHE_KEY,
        persist_delay: float = PERSIST_DEBOUNCE_S,
    ) -> None:
        self._storage = storage
        self._scheduler = scheduler
        self._key = storage_key
        self._entries: Dict[str, Coordinate] = {}
        self._persist_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._debouncer = TrailingDebouncer(scheduler, persist_delay, self._start_persist)

    @property
    def storage_key(self) -> str:
        return self._key

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def async_load(self) -> Dict[str, Coordinate]:
        """Lee la caché duradera. Nunca lanza: ante cualquier error, caché vacía."""
        try:
            raw = await self._storage.async_read_string(self._key)
        except Exception as err:  # noqa: BLE001
            _LOGGER.warning("Could not read geocode cache %s: %s", self._key, err)
            raw = None

        loaded: Dict[str, Coordinate] = {}
        if raw:
            try:
                data: Any = json.loads(raw)
            except ValueError as err:
                _LOGGER.warning("Discarding unreadable geocode cache %s: %s", self._key, err)
                data = None
            if isinstance(data, dict):
                for k, v in data.items():
                    key = normalize_address(k) if isinstance(k, str) else ""
                    coord = coerce_coordinate(v)
                    if key and coord:
                        loaded[key] = coord

        # Lo resuelto durante la carga gana sobre lo leído
        loaded.update(self._entries)
        self._entries = loaded
        _LOGGER.debug("Loaded %d cached coordinates from %s", len(loaded), self._key)
        return dict(loaded)

    def get(self, key: str) -> Optional[Coordinate]:
        return self._entries.get(key)

    def set(self, key: str, coord: Coordinate) -> None:
        """Solo memoria; la escritura duradera la hace schedule_persist()."""
        self._entries[key] = {"lat": float(coord["lat"]), "lng": float(coord["lng"])}

    def schedule_persist(self) -> None:
        self._debouncer.schedule()

    def _start_persist(self) -> None:
        if self._persist_task is not None and not self._persist_task.done():
            # escritura anterior en curso: se vuelve a intentar tras otra ventana
            self._debouncer.schedule()
            return
        self._persist_task = self._scheduler.create_task(
            self.async_persist(), name="ha_realty_geocode_cache_persist"
        )

    async def async_persist(self) -> bool:
        """Guarda el mapa completo. Los fallos se registran y se ignoran."""
        async with self._write_lock:
            payload = json.dumps(self._entries, ensure_ascii=False, separators=(",", ":"))
            try:
                await self._storage.async_write_string(self._key, payload)
            except Exception as err:  # noqa: BLE001
                _LOGGER.warning("Could not persist geocode cache %s: %s", self._key, err)
                return False
        return True

    async def async_flush(self) -> bool:
        """Guarda ya, anulando el debounce pendiente (descarga / parada de HA)."""
        self._debouncer.cancel()
        task = self._persist_task
        if task is not None and not task.done():
            await asyncio.shield(task)
        return await self.async_persist()


class NegativeResultCache:
    def __init__(self, scheduler: LoopScheduler, ttl: float = NEG_CACHE_TTL_S) -> None:
        self._scheduler = scheduler
        self._ttl = ttl
        self._until: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._until)

    def add(self, key: str) -> None:
        self._until[key] = self._scheduler.now() + self._ttl

    def retry_after(self, key: str) -> float:
        """Segundos que faltan para poder reintentar `key` (0 si no está bloqueada)."""
        until = self._until.get(key)
        if until is None:
            return 0.0
        remaining = until - self._scheduler.now()
        if remaining <= 0:
            self._until.pop(key, None)
            return 0.0
        return remaining

    def is_blocked(self, key: str) -> bool:
        return self.retry_after(key) > 0

    def discard(self, key: str) -> None:
        self._until.pop(key, None)

    def clear(self) -> None:
        self._until.clear()
