"""Cola de geocodificación (dirección -> coordenadas) con:
- De-dup por dirección normalizada: una sola llamada remota por clave y todas las
  peticiones concurrentes reciben el mismo resultado (fan-out)
- Caché en memoria + caché persistente (guardado con debounce)
- Negative-cache de 10 min para direcciones que fallaron
- Límite de concurrencia y separación mínima entre arranques (`min_delay_ms`)
- Reintentos con backoff exponencial + jitter para errores transitorios
- Rate limit (RateLimitError con retry-after): pausa TODA la cola, la cuota es compartida
- Un único temporizador de re-bombeo pendiente como máximo (sin busy-poll)

Ningún error cruza async_geocode(): todo termina en Coordinate o None.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import random

from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..const import GEOCODE_CACHE_KEY
from .address import Coordinate, coerce_coordinate, normalize_address
from .cache import NEG_CACHE_TTL_S, NegativeResultCache, PersistentCoordinateCache, StringStorage
from .scheduler import LoopScheduler

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 1
DEFAULT_MIN_DELAY_MS = 1000
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_RETRY_DELAY_MS = 1500

MAX_BACKOFF_S = 60.0
MAX_JITTER_S = 0.25
MIN_PUMP_DELAY_S = 0.05


class GeocodeError(Exception):
    """Fallo transitorio del geocodificador remoto (red, HTTP, respuesta inválida)."""


class RateLimitError(GeocodeError):
    """El proveedor pide esperar `retry_after_ms` antes de volver a llamar."""

    def __init__(self, retry_after_ms: float, message: str = "rate_limited") -> None:
        super().__init__(message)
        self.retry_after_ms = max(0.0, float(retry_after_ms))


GeocodeFn = Callable[[str], Awaitable[Optional[Coordinate]]]


@dataclass
class GeocodeProgress:
    total: int = 0
    resolved: int = 0
    queued: int = 0
    in_flight: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(eq=False)
class _Job:
    key: str
    address: str
    attempt: int = 0
    ready_at: float = 0.0
    waiters: List[asyncio.Future] = field(default_factory=list)


class GeocodeQueue:
    def __init__(
        self,
        geocode_fn: GeocodeFn,
        *,
        storage: StringStorage,
        scheduler: Optional[LoopScheduler] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        min_delay_ms: float = DEFAULT_MIN_DELAY_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_retry_delay_ms: float = DEFAULT_BASE_RETRY_DELAY_MS,
        negative_ttl: float = NEG_CACHE_TTL_S,
        storage_key: str = GEOCODE_CACHE_KEY,
    ) -> None:
        self._geocode_fn = geocode_fn
        self._scheduler = scheduler or LoopScheduler()
        self._concurrency = max(1, int(concurrency))
        self._min_delay = max(0.0, float(min_delay_ms)) / 1000.0
        self._max_retries = max(0, int(max_retries))
        self._base_retry_delay = max(0.0, float(base_retry_delay_ms)) / 1000.0

        self._memory: Dict[str, Coordinate] = {}
        self._persistent = PersistentCoordinateCache(storage, self._scheduler, storage_key)
        self._negative = NegativeResultCache(self._scheduler, negative_ttl)

        # heap de (ready_at, seq, job): el primero es siempre el más temprano
        self._queue: List[Tuple[float, int, _Job]] = []
        self._seq = itertools.count()
        self._pending: Dict[str, _Job] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._pump_handle: Any = None
        self._next_allowed_at = 0.0
        self._loaded = False
        self._closed = False

        self._total = 0
        self._resolved = 0
        self._failed = 0
        self._in_flight = 0

    # ------------------------------------------------------------------ #
    #  API pública                                                       #
    # ------------------------------------------------------------------ #
    @property
    def persistent_cache(self) -> PersistentCoordinateCache:
        return self._persistent

    @property
    def negative_cache(self) -> NegativeResultCache:
        return self._negative

    async def async_load(self) -> None:
        """Carga la caché persistente (una sola vez)."""
        if self._loaded:
            return
        self._loaded = True
        await self._persistent.async_load()

    def get_cached(self, address: str) -> Optional[Coordinate]:
        key = normalize_address(address)
        if not key:
            return None
        for source in (self._memory, self._persistent):
            coord = coerce_coordinate(source.get(key))
            if coord is not None:
                return coord
        return None

    def get_progress(self) -> GeocodeProgress:
        return GeocodeProgress(
            total=self._total,
            resolved=self._resolved,
            queued=len(self._queue),
            in_flight=self._in_flight,
            failed=self._failed,
        )

    def backoff_remaining(self) -> float:
        """Segundos hasta que la puerta global permita otro arranque."""
        return max(0.0, self._next_allowed_at - self._scheduler.now())

    async def async_geocode(self, address: str) -> Optional[Coordinate]:
        key = normalize_address(address)
        if not key:
            return None

        cached = self.get_cached(key)
        if cached is not None:
            return cached

        if self._closed or self._negative.is_blocked(key):
            return None

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        job = self._pending.get(key)
        if job is not None:
            # Misma clave ya en curso → se comparte el resultado
            job.waiters.append(fut)
        else:
            job = _Job(key=key, address=key, ready_at=self._scheduler.now())
            job.waiters.append(fut)
            self._pending[key] = job
            self._total += 1
            self._push(job)
            self._pump()

        return await fut

    async def async_flush(self) -> None:
        await self._persistent.async_flush()

    async def async_close(self) -> None:
        """Detiene la cola: resuelve a None lo pendiente y guarda la caché."""
        self._closed = True
        self._cancel_pump()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        pending = list(self._pending.values())
        self._pending.clear()
        self._queue.clear()
        for job in pending:
            self._resolve_waiters(job, None)
        await self._persistent.async_flush()

    # ------------------------------------------------------------------ #
    #  Planificación                                                     #
    # ------------------------------------------------------------------ #
    def _push(self, job: _Job) -> None:
        heapq.heappush(self._queue, (job.ready_at, next(self._seq), job))

    def _cancel_pump(self) -> None:
        if self._pump_handle is not None:
            self._pump_handle.cancel()
            self._pump_handle = None

    def _on_pump_timer(self) -> None:
        self._pump_handle = None
        self._pump()

    def _pump(self) -> None:
        if self._closed:
            return
        self._cancel_pump()

        now = self._scheduler.now()
        while (
            self._queue
            and self._in_flight < self._concurrency
            and now >= self._next_allowed_at
            and self._queue[0][0] <= now
        ):
            _, _, job = heapq.heappop(self._queue)
            self._dispatch(job, now)

        # Con la concurrencia saturada no hace falta temporizador: al terminar
        # una llamada se vuelve a bombear.
        if self._queue and self._in_flight < self._concurrency:
            next_at = max(self._next_allowed_at, self._queue[0][0])
            delay = max(MIN_PUMP_DELAY_S, next_at - now)
            self._pump_handle = self._scheduler.call_later(delay, self._on_pump_timer)

    def _dispatch(self, job: _Job, now: float) -> None:
        self._in_flight += 1
        self._next_allowed_at = now + self._min_delay
        _LOGGER.debug("Geocoding %r (attempt %d)", job.address, job.attempt + 1)
        task = self._scheduler.create_task(self._async_run(job), name=f"ha_realty_geocode_{job.key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _async_run(self, job: _Job) -> None:
        try:
            result = await self._geocode_fn(job.address)
        except RateLimitError as err:
            self._retry_or_fail(job, err, rate_limited=True)
        except Exception as err:  # noqa: BLE001
            self._retry_or_fail(job, err, rate_limited=False)
        else:
            coord = coerce_coordinate(result)
            if coord is None:
                # "No encontrado" (o coordenada degenerada): terminal, sin reintento
                self._fail(job)
            else:
                self._succeed(job, coord)
        finally:
            self._in_flight -= 1
            self._pump()

    def _retry_or_fail(self, job: _Job, err: Exception, rate_limited: bool) -> None:
        if self._closed:
            return
        if job.attempt >= self._max_retries:
            _LOGGER.debug("Giving up on %r after %d attempts: %s", job.address, job.attempt + 1, err)
            self._fail(job)
            return

        now = self._scheduler.now()
        backoff = min(MAX_BACKOFF_S, self._base_retry_delay * (2 ** job.attempt))
        jitter = random.uniform(0, MAX_JITTER_S)
        if rate_limited:
            retry_after = getattr(err, "retry_after_ms", 0.0) / 1000.0
            job.ready_at = now + max(retry_after, backoff) + jitter
            self._next_allowed_at = max(self._next_allowed_at, job.ready_at)
            _LOGGER.warning(
                "Geocoder rate limited; pausing queue for %.1fs (%d queued)",
                job.ready_at - now,
                len(self._queue) + 1,
            )
        else:
            job.ready_at = now + backoff + jitter
            _LOGGER.debug("Retrying %r in %.2fs: %s", job.address, job.ready_at - now, err)
        job.attempt += 1
        self._push(job)

    def _succeed(self, job: _Job, coord: Coordinate) -> None:
        self._memory[job.key] = coord
        self._persistent.set(job.key, coord)
        self._negative.discard(job.key)
        self._resolved += 1
        self._finish(job, coord)
        self._persistent.schedule_persist()

    def _fail(self, job: _Job) -> None:
        self._failed += 1
        self._negative.add(job.key)
        self._finish(job, None)

    def _finish(self, job: _Job, value: Optional[Coordinate]) -> None:
        if self._pending.get(job.key) is job:
            self._pending.pop(job.key, None)
        self._resolve_waiters(job, value)

    @staticmethod
    def _resolve_waiters(job: _Job, value: Optional[Coordinate]) -> None:
        for fut in job.waiters:
            if not fut.done():
                fut.set_result(dict(value) if value is not None else None)
        job.waiters.clear()
