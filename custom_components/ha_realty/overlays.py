"""Reconciliación de marcadores del mapa a medida que se resuelven las direcciones.

Flujo por sesión (cada cambio de la lista de transacciones abre una nueva):
- Se borran los marcadores anteriores y se reinician los contadores
- Transacciones con coordenada válida → marcador inmediato
- El resto se agrupa por dirección normalizada: una búsqueda por dirección,
  un marcador por transacción al resolverse
- Los resultados se consumen en el orden en que llegan, no en el de petición
- Avisos de posiciones (100 ms) y ajuste de encuadre (250 ms) agrupados con debounce
- Auto-encuadre como mucho una vez por sesión y solo si no hubo interacción
- Resultados de sesiones anteriores se ignoran (la cola no se cancela: la caché
  es global por dirección y resolver tarde es inocuo)
"""
from __future__ import annotations

import asyncio
import itertools
import logging

from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from homeassistant.core import HomeAssistant

from .const import EVENT_POSITIONS_CHANGED
from .geocode import (
    Coordinate,
    GeocodeProgress,
    GeocodeQueue,
    LoopScheduler,
    TrailingDebouncer,
    is_valid_coord,
    normalize_address,
)
from .market import Transaction, format_price, geocode_query, marker_label, price_color

_LOGGER = logging.getLogger(__name__)

POSITIONS_NOTIFY_S = 0.1
BOUNDS_UPDATE_S = 0.25


class OverlayHost(Protocol):
    def add_overlay(self, transaction: Transaction, coord: Coordinate) -> Any: ...

    def remove_overlay(self, handle: Any) -> None: ...

    def fit_bounds(self, bounds: "LatLngBounds") -> None: ...

    def positions_changed(self, positions: Dict[str, Coordinate]) -> None: ...

    def reset_view(self) -> None: ...

class LatLngBounds:
    """Caja envolvente (sw/ne) que crece con extend()."""

    def __init__(self) -> None:
        self.south: Optional[float] = None
        self.west: Optional[float] = None
        self.north: Optional[float] = None
        self.east: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return self.south is None

    def extend(self, coord: Coordinate) -> None:
        lat, lng = coord["lat"], coord["lng"]
        if self.is_empty:
            self.south = self.north = lat
            self.west = self.east = lng
            return
        self.south = min(self.south, lat)
        self.north = max(self.north, lat)
        self.west = min(self.west, lng)
        self.east = max(self.east, lng)

    def copy(self) -> "LatLngBounds":
        other = LatLngBounds()
        other.south, other.west, other.north, other.east = self.south, self.west, self.north, self.east
        return other

    def as_dict(self) -> Optional[Dict[str, Coordinate]]:
        if self.is_empty:
            return None
        return {
            "sw": {"lat": self.south, "lng": self.west},
            "ne": {"lat": self.north, "lng": self.east},
        }


class OverlayReconciler:
    def __init__(
        self,
        queue: GeocodeQueue,
        host: OverlayHost,
        scheduler: Optional[LoopScheduler] = None,
        auto_fit_bounds: bool = True,
    ) -> None:
        self._queue = queue
        self._host = host
        self._scheduler = scheduler or LoopScheduler()
        self._auto_fit_bounds = auto_fit_bounds

        self._session = 0
        self._overlays: List[Any] = []
        self._positions: Dict[str, Coordinate] = {}
        self._bounds = LatLngBounds()
        self._auto_fitted = False
        self._user_interacted = False
        self._tasks: Set[asyncio.Task] = set()

        self._total = 0
        self._resolved = 0
        self._failed = 0

        self._positions_notify = TrailingDebouncer(self._scheduler, POSITIONS_NOTIFY_S, self._notify_positions)
        self._bounds_update = TrailingDebouncer(self._scheduler, BOUNDS_UPDATE_S, self._maybe_auto_fit)

    # --- estado ---
    @property
    def positions(self) -> Dict[str, Coordinate]:
        return dict(self._positions)

    @property
    def bounds(self) -> LatLngBounds:
        return self._bounds.copy()

    @property
    def overlay_count(self) -> int:
        return len(self._overlays)

    @property
    def progress(self) -> GeocodeProgress:
        live = self._queue.get_progress()
        return GeocodeProgress(
            total=self._total,
            resolved=self._resolved,
            queued=live.queued,
            in_flight=live.in_flight,
            failed=self._failed,
        )

    @property
    def has_marker_work(self) -> bool:
        return self._total > 0 and (self._resolved + self._failed) < self._total

    # --- acciones del host ---
    def mark_user_interaction(self) -> None:
        self._user_interacted = True

    def fit_to_last_bounds(self) -> bool:
        if self._bounds.is_empty:
            return False
        self._call_host("fit_bounds", self._bounds.copy())
        return True

    def set_transactions(self, transactions: Iterable[Transaction]) -> None:
        """Abre una sesión nueva con la lista de transacciones."""
        self._reset()
        self._session += 1
        session = self._session

        by_address: Dict[str, List[Transaction]] = {}
        for t in transactions:
            if is_valid_coord(t.lat, t.lng):
                self._create_overlay(t, {"lat": t.lat, "lng": t.lng})
                continue
            address = normalize_address(geocode_query(t))
            if not address:
                continue
            by_address.setdefault(address, []).append(t)

        self._total = len(by_address)
        self._bounds_update.schedule()
        _LOGGER.debug(
            "Overlay session %d: %d placed, %d addresses to geocode",
            session, len(self._overlays), self._total,
        )

        for address, txs in by_address.items():
            cached = self._queue.get_cached(address)
            if cached is not None:
                self._apply(address, txs, cached)
                continue
            task = self._scheduler.create_task(
                self._async_resolve(session, address, txs), name=f"ha_realty_overlay_{session}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def async_wait_idle(self) -> None:
        """Espera a que terminen las búsquedas lanzadas (sesión actual o anteriores)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def async_close(self) -> None:
        """Desmontaje: invalida la sesión, borra marcadores y temporizadores."""
        self._session += 1
        self._reset()

    # --- internos ---
    async def _async_resolve(self, session: int, address: str, txs: List[Transaction]) -> None:
        coord = await self._queue.async_geocode(address)
        if session != self._session:
            return
        if coord is None:
            self._failed += 1
            return
        self._apply(address, txs, coord)

    def _apply(self, address: str, txs: List[Transaction], coord: Coordinate) -> None:
        self._resolved += 1
        for t in txs:
            self._create_overlay(t, coord)
        self._bounds_update.schedule()

    def _create_overlay(self, t: Transaction, coord: Coordinate) -> None:
        coord = {"lat": float(coord["lat"]), "lng": float(coord["lng"])}
        self._positions[t.id] = coord
        self._positions_notify.schedule()
        handle = self._call_host("add_overlay", t, coord)
        self._overlays.append(handle)
        self._bounds.extend(coord)

    def _reset(self) -> None:
        self._positions_notify.cancel()
        self._bounds_update.cancel()
        for handle in self._overlays:
            self._call_host("remove_overlay", handle)
        self._overlays = []
        self._positions = {}
        self._bounds = LatLngBounds()
        self._auto_fitted = False
        self._user_interacted = False
        self._total = self._resolved = self._failed = 0
        self._call_host("reset_view")

    def _notify_positions(self) -> None:
        self._call_host("positions_changed", dict(self._positions))

    def _maybe_auto_fit(self) -> None:
        if (
            self._overlays
            and self._auto_fit_bounds
            and not self._user_interacted
            and not self._auto_fitted
        ):
            self._call_host("fit_bounds", self._bounds.copy())
            self._auto_fitted = True

    def _call_host(self, method: str, *args: Any) -> Any:
        try:
            return getattr(self._host, method)(*args)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Overlay host %s failed", method)
            return None


class OverlayBoard:
    """Host en Home Assistant: guarda los marcadores para el panel y avisa por el bus."""

    def __init__(self, hass: HomeAssistant) -> None:
        self._hass = hass
        self._ids = itertools.count(1)
        self._overlays: Dict[int, Dict[str, Any]] = {}
        self._positions: Dict[str, Coordinate] = {}
        self._fit_request: Optional[Dict[str, Coordinate]] = None

    def add_overlay(self, transaction: Transaction, coord: Coordinate) -> int:
        handle = next(self._ids)
        self._overlays[handle] = {
            "id": handle,
            "transaction_id": transaction.id,
            "lat": coord["lat"],
            "lng": coord["lng"],
            "color": price_color(transaction.price),
            "label": marker_label(transaction.price),
            "price": transaction.price,
            "price_text": format_price(transaction.price),
            "address": transaction.address,
        }
        return handle

    def remove_overlay(self, handle: Any) -> None:
        self._overlays.pop(handle, None)

    def fit_bounds(self, bounds: LatLngBounds) -> None:
        self._fit_request = bounds.as_dict()

    def positions_changed(self, positions: Dict[str, Coordinate]) -> None:
        self._positions = positions
        self._hass.bus.async_fire(EVENT_POSITIONS_CHANGED, {"count": len(positions)})

    def reset_view(self) -> None:
        """Nueva sesión o cierre: no se conservan posiciones ni encuadres anteriores."""
        had_positions = bool(self._positions)
        self._positions = {}
        self._fit_request = None
        if had_positions:
            self._hass.bus.async_fire(EVENT_POSITIONS_CHANGED, {"count": 0})

    def overlays(self) -> List[Dict[str, Any]]:
        return list(self._overlays.values())

    def positions(self) -> Dict[str, Coordinate]:
        return dict(self._positions)

    def pop_fit_request(self) -> Optional[Dict[str, Coordinate]]:
        """La petición de encuadre se entrega una sola vez al panel."""
        req, self._fit_request = self._fit_request, None
        return req
