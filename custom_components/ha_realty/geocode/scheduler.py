"""Reloj y temporizadores inyectables (event loop en producción, falsos en tests)."""
from __future__ import annotations

import asyncio
import logging

from typing import Any, Callable, Coroutine, Optional

_LOGGER = logging.getLogger(__name__)


class LoopScheduler:
    """Reloj monotónico (segundos) y temporizadores del event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay), callback)

    def create_task(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        return self.loop.create_task(coro, name=name)


class TrailingDebouncer:
    """Agrupa mutaciones y llama a `callback` una sola vez al vencer el temporizador.

    Mientras haya un temporizador pendiente, nuevas llamadas a schedule() no lo
    reinician: el disparo pendiente cubre todas las mutaciones anteriores.
    """

    def __init__(self, scheduler: LoopScheduler, delay: float, callback: Callable[[], Any]) -> None:
        self._scheduler = scheduler
        self._delay = delay
        self._callback = callback
        self._handle: Any = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        if self._handle is not None:
            return
        self._handle = self._scheduler.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        try:
            self._callback()
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Debounced callback failed")
