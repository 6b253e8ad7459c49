# conftest.py

import asyncio
import itertools

import pytest
from unittest.mock import MagicMock, AsyncMock

from custom_components.ha_realty.geocode import queue as queue_module


##########################
# DOBLES DE PRUEBA
##########################

class FakeHandle:
    def __init__(self, when, seq, callback):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Reloj manual: el tiempo solo avanza con advance()."""

    def __init__(self, start=1000.0):
        self._now = start
        self._seq = itertools.count()
        self._timers = []

    def now(self):
        return self._now

    def call_later(self, delay, callback):
        handle = FakeHandle(self._now + max(0.0, delay), next(self._seq), callback)
        self._timers.append(handle)
        return handle

    def create_task(self, coro, name=None):
        return asyncio.get_running_loop().create_task(coro, name=name)

    @property
    def pending_timers(self):
        return [h for h in self._timers if not h.cancelled]

    async def advance(self, seconds=0.0):
        """Avanza el reloj disparando en orden los temporizadores vencidos."""
        target = self._now + seconds
        while True:
            await settle()
            due = [h for h in self._timers if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._timers.remove(handle)
            self._now = max(self._now, handle.when)
            handle.callback()
        self._now = target
        self._timers = [h for h in self._timers if not h.cancelled]
        await settle()


class MemoryStorage:
    def __init__(self, data=None):
        self.data = dict(data or {})
        self.writes = []
        self.fail_read = False
        self.fail_write = False

    async def async_read_string(self, key):
        if self.fail_read:
            raise OSError("read failed")
        return self.data.get(key)

    async def async_write_string(self, key, value):
        if self.fail_write:
            raise OSError("disk full")
        self.data[key] = value
        self.writes.append((key, value))


class FakeGeocoder:
    """geocode_fn programable.

    `results` asigna a cada dirección una lista de resultados consumidos en orden
    (el último se repite). Un resultado puede ser una coordenada, None o una excepción.
    """

    def __init__(self, results=None, default=None, clock=None):
        self.results = {k: list(v) for k, v in (results or {}).items()}
        self.default = default if default is not None else {"lat": 37.5, "lng": 127.0}
        self.clock = clock
        self.calls = []
        self.call_times = []
        self.gate = None

    async def __call__(self, address):
        self.calls.append(address)
        if self.clock is not None:
            self.call_times.append(self.clock())
        if self.gate is not None:
            await self.gate.wait()
        outcomes = self.results.get(address)
        if outcomes:
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        else:
            outcome = self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


async def settle(rounds=20):
    """Deja correr las tareas listas del event loop."""
    for _ in range(rounds):
        await asyncio.sleep(0)


##########################
# FIXTURES
##########################

@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def no_jitter(monkeypatch):
    """Jitter a cero para poder comprobar los tiempos exactos de reintento."""
    monkeypatch.setattr(queue_module.random, "uniform", lambda _a, _b: 0.0)


@pytest.fixture
def hass():
    """Mock básico de HomeAssistant."""
    hass = MagicMock()
    hass.data = {}
    hass.config.path = MagicMock(side_effect=lambda *args: "/mock_path/" + "/".join(args))
    hass.async_add_executor_job = AsyncMock()
    hass.config_entries.async_reload = AsyncMock()
    return hass


@pytest.fixture
def config_entry():
    """Mock de ConfigEntry con datos válidos."""
    entry = MagicMock()
    entry.data = {"kakao_rest_api_key": "test-key", "enable_debug": False}
    entry.options = {}
    entry.entry_id = "test_entry"
    return entry
