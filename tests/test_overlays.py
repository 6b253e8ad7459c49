# test_overlays.py

import asyncio
import logging

import pytest
from unittest.mock import MagicMock

from custom_components.ha_realty.const import EVENT_POSITIONS_CHANGED
from custom_components.ha_realty.geocode import GeocodeQueue
from custom_components.ha_realty.market import Transaction
from custom_components.ha_realty.overlays import LatLngBounds, OverlayBoard, OverlayReconciler

from conftest import FakeGeocoder, MemoryStorage

GANGNAM = {"lat": 37.5, "lng": 127.0}


class RecordingHost:
    def __init__(self):
        self.added = []
        self.removed = []
        self.fits = []
        self.notifications = []
        self.resets = 0
        self._next = 0

    def add_overlay(self, transaction, coord):
        self._next += 1
        self.added.append((self._next, transaction.id, coord))
        return self._next

    def remove_overlay(self, handle):
        self.removed.append(handle)

    def fit_bounds(self, bounds):
        self.fits.append(bounds.as_dict())

    def positions_changed(self, positions):
        self.notifications.append(positions)

    def reset_view(self):
        self.resets += 1


def placed(id_, lat, lng):
    return Transaction(id=id_, address="somewhere", lat=lat, lng=lng, price=80000)


def needs_geocode(id_, jibun, dong="역삼동"):
    return Transaction(id=id_, address=f"서울 강남구 {dong}", dong_name=dong, jibun=jibun, price=120000)


@pytest.fixture
def geocoder(scheduler):
    return FakeGeocoder(clock=scheduler.now)


@pytest.fixture
def queue(geocoder, scheduler):
    return GeocodeQueue(geocoder, storage=MemoryStorage(), scheduler=scheduler, min_delay_ms=0)


@pytest.fixture
def host():
    return RecordingHost()


@pytest.fixture
def reconciler(queue, host, scheduler):
    return OverlayReconciler(queue, host, scheduler)


##########################
# SESIONES
##########################

@pytest.mark.asyncio
async def test_transactions_with_coordinates_are_placed_immediately(reconciler, host, geocoder, scheduler):
    reconciler.set_transactions([placed("a", 37.1, 127.1), placed("b", 37.2, 127.2)])

    assert [item[1] for item in host.added] == ["a", "b"]
    assert geocoder.calls == []
    assert reconciler.positions == {"a": {"lat": 37.1, "lng": 127.1}, "b": {"lat": 37.2, "lng": 127.2}}
    assert reconciler.progress.total == 0
    assert not reconciler.has_marker_work

    # avisos agrupados: posiciones a 100 ms y encuadre a 250 ms
    await scheduler.advance(0.05)
    assert host.notifications == []
    await scheduler.advance(0.1)
    assert len(host.notifications) == 1
    assert host.fits == []
    await scheduler.advance(0.2)
    assert host.fits == [{"sw": {"lat": 37.1, "lng": 127.1}, "ne": {"lat": 37.2, "lng": 127.2}}]


@pytest.mark.asyncio
async def test_one_lookup_per_unique_address(reconciler, host, geocoder):
    reconciler.set_transactions([
        needs_geocode("1", "10"),
        needs_geocode("2", "10"),
        needs_geocode("3", "20"),
    ])
    assert reconciler.progress.total == 2
    assert reconciler.has_marker_work

    await reconciler.async_wait_idle()

    assert sorted(geocoder.calls) == ["서울 강남구 역삼동 10", "서울 강남구 역삼동 20"]
    assert sorted(item[1] for item in host.added) == ["1", "2", "3"]
    assert reconciler.positions["1"] == reconciler.positions["2"] == GANGNAM

    progress = reconciler.progress
    assert progress.resolved == 2
    assert progress.failed == 0
    assert not reconciler.has_marker_work


@pytest.mark.asyncio
async def test_cached_addresses_are_placed_synchronously(reconciler, host, queue, geocoder):
    await queue.async_geocode("서울 강남구 역삼동 10")
    assert len(geocoder.calls) == 1

    reconciler.set_transactions([needs_geocode("1", "10")])

    assert [item[1] for item in host.added] == ["1"]
    assert reconciler.progress.resolved == 1
    assert len(geocoder.calls) == 1


@pytest.mark.asyncio
async def test_new_session_removes_previous_overlays(reconciler, host):
    reconciler.set_transactions([placed("a", 37.1, 127.1)])
    reconciler.set_transactions([placed("b", 37.2, 127.2)])

    assert host.removed == [1]
    assert reconciler.positions == {"b": {"lat": 37.2, "lng": 127.2}}


@pytest.mark.asyncio
async def test_stale_session_results_are_ignored(reconciler, host, queue, geocoder, scheduler):
    geocoder.gate = asyncio.Event()
    reconciler.set_transactions([needs_geocode("old", "10")])
    await scheduler.advance(0)
    assert len(geocoder.calls) == 1

    reconciler.set_transactions([placed("new", 37.2, 127.2)])
    geocoder.gate.set()
    await reconciler.async_wait_idle()

    assert reconciler.positions == {"new": {"lat": 37.2, "lng": 127.2}}
    assert [item[1] for item in host.added] == ["new"]
    assert reconciler.progress.resolved == 0
    # la búsqueda en curso sí termina y queda en caché
    assert queue.get_cached("서울 강남구 역삼동 10") == GANGNAM


@pytest.mark.asyncio
async def test_failed_addresses_are_counted(reconciler, geocoder):
    geocoder.results["서울 강남구 역삼동 404"] = [None]
    reconciler.set_transactions([needs_geocode("1", "404"), needs_geocode("2", "20")])
    await reconciler.async_wait_idle()

    progress = reconciler.progress
    assert progress.total == 2
    assert progress.resolved == 1
    assert progress.failed == 1
    assert not reconciler.has_marker_work
    assert set(reconciler.positions) == {"2"}


@pytest.mark.asyncio
async def test_transactions_without_any_address_are_skipped(reconciler, geocoder):
    reconciler.set_transactions([Transaction(id="x")])
    await reconciler.async_wait_idle()
    assert geocoder.calls == []
    assert reconciler.progress.total == 0


##########################
# ENCUADRE
##########################

@pytest.mark.asyncio
async def test_auto_fit_runs_once_per_session(reconciler, host, scheduler):
    reconciler.set_transactions([placed("a", 37.1, 127.1), needs_geocode("b", "10")])
    await scheduler.advance(0.3)
    await reconciler.async_wait_idle()
    await scheduler.advance(0.3)

    assert len(host.fits) == 1
    assert len(host.added) == 2


@pytest.mark.asyncio
async def test_no_auto_fit_after_user_interaction(reconciler, host, scheduler):
    reconciler.set_transactions([placed("a", 37.1, 127.1)])
    reconciler.mark_user_interaction()
    await scheduler.advance(1)
    assert host.fits == []

    # el encuadre manual sigue disponible
    assert reconciler.fit_to_last_bounds() is True
    assert host.fits == [{"sw": {"lat": 37.1, "lng": 127.1}, "ne": {"lat": 37.1, "lng": 127.1}}]


@pytest.mark.asyncio
async def test_auto_fit_can_be_disabled(queue, host, scheduler):
    reconciler = OverlayReconciler(queue, host, scheduler, auto_fit_bounds=False)
    reconciler.set_transactions([placed("a", 37.1, 127.1)])
    await scheduler.advance(1)
    assert host.fits == []


@pytest.mark.asyncio
async def test_fit_to_last_bounds_without_overlays(reconciler, host):
    assert reconciler.fit_to_last_bounds() is False
    assert host.fits == []


def test_lat_lng_bounds():
    bounds = LatLngBounds()
    assert bounds.is_empty
    assert bounds.as_dict() is None

    bounds.extend({"lat": 37.5, "lng": 127.0})
    bounds.extend({"lat": 35.1, "lng": 129.0})
    bounds.extend({"lat": 36.0, "lng": 128.0})

    assert bounds.as_dict() == {"sw": {"lat": 35.1, "lng": 127.0}, "ne": {"lat": 37.5, "lng": 129.0}}
    copy = bounds.copy()
    copy.extend({"lat": 40.0, "lng": 130.0})
    assert bounds.north == 37.5


##########################
# DESMONTAJE Y HOST
##########################

@pytest.mark.asyncio
async def test_close_clears_overlays_and_timers(reconciler, host, scheduler):
    reconciler.set_transactions([placed("a", 37.1, 127.1)])
    await reconciler.async_close()

    assert host.removed == [1]
    assert reconciler.positions == {}
    await scheduler.advance(1)
    assert host.notifications == []
    assert host.fits == []


@pytest.mark.asyncio
async def test_host_errors_are_logged(queue, scheduler, caplog):
    host = RecordingHost()
    host.add_overlay = MagicMock(side_effect=RuntimeError("map gone"))
    reconciler = OverlayReconciler(queue, host, scheduler)

    with caplog.at_level(logging.ERROR):
        reconciler.set_transactions([placed("a", 37.1, 127.1)])

    assert "Overlay host add_overlay failed" in caplog.text
    assert reconciler.positions == {"a": {"lat": 37.1, "lng": 127.1}}


@pytest.mark.asyncio
async def test_overlay_board_fires_event_and_keeps_fit_request(hass, queue, scheduler):
    board = OverlayBoard(hass)
    reconciler = OverlayReconciler(queue, board, scheduler)
    reconciler.set_transactions([placed("a", 37.1, 127.1), placed("b", 37.3, 127.3)])

    overlays = board.overlays()
    assert [o["transaction_id"] for o in overlays] == ["a", "b"]
    assert overlays[0]["color"] == "#f59e0b"
    assert overlays[0]["label"] == "8억"
    assert overlays[0]["price_text"] == "8억원"

    await scheduler.advance(0.3)
    hass.bus.async_fire.assert_called_once_with(EVENT_POSITIONS_CHANGED, {"count": 2})
    assert board.positions() == reconciler.positions

    assert board.pop_fit_request() == {"sw": {"lat": 37.1, "lng": 127.1}, "ne": {"lat": 37.3, "lng": 127.3}}
    assert board.pop_fit_request() is None

    reconciler.set_transactions([])
    assert board.overlays() == []


@pytest.mark.asyncio
async def test_overlay_board_drops_previous_view_on_new_session(hass, queue, geocoder, scheduler):
    board = OverlayBoard(hass)
    reconciler = OverlayReconciler(queue, board, scheduler)
    reconciler.set_transactions([placed("a", 37.1, 127.1)])
    await scheduler.advance(0.3)
    assert board.positions() == {"a": {"lat": 37.1, "lng": 127.1}}

    # la nueva sesión no llega a colocar ningún marcador
    geocoder.results["서울 강남구 역삼동 404"] = [None]
    reconciler.set_transactions([needs_geocode("x", "404")])
    await reconciler.async_wait_idle()
    await scheduler.advance(0.3)

    assert board.overlays() == []
    assert board.positions() == {}
    assert board.pop_fit_request() is None
    assert hass.bus.async_fire.call_args.args == (EVENT_POSITIONS_CHANGED, {"count": 0})


@pytest.mark.asyncio
async def test_host_view_is_reset_for_each_session(reconciler, host):
    reconciler.set_transactions([placed("a", 37.1, 127.1)])
    reconciler.set_transactions([placed("b", 37.2, 127.2)])
    await reconciler.async_close()
    assert host.resets == 3
