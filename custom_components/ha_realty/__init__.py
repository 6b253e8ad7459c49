"""Módulo de inicialización para HA Realty"""
from __future__ import annotations

import json
import logging
import aiofiles

from typing import Any, Dict
from pathlib import Path

from homeassistant.config_entries import ConfigEntry
from homeassistant.const import EVENT_HOMEASSISTANT_STOP
from homeassistant.core import HomeAssistant
from homeassistant.helpers import config_validation as cv
from homeassistant.helpers.aiohttp_client import async_get_clientsession

from .api import register_api_views
from .const import (
    CONF_API_KEY,
    CONF_AUTO_FIT_BOUNDS,
    CONF_BASE_RETRY_DELAY_MS,
    CONF_CONCURRENCY,
    CONF_ENABLE_DEBUG,
    CONF_MAX_RETRIES,
    CONF_MIN_DELAY_MS,
    DATA_BOARD,
    DATA_CONFIG,
    DATA_QUEUE,
    DATA_RECONCILER,
    DATA_STOP_LISTENER,
    DATA_VERSION,
    DOMAIN,
)
from .geocode import GeocodeQueue, HassStoreStorage, KakaoGeocoder, LoopScheduler
from .geocode.queue import (
    DEFAULT_BASE_RETRY_DELAY_MS,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MIN_DELAY_MS,
)
from .overlays import OverlayBoard, OverlayReconciler


# --------------------------------------------------------------------------- #
#  CONFIGURACIÓN BÁSICA                                                       #
# --------------------------------------------------------------------------- #

CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)

_LOGGER = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
#  SETUP                                                                      #
# --------------------------------------------------------------------------- #
async def async_setup(_hass: HomeAssistant, _config) -> bool:
    """Configuración inicial de la integración (vacío)."""
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Configura HA Realty desde una entrada de configuración."""

    # Mezcla de datos y opciones
    config: Dict[str, Any] = {**entry.data, **entry.options} if entry.options else entry.data

    domain_data: Dict[str, Any] = hass.data.setdefault(DOMAIN, {})
    domain_data[DATA_CONFIG] = config

    if config.get(CONF_ENABLE_DEBUG, False):
        logging.getLogger(__package__).setLevel(logging.DEBUG)

    # ------------------------------------------------------------------ #
    #  1. Obtener versión actual del manifest.json                       #
    # ------------------------------------------------------------------ #
    current_version: str | None = await get_version_from_manifest()
    if current_version is None:
        _LOGGER.error("Could not get version from manifest.json.")
        return False

    domain_data[DATA_VERSION] = current_version

    # ------------------------------------------------------------------ #
    #  2. Cola de geocodificación (caché persistente en .storage)        #
    # ------------------------------------------------------------------ #
    api_key = (config.get(CONF_API_KEY) or "").strip()
    if not api_key:
        _LOGGER.warning("No Kakao REST API key configured; only cached addresses will resolve")

    scheduler = LoopScheduler(hass.loop)
    geocoder = KakaoGeocoder(async_get_clientsession(hass), api_key)
    queue = GeocodeQueue(
        geocoder,
        storage=HassStoreStorage(hass),
        scheduler=scheduler,
        concurrency=config.get(CONF_CONCURRENCY, DEFAULT_CONCURRENCY),
        min_delay_ms=config.get(CONF_MIN_DELAY_MS, DEFAULT_MIN_DELAY_MS),
        max_retries=config.get(CONF_MAX_RETRIES, DEFAULT_MAX_RETRIES),
        base_retry_delay_ms=config.get(CONF_BASE_RETRY_DELAY_MS, DEFAULT_BASE_RETRY_DELAY_MS),
    )
    await queue.async_load()
    domain_data[DATA_QUEUE] = queue

    # ------------------------------------------------------------------ #
    #  3. Marcadores del mapa                                            #
    # ------------------------------------------------------------------ #
    board = OverlayBoard(hass)
    domain_data[DATA_BOARD] = board
    domain_data[DATA_RECONCILER] = OverlayReconciler(
        queue,
        board,
        scheduler,
        auto_fit_bounds=config.get(CONF_AUTO_FIT_BOUNDS, True),
    )

    # ------------------------------------------------------------------ #
    #  4. Registrar vistas REST (solo una vez)                           #
    # ------------------------------------------------------------------ #
    register_api_views(hass)

    # ------------------------------------------------------------------ #
    #  5. Guardar la caché al parar HA                                   #
    # ------------------------------------------------------------------ #
    async def _flush_on_stop(_event=None):
        domain_data.pop(DATA_STOP_LISTENER, None)
        try:
            await queue.async_flush()
        except Exception as err:  # noqa: BLE001
            _LOGGER.error("Failed to flush geocode cache: %s", err)

    domain_data[DATA_STOP_LISTENER] = hass.bus.async_listen_once(
        EVENT_HOMEASSISTANT_STOP, _flush_on_stop
    )

    # Escuchar cambios de opciones
    entry.async_on_unload(entry.add_update_listener(async_reload_entry))

    return True


# --------------------------------------------------------------------------- #
#  RELOAD / UNLOAD                                                            #
# --------------------------------------------------------------------------- #
async def async_reload_entry(hass: HomeAssistant, entry: ConfigEntry) -> None:
    """Recargar la integración al cambiar opciones desde la UI."""
    await hass.config_entries.async_reload(entry.entry_id)


async def async_unload_entry(hass: HomeAssistant, _entry: ConfigEntry) -> bool:
    """Descarga la integración guardando antes la caché de coordenadas."""
    domain_data = hass.data.get(DOMAIN) or {}

    unsub = domain_data.pop(DATA_STOP_LISTENER, None)
    if unsub is not None:
        unsub()

    reconciler = domain_data.get(DATA_RECONCILER)
    if reconciler is not None:
        await reconciler.async_close()

    queue = domain_data.get(DATA_QUEUE)
    if queue is not None:
        try:
            await queue.async_close()
        except Exception as err:  # noqa: BLE001
            _LOGGER.error("Error closing geocode queue: %s", err)

    # Limpiar datos
    hass.data.pop(DOMAIN, None)

    return True


# --------------------------------------------------------------------------- #
#  UTILIDADES                                                                 #
# --------------------------------------------------------------------------- #
async def get_version_from_manifest() -> str | None:
    """Leer versión desde manifest.json (asíncrono)."""
    manifest_path = Path(__file__).parent / "manifest.json"

    try:
        async with aiofiles.open(manifest_path, "r", encoding="utf-8") as file:
            manifest_data = await file.read()
        manifest_json = json.loads(manifest_data)
        return manifest_json.get("version")
    except (OSError, json.JSONDecodeError) as err:
        _LOGGER.error("Error reading manifest.json: %s", err)
        return None
