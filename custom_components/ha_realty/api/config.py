"""Devuelve la configuración efectiva (sin la clave de la API)."""

import logging

from homeassistant.components.http import HomeAssistantView

from ..const import (
    CONF_API_KEY,
    CONF_AUTO_FIT_BOUNDS,
    CONF_BASE_RETRY_DELAY_MS,
    CONF_CONCURRENCY,
    CONF_ENABLE_DEBUG,
    CONF_MAX_RETRIES,
    CONF_MIN_DELAY_MS,
    CONF_ONLY_ADMIN,
    DATA_CONFIG,
    DATA_VERSION,
    DOMAIN,
)
from ..geocode.queue import (
    DEFAULT_BASE_RETRY_DELAY_MS,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MIN_DELAY_MS,
)

_LOGGER = logging.getLogger(__name__)


def get_config(hass) -> dict:
    """Configuración efectiva: hass.data si ya está montada, si no la config entry."""
    dd = hass.data.get(DOMAIN) or {}
    if DATA_CONFIG in dd:
        return dd[DATA_CONFIG]
    entry = next(iter(hass.config_entries.async_entries(DOMAIN)), None)
    if entry is None:
        return {}
    return {**entry.data, **entry.options} if entry.options else entry.data


def is_forbidden(request) -> bool:
    """True si only_admin está activo y el usuario no es administrador."""
    hass = request.app["hass"]
    only_admin = bool(get_config(hass).get(CONF_ONLY_ADMIN, False))
    try:
        user = request["hass_user"]
    except KeyError:
        user = None
    return only_admin and (user is None or not user.is_admin)


class ConfigEndpoint(HomeAssistantView):
    """Obtener la configuración guardada en config_entries."""

    url = "/api/ha_realty/config"
    name = "api:ha_realty/config"
    requires_auth = True

    async def get(self, request):
        """Devuelve la configuración almacenada en config_entries."""

        hass = request.app["hass"]

        config_entries = hass.config_entries.async_entries(DOMAIN)
        config_entry = next((entry for entry in config_entries), None)

        if not config_entry:
            error_response = {"error": "Configuration not found"}
            return self.json(error_response, status_code=404)

        config = (
            {**config_entry.data, **config_entry.options}
            if config_entry.options
            else config_entry.data
        )

        version = (hass.data.get(DOMAIN) or {}).get(DATA_VERSION, "0")

        return self.json(
            {
                "version": version,
                "has_api_key": bool((config.get(CONF_API_KEY) or "").strip()),
                "concurrency": config.get(CONF_CONCURRENCY, DEFAULT_CONCURRENCY),
                "min_delay_ms": config.get(CONF_MIN_DELAY_MS, DEFAULT_MIN_DELAY_MS),
                "max_retries": config.get(CONF_MAX_RETRIES, DEFAULT_MAX_RETRIES),
                "base_retry_delay_ms": config.get(CONF_BASE_RETRY_DELAY_MS, DEFAULT_BASE_RETRY_DELAY_MS),
                "auto_fit_bounds": config.get(CONF_AUTO_FIT_BOUNDS, True),
                "only_admin": config.get(CONF_ONLY_ADMIN, False),
                "enable_debug": config.get(CONF_ENABLE_DEBUG, False),
            }
        )
