# ./custom_components/ha_realty/config_flow.py

from __future__ import annotations

import voluptuous as vol

from homeassistant import config_entries
from homeassistant.core import callback
from homeassistant.config_entries import ConfigEntry
from homeassistant.data_entry_flow import section

from .const import (
    CONF_API_KEY,
    CONF_AUTO_FIT_BOUNDS,
    CONF_BASE_RETRY_DELAY_MS,
    CONF_CONCURRENCY,
    CONF_ENABLE_DEBUG,
    CONF_MAX_RETRIES,
    CONF_MIN_DELAY_MS,
    CONF_ONLY_ADMIN,
    DOMAIN,
)

# ---------------------------------------------------------------------------
#  Defaults y mínimos centralizados
# ---------------------------------------------------------------------------
DEFAULTS = {
    CONF_API_KEY: "",
    CONF_CONCURRENCY: 1,
    CONF_MIN_DELAY_MS: 1000,
    CONF_MAX_RETRIES: 5,
    CONF_BASE_RETRY_DELAY_MS: 1500,
    CONF_AUTO_FIT_BOUNDS: True,
    CONF_ONLY_ADMIN: False,
    CONF_ENABLE_DEBUG: False,
}

MINIMUMS = {
    CONF_CONCURRENCY: 1,
    CONF_MIN_DELAY_MS: 0,
    CONF_MAX_RETRIES: 0,
    CONF_BASE_RETRY_DELAY_MS: 100,
}

SECTIONS = ("general", "geocoding")


def _validate_minimums(flat: dict) -> dict[str, str]:
    """Devuelve un dict de errores con claves por campo si no cumple el mínimo numérico."""
    errors: dict[str, str] = {}
    for key, minv in MINIMUMS.items():
        if key in flat:
            try:
                value = float(flat[key])
            except (TypeError, ValueError):
                # Deja que voluptuous marque error de tipo; aquí no añadimos error.
                continue
            if value < float(minv):
                errors[key] = f"min_{key}"
    return errors


def _flatten(user_input: dict) -> dict:
    """Aplana las secciones antes de validar/guardar."""
    flat: dict = {}
    for sec in SECTIONS:
        flat.update(user_input.get(sec, {}))
    if CONF_API_KEY in flat:
        flat[CONF_API_KEY] = (flat[CONF_API_KEY] or "").strip()
    return flat


def _build_schema(opts: dict) -> vol.Schema:
    """Esquema con secciones y defaults (sin Range para permitir errores personalizados)."""
    general = vol.Schema({
        vol.Optional(CONF_API_KEY, default=opts[CONF_API_KEY]): str,
        vol.Required(CONF_AUTO_FIT_BOUNDS, default=opts[CONF_AUTO_FIT_BOUNDS]): bool,
        vol.Required(CONF_ONLY_ADMIN, default=opts[CONF_ONLY_ADMIN]): bool,
        vol.Required(CONF_ENABLE_DEBUG, default=opts[CONF_ENABLE_DEBUG]): bool,
    })

    geocoding = vol.Schema({
        vol.Required(CONF_CONCURRENCY, default=opts[CONF_CONCURRENCY]): vol.All(vol.Coerce(int)),
        vol.Required(CONF_MIN_DELAY_MS, default=opts[CONF_MIN_DELAY_MS]): vol.All(vol.Coerce(int)),
        vol.Required(CONF_MAX_RETRIES, default=opts[CONF_MAX_RETRIES]): vol.All(vol.Coerce(int)),
        vol.Required(CONF_BASE_RETRY_DELAY_MS, default=opts[CONF_BASE_RETRY_DELAY_MS]): vol.All(vol.Coerce(int)),
    })

    return vol.Schema({
        vol.Required("general"): section(general, {"collapsed": False}),
        vol.Required("geocoding"): section(geocoding, {"collapsed": True}),
    })


# ---------------------------------------------------------------------------
#  Config Flow
# ---------------------------------------------------------------------------
class HARealtyConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    VERSION = 1

    async def async_step_user(self, user_input=None):
        # --- Single instance guard ---
        if self._async_current_entries():
            return self.async_abort(reason="single_instance_allowed")

        data_schema = _build_schema(DEFAULTS)
        errors: dict[str, str] = {}

        if user_input is not None:
            flat = _flatten(user_input)

            # Unique ID global (instancia única)
            await self.async_set_unique_id(DOMAIN)
            self._abort_if_unique_id_configured()

            # Validaciones personalizadas (solo mínimos numéricos)
            errors.update(_validate_minimums(flat))

            if not errors:
                return self.async_create_entry(title="HA Realty", data=flat)

            # Si hay errores, volver a mostrar formulario
            return self.async_show_form(step_id="user", data_schema=data_schema, errors=errors)

        # Primer render del formulario
        return self.async_show_form(step_id="user", data_schema=data_schema, errors=errors)

    async def async_step_import(self, user_input):
        """Soporta importaciones (p.ej. YAML) evitando duplicados."""
        if self._async_current_entries():
            return self.async_abort(reason="single_instance_allowed")

        await self.async_set_unique_id(DOMAIN)
        self._abort_if_unique_id_configured()

        # Reutiliza la lógica de user (incluye validaciones y aplanado)
        return await self.async_step_user(user_input)

    @staticmethod
    @callback
    def async_get_options_flow(config_entry: ConfigEntry):
        return HARealtyOptionsFlowHandler(config_entry)


# ---------------------------------------------------------------------------
#  Options Flow (un único formulario seccionado)
# ---------------------------------------------------------------------------
class HARealtyOptionsFlowHandler(config_entries.OptionsFlow):
    """Opciones agrupadas en las mismas secciones que la instalación."""

    def __init__(self, config_entry: ConfigEntry) -> None:
        self._entry = config_entry
        self._opts = {
            **DEFAULTS,
            **(self._entry.data or {}),
            **(self._entry.options or {}),
        }

    async def async_step_init(self, user_input=None):
        if user_input is not None:
            flat = _flatten(user_input)

            errors: dict[str, str] = {}
            errors.update(_validate_minimums(flat))

            if errors:
                return self.async_show_form(
                    step_id="init",
                    data_schema=_build_schema(self._opts),
                    errors=errors,
                )

            return self.async_create_entry(title="", data=flat)

        return self.async_show_form(
            step_id="init",
            data_schema=_build_schema(self._opts),
            errors={},
        )
