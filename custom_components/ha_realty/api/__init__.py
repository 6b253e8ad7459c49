from .config import ConfigEndpoint
from .geocode import GeocodeEndpoint
from .overlays import OverlaysEndpoint

_VIEWS_REGISTERED = False

def register_api_views(hass):
    """Registra todos los endpoints de la API (idempotente)."""
    global _VIEWS_REGISTERED
    if _VIEWS_REGISTERED:
        return
    hass.http.register_view(ConfigEndpoint())
    hass.http.register_view(GeocodeEndpoint())
    hass.http.register_view(OverlaysEndpoint())
    _VIEWS_REGISTERED = True
