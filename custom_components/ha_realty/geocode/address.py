"""Normalización de direcciones y validación de coordenadas."""
from __future__ import annotations

import re

from math import isfinite
from typing import Any, Optional, TypedDict

# Por debajo de este umbral la API suele devolver (0,0) como falso "encontrado"
MIN_ABS_DEGREES = 0.0001

_WS_RE = re.compile(r"\s+")


class Coordinate(TypedDict):
    lat: float
    lng: float


def normalize_address(raw: Optional[str]) -> str:
    """Clave de caché: recorta, cambia comas por espacios y colapsa espacios.

    Idempotente: normalize_address(normalize_address(x)) == normalize_address(x).
    """
    if not raw:
        return ""
    return _WS_RE.sub(" ", str(raw).strip().replace(",", " ")).strip()


def is_valid_coord(lat: Any, lng: Any) -> bool:
    for v in (lat, lng):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return False
    return (
        isfinite(lat)
        and isfinite(lng)
        and abs(lat) > MIN_ABS_DEGREES
        and abs(lng) > MIN_ABS_DEGREES
    )


def coerce_coordinate(value: Any) -> Optional[Coordinate]:
    """Devuelve un Coordinate válido a partir de un dict {lat, lng}, o None."""
    if not isinstance(value, dict):
        return None
    lat = value.get("lat")
    lng = value.get("lng")
    if not is_valid_coord(lat, lng):
        return None
    return {"lat": float(lat), "lng": float(lng)}
