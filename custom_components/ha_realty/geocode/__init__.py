"""Geocodificación de direcciones para HA Realty"""

from .address import Coordinate, coerce_coordinate, is_valid_coord, normalize_address
from .cache import NegativeResultCache, PersistentCoordinateCache
from .queue import GeocodeError, GeocodeProgress, GeocodeQueue, RateLimitError
from .remote import KakaoGeocoder
from .scheduler import LoopScheduler, TrailingDebouncer
from .storage import HassStoreStorage

__all__ = [
    "Coordinate",
    "GeocodeError",
    "GeocodeProgress",
    "GeocodeQueue",
    "HassStoreStorage",
    "KakaoGeocoder",
    "LoopScheduler",
    "NegativeResultCache",
    "PersistentCoordinateCache",
    "RateLimitError",
    "TrailingDebouncer",
    "coerce_coordinate",
    "is_valid_coord",
    "normalize_address",
]
