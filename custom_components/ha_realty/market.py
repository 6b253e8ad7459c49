"""Datos de mercado: transacciones, colores/formato de precios y estadísticas.

Los precios van en unidades de 만원 (10.000 KRW), como en el registro oficial.
"""
from __future__ import annotations

import math

from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

# (umbral mínimo, color, etiqueta) de mayor a menor
PRICE_BANDS = (
    (150_000, "#dc2626", "15억 이상"),
    (100_000, "#ea580c", "10억 ~ 15억"),
    (70_000, "#f59e0b", "7억 ~ 10억"),
    (50_000, "#10b981", "5억 ~ 7억"),
    (0, "#3b82f6", "5억 미만"),
)


@dataclass
class Transaction:
    id: str
    address: str = ""
    dong_name: str = ""
    jibun: str = ""
    price: int = 0
    area: float = 0.0
    build_year: int = 0
    deal_year: int = 0
    deal_month: int = 0
    deal_day: int = 0
    floor: int = 0
    lat: float = math.nan
    lng: float = math.nan
    price_per_area: int = 0
    change_rate: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Transaction":
        """Acepta claves camelCase (API/frontend) o snake_case."""

        def pick(*names, default=None):
            for n in names:
                if n in raw and raw[n] is not None:
                    return raw[n]
            return default

        def num(value, cast, default):
            try:
                return cast(value)
            except (TypeError, ValueError):
                return default

        if pick("id") is None:
            raise ValueError("transaction without id")

        change = pick("change_rate", "changeRate")
        return cls(
            id=str(raw["id"]),
            address=str(pick("address", default="")).strip(),
            dong_name=str(pick("dong_name", "dongName", default="")).strip(),
            jibun=str(pick("jibun", default="")).strip(),
            price=num(pick("price", default=0), int, 0),
            area=num(pick("area", default=0.0), float, 0.0),
            build_year=num(pick("build_year", "buildYear", default=0), int, 0),
            deal_year=num(pick("deal_year", "dealYear", default=0), int, 0),
            deal_month=num(pick("deal_month", "dealMonth", default=0), int, 0),
            deal_day=num(pick("deal_day", "dealDay", default=0), int, 0),
            floor=num(pick("floor", default=0), int, 0),
            lat=num(pick("lat", "latitude", default=math.nan), float, math.nan),
            lng=num(pick("lng", "longitude", default=math.nan), float, math.nan),
            price_per_area=num(pick("price_per_area", "pricePerArea", default=0), int, 0),
            change_rate=num(change, float, None) if change is not None else None,
        )

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # NaN no es JSON válido
        for k in ("lat", "lng"):
            if not math.isfinite(data[k]):
                data[k] = None
        return data


def geocode_query(t: Transaction) -> str:
    """Consulta para el geocodificador: '<dirección hasta el dong> <jibun>'.

    Si la dirección incluye comas solo se conserva el último tramo antes del dong.
    """
    address, dong, jibun = t.address.strip(), t.dong_name.strip(), t.jibun.strip()
    if not address or not dong or not jibun:
        return address or f"{dong} {jibun}".strip()

    idx = address.find(dong)
    if idx < 0:
        return address

    prefix = address[: idx + len(dong)]
    last = prefix.split(",")[-1].strip() or prefix.strip()
    return f"{last} {jibun}".strip()


def price_color(price: float) -> str:
    for floor_price, color, _label in PRICE_BANDS:
        if price >= floor_price:
            return color
    return PRICE_BANDS[-1][1]


def price_legend() -> List[Dict[str, str]]:
    return [{"label": label, "color": color} for _p, color, label in reversed(PRICE_BANDS)]


def marker_label(price: float) -> str:
    return f"{int(price // 10000)}억"


def format_price(price: int) -> str:
    if price >= 10000:
        eok, man = divmod(int(price), 10000)
        return f"{eok}억 {man}만원" if man > 0 else f"{eok}억원"
    return f"{price}만원"


def format_change_rate(rate: float) -> str:
    sign = "+" if rate >= 0 else ""
    return f"{sign}{rate:.2f}%"


def region_price_ranges(transactions: Iterable[Transaction]) -> List[Dict[str, Any]]:
    """Cuartiles de precio por dong (índices 25/50/75 % sobre la lista ordenada)."""
    by_region: Dict[str, List[int]] = defaultdict(list)
    for t in transactions:
        by_region[t.dong_name].append(t.price)

    results = []
    for region, prices in by_region.items():
        prices.sort()
        count = len(prices)
        results.append({
            "region": region,
            "low": prices[int(count * 0.25)],
            "medium": prices[int(count * 0.5)],
            "high": prices[int(count * 0.75)],
            "count": count,
        })
    results.sort(key=lambda r: r["medium"], reverse=True)
    return results


def period_statistics(transactions: Iterable[Transaction]) -> List[Dict[str, Any]]:
    """Resumen mensual (YYYY-MM) en orden ascendente con variación sobre el mes anterior."""
    by_period: Dict[str, List[int]] = defaultdict(list)
    for t in transactions:
        if t.deal_year <= 0 or not 1 <= t.deal_month <= 12 or t.price <= 0:
            continue
        by_period[f"{t.deal_year:04d}-{t.deal_month:02d}"].append(t.price)

    stats: List[Dict[str, Any]] = []
    prev_avg: Optional[int] = None
    for period in sorted(by_period):
        prices = by_period[period]
        avg = sum(prices) // len(prices)
        change = ((avg - prev_avg) / prev_avg) * 100 if prev_avg else 0.0
        stats.append({
            "period": period,
            "avg_price": avg,
            "max_price": max(prices),
            "min_price": min(prices),
            "transaction_count": len(prices),
            "change_rate": change,
            "change_rate_text": format_change_rate(change),
        })
        prev_avg = avg
    return stats
