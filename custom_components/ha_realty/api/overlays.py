"""Estado de los marcadores del mapa y entrada de transacciones para el panel."""
from __future__ import annotations

import logging

from typing import Any, Dict, List

from homeassistant.components.http import HomeAssistantView

from ..const import DATA_BOARD, DATA_RECONCILER, DATA_TRANSACTIONS, DOMAIN
from ..market import (
    Transaction,
    period_statistics,
    price_legend,
    region_price_ranges,
)
from .config import is_forbidden

_LOGGER = logging.getLogger(__name__)


def _snapshot(dd: Dict[str, Any]) -> Dict[str, Any]:
    board = dd[DATA_BOARD]
    reconciler = dd[DATA_RECONCILER]
    transactions: List[Transaction] = dd.get(DATA_TRANSACTIONS, [])
    return {
        "overlays": board.overlays(),
        "positions": reconciler.positions,
        "bounds": reconciler.bounds.as_dict(),
        "progress": reconciler.progress.as_dict(),
        "has_marker_work": reconciler.has_marker_work,
        "fit": board.pop_fit_request(),
        "legend": price_legend(),
        "regions": region_price_ranges(transactions),
        "periods": period_statistics(transactions),
    }


class OverlaysEndpoint(HomeAssistantView):
    url = "/api/ha_realty/overlays"
    name = "api:ha_realty/overlays"
    requires_auth = True

    @staticmethod
    def _domain_data(hass) -> Dict[str, Any] | None:
        dd = hass.data.get(DOMAIN) or {}
        if DATA_BOARD not in dd or DATA_RECONCILER not in dd:
            return None
        return dd

    async def get(self, request):
        """Marcadores, posiciones, encuadre, progreso y estadísticas de la sesión actual."""
        hass = request.app["hass"]
        if is_forbidden(request):
            return self.json({"error": "forbidden"}, status_code=403)

        dd = self._domain_data(hass)
        if dd is None:
            return self.json({"error": "not_ready"}, status_code=503)

        return self.json(_snapshot(dd))

    async def post(self, request):
        """
        Body JSON (cualquier combinación):
          - transactions: [...] -> nueva sesión de marcadores
          - interacted: true    -> el usuario movió el mapa (sin auto-encuadre)
          - fit: true           -> volver a encuadrar con los últimos límites
        """
        hass = request.app["hass"]
        if is_forbidden(request):
            return self.json({"error": "forbidden"}, status_code=403)

        dd = self._domain_data(hass)
        if dd is None:
            return self.json({"error": "not_ready"}, status_code=503)

        try:
            body = await request.json()
        except ValueError:
            return self.json({"error": "invalid_json"}, status_code=400)
        if not isinstance(body, dict):
            return self.json({"error": "invalid_body"}, status_code=400)

        reconciler = dd[DATA_RECONCILER]
        did_something = False

        if "transactions" in body:
            raw = body["transactions"]
            if not isinstance(raw, list):
                return self.json({"error": "invalid_transactions"}, status_code=400)
            try:
                transactions = [Transaction.from_dict(item) for item in raw]
            except (TypeError, ValueError, AttributeError) as err:
                return self.json({"error": "invalid_transaction", "detail": str(err)}, status_code=400)
            dd[DATA_TRANSACTIONS] = transactions
            reconciler.set_transactions(transactions)
            did_something = True

        if body.get("interacted"):
            reconciler.mark_user_interaction()
            did_something = True

        if body.get("fit"):
            reconciler.fit_to_last_bounds()
            did_something = True

        if not did_something:
            return self.json({"error": "nothing_to_do"}, status_code=400)

        try:
            return self.json(_snapshot(dd))
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Could not build overlay snapshot")
            return self.json({"error": "internal_error"}, status_code=500)
