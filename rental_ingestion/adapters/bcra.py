"""
BCRA statistics API: ICL index and ARS exchange rates.

ICL is read from the v3.0 ``/monetarias/{id}`` endpoint.  Some deployments
reject that shape with HTTP 400; the client then retries once against the
legacy ``/datosvariable/{id}/{from}/{to}`` path.  Exchange rates still live
on v2.0 ``/datosvariable``.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Any

import requests

from rental_kernel.exceptions import SourceFetchError, UnsupportedCurrencyError
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import SeriesObservation
from rental_ingestion.adapters.base import DEFAULT_TIMEOUT, JsonHttpSource

logger = get_logger("ingestion.bcra")

DEFAULT_BASE_URL = "https://api.bcra.gob.ar"
DEFAULT_ICL_VARIABLE_ID = 40

# BCRA variable ids for the quoted pairs
FX_VARIABLES = {
    ("USD", "ARS"): 4,
    ("BRL", "ARS"): 12,
}

_VERSION_SUFFIX = re.compile(r"/estadisticas/v\d+(\.\d+)?$", re.IGNORECASE)
_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y")


def normalize_root(url: str) -> str:
    """Strip a trailing ``/estadisticas/vN`` so both API versions can be addressed."""
    return _VERSION_SUFFIX.sub("", url.rstrip("/"))


class BcraClient(JsonHttpSource):
    source_name = "BCRA"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        icl_variable_id: int = DEFAULT_ICL_VARIABLE_ID,
        timeout: float = DEFAULT_TIMEOUT,
        verify_tls: bool = True,
        session: requests.Session | None = None,
    ):
        super().__init__(
            normalize_root(base_url),
            timeout=timeout,
            verify_tls=verify_tls,
            session=session,
        )
        self.icl_variable_id = icl_variable_id

    def fetch_icl(self, start: date, end: date) -> list[SeriesObservation]:
        endpoint = f"/estadisticas/v3.0/monetarias/{self.icl_variable_id}"
        params = {"desde": start.isoformat(), "hasta": end.isoformat(), "limit": 5000}
        try:
            payload = self._get_json(endpoint, params)
        except SourceFetchError as exc:
            if exc.status_code != 400:
                logger.error(
                    "icl_fetch_failed",
                    extra={"endpoint": endpoint, "error": exc.reason},
                )
                raise
            endpoint = (
                f"/estadisticas/v3.0/datosvariable/{self.icl_variable_id}"
                f"/{start.isoformat()}/{end.isoformat()}"
            )
            logger.warning("icl_legacy_fallback", extra={"endpoint": endpoint})
            payload = self._get_json(endpoint)

        observations = self._parse_results(endpoint, payload)
        if not observations:
            logger.warning(
                "icl_no_data",
                extra={"start": start.isoformat(), "end": end.isoformat()},
            )
        logger.info("icl_fetched", extra={"count": len(observations)})
        return observations

    def fetch_fx(
        self,
        from_currency: str,
        to_currency: str,
        start: date,
        end: date,
    ) -> list[SeriesObservation]:
        pair = (from_currency.upper(), to_currency.upper())
        variable_id = FX_VARIABLES.get(pair)
        if variable_id is None:
            raise UnsupportedCurrencyError(
                f"{pair[0]}/{pair[1]}",
                tuple(f"{a}/{b}" for a, b in FX_VARIABLES),
            )
        endpoint = (
            f"/estadisticas/v2.0/datosvariable/{variable_id}"
            f"/{start.isoformat()}/{end.isoformat()}"
        )
        observations = self._parse_results(endpoint, self._get_json(endpoint))
        logger.info(
            "bcra_fx_fetched",
            extra={"pair": f"{pair[0]}/{pair[1]}", "count": len(observations)},
        )
        return observations

    def _parse_results(self, endpoint: str, payload: Any) -> list[SeriesObservation]:
        if not isinstance(payload, dict):
            raise SourceFetchError(self.source_name, endpoint, "unexpected payload shape")
        results = payload.get("results") or []
        return [
            SeriesObservation(
                observed_on=self._parse_date(endpoint, item.get("fecha"), *_DATE_FORMATS),
                value=self._parse_value(endpoint, item.get("valor")),
            )
            for item in results
        ]
