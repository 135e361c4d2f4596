"""
Banco Central do Brasil SGS series: IGP-M (189) and USD/BRL (1).

The SGS API takes and returns ``DD/MM/YYYY`` dates; values come back as
decimal strings.
"""

from __future__ import annotations

from datetime import date

import requests

from rental_kernel.exceptions import SourceFetchError
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import SeriesObservation
from rental_ingestion.adapters.base import DEFAULT_TIMEOUT, JsonHttpSource

logger = get_logger("ingestion.bcb")

DEFAULT_BASE_URL = "https://api.bcb.gov.br/dados/serie"
IGPM_SERIES = 189
USD_BRL_SERIES = 1

_BCB_DATE = "%d/%m/%Y"


class BcbClient(JsonHttpSource):
    source_name = "BCB"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        super().__init__(base_url, timeout=timeout, session=session)

    def fetch_igpm(self, start: date, end: date) -> list[SeriesObservation]:
        return self.fetch_series(IGPM_SERIES, start, end)

    def fetch_usd_brl(self, start: date, end: date) -> list[SeriesObservation]:
        return self.fetch_series(USD_BRL_SERIES, start, end)

    def fetch_series(self, series: int, start: date, end: date) -> list[SeriesObservation]:
        endpoint = f"/bcdata.sgs.{series}/dados"
        payload = self._get_json(
            endpoint,
            {
                "formato": "json",
                "dataInicial": start.strftime(_BCB_DATE),
                "dataFinal": end.strftime(_BCB_DATE),
            },
        )
        if payload is None:
            payload = []
        if not isinstance(payload, list):
            raise SourceFetchError(self.source_name, endpoint, "unexpected payload shape")

        observations = [
            SeriesObservation(
                observed_on=self._parse_date(endpoint, item.get("data"), _BCB_DATE),
                value=self._parse_value(endpoint, item.get("valor")),
            )
            for item in payload
        ]
        if not observations:
            logger.warning("bcb_no_data", extra={"series": series})
        logger.info("bcb_series_fetched", extra={"series": series, "count": len(observations)})
        return observations
