"""
datos.gob.ar series API: national IPC (INDEC, base Dec 2016).

Rows come back as ``[period, value]`` pairs; a period is ``YYYY-MM-DD`` or
``YYYY-MM``.  Null or non-finite values are dropped.
"""

from __future__ import annotations

from datetime import date

import requests

from rental_kernel.exceptions import SourceFetchError
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import SeriesObservation
from rental_ingestion.adapters.base import DEFAULT_TIMEOUT, JsonHttpSource

logger = get_logger("ingestion.datos_ar")

DEFAULT_BASE_URL = "https://apis.datos.gob.ar/series/api/series"
DEFAULT_IPC_SERIES_ID = "148.3_INIVELNAL_DICI_M_26"


class DatosArClient(JsonHttpSource):
    source_name = "datos.gob.ar"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        ipc_series_id: str = DEFAULT_IPC_SERIES_ID,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        super().__init__(base_url, timeout=timeout, session=session)
        self.ipc_series_id = ipc_series_id

    def fetch_ipc(
        self,
        start: date | None = None,
        end: date | None = None,
    ) -> list[SeriesObservation]:
        endpoint = "/"
        params = {"ids": self.ipc_series_id}
        if start is not None:
            params["start_date"] = start.isoformat()
        if end is not None:
            params["end_date"] = end.isoformat()

        payload = self._get_json(endpoint, params)
        if not isinstance(payload, dict):
            raise SourceFetchError(self.source_name, endpoint, "unexpected payload shape")

        observations = []
        dropped = 0
        for row in payload.get("data") or []:
            period, raw_value = row[0], row[1]
            try:
                value = self._parse_value(endpoint, raw_value)
            except SourceFetchError:
                dropped += 1
                continue
            observations.append(
                SeriesObservation(
                    observed_on=self._parse_date(endpoint, period, "%Y-%m-%d", "%Y-%m"),
                    value=value,
                )
            )

        if dropped:
            logger.warning("ipc_values_dropped", extra={"dropped": dropped})
        if not observations:
            logger.warning("ipc_no_data", extra={"params": params})
        logger.info("ipc_fetched", extra={"count": len(observations)})
        return observations
