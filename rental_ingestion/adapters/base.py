"""
Shared HTTP plumbing for the source adapters.

Contract:
    ``JsonHttpSource._get_json(path, params)`` issues one GET against
    ``base_url + path`` and returns the decoded JSON body.

Failure modes:
    - Any transport error, non-2xx status or undecodable body raises
      ``SourceFetchError(source, endpoint, reason, status_code)``.
    - Retries (429 and 5xx, exponential backoff) happen inside the
      mounted ``HTTPAdapter`` before the error surfaces.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from rental_kernel.domain.money import to_decimal
from rental_kernel.exceptions import SourceFetchError
from rental_kernel.logging_config import get_logger

logger = get_logger("ingestion.http")

DEFAULT_TIMEOUT = 30
RETRY_STATUSES = (429, 500, 502, 503, 504)


def build_session(retries: int = 3, backoff_factor: float = 1.0) -> requests.Session:
    """Session with retry/backoff and a pooled adapter mounted for both schemes."""
    session = requests.Session()
    retry_strategy = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=list(RETRY_STATUSES),
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=4,
        pool_maxsize=4,
        pool_block=False,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"Accept": "application/json"})
    return session


class JsonHttpSource:
    """Base class for a JSON-over-HTTP data publisher."""

    source_name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        verify_tls: bool = True,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = session if session is not None else build_session()

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug(
            "source_request",
            extra={"source": self.source_name, "endpoint": path, "params": params},
        )
        try:
            response = self.session.get(
                url,
                params=params,
                timeout=self.timeout,
                verify=self.verify_tls,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise SourceFetchError(
                self.source_name, path, f"HTTP {status}", status_code=status
            ) from exc
        except requests.exceptions.Timeout as exc:
            raise SourceFetchError(
                self.source_name, path, f"timeout after {self.timeout}s"
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise SourceFetchError(self.source_name, path, str(exc)) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise SourceFetchError(self.source_name, path, "response is not JSON") from exc

    def _parse_value(self, endpoint: str, raw: Any) -> Decimal:
        try:
            return to_decimal(raw)
        except ValueError as exc:
            raise SourceFetchError(self.source_name, endpoint, str(exc)) from exc

    def _parse_date(self, endpoint: str, raw: Any, *formats: str) -> date:
        text = str(raw or "").strip()
        for fmt in formats:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
        raise SourceFetchError(self.source_name, endpoint, f"unparseable date {raw!r}")

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
