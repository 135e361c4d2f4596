"""
Tests for the BCRA, BCB and datos.gob.ar adapters.

The HTTP session is replaced by a scripted fake so the tests exercise URL
building, parameter encoding, error mapping and payload parsing without
touching the network.
"""

from datetime import date
from decimal import Decimal

import pytest
import requests

from rental_kernel.exceptions import SourceFetchError, UnsupportedCurrencyError

from rental_ingestion.adapters.base import build_session
from rental_ingestion.adapters.bcb import BcbClient
from rental_ingestion.adapters.bcra import BcraClient, normalize_root
from rental_ingestion.adapters.datos_ar import DatosArClient


class FakeResponse:
    def __init__(self, payload=None, status_code=200, invalid_json=False):
        self.payload = payload
        self.status_code = status_code
        self.invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        if self.invalid_json:
            raise ValueError("Expecting value")
        return self.payload


class FakeSession:
    """Returns scripted responses in order and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def get(self, url, params=None, timeout=None, verify=True):
        self.requests.append({"url": url, "params": params, "timeout": timeout, "verify": verify})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


class TestBuildSession:
    def test_retry_adapter_mounted(self):
        session = build_session(retries=5)
        adapter = session.get_adapter("https://api.bcra.gob.ar")
        assert adapter.max_retries.total == 5
        assert 503 in adapter.max_retries.status_forcelist
        assert session.headers["Accept"] == "application/json"


class TestBcraClient:
    def test_normalize_root(self):
        assert normalize_root("https://api.bcra.gob.ar/estadisticas/v3.0/") == "https://api.bcra.gob.ar"
        assert normalize_root("https://api.bcra.gob.ar") == "https://api.bcra.gob.ar"

    def test_fetch_icl(self):
        session = FakeSession(FakeResponse({"results": [
            {"fecha": "2024-02-01", "valor": 10.25},
            {"fecha": "02/02/2024", "valor": "10.5"},
        ]}))
        client = BcraClient(session=session, verify_tls=False)

        observations = client.fetch_icl(date(2024, 1, 1), date(2024, 2, 29))

        assert [o.observed_on for o in observations] == [date(2024, 2, 1), date(2024, 2, 2)]
        assert observations[0].value == Decimal("10.25")
        request = session.requests[0]
        assert request["url"] == "https://api.bcra.gob.ar/estadisticas/v3.0/monetarias/40"
        assert request["params"] == {"desde": "2024-01-01", "hasta": "2024-02-29", "limit": 5000}
        assert request["verify"] is False

    def test_http_400_falls_back_to_legacy_path(self, captured_logs):
        session = FakeSession(
            FakeResponse(status_code=400),
            FakeResponse({"results": [{"fecha": "2024-02-01", "valor": "10.5"}]}),
        )
        client = BcraClient(session=session, icl_variable_id=7)

        observations = client.fetch_icl(date(2024, 1, 1), date(2024, 2, 29))

        assert len(observations) == 1
        assert session.requests[1]["url"] == (
            "https://api.bcra.gob.ar/estadisticas/v3.0/datosvariable/7/2024-01-01/2024-02-29"
        )
        assert session.requests[1]["params"] is None
        assert any(r["message"] == "icl_legacy_fallback" for r in captured_logs())

    def test_other_http_errors_propagate(self):
        client = BcraClient(session=FakeSession(FakeResponse(status_code=503)))
        with pytest.raises(SourceFetchError) as exc_info:
            client.fetch_icl(date(2024, 1, 1), date(2024, 2, 29))
        assert exc_info.value.status_code == 503

    def test_timeout_maps_to_source_error(self):
        client = BcraClient(session=FakeSession(requests.Timeout("slow")), timeout=5)
        with pytest.raises(SourceFetchError, match="timeout after 5s"):
            client.fetch_icl(date(2024, 1, 1), date(2024, 2, 29))

    def test_fetch_fx_variable_ids(self):
        session = FakeSession(
            FakeResponse({"results": [{"fecha": "2024-02-29", "valor": 835.5}]}),
            FakeResponse({"results": []}),
        )
        client = BcraClient(session=session)

        usd = client.fetch_fx("usd", "ars", date(2024, 2, 22), date(2024, 2, 29))
        client.fetch_fx("BRL", "ARS", date(2024, 2, 22), date(2024, 2, 29))

        assert usd[0].value == Decimal("835.5")
        assert session.requests[0]["url"].endswith("/estadisticas/v2.0/datosvariable/4/2024-02-22/2024-02-29")
        assert "/datosvariable/12/" in session.requests[1]["url"]

    def test_fetch_fx_unknown_pair(self):
        with pytest.raises(UnsupportedCurrencyError):
            BcraClient(session=FakeSession()).fetch_fx("EUR", "ARS", date(2024, 1, 1), date(2024, 1, 2))

    def test_bad_value_is_a_source_error(self):
        client = BcraClient(session=FakeSession(FakeResponse({"results": [
            {"fecha": "2024-02-01", "valor": "n/d"},
        ]})))
        with pytest.raises(SourceFetchError):
            client.fetch_icl(date(2024, 1, 1), date(2024, 2, 29))

    def test_context_manager_closes_session(self):
        session = FakeSession()
        with BcraClient(session=session):
            pass
        assert session.closed is True


class TestBcbClient:
    def test_fetch_igpm(self):
        session = FakeSession(FakeResponse([
            {"data": "01/01/2024", "valor": "0.07"},
            {"data": "01/02/2024", "valor": "-0.52"},
        ]))
        client = BcbClient(session=session)

        observations = client.fetch_igpm(date(2023, 3, 1), date(2024, 3, 1))

        assert observations[1].observed_on == date(2024, 2, 1)
        assert observations[1].value == Decimal("-0.52")
        request = session.requests[0]
        assert request["url"] == "https://api.bcb.gov.br/dados/serie/bcdata.sgs.189/dados"
        assert request["params"] == {
            "formato": "json",
            "dataInicial": "01/03/2023",
            "dataFinal": "01/03/2024",
        }

    def test_usd_brl_series(self):
        session = FakeSession(FakeResponse(None))
        assert BcbClient(session=session).fetch_usd_brl(date(2024, 2, 1), date(2024, 3, 1)) == []
        assert "/bcdata.sgs.1/dados" in session.requests[0]["url"]

    def test_non_list_payload(self):
        client = BcbClient(session=FakeSession(FakeResponse({"error": "bad"})))
        with pytest.raises(SourceFetchError, match="unexpected payload shape"):
            client.fetch_igpm(date(2024, 1, 1), date(2024, 3, 1))

    def test_invalid_json(self):
        client = BcbClient(session=FakeSession(FakeResponse(invalid_json=True)))
        with pytest.raises(SourceFetchError, match="not JSON"):
            client.fetch_igpm(date(2024, 1, 1), date(2024, 3, 1))


class TestDatosArClient:
    def test_fetch_ipc_drops_unusable_values(self, captured_logs):
        session = FakeSession(FakeResponse({"data": [
            ["2024-01-01", 4000.5],
            ["2024-02", None],
            ["2024-03-01", "NaN"],
            ["2024-04", "4200.25"],
        ]}))
        client = DatosArClient(session=session, ipc_series_id="ipc.test")

        observations = client.fetch_ipc(date(2023, 4, 1), date(2024, 4, 30))

        assert [(o.observed_on, o.value) for o in observations] == [
            (date(2024, 1, 1), Decimal("4000.5")),
            (date(2024, 4, 1), Decimal("4200.25")),
        ]
        assert session.requests[0]["params"] == {
            "ids": "ipc.test",
            "start_date": "2023-04-01",
            "end_date": "2024-04-30",
        }
        dropped = [r for r in captured_logs() if r["message"] == "ipc_values_dropped"][0]
        assert dropped["dropped"] == 2

    def test_optional_window(self):
        session = FakeSession(FakeResponse({"data": []}))
        DatosArClient(session=session).fetch_ipc()
        assert session.requests[0]["params"] == {"ids": "148.3_INIVELNAL_DICI_M_26"}
        assert session.requests[0]["url"] == "https://apis.datos.gob.ar/series/api/series/"
