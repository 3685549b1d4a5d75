"""
Unit tests für die USt-IdNr.-Prüfung (lokal und VIES)
"""

import pytest
import requests

from erechnung.config import Config
from erechnung.vies import (
    RawViesResponse,
    RequestsViesTransport,
    classify_vies_response,
    extract_tag_value,
    is_local_format_valid,
    parse_vat_id,
    validate_seller_vat_id,
)

VALID_BODY = (
    '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
    '<ns2:checkVatResponse xmlns:ns2="urn:ec.europa.eu:taxud:vies:services:checkVat:types">'
    '<ns2:countryCode>DE</ns2:countryCode><ns2:vatNumber>123456789</ns2:vatNumber>'
    '<ns2:valid>true</ns2:valid><ns2:name><![CDATA[Muster GmbH]]></ns2:name>'
    '</ns2:checkVatResponse></soap:Body></soap:Envelope>'
)
INVALID_BODY = VALID_BODY.replace('<ns2:valid>true</ns2:valid>', '<ns2:valid>false</ns2:valid>')
FAULT_BODY = (
    '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body><soap:Fault>'
    '<faultcode>soap:Server</faultcode><faultstring>{}</faultstring>'
    '</soap:Fault></soap:Body></soap:Envelope>'
)


class FakeTransport:
    """Liefert eine feste Antwort oder wirft"""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def check_vat(self, country_code, vat_number):
        self.calls.append((country_code, vat_number))
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def enabled_config():
    return Config(data={"vies": {"enabled": True, "timeout_ms": 1000}})


class TestLocalChecks:

    def test_parse_vat_id(self):
        parsed = parse_vat_id("DE123456789")
        assert (parsed.country_code, parsed.vat_number) == ("DE", "123456789")
        assert parse_vat_id("GR123456789").country_code == "EL"
        assert parse_vat_id("123456789") is None

    @pytest.mark.parametrize("country, number, expected", [
        ("DE", "123456789", True),
        ("DE", "12345678", False),
        ("AT", "U12345678", True),
        ("NL", "123456789B01", True),
        ("FR", "XX123456789", True),
        ("CH", "E123456789", True),
    ])
    def test_is_local_format_valid(self, country, number, expected):
        assert is_local_format_valid(country, number) is expected

    def test_extract_tag_value(self):
        assert extract_tag_value(VALID_BODY, "valid") == "true"
        assert extract_tag_value(VALID_BODY, "name") == "Muster GmbH"
        assert extract_tag_value(VALID_BODY, "address") is None


class TestClassifyViesResponse:

    def _classify(self, status_code, body):
        return classify_vies_response("DE123456789", parse_vat_id("DE123456789"), RawViesResponse(status_code, body))

    def test_valid_and_invalid(self):
        assert self._classify(200, VALID_BODY).status == "valid"
        result = self._classify(200, INVALID_BODY)
        assert (result.status, result.reason) == ("invalid", "vies_invalid")

    def test_invalid_input_fault(self):
        result = self._classify(500, FAULT_BODY.format("INVALID_INPUT"))
        assert (result.status, result.reason) == ("unavailable", "vies_unavailable")
        result = self._classify(200, FAULT_BODY.format("INVALID_INPUT"))
        assert (result.status, result.reason) == ("invalid", "vies_invalid_input")

    def test_other_faults_and_garbage_are_unavailable(self):
        assert self._classify(200, FAULT_BODY.format("MS_UNAVAILABLE")).status == "unavailable"
        assert self._classify(200, "<html>Wartung</html>").status == "unavailable"
        assert self._classify(503, "").status == "unavailable"


class TestValidateSellerVatId:

    def test_missing(self):
        result = validate_seller_vat_id(None)
        assert (result.status, result.reason) == ("unverified", "missing")
        assert result.vies_checked is False

    def test_bad_format_without_network(self, enabled_config):
        transport = FakeTransport(RawViesResponse(200, VALID_BODY))
        result = validate_seller_vat_id("DE12345", transport, enabled_config)
        assert (result.status, result.reason) == ("invalid", "format")
        assert transport.calls == []

    def test_non_eu_country(self, enabled_config):
        transport = FakeTransport(RawViesResponse(200, VALID_BODY))
        result = validate_seller_vat_id("CHE123456789", transport, enabled_config)
        assert (result.status, result.reason) == ("unverified", "unsupported_country")
        assert transport.calls == []

    def test_disabled_by_environment(self, monkeypatch, enabled_config):
        monkeypatch.setenv("VIES_VALIDATION_ENABLED", "false")
        transport = FakeTransport(RawViesResponse(200, VALID_BODY))
        result = validate_seller_vat_id("DE123456789", transport, enabled_config)
        assert (result.status, result.reason) == ("unverified", "disabled")
        assert transport.calls == []

    def test_valid_with_normalization(self, enabled_config):
        transport = FakeTransport(RawViesResponse(200, VALID_BODY))
        result = validate_seller_vat_id("de 123 456 789", transport, enabled_config)
        assert (result.status, result.reason) == ("valid", "ok")
        assert result.normalized_vat_id == "DE123456789"
        assert result.vies_checked is True
        assert transport.calls == [("DE", "123456789")]

    def test_greek_prefix_is_sent_as_el(self, enabled_config):
        transport = FakeTransport(RawViesResponse(200, VALID_BODY))
        validate_seller_vat_id("GR123456789", transport, enabled_config)
        assert transport.calls == [("EL", "123456789")]

    def test_network_error_never_raises(self, enabled_config):
        transport = FakeTransport(error=requests.Timeout("zu langsam"))
        result = validate_seller_vat_id("DE123456789", transport, enabled_config)
        assert (result.status, result.reason) == ("unavailable", "vies_unavailable")
        assert result.vies_checked is True

    @pytest.mark.parametrize("error", [
        ValueError("kaputt"),
        UnicodeDecodeError("utf-8", b"\xff", 0, 1, "ungültig"),
        OSError("weg"),
    ])
    def test_unexpected_transport_error_never_raises(self, enabled_config, error, caplog):
        transport = FakeTransport(error=error)
        result = validate_seller_vat_id("DE123456789", transport, enabled_config)
        assert (result.status, result.reason) == ("unavailable", "vies_unavailable")
        assert "VIES-Prüfung fehlgeschlagen" in caplog.text

    def test_unreadable_response_never_raises(self, enabled_config):
        transport = FakeTransport(RawViesResponse(200, VALID_BODY.encode("utf-8")))
        result = validate_seller_vat_id("DE123456789", transport, enabled_config)
        assert result.status == "unavailable"

    def test_to_dict(self, enabled_config):
        transport = FakeTransport(RawViesResponse(200, INVALID_BODY))
        data = validate_seller_vat_id("DE123456789", transport, enabled_config).to_dict()
        assert data["status"] == "invalid"
        assert data["countryCode"] == "DE"
        assert data["viesChecked"] is True
        assert "checkedAt" in data


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class FakeResponse:
    """Gestreamte Antwort; jeder Chunk lässt die Uhr um ``step`` Sekunden weiterlaufen"""

    encoding = "utf-8"

    def __init__(self, body, clock, step=0.0, status_code=200, chunks=4):
        self.status_code = status_code
        self.clock = clock
        self.step = step
        self.closed = False
        data = body.encode("utf-8")
        size = len(data) // chunks + 1
        self.parts = [data[i:i + size] for i in range(0, len(data), size)]

    def iter_content(self, chunk_size):
        for part in self.parts:
            self.clock.now += self.step
            yield part

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.request = None

    def post(self, url, data, headers, timeout, stream):
        self.request = (url, data, headers, timeout, stream)
        return self.response


class TestRequestsViesTransport:

    def test_posts_soap_envelope_with_timeout(self):
        clock = FakeClock()
        session = FakeSession(FakeResponse(VALID_BODY, clock))
        transport = RequestsViesTransport(2500, endpoint="https://vies.example/check", session=session, clock=clock)
        response = transport.check_vat("DE", "123456789")

        url, data, headers, timeout, stream = session.request
        assert url == "https://vies.example/check"
        assert b"<typ:countryCode>DE</typ:countryCode>" in data
        assert b"<typ:vatNumber>123456789</typ:vatNumber>" in data
        assert headers["Content-Type"].startswith("text/xml")
        assert timeout == 2.5
        assert stream is True
        assert response.ok is True
        assert response.body == VALID_BODY
        assert session.response.closed is True

    def test_slow_response_is_aborted_at_deadline(self):
        clock = FakeClock()
        session = FakeSession(FakeResponse(VALID_BODY, clock, step=1.0))
        transport = RequestsViesTransport(2500, session=session, clock=clock)

        with pytest.raises(requests.Timeout):
            transport.check_vat("DE", "123456789")
        assert session.response.closed is True

    def test_slow_response_yields_unavailable(self, enabled_config):
        clock = FakeClock()
        session = FakeSession(FakeResponse(VALID_BODY, clock, step=1.0))
        transport = RequestsViesTransport(2500, session=session, clock=clock)

        result = validate_seller_vat_id("DE123456789", transport, enabled_config)
        assert (result.status, result.reason) == ("unavailable", "vies_unavailable")
