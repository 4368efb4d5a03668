from datetime import date, datetime, timezone

import httpx
import pytest

from carrier_risk.identifiers import NormalizedIdentifier
from carrier_service.errors import RegistryUpstreamError
from carrier_service.registry import RegistryClient, extract_carrier, map_registry_payload

FETCHED_AT = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
MC = NormalizedIdentifier(kind="mc", number="123456")
DOT = NormalizedIdentifier(kind="dot", number="2233445")


def _qcmobile_carrier(**overrides):
    carrier = {
        "legalName": "ACME FREIGHT LLC",
        "dbaName": "ACME",
        "dotNumber": 2233445,
        "allowedToOperate": "Y",
        "statusCode": "A",
        "safetyRating": "S",
        "bipdInsuranceRequired": "Y",
        "bipdRequiredAmount": "750",
        "bipdInsuranceOnFile": "1000",
        "cargoInsuranceRequired": "N",
        "cargoInsuranceOnFile": "0",
        "vehicleOosRate": 5.2,
        "driverOosRate": "1.5%",
        "fatalCrash": 0,
        "injCrash": 1,
        "towawayCrash": 2,
        "crashTotal": 3,
        "totalPowerUnits": 12,
        "totalDrivers": 14,
        "telephone": "(555) 555-1234",
        "phyStreet": "1 MAIN ST",
        "phyCity": "DALLAS",
        "phyState": "TX",
        "phyZipcode": "75201",
        "mcs150FormDate": "2024-01-15",
        "carrierOperation": {"carrierOperationCode": "A", "carrierOperationDesc": "Interstate"},
    }
    carrier.update(overrides)
    return carrier


def _client(handler, web_key="test-key"):
    return RegistryClient(
        base_url="https://registry.test/qc/services/",
        web_key=web_key,
        timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
        clock=lambda: FETCHED_AT,
    )


# ── HTTP Behaviour ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_fetch_by_mc_uses_docket_endpoint():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["web_key"] = request.url.params.get("webKey")
        seen["accept"] = request.headers.get("accept")
        return httpx.Response(200, json={"content": [{"carrier": _qcmobile_carrier()}]})

    snapshot = await _client(handler).fetch(MC)
    assert seen == {
        "path": "/qc/services/carriers/docket-number/123456",
        "web_key": "test-key",
        "accept": "application/json",
    }
    assert snapshot is not None
    assert snapshot.mc_number == "123456"
    assert snapshot.dot_number == "2233445"
    assert snapshot.legal_name == "ACME FREIGHT LLC"
    assert snapshot.fetched_at == FETCHED_AT


@pytest.mark.asyncio
async def test_fetch_by_dot_uses_carrier_endpoint():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/qc/services/carriers/2233445"
        return httpx.Response(200, json={"content": {"carrier": _qcmobile_carrier()}})

    snapshot = await _client(handler).fetch(DOT)
    assert snapshot.dot_number == "2233445"
    assert snapshot.mc_number is None


@pytest.mark.asyncio
async def test_404_is_not_found():
    snapshot = await _client(lambda r: httpx.Response(404)).fetch(MC)
    assert snapshot is None


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"content": None}, {"content": []}, {"content": {"carrier": None}}])
async def test_empty_content_is_not_found(payload):
    snapshot = await _client(lambda r: httpx.Response(200, json=payload)).fetch(MC)
    assert snapshot is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 502, 503])
async def test_transient_status_is_retryable(status_code):
    with pytest.raises(RegistryUpstreamError) as err:
        await _client(lambda r: httpx.Response(status_code)).fetch(MC)
    assert err.value.retryable
    assert err.value.status_code == status_code


@pytest.mark.asyncio
async def test_client_error_is_not_retryable():
    with pytest.raises(RegistryUpstreamError) as err:
        await _client(lambda r: httpx.Response(401)).fetch(MC)
    assert not err.value.retryable


@pytest.mark.asyncio
async def test_non_json_body_is_not_retryable():
    with pytest.raises(RegistryUpstreamError) as err:
        await _client(lambda r: httpx.Response(200, text="<html>maintenance</html>")).fetch(MC)
    assert not err.value.retryable


@pytest.mark.asyncio
async def test_network_failure_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RegistryUpstreamError) as err:
        await _client(handler).fetch(MC)
    assert err.value.retryable


@pytest.mark.asyncio
async def test_timeout_is_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(RegistryUpstreamError) as err:
        await _client(handler).fetch(MC)
    assert err.value.retryable
    assert err.value.reason == "registry_timeout"


@pytest.mark.asyncio
async def test_missing_web_key_is_not_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(RegistryUpstreamError) as err:
        await _client(handler, web_key="").fetch(MC)
    assert not err.value.retryable


# ── Payload Mapping ──────────────────────────────────────────────────

def test_map_qcmobile_amounts_in_thousands():
    snapshot = map_registry_payload(_qcmobile_carrier(), identifier=MC, fetched_at=FETCHED_AT)
    assert snapshot.operating_status == "AUTHORIZED"
    assert snapshot.safety_rating == "SATISFACTORY"
    assert snapshot.liability.required == 750_000
    assert snapshot.liability.on_file == 1_000_000
    assert snapshot.cargo.required is None
    assert snapshot.vehicle_oos_rate == 5.2
    assert snapshot.driver_oos_rate == 1.5
    assert snapshot.national_avg_vehicle_oos_rate == 20.7
    assert snapshot.national_avg_driver_oos_rate == 5.5
    assert (snapshot.crashes.fatal, snapshot.crashes.injury, snapshot.crashes.tow, snapshot.crashes.total) == (0, 1, 2, 3)
    assert snapshot.fleet.power_units == 12
    assert snapshot.entity_type == "Interstate"
    assert snapshot.physical_state == "TX"
    assert snapshot.mcs150_date == date(2024, 1, 15)
    assert snapshot.mcs150_age_days == 503


def test_map_legacy_payload_in_dollars():
    raw = {
        "legalName": "OLD ROAD INC",
        "operatingStatus": "AUTHORIZED",
        "bipdRequired": 1_000_000,
        "bipdOnFile": "$750,000",
        "cargoRequired": 100_000,
        "cargoOnFile": 100_000,
        "vehicleOOSRate": "22.5",
        "authorityDate": "03/01/2025",
        "safetyRating": "Conditional",
    }
    snapshot = map_registry_payload(raw, identifier=DOT, fetched_at=FETCHED_AT)
    assert snapshot.liability.required == 1_000_000
    assert snapshot.liability.on_file == 750_000
    assert snapshot.cargo.required == 100_000
    assert snapshot.vehicle_oos_rate == 22.5
    assert snapshot.driver_oos_rate is None
    assert snapshot.authority_granted_on == date(2025, 3, 1)
    assert snapshot.authority_age_days == 92
    assert snapshot.safety_rating == "CONDITIONAL"


def test_map_absent_fields_are_no_evidence():
    snapshot = map_registry_payload({"legalName": "SPARSE LLC"}, identifier=MC, fetched_at=FETCHED_AT)
    assert snapshot.operating_status == "UNKNOWN"
    assert snapshot.safety_rating == "NOT_RATED"
    assert snapshot.liability.required == 750_000
    assert snapshot.liability.on_file is None
    assert snapshot.cargo.required is None
    assert snapshot.vehicle_oos_rate is None
    assert snapshot.crashes.fatal is None
    assert snapshot.authority_age_days is None


def test_map_garbage_numbers_become_none():
    raw = _qcmobile_carrier(vehicleOosRate="n/a", driverOosRate=True, totalPowerUnits="-3")
    snapshot = map_registry_payload(raw, identifier=MC, fetched_at=FETCHED_AT)
    assert snapshot.vehicle_oos_rate is None
    assert snapshot.driver_oos_rate is None
    assert snapshot.fleet.power_units is None


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"allowedToOperate": "N", "statusCode": "A"}, "NOT AUTHORIZED"),
        ({"statusCode": "OUT-OF-SERVICE"}, "OUT OF SERVICE"),
        ({"statusCode": "SUSPENDED"}, "SUSPENDED"),
        ({"statusCode": "REVOKED", "allowedToOperate": None}, "NOT AUTHORIZED"),
        ({"statusCode": None, "allowedToOperate": "Y"}, "AUTHORIZED"),
        ({"statusCode": None, "allowedToOperate": None}, "UNKNOWN"),
    ],
)
def test_map_operating_status(overrides, expected):
    snapshot = map_registry_payload(_qcmobile_carrier(**overrides), identifier=MC, fetched_at=FETCHED_AT)
    assert snapshot.operating_status == expected


def test_map_legacy_on_file_flags():
    raw = {"legalName": "FLAGS LLC", "bipdInsuranceOnFile": "N", "cargoRequired": 100_000, "cargoInsuranceOnFile": "Y"}
    snapshot = map_registry_payload(raw, identifier=MC, fetched_at=FETCHED_AT)
    assert snapshot.liability.on_file == 0.0
    assert snapshot.cargo.on_file == 100_000


def test_extract_carrier_shapes():
    carrier = _qcmobile_carrier()
    assert extract_carrier({"content": [{"carrier": carrier}]}) == carrier
    assert extract_carrier({"content": carrier}) == carrier
    assert extract_carrier(carrier) == carrier
    assert extract_carrier({"unrelated": 1}) is None
    with pytest.raises(RegistryUpstreamError):
        extract_carrier(["not", "an", "object"])
    with pytest.raises(RegistryUpstreamError):
        extract_carrier({"content": "oops"})


@pytest.mark.asyncio
async def test_non_finite_numbers_map_to_no_evidence():
    body = '{"content": {"carrier": {"legalName": "ACME", "dotNumber": 1, "allowedToOperate": "Y", "fatalCrash": 1e999}}}'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body, headers={"Content-Type": "application/json"})

    snapshot = await _client(handler).fetch(MC)
    assert snapshot.crashes.fatal is None


def test_infinity_strings_are_rejected():
    raw = _qcmobile_carrier(vehicleOosRate="Infinity", totalDrivers="-inf", injCrash="NaN")
    snapshot = map_registry_payload(raw, identifier=MC, fetched_at=FETCHED_AT)
    assert snapshot.vehicle_oos_rate is None
    assert snapshot.fleet.drivers is None
    assert snapshot.crashes.injury is None


@pytest.mark.asyncio
async def test_mapping_failure_becomes_upstream_error(monkeypatch):
    def broken_mapping(*args, **kwargs):
        raise OverflowError("cannot convert float infinity to integer")

    monkeypatch.setattr("carrier_service.registry.map_registry_payload", broken_mapping)
    handler = lambda r: httpx.Response(200, json={"content": {"carrier": _qcmobile_carrier()}})
    with pytest.raises(RegistryUpstreamError) as err:
        await _client(handler).fetch(MC)
    assert not err.value.retryable
    assert err.value.reason.startswith("registry_malformed_payload")
