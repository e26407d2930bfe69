import pytest
import requests

from cashout.errors import ProviderError, ProviderErrorCode
from cashout.providers.mobile_money.config import OrangeMoneyConfig
from cashout.providers.mobile_money.orange_money import OrangeMoneyProvider, map_status, parse_callback
from services.metrics import counter_value
from tests.conftest import new_cash_out


class _FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _config(**overrides):
    values = {
        "base_url": "https://om.example",
        "token_url": "https://om.example/oauth/token",
        "client_id": "client",
        "client_secret": "secret",
        "webhook_secret": "whsec",
        "timeout_s": 5.0,
    }
    values.update(overrides)
    return OrangeMoneyConfig(**values)


class _Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _token():
    return _FakeResponse(200, {"access_token": "tok-1", "expires_in": 3600})


def test_initiate_posts_cash_out_request(monkeypatch, store):
    rec = _Recorder(_token(), _FakeResponse(202, {"transactionId": "OM-123", "status": "PENDING"}))
    monkeypatch.setattr("cashout.providers.mobile_money.orange_money.requests.request", rec)
    record = new_cash_out(store, reference="CASH-1700000000000-1234")

    result = OrangeMoneyProvider(_config()).initiate(record)

    assert result.status == "processing"
    assert result.provider_transaction_id == "OM-123"
    assert result.provider_response["http_status"] == 202

    method, url, kwargs = rec.calls[0]
    assert (method, url) == ("POST", "https://om.example/oauth/token")
    assert kwargs["auth"] == ("client", "secret")
    assert kwargs["data"] == {"grant_type": "client_credentials"}

    method, url, kwargs = rec.calls[1]
    assert (method, url) == ("POST", "https://om.example/v1/cash-out")
    assert kwargs["headers"]["Authorization"] == "Bearer tok-1"
    assert kwargs["headers"]["X-Reference-Id"] == record.reference
    assert kwargs["json"]["externalId"] == record.reference
    assert kwargs["json"]["amount"] == {"value": "100.00", "currency": "XOF"}
    assert kwargs["json"]["payee"] == {"partyIdType": "MSISDN", "partyId": "+22890000001"}
    assert kwargs["timeout"] == 5.0
    assert counter_value(
        "cashout_provider_calls_total", {"provider": "orange_money", "operation": "initiate", "result": "accepted"}
    ) == 1


def test_initiate_falls_back_to_reference_as_transaction_id(monkeypatch, store):
    rec = _Recorder(_token(), _FakeResponse(200, {}))
    monkeypatch.setattr("cashout.providers.mobile_money.orange_money.requests.request", rec)
    record = new_cash_out(store)

    result = OrangeMoneyProvider(_config()).initiate(record)

    assert result.provider_transaction_id == record.reference
    assert result.status == "processing"


def test_token_is_cached(monkeypatch):
    rec = _Recorder(
        _token(),
        _FakeResponse(200, {"transactionId": "OM-1", "status": "SUCCESSFUL"}),
        _FakeResponse(200, {"transactionId": "OM-2", "status": "FAILED", "reason": "Subscriber barred"}),
    )
    monkeypatch.setattr("cashout.providers.mobile_money.orange_money.requests.request", rec)
    provider = OrangeMoneyProvider(_config())

    first = provider.check_status("OM-1")
    second = provider.check_status("OM-2")

    assert first.status == "completed"
    assert second.status == "failed"
    assert second.failure_reason == "Subscriber barred"
    assert [c[1] for c in rec.calls] == [
        "https://om.example/oauth/token",
        "https://om.example/v1/transactions/OM-1",
        "https://om.example/v1/transactions/OM-2",
    ]


@pytest.mark.parametrize(
    "status_code,payload,code",
    [
        (503, {"message": "maintenance"}, ProviderErrorCode.SERVICE_UNAVAILABLE),
        (502, None, ProviderErrorCode.PROVIDER_UNAVAILABLE),
        (500, None, ProviderErrorCode.TEMPORARY_FAILURE),
        (429, None, ProviderErrorCode.RATE_LIMIT_EXCEEDED),
        (401, None, ProviderErrorCode.AUTH_FAILED),
        (400, {"code": "INSUFFICIENT_FUNDS", "message": "Insufficient funds"}, ProviderErrorCode.INSUFFICIENT_FUNDS),
        (400, {"message": "bad"}, ProviderErrorCode.PROVIDER_REQUEST_FAILED),
    ],
)
def test_initiate_http_errors_are_classified(monkeypatch, store, status_code, payload, code):
    rec = _Recorder(_token(), _FakeResponse(status_code, payload, text="upstream said no"))
    monkeypatch.setattr("cashout.providers.mobile_money.orange_money.requests.request", rec)

    with pytest.raises(ProviderError) as exc:
        OrangeMoneyProvider(_config()).initiate(new_cash_out(store))

    assert exc.value.code == code
    assert exc.value.response["http_status"] == status_code
    assert exc.value.response["stage"] == "initiate"


def test_transport_errors_are_transient(monkeypatch):
    rec = _Recorder(requests.Timeout("read timed out"), requests.ConnectionError("refused"))
    monkeypatch.setattr("cashout.providers.mobile_money.orange_money.requests.request", rec)
    provider = OrangeMoneyProvider(_config())

    with pytest.raises(ProviderError) as exc:
        provider.check_status("OM-1")
    assert exc.value.code == ProviderErrorCode.TIMEOUT

    with pytest.raises(ProviderError) as exc:
        provider.check_status("OM-1")
    assert exc.value.code == ProviderErrorCode.NETWORK_ERROR


def test_token_failure_is_auth_error(monkeypatch):
    rec = _Recorder(_FakeResponse(401, {"error": "invalid_client"}))
    monkeypatch.setattr("cashout.providers.mobile_money.orange_money.requests.request", rec)

    with pytest.raises(ProviderError) as exc:
        OrangeMoneyProvider(_config()).check_status("OM-1")
    assert exc.value.code == ProviderErrorCode.AUTH_FAILED


def test_missing_config_raises_before_any_call(monkeypatch, store):
    rec = _Recorder()
    monkeypatch.setattr("cashout.providers.mobile_money.orange_money.requests.request", rec)

    with pytest.raises(ProviderError) as exc:
        OrangeMoneyProvider(_config(client_secret="")).initiate(new_cash_out(store))

    assert exc.value.code == ProviderErrorCode.CONFIG_MISSING
    assert exc.value.response == {"missing": ["ORANGE_MONEY_CLIENT_SECRET"]}
    assert rec.calls == []


def test_status_mapping_and_callback():
    assert map_status("successful") == "completed"
    assert map_status("REJECTED") == "failed"
    assert map_status("weird") == "pending"

    cb = parse_callback({"externalId": "CASH-1", "transactionId": "OM-9", "status": "FAILED", "reason": "Limit"})
    assert cb.reference == "CASH-1"
    assert cb.provider_transaction_id == "OM-9"
    assert cb.status == "failed"
    assert cb.failure_reason == "Limit"

    ok = parse_callback({"externalId": "CASH-2", "status": "SUCCESSFUL"})
    assert ok.status == "completed"
    assert ok.failure_reason is None
