import pytest

from services.market_feed.error_codes import (
    DATA_API,
    TRADING_API,
    build_api_error,
    classify_transport_error,
    disconnection_reason,
    json_error_message,
    parse_json_error,
    rate_limit_penalty,
)


@pytest.mark.parametrize("code", [806, 807, 808, 809, 810, "DH-901", "DH-902"])
def test_critical_codes(code):
    error = build_api_error(code)
    assert error.critical
    assert not error.retryable


@pytest.mark.parametrize("code", [800, 804, 805, 811, 814, "DH-904", "DH-905", "DH-910"])
def test_non_critical_codes(code):
    error = build_api_error(code)
    assert not error.critical
    assert error.retryable


def test_error_type_and_message():
    data_error = build_api_error(805, {"reason": "x"})
    assert data_error.error_type == DATA_API
    assert data_error.details == {"reason": "x"}
    assert str(data_error).startswith("DataApi error [805]: Too many requests")

    trading_error = build_api_error("DH-909")
    assert trading_error.error_type == TRADING_API
    assert "Network error" in trading_error.message

    with pytest.raises(ValueError):
        build_api_error(700)


def test_rate_limit_penalties():
    assert rate_limit_penalty(805) == 2
    assert rate_limit_penalty("DH-904") == 3
    assert rate_limit_penalty(807) == 0


def test_disconnection_reasons():
    assert disconnection_reason(805) == "Connection limit exceeded"
    assert disconnection_reason(809) == "Invalid access token"
    assert disconnection_reason(901) == "Disconnection code: 901"


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"errorCode": 807, "errorMessage": "expired"}, 807),
        ({"errorCode": "805"}, 805),
        ({"error": {"code": "DH-904", "message": "slow"}}, "DH-904"),
        ({"code": "DH-901"}, "DH-901"),
        ({"errorCode": 42}, None),
        ({"status": "ok"}, None),
        ([1, 2], None),
    ],
)
def test_parse_json_error(payload, expected):
    assert parse_json_error(payload) == expected


def test_json_error_message_fallbacks():
    assert json_error_message({"errorMessage": "a"}) == "a"
    assert json_error_message({"error": {"message": "b"}}) == "b"
    assert json_error_message({"message": "c"}) == "c"
    assert json_error_message({}) == "Unknown error"


class _Response:
    def __init__(self, status_code):
        self.status_code = status_code


class _HandshakeRejected(Exception):
    def __init__(self, status_code):
        super().__init__("server rejected WebSocket connection")
        self.response = _Response(status_code)


@pytest.mark.parametrize(
    "error,expected",
    [
        (_HandshakeRejected(401), "DH-901"),
        (_HandshakeRejected(403), 807),
        (_HandshakeRejected(429), 805),
        (_HandshakeRejected(500), 800),
        (Exception("HTTP 429 too many requests"), 805),
        (ConnectionResetError("peer reset"), "DH-909"),
        (TimeoutError(), "DH-909"),
        (Exception("read timed out"), "DH-909"),
    ],
)
def test_classify_transport_error(error, expected):
    api_error = classify_transport_error(error)
    assert api_error.code == expected
    assert "original_error" in api_error.details


def test_unrecognised_transport_error():
    assert classify_transport_error(ValueError("bad frame")) is None
