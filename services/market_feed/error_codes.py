# Server error taxonomy for the Dhan feeds
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Union

from core.utils.exceptions import FeedApiError

DATA_API = "DataApi"
TRADING_API = "TradingApi"


class DataApiErrorCode(IntEnum):
    INTERNAL_SERVER_ERROR = 800
    INSTRUMENT_LIMIT_EXCEEDED = 804
    TOO_MANY_REQUESTS = 805
    DATA_APIS_NOT_SUBSCRIBED = 806
    ACCESS_TOKEN_EXPIRED = 807
    AUTHENTICATION_FAILED = 808
    ACCESS_TOKEN_INVALID = 809
    CLIENT_ID_INVALID = 810
    INVALID_EXPIRY_DATE = 811
    INVALID_DATE_FORMAT = 812
    INVALID_SECURITY_ID = 813
    INVALID_REQUEST = 814


class TradingApiErrorCode(str, Enum):
    INVALID_AUTHENTICATION = "DH-901"
    INVALID_ACCESS = "DH-902"
    USER_ACCOUNT = "DH-903"
    RATE_LIMIT = "DH-904"
    INPUT_EXCEPTION = "DH-905"
    ORDER_ERROR = "DH-906"
    DATA_ERROR = "DH-907"
    INTERNAL_SERVER_ERROR = "DH-908"
    NETWORK_ERROR = "DH-909"
    OTHERS = "DH-910"


DATA_API_ERROR_MESSAGES: Dict[int, str] = {
    DataApiErrorCode.INTERNAL_SERVER_ERROR: "Internal Server Error",
    DataApiErrorCode.INSTRUMENT_LIMIT_EXCEEDED: "Requested number of instruments exceeds limit",
    DataApiErrorCode.TOO_MANY_REQUESTS: (
        "Too many requests or connections. Further requests may result in the user being blocked."
    ),
    DataApiErrorCode.DATA_APIS_NOT_SUBSCRIBED: "Data APIs not subscribed",
    DataApiErrorCode.ACCESS_TOKEN_EXPIRED: "Access token is expired",
    DataApiErrorCode.AUTHENTICATION_FAILED: "Authentication Failed - Client ID or Access Token invalid",
    DataApiErrorCode.ACCESS_TOKEN_INVALID: "Access token is invalid",
    DataApiErrorCode.CLIENT_ID_INVALID: "Client ID is invalid",
    DataApiErrorCode.INVALID_EXPIRY_DATE: "Invalid Expiry Date",
    DataApiErrorCode.INVALID_DATE_FORMAT: "Invalid Date Format",
    DataApiErrorCode.INVALID_SECURITY_ID: "Invalid SecurityId",
    DataApiErrorCode.INVALID_REQUEST: "Invalid Request",
}

TRADING_API_ERROR_MESSAGES: Dict[str, str] = {
    TradingApiErrorCode.INVALID_AUTHENTICATION: "Client ID or user generated access token is invalid or expired.",
    TradingApiErrorCode.INVALID_ACCESS: (
        "User has not subscribed to Data APIs or does not have access to Trading APIs. "
        "Kindly subscribe to Data APIs to be able to fetch Data."
    ),
    TradingApiErrorCode.USER_ACCOUNT: (
        "Errors related to User's Account. Check if the required segments are activated "
        "or other requirements are met."
    ),
    TradingApiErrorCode.RATE_LIMIT: (
        "Too many requests on server from single user breaching rate limits. Try throttling API calls."
    ),
    TradingApiErrorCode.INPUT_EXCEPTION: "Missing required fields, bad values for parameters etc.",
    TradingApiErrorCode.ORDER_ERROR: "Incorrect request for order and cannot be processed.",
    TradingApiErrorCode.DATA_ERROR: (
        "System is unable to fetch data due to incorrect parameters or no data present."
    ),
    TradingApiErrorCode.INTERNAL_SERVER_ERROR: (
        "Server was not able to process API request. This will only occur rarely."
    ),
    TradingApiErrorCode.NETWORK_ERROR: (
        "Network error where the API was unable to communicate with the backend system."
    ),
    TradingApiErrorCode.OTHERS: "Error originating from other reasons.",
}

# Server-side disconnection packets (response code 50)
DISCONNECTION_REASONS: Dict[int, str] = {
    805: "Connection limit exceeded",
    806: "Data APIs not subscribed",
    807: "Access token expired",
    808: "Authentication failed",
    809: "Invalid access token",
}

CRITICAL_DATA_API_CODES = frozenset({
    DataApiErrorCode.DATA_APIS_NOT_SUBSCRIBED,
    DataApiErrorCode.ACCESS_TOKEN_EXPIRED,
    DataApiErrorCode.AUTHENTICATION_FAILED,
    DataApiErrorCode.ACCESS_TOKEN_INVALID,
    DataApiErrorCode.CLIENT_ID_INVALID,
})

CRITICAL_TRADING_API_CODES = frozenset({
    TradingApiErrorCode.INVALID_AUTHENTICATION.value,
    TradingApiErrorCode.INVALID_ACCESS.value,
})

# Extra reconnect attempts charged when the server asks us to slow down
RATE_LIMIT_PENALTIES: Dict[Union[int, str], int] = {
    DataApiErrorCode.TOO_MANY_REQUESTS: 2,
    TradingApiErrorCode.RATE_LIMIT.value: 3,
}


def is_data_api_code(code: Any) -> bool:
    return isinstance(code, int) and not isinstance(code, bool) and 800 <= code <= 814


def is_trading_api_code(code: Any) -> bool:
    return isinstance(code, str) and code.startswith("DH-")


def disconnection_reason(error_code: int) -> str:
    return DISCONNECTION_REASONS.get(error_code, f"Disconnection code: {error_code}")


def data_api_error_message(code: int) -> str:
    return DATA_API_ERROR_MESSAGES.get(code, f"Unknown Data API error: {code}")


def trading_api_error_message(code: str) -> str:
    return TRADING_API_ERROR_MESSAGES.get(code, f"Unknown Trading API error: {code}")


def build_api_error(code: Union[int, str], details: Optional[Dict[str, Any]] = None) -> FeedApiError:
    """Map a Data API or Trading API code onto a FeedApiError."""
    if is_data_api_code(code):
        return FeedApiError(
            data_api_error_message(code),
            error_type=DATA_API,
            code=int(code),
            critical=code in CRITICAL_DATA_API_CODES,
            details=details,
        )
    if is_trading_api_code(code):
        return FeedApiError(
            trading_api_error_message(code),
            error_type=TRADING_API,
            code=code,
            critical=code in CRITICAL_TRADING_API_CODES,
            details=details,
        )
    raise ValueError(f"Not a Dhan API error code: {code!r}")


def rate_limit_penalty(code: Union[int, str]) -> int:
    return RATE_LIMIT_PENALTIES.get(code, 0)


def classify_transport_error(error: BaseException) -> Optional[FeedApiError]:
    """Infer an API error from a failed handshake or socket error.

    HTTP status codes on rejected handshakes take precedence over message text.
    Returns None when nothing recognisable is found.
    """
    status = getattr(getattr(error, "response", None), "status_code", None)
    message = str(error).lower()

    if status == 401 or "401" in message or "unauthorized" in message:
        code: Union[int, str] = TradingApiErrorCode.INVALID_AUTHENTICATION.value
    elif status == 403 or "403" in message or "forbidden" in message:
        code = DataApiErrorCode.ACCESS_TOKEN_EXPIRED
    elif status == 429 or "429" in message or "too many" in message:
        code = DataApiErrorCode.TOO_MANY_REQUESTS
    elif status == 500 or "500" in message or "internal server" in message:
        code = DataApiErrorCode.INTERNAL_SERVER_ERROR
    elif (isinstance(error, (OSError, TimeoutError))
          or any(token in message for token in ("network", "timeout", "timed out", "econnreset", "connection reset"))):
        code = TradingApiErrorCode.NETWORK_ERROR.value
    else:
        return None

    return build_api_error(code, details={"original_error": str(error)})


def parse_json_error(payload: Any) -> Optional[Union[int, str]]:
    """Extract an API error code from a decoded JSON error frame."""
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    code = payload.get("errorCode")
    if code is None and isinstance(error, dict):
        code = error.get("code")
    if code is None:
        code = payload.get("code")
    if isinstance(code, str) and code.isdigit():
        code = int(code)
    if is_data_api_code(code) or is_trading_api_code(code):
        return code
    return None


def json_error_message(payload: Dict[str, Any]) -> str:
    error = payload.get("error")
    nested = error.get("message") if isinstance(error, dict) else None
    return payload.get("errorMessage") or nested or payload.get("message") or "Unknown error"
