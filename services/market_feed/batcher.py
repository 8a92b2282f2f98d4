# Subscription batching utilities
import json
from typing import List, Sequence, TypeVar

from core.utils.exceptions import FeedValidationError

from .models import FeedRequestCode, Instrument

T = TypeVar("T")


def split_into_batches(instruments: Sequence[T], max_per_message: int) -> List[List[T]]:
    """Split instruments into contiguous, order-preserving chunks of at most max_per_message."""
    if max_per_message <= 0:
        raise FeedValidationError(
            f"max_per_message must be positive, got {max_per_message}",
            field="max_per_message", value=max_per_message,
        )
    return [
        list(instruments[start:start + max_per_message])
        for start in range(0, len(instruments), max_per_message)
    ]


def build_subscription_message(request_code: int, batch: Sequence[Instrument]) -> dict:
    return {
        "RequestCode": int(request_code),
        "InstrumentCount": len(batch),
        "InstrumentList": [instrument.to_wire() for instrument in batch],
    }


def encode_subscription_message(request_code: int, batch: Sequence[Instrument]) -> str:
    return json.dumps(build_subscription_message(request_code, batch))


def build_disconnect_message() -> str:
    return json.dumps({"RequestCode": int(FeedRequestCode.DISCONNECT)})
