import secrets
import string
import time

TRACKING_PREFIX = "ZAP"

_ALPHABET = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    digits = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_ALPHABET[remainder])
        if value == 0:
            return "".join(reversed(digits))


def generate_tracking_id() -> str:
    """Brand prefix, base36 millisecond timestamp and a random suffix, uppercased.

    Uniqueness is not checked here; one id is issued per reconciled transaction.
    """
    stamp = _base36(time.time_ns() // 1_000_000)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{TRACKING_PREFIX}-{stamp}-{suffix}".upper()
