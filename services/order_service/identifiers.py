# CREATE FILE: services/order_service/identifiers.py

import random
import re
import secrets
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from utils.logging import StructuredLogger, get_logger

ORDER_NUMBER_PATTERN = re.compile(r'^ORD-\d{6}$')
TRACKING_NUMBER_PATTERN = re.compile(r'^RTN-[A-Z0-9]{8,12}$')

# 32 symbols, no 0/O or 1/I
TRACKING_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
TRACKING_RANDOM_BYTES = 6
TRACKING_MIN_LENGTH = 8
TRACKING_MAX_LENGTH = 10

logger = get_logger("order_service")


class TrackingNumberExhaustedError(RuntimeError):
    """No unique tracking number found within the retry budget"""

    def __init__(self, attempts: int):
        super().__init__(f"Failed to generate unique tracking number after {attempts} attempts")
        self.attempts = attempts


@dataclass(frozen=True)
class UniqueTrackingNumber:
    value: str
    attempts: int


@dataclass(frozen=True)
class ExhaustedRetries:
    attempts: int


TrackingNumberOutcome = Union[UniqueTrackingNumber, ExhaustedRetries]


def generate_order_number() -> str:
    """Human-friendly order number such as ORD-487291 (uniqueness checked on insert)"""
    return f"ORD-{random.randint(100000, 999999)}"


def is_valid_order_number(order_number: str) -> bool:
    return bool(ORDER_NUMBER_PATTERN.match(order_number or ''))


def _encode_base32(data: bytes) -> str:
    """Pack bytes into 5-bit groups mapped onto the tracking alphabet"""
    result = []
    buffer = 0
    bits_in_buffer = 0

    for byte in data:
        buffer = (buffer << 8) | byte
        bits_in_buffer += 8

        while bits_in_buffer >= 5:
            index = (buffer >> (bits_in_buffer - 5)) & 0x1F
            result.append(TRACKING_ALPHABET[index])
            bits_in_buffer -= 5

    if bits_in_buffer > 0:
        index = (buffer << (5 - bits_in_buffer)) & 0x1F
        result.append(TRACKING_ALPHABET[index])

    return ''.join(result)


def generate_tracking_number() -> str:
    """Tracking number such as RTN-K7QW2MZP4D from a secure random source"""
    code = _encode_base32(secrets.token_bytes(TRACKING_RANDOM_BYTES))

    while len(code) < TRACKING_MIN_LENGTH:
        code += secrets.choice(TRACKING_ALPHABET)

    return f"RTN-{code[:TRACKING_MAX_LENGTH]}"


def validate_tracking_number(tracking_number: str) -> bool:
    return bool(TRACKING_NUMBER_PATTERN.match(tracking_number or ''))


async def try_generate_unique_tracking_number(
    check_exists: Callable[[str], Awaitable[bool]],
    max_retries: int = 10,
    log: StructuredLogger = None
) -> TrackingNumberOutcome:
    """
    Generate tracking numbers until one is not already taken.

    Attempts run one after another since each depends on the previous
    collision result. Returns ExhaustedRetries instead of a value that may
    be a duplicate.
    """
    log = log or logger

    for attempt in range(1, max_retries + 1):
        tracking_number = generate_tracking_number()

        if not await check_exists(tracking_number):
            return UniqueTrackingNumber(value=tracking_number, attempts=attempt)

        log.warning(
            "Tracking number collision detected, retrying",
            tracking_number=tracking_number,
            attempt=attempt,
            max_retries=max_retries
        )

    return ExhaustedRetries(attempts=max_retries)


async def generate_unique_tracking_number(
    check_exists: Callable[[str], Awaitable[bool]],
    max_retries: int = 10,
    log: StructuredLogger = None
) -> str:
    """Like try_generate_unique_tracking_number but raises when retries run out"""
    outcome = await try_generate_unique_tracking_number(check_exists, max_retries, log)

    if isinstance(outcome, ExhaustedRetries):
        (log or logger).error("Tracking number retries exhausted", attempts=outcome.attempts)
        raise TrackingNumberExhaustedError(outcome.attempts)

    return outcome.value
