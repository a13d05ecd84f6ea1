"""
Warranty barcode string generation.

Barcodes look like ``WB-2025-0K3J9ZQ1AB``: an uppercase prefix, the issuance
year, and a base36 rendering of a 48-bit payload. The payload is a hash of
an entropy draw and the slot counter, so two workers walking the same
counter range still produce different strings. Uniqueness against the store
is the collision detector's job, not this module's.
"""
from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from typing import Any, Dict, Optional, Protocol

from warranty.errors import InvalidArgumentError

BARCODE_PATTERN = re.compile(r"^[A-Z]{2,10}-\d{4}-[0-9A-Z]{8,16}$")
PREFIX_PATTERN = re.compile(r"^[A-Z]{2,10}$")

BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
PAYLOAD_BITS = 48
# 36**10 > 2**48, so ten digits always fit the payload
PAYLOAD_WIDTH = 10
_PAYLOAD_BYTES = PAYLOAD_BITS // 8


class EntropySource(Protocol):
    def draw(self, slot: int, attempt: int) -> bytes: ...


class SecureEntropy:
    """OS randomness; the default for production batches."""

    def __init__(self, size: int = 16) -> None:
        self.size = size

    def draw(self, slot: int, attempt: int) -> bytes:
        return secrets.token_bytes(self.size)


class SeededEntropy:
    """Deterministic draws keyed by a seed, for reproducible runs."""

    def __init__(self, seed: str | bytes) -> None:
        self.seed = seed.encode("utf-8") if isinstance(seed, str) else seed

    def draw(self, slot: int, attempt: int) -> bytes:
        message = f"{slot}:{attempt}".encode("ascii")
        return hmac.new(self.seed, message, hashlib.sha256).digest()


def encode_base36(value: int, width: int = PAYLOAD_WIDTH) -> str:
    if value < 0:
        raise ValueError("base36 encoding requires a non-negative value")
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits)).rjust(width, "0")


def derive_payload(entropy: bytes, counter: int) -> int:
    digest = hashlib.blake2b(
        entropy + counter.to_bytes(8, "big", signed=False),
        digest_size=_PAYLOAD_BYTES,
    ).digest()
    return int.from_bytes(digest, "big")


def normalize_prefix(prefix: Optional[str]) -> str:
    candidate = (prefix or "").strip().upper()
    if not PREFIX_PATTERN.match(candidate):
        raise InvalidArgumentError.for_field(
            "prefix", "prefix must be 2-10 letters A-Z", prefix
        )
    return candidate


def generate_barcode(prefix: str, year: int, entropy: bytes, counter: int) -> str:
    """Pure function of its inputs; never fails for a well-formed prefix."""
    payload = derive_payload(entropy, counter)
    return f"{prefix}-{year:04d}-{encode_base36(payload)}"


def is_valid_barcode(value: Optional[str]) -> bool:
    return bool(value) and bool(BARCODE_PATTERN.match(value))


def normalize_barcode(value: Optional[str]) -> str:
    return (value or "").strip().upper()


class BarcodeGenerator:
    """Candidate factory bound to one batch's prefix and year."""

    def __init__(self, prefix: str, year: int, entropy: Optional[EntropySource] = None) -> None:
        self.prefix = normalize_prefix(prefix)
        self.year = year
        self.entropy = entropy or SecureEntropy()

    def candidate(self, slot: int, attempt: int) -> str:
        counter = (slot << 8) | (attempt & 0xFF)
        return generate_barcode(self.prefix, self.year, self.entropy.draw(slot, attempt), counter)


def generator_configuration() -> Dict[str, Any]:
    return {
        "format": "<PREFIX>-<YYYY>-<BASE36>",
        "character_set": BASE36_ALPHABET,
        "payload_bits": PAYLOAD_BITS,
        "payload_length": PAYLOAD_WIDTH,
        "total_combinations": 2 ** PAYLOAD_BITS,
        "pattern": BARCODE_PATTERN.pattern,
    }
