"""
QRS Transport — integrity trailer and text-safe encoding
=========================================================

CRC16
    CRC-16/CCITT-FALSE: polynomial 0x1021, register preset 0xFFFF,
    MSB-first, no final XOR. Appended as a big-endian 2-byte trailer.
    Detects scan corruption; it is not a security measure.

Base45
    2 bytes → 3 characters, trailing byte → 2 characters, over the
    RFC 9285 alphabet, which QR alphanumeric mode stores in 5.5 bits
    per character. Digits are written most significant first
    (value = c*2025 + d*45 + e is emitted as c, d, e), the reverse of
    the RFC 9285 digit order, so RFC test vectors do not apply.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from qrs_types import (
    QRSFormatError, InvalidCharacterError, ByteUnderflowError,
)

logger = logging.getLogger(__name__)

CRC16_POLY = 0x1021
CRC16_INIT = 0xFFFF
CRC_SIZE = 2

BASE45_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ $%*+-./:"
_BASE45_INDEX = {c: i for i, c in enumerate(BASE45_ALPHABET)}


# ═══════════════════════════════════════════════════════════════
# CRC16
# ═══════════════════════════════════════════════════════════════

def crc16_ccitt(data: bytes) -> int:
    crc = CRC16_INIT
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ CRC16_POLY) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


def add_crc(data: bytes) -> bytes:
    """data ‖ crcHigh ‖ crcLow"""
    return bytes(data) + crc16_ccitt(data).to_bytes(CRC_SIZE, "big")


@dataclass
class CRCResult:
    valid: bool
    payload: Optional[bytes]
    received: int
    computed: int


def verify_crc(framed: bytes) -> CRCResult:
    """
    Check and strip the trailer.

    A mismatch is reported, not raised: payload is None and the caller
    decides whether to try decoding framed[:-2] anyway.

    Raises:
        ByteUnderflowError if the input cannot hold a trailer.
    """
    if len(framed) < CRC_SIZE:
        raise ByteUnderflowError(f"Need at least {CRC_SIZE} bytes for a CRC trailer, got {len(framed)}")
    payload = bytes(framed[:-CRC_SIZE])
    received = int.from_bytes(framed[-CRC_SIZE:], "big")
    computed = crc16_ccitt(payload)
    if received != computed:
        logger.warning("CRC mismatch: received 0x%04x, computed 0x%04x", received, computed)
        return CRCResult(valid=False, payload=None, received=received, computed=computed)
    return CRCResult(valid=True, payload=payload, received=received, computed=computed)


# ═══════════════════════════════════════════════════════════════
# BASE45
# ═══════════════════════════════════════════════════════════════

def b45encode(data: bytes) -> str:
    out = []
    for i in range(0, len(data) - 1, 2):
        value = (data[i] << 8) | data[i + 1]
        c, rest = divmod(value, 45 * 45)
        d, e = divmod(rest, 45)
        out.append(BASE45_ALPHABET[c] + BASE45_ALPHABET[d] + BASE45_ALPHABET[e])
    if len(data) % 2:
        a, b = divmod(data[-1], 45)
        out.append(BASE45_ALPHABET[a] + BASE45_ALPHABET[b])
    return "".join(out)


def _digits(text: str) -> list:
    values = []
    for j, ch in enumerate(text):
        v = _BASE45_INDEX.get(ch)
        if v is None:
            raise InvalidCharacterError(
                f"Invalid Base45 character {ch!r} at position {j}")
        values.append(v)
    return values


def b45decode(text: str) -> bytes:
    """
    Raises:
        InvalidCharacterError for characters outside the alphabet.
        QRSFormatError for a dangling single character or a group whose
        value does not fit its byte width.
    """
    all_digits = _digits(text)
    if len(text) % 3 == 1:
        raise QRSFormatError(f"Base45 text of length {len(text)} has a dangling character")
    out = bytearray()
    for i in range(0, len(text), 3):
        chunk = text[i:i + 3]
        digits = all_digits[i:i + 3]
        if len(digits) == 3:
            c, d, e = digits
            value = c * 45 * 45 + d * 45 + e
            if value > 0xFFFF:
                raise QRSFormatError(f"Base45 group {chunk!r} exceeds two bytes")
            out.extend(value.to_bytes(2, "big"))
        else:
            a, b = digits
            value = a * 45 + b
            if value > 0xFF:
                raise QRSFormatError(f"Base45 group {chunk!r} exceeds one byte")
            out.append(value)
    return bytes(out)
