"""
QRS Codec — end-to-end signaling compaction
============================================

Send:    SDP text → CompactRecord → payload bytes → + CRC16 → Base45 text
Receive: Base45 text → bytes → CRC16 check → payload → CompactRecord → SDP text

The scheme (bit-packed, fixed-width, or dictionary) is not carried in the
payload: both peers must be configured with the same one.
"""

import logging
from enum import IntEnum
from typing import Iterable, Optional

from qrs_types import (
    CompactRecord, DecodeResult, Role,
    DEFAULT_MAX_UFRAG, DEFAULT_MAX_PWD, UPER_CHAR_BITS,
    FIXED_UFRAG_BYTES, FIXED_PWD_BYTES,
    QRSFormatError, CRCMismatchError,
)
from qrs_sdp import compact_report, expand
from qrs_uper import UperCodec
from qrs_binary import FixedCodec, DictionaryCodec, AddressDictionary, DEFAULT_DICTIONARY
from qrs_transport import add_crc, verify_crc, b45encode, b45decode, CRC_SIZE

logger = logging.getLogger(__name__)


class CodecScheme(IntEnum):
    """Payload layouts. Both peers must agree out of band."""
    UPER       = 0x01  # bit-packed, constrained integers
    FIXED      = 0x02  # byte-aligned, fixed credential fields
    DICTIONARY = 0x03  # FIXED + shared address tables

    @classmethod
    def parse(cls, value) -> "CodecScheme":
        if isinstance(value, CodecScheme):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise QRSFormatError(f"Unknown codec scheme: {value!r}") from None


def build_codec(scheme: CodecScheme, max_ufrag: int, max_pwd: int,
                char_bits: int, dictionary: AddressDictionary):
    if scheme == CodecScheme.UPER:
        return UperCodec(max_ufrag=max_ufrag, max_pwd=max_pwd, char_bits=char_bits)
    if scheme == CodecScheme.FIXED:
        return FixedCodec()
    return DictionaryCodec(dictionary)


def _credential_limits(scheme: CodecScheme, max_ufrag: int, max_pwd: int):
    if scheme == CodecScheme.UPER:
        return max_ufrag, max_pwd
    return FIXED_UFRAG_BYTES, FIXED_PWD_BYTES


# ═══════════════════════════════════════════════════════════════
# ENCODER
# ═══════════════════════════════════════════════════════════════

class SignalEncoder:
    """
    Compacts an offer/answer into a Base45 string for a QR code.

    Usage:
        encoder = SignalEncoder(scheme=CodecScheme.UPER)
        result = encoder.encode(sdp_text, role=Role.OFFER)
        result['text']      # hand this to the QR renderer
    """

    def __init__(self,
                 scheme: CodecScheme = CodecScheme.UPER,
                 max_ufrag: int = DEFAULT_MAX_UFRAG,
                 max_pwd: int = DEFAULT_MAX_PWD,
                 char_bits: int = UPER_CHAR_BITS,
                 dictionary: AddressDictionary = DEFAULT_DICTIONARY,
                 truncate_credentials: bool = False):
        self.scheme = CodecScheme.parse(scheme)
        self.max_ufrag = max_ufrag
        self.max_pwd = max_pwd
        self.codec = build_codec(self.scheme, max_ufrag, max_pwd, char_bits, dictionary)
        self.truncate_credentials = truncate_credentials

    def encode_record(self, record: CompactRecord) -> str:
        """CompactRecord → Base45 text (payload + CRC trailer)."""
        return b45encode(add_crc(self.codec.encode(record)))

    def encode(self,
               sdp_text: str,
               role: Role = Role.OFFER,
               extra_candidates: Iterable[str] = ()) -> dict:
        """
        Compact and encode one session description.

        Args:
            sdp_text: Offer or answer SDP.
            role: Side that produced it.
            extra_candidates: Trickled candidate strings to fold in.

        Returns:
            dict with text, payload, record, sizes and warnings.

        Raises:
            MissingFieldError, LengthOverflowError and the other QRSError
            subclasses; nothing is retried here.
        """
        # ── 1. Text → record ──
        limits = (None, None)
        if self.truncate_credentials:
            limits = _credential_limits(self.scheme, self.max_ufrag, self.max_pwd)
        record, warnings = compact_report(sdp_text, role, extra_candidates, *limits)

        # ── 2. Record → payload ──
        payload = self.codec.encode(record)

        # ── 3. Frame and make text-safe ──
        framed = add_crc(payload)
        text = b45encode(framed)

        logger.info("Encoded %s (%s): %d SDP chars → %d bytes → %d Base45 chars",
                    record.role.sdp_type, self.scheme.name, len(sdp_text), len(payload), len(text))

        return {
            'scheme': self.scheme.name,
            'role': record.role.sdp_type,
            'record': record,
            'payload': payload,
            'text': text,
            'candidate_count': len(record.candidates),
            'size_sdp': len(sdp_text),
            'size_payload': len(payload),
            'size_framed': len(framed),
            'size_text': len(text),
            'compression_ratio': round(len(sdp_text) / max(len(text), 1), 2),
            'warnings': warnings,
        }


# ═══════════════════════════════════════════════════════════════
# DECODER
# ═══════════════════════════════════════════════════════════════

class SignalDecoder:
    """
    Turns a scanned Base45 string back into SDP text.

    With verify_integrity=True a CRC mismatch raises CRCMismatchError.
    With verify_integrity=False the payload is decoded anyway and the
    result is marked invalid.

    Usage:
        decoder = SignalDecoder(scheme=CodecScheme.UPER)
        result = decoder.decode(scanned_text, expected_role=Role.OFFER)
        result['sdp']
    """

    def __init__(self,
                 scheme: CodecScheme = CodecScheme.UPER,
                 verify_integrity: bool = True,
                 max_ufrag: int = DEFAULT_MAX_UFRAG,
                 max_pwd: int = DEFAULT_MAX_PWD,
                 char_bits: int = UPER_CHAR_BITS,
                 dictionary: AddressDictionary = DEFAULT_DICTIONARY,
                 fingerprint_length: Optional[int] = None):
        self.scheme = CodecScheme.parse(scheme)
        self.verify_integrity = verify_integrity
        self.fingerprint_length = fingerprint_length
        self.codec = build_codec(self.scheme, max_ufrag, max_pwd, char_bits, dictionary)

    def decode_payload(self, payload: bytes) -> DecodeResult:
        if self.scheme == CodecScheme.FIXED:
            return self.codec.decode(payload, fingerprint_length=self.fingerprint_length)
        return self.codec.decode(payload)

    def decode(self,
               text: str,
               expected_role: Optional[Role] = None,
               session_id: Optional[int] = None) -> dict:
        """
        Decode a Base45 string to SDP.

        Returns:
            dict with sdp, record, valid, crc_valid, complete,
            validation_errors.
        """
        validation_errors = []

        # ── 1. Text → bytes ──
        # space is a Base45 digit; only line endings are stripped
        framed = b45decode(text.strip("\r\n"))

        # ── 2. Integrity ──
        check = verify_crc(framed)
        if not check.valid:
            msg = f"CRC mismatch: received 0x{check.received:04x}, computed 0x{check.computed:04x}"
            if self.verify_integrity:
                raise CRCMismatchError(msg)
            validation_errors.append(msg)
            payload = framed[:-CRC_SIZE]
        else:
            payload = check.payload

        # ── 3. Payload → record ──
        result = self.decode_payload(payload)
        validation_errors.extend(result.warnings)

        # ── 4. Record → SDP ──
        sdp = expand(result.record, expected_role, session_id=session_id)

        return {
            'scheme': self.scheme.name,
            'role': result.record.role.sdp_type,
            'record': result.record,
            'sdp': sdp,
            'crc_valid': check.valid,
            'complete': result.complete,
            'valid': check.valid and result.complete,
            'validation_errors': validation_errors,
            'size_text': len(text),
            'size_payload': len(payload),
        }
