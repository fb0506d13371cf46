"""
QRS UPER — bit-packed CompactRecord codec
==========================================

Unaligned packed encoding in the style of ASN.1 PER: fields are written
back to back into one bit stream, MSB first, and only the final byte is
zero-padded.

Record layout (variant "uper-2"):
    role            1 bit        0=offer 1=answer
    setup           2 bits       0=actpass 1=passive 2=active
    ufrag length    constrained  0..max_ufrag
    ufrag chars     8 bits each  (7 with char_bits=7)
    pwd length      constrained  0..max_pwd
    pwd chars       8 bits each
    fingerprint     length determinant + 8 bits per byte
    candidate count constrained  0..20
    per candidate:
        type        2 bits       0=host 1=srflx 2=relay
        ip, port    32 + 16 bits
        [srflx]     related ip, port  32 + 16 bits
        network-id  constrained  1..20 (relay always writes 1)

Encoder and decoder must be built with the same max_ufrag / max_pwd /
char_bits: there is no resynchronization marker.
"""

import logging
from typing import List, Optional

from qrs_types import (
    CompactRecord, CandidateType, CandidateRecord,
    HostCandidate, ServerReflexiveCandidate, RelayCandidate,
    Role, SetupRole, DecodeResult,
    UPER_CHAR_BITS, UPER_MAX_CANDIDATES, DEFAULT_MAX_UFRAG, DEFAULT_MAX_PWD,
    NETWORK_ID_MIN, NETWORK_ID_MAX, DEFAULT_NETWORK_ID,
    FINGERPRINT_ALGORITHMS,
    QRSError, QRSFormatError, MissingFieldError, RangeError, LengthOverflowError,
    BitUnderflowError, ip_to_bytes, ip_from_bytes, encode_ascii,
)

logger = logging.getLogger(__name__)

# Length determinant forms
LD_SHORT_MAX = 127
LD_LONG_MAX = 16383


def constrained_width(lo: int, hi: int) -> int:
    """Bits needed for an integer in [lo, hi]: ceil(log2(hi - lo + 1))."""
    if hi < lo:
        raise RangeError(f"Empty range {lo}..{hi}")
    return (hi - lo).bit_length()


# ═══════════════════════════════════════════════════════════════
# BIT STREAM
# ═══════════════════════════════════════════════════════════════

class BitWriter:
    """
    Append-only bit stream. One instance per message.

    Bits accumulate in a Python int, so writes are O(1) amortized and
    the stream has no fixed capacity.
    """

    def __init__(self):
        self._acc = 0
        self.bit_length = 0

    def write_bits(self, value: int, n: int) -> None:
        if n < 0:
            raise RangeError(f"Negative bit count {n}")
        if value < 0 or value >> n:
            raise RangeError(f"Value {value} does not fit in {n} bits")
        self._acc = (self._acc << n) | value
        self.bit_length += n

    def write_constrained_int(self, value: int, lo: int, hi: int) -> None:
        if not lo <= value <= hi:
            raise RangeError(f"Value {value} outside constrained range {lo}..{hi}")
        self.write_bits(value - lo, constrained_width(lo, hi))

    def write_length_determinant(self, length: int, extended: bool = True) -> None:
        """
        Short form: 0 + 7 bits (0..127).
        Long form:  1 + 0 (not fragmented) + 14 bits (128..16383).
        """
        if length < 0:
            raise RangeError(f"Negative length {length}")
        if length <= LD_SHORT_MAX:
            self.write_bits(0, 1)
            self.write_bits(length, 7)
        elif extended and length <= LD_LONG_MAX:
            self.write_bits(1, 1)
            self.write_bits(0, 1)
            self.write_bits(length, 14)
        else:
            limit = LD_LONG_MAX if extended else LD_SHORT_MAX
            raise LengthOverflowError(f"Length {length} exceeds determinant maximum {limit}")

    def write_octet_string(self, data: bytes) -> None:
        self.write_length_determinant(len(data))
        for b in data:
            self.write_bits(b, 8)

    def write_visible_string(self, text: str, max_len: Optional[int] = None,
                             char_bits: int = UPER_CHAR_BITS) -> None:
        """
        Length (constrained 0..max_len, or a length determinant when no
        maximum is given) followed by char_bits per character.
        """
        raw = encode_ascii(text, "string")
        if max_len is not None:
            if len(raw) > max_len:
                raise LengthOverflowError(
                    f"String of {len(raw)} characters exceeds maximum {max_len}")
            self.write_constrained_int(len(raw), 0, max_len)
        else:
            self.write_length_determinant(len(raw))
        for b in raw:
            if b >> char_bits:
                raise RangeError(f"Character {chr(b)!r} does not fit in {char_bits} bits")
            self.write_bits(b, char_bits)

    def write_ip(self, ip: str) -> None:
        for octet in ip_to_bytes(ip):
            self.write_bits(octet, 8)

    def write_port(self, port: int) -> None:
        self.write_bits(port, 16)

    def getvalue(self) -> bytes:
        """Stream as bytes, last byte zero-padded on the right."""
        pad = (-self.bit_length) % 8
        total = self.bit_length + pad
        return (self._acc << pad).to_bytes(total // 8, "big")


class BitReader:
    """
    Single-cursor reader over a byte buffer. One instance per message.

    bit_length caps the readable bits below len(data) * 8 when the
    caller knows the exact stream length.
    """

    def __init__(self, data: bytes, bit_length: Optional[int] = None):
        self._data = bytes(data)
        total = len(self._data) * 8
        if bit_length is None:
            bit_length = total
        if not 0 <= bit_length <= total:
            raise RangeError(f"bit_length {bit_length} outside 0..{total}")
        self._value = int.from_bytes(self._data, "big") >> (total - bit_length)
        self.bit_length = bit_length
        self.pos = 0

    @property
    def remaining(self) -> int:
        return self.bit_length - self.pos

    def read_bits(self, n: int) -> int:
        if n > self.remaining:
            raise BitUnderflowError(
                f"Need {n} bits at bit {self.pos}, only {self.remaining} remain")
        shift = self.bit_length - self.pos - n
        self.pos += n
        return (self._value >> shift) & ((1 << n) - 1)

    def read_constrained_int(self, lo: int, hi: int) -> int:
        value = self.read_bits(constrained_width(lo, hi)) + lo
        if value > hi:
            raise QRSFormatError(f"Constrained value {value} above maximum {hi}")
        return value

    def read_length_determinant(self) -> int:
        if self.read_bits(1) == 0:
            return self.read_bits(7)
        if self.read_bits(1) == 1:
            raise QRSFormatError("Fragmented length determinant is not supported")
        return self.read_bits(14)

    def read_octet_string(self) -> bytes:
        length = self.read_length_determinant()
        return bytes(self.read_bits(8) for _ in range(length))

    def read_visible_string(self, max_len: Optional[int] = None,
                            char_bits: int = UPER_CHAR_BITS) -> str:
        if max_len is not None:
            length = self.read_constrained_int(0, max_len)
        else:
            length = self.read_length_determinant()
        return "".join(chr(self.read_bits(char_bits)) for _ in range(length))

    def read_ip(self) -> str:
        return ip_from_bytes(bytes(self.read_bits(8) for _ in range(4)))

    def read_port(self) -> int:
        return self.read_bits(16)


# ═══════════════════════════════════════════════════════════════
# RECORD CODEC
# ═══════════════════════════════════════════════════════════════

class UperCodec:
    """
    Bit-packed CompactRecord codec.

    The instance only holds configuration; every encode/decode call
    builds its own BitWriter/BitReader, so one codec may be shared.

    Usage:
        codec = UperCodec()
        payload = codec.encode(record)
        result = codec.decode(payload)
        result.record, result.warnings
    """

    def __init__(self,
                 max_ufrag: int = DEFAULT_MAX_UFRAG,
                 max_pwd: int = DEFAULT_MAX_PWD,
                 char_bits: int = UPER_CHAR_BITS,
                 max_candidates: int = UPER_MAX_CANDIDATES):
        if char_bits not in (7, 8):
            raise RangeError(f"char_bits must be 7 or 8, got {char_bits}")
        self.max_ufrag = max_ufrag
        self.max_pwd = max_pwd
        self.char_bits = char_bits
        self.max_candidates = max_candidates
        self._nid_bits = constrained_width(NETWORK_ID_MIN, NETWORK_ID_MAX)
        # type tag + ip + port + network-id: the smallest candidate entry
        self.min_candidate_bits = 2 + 32 + 16 + self._nid_bits

    # ─── Encoding ─────────────────────────────────────────────

    def _write(self, record: CompactRecord) -> BitWriter:
        if not record.fingerprint:
            raise MissingFieldError("fingerprint", "record")
        if len(record.candidates) > self.max_candidates:
            raise LengthOverflowError(
                f"{len(record.candidates)} candidates exceed maximum {self.max_candidates}")

        w = BitWriter()
        w.write_bits(int(record.role), 1)
        w.write_bits(int(record.setup), 2)
        w.write_visible_string(record.ice_ufrag, self.max_ufrag, self.char_bits)
        w.write_visible_string(record.ice_pwd, self.max_pwd, self.char_bits)
        w.write_octet_string(record.fingerprint)
        w.write_constrained_int(len(record.candidates), 0, self.max_candidates)
        logger.debug("UPER header %d bits: ufrag len %d, pwd len %d, fingerprint %d, count %d",
                     w.bit_length, constrained_width(0, self.max_ufrag),
                     constrained_width(0, self.max_pwd), 8 + 8 * len(record.fingerprint),
                     constrained_width(0, self.max_candidates))

        for cand in record.candidates:
            w.write_bits(int(cand.type), 2)
            w.write_ip(cand.ip)
            w.write_port(cand.port)
            if isinstance(cand, ServerReflexiveCandidate):
                w.write_ip(cand.related_ip)
                w.write_port(cand.related_port)
            network_id = DEFAULT_NETWORK_ID if isinstance(cand, RelayCandidate) else cand.network_id
            w.write_constrained_int(network_id, NETWORK_ID_MIN, NETWORK_ID_MAX)
        return w

    def encode(self, record: CompactRecord) -> bytes:
        w = self._write(record)
        logger.debug("UPER encoded %d candidates into %d bits (%d bytes)",
                     len(record.candidates), w.bit_length, (w.bit_length + 7) // 8)
        return w.getvalue()

    def measure(self, record: CompactRecord) -> int:
        """Exact packed size in bits, before byte padding."""
        return self._write(record).bit_length

    # ─── Decoding ─────────────────────────────────────────────

    def _read_candidate(self, r: BitReader) -> Optional[CandidateRecord]:
        tag = r.read_bits(2)
        if tag == CandidateType.HOST:
            ip, port = r.read_ip(), r.read_port()
            nid = r.read_constrained_int(NETWORK_ID_MIN, NETWORK_ID_MAX)
            return HostCandidate(ip=ip, port=port, network_id=nid)
        if tag == CandidateType.SRFLX:
            ip, port = r.read_ip(), r.read_port()
            rip, rport = r.read_ip(), r.read_port()
            nid = r.read_constrained_int(NETWORK_ID_MIN, NETWORK_ID_MAX)
            return ServerReflexiveCandidate(ip=ip, port=port, related_ip=rip,
                                            related_port=rport, network_id=nid)
        if tag == CandidateType.RELAY:
            ip, port = r.read_ip(), r.read_port()
            r.read_constrained_int(NETWORK_ID_MIN, NETWORK_ID_MAX)
            return RelayCandidate(ip=ip, port=port)
        return None

    def decode(self, data: bytes, bit_length: Optional[int] = None) -> DecodeResult:
        """
        Decode a packed record.

        Core fields must be complete (BitUnderflowError otherwise). The
        candidate list degrades instead: when the stream runs out, or an
        entry is unreadable, decoding stops and the candidates read so
        far are returned with complete=False and a warning.
        """
        r = BitReader(data, bit_length)

        role = Role(r.read_bits(1))
        setup_code = r.read_bits(2)
        try:
            setup = SetupRole(setup_code)
        except ValueError:
            raise QRSFormatError(f"Invalid setup code {setup_code}") from None
        ufrag = r.read_visible_string(self.max_ufrag, self.char_bits)
        pwd = r.read_visible_string(self.max_pwd, self.char_bits)
        fingerprint = r.read_octet_string()
        if len(fingerprint) not in FINGERPRINT_ALGORITHMS:
            raise QRSFormatError(f"Decoded fingerprint has invalid length {len(fingerprint)}")
        count = r.read_constrained_int(0, self.max_candidates)

        warnings: List[str] = []
        candidates: List[CandidateRecord] = []
        for i in range(count):
            if r.remaining < self.min_candidate_bits:
                warnings.append(
                    f"Candidate list truncated: {len(candidates)} of {count} decoded, "
                    f"{r.remaining} bits left")
                break
            start = r.pos
            try:
                cand = self._read_candidate(r)
            except BitUnderflowError:
                warnings.append(
                    f"Candidate {i + 1} of {count} cut off at bit {start}; "
                    f"{len(candidates)} decoded")
                break
            except QRSError as e:
                warnings.append(f"Candidate {i + 1} of {count} unreadable: {e}")
                break
            if cand is None:
                warnings.append(f"Candidate {i + 1} of {count} has invalid type tag")
                break
            candidates.append(cand)

        for msg in warnings:
            logger.warning(msg)

        record = CompactRecord(role=role, setup=setup, ice_ufrag=ufrag, ice_pwd=pwd,
                               fingerprint=fingerprint, candidates=tuple(candidates))
        return DecodeResult(record=record, warnings=warnings,
                            complete=len(candidates) == count, bits_consumed=r.pos)
