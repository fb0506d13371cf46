"""
QRS Binary — byte-aligned CompactRecord codecs
===============================================

Two schemes with no bit packing:

FixedCodec
    byte 0        : 0x80 if offer, low 2 bits setup (1=actpass 2=passive 3=active)
    bytes 1-4     : ice-ufrag, zero padded
    bytes 5-28    : ice-pwd, zero padded
    N bytes       : fingerprint digest (N not stored, see below)
    1 byte        : candidate count
    per candidate : type byte (1=host 2=srflx 3=relay)
                    ip(4) + port(2)                 host / relay
                    ip(4) + port(2) + rip(4) + rport(2)  srflx

    N is recovered by trying every supported digest length and keeping
    the ones for which the rest of the buffer parses exactly. More than
    one survivor raises AmbiguousFingerprintError; callers that know N
    pass fingerprint_length instead.

DictionaryCodec
    Same layout, but byte 0 also carries the dictionary version
    (bits 4-6) and a digest-length code (bits 2-3), and every address
    is written as:
        ip   : 0x00 + 4 octets | prefix code + last octet
        port : 0x00 + 2 bytes  | port code
    Both peers must embed byte-identical tables; a version mismatch or
    an unknown code is fatal.
"""

import struct
import logging
from types import MappingProxyType
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from qrs_types import (
    CompactRecord, CandidateType, CandidateRecord,
    HostCandidate, ServerReflexiveCandidate, RelayCandidate,
    Role, SetupRole, DecodeResult,
    FIXED_UFRAG_BYTES, FIXED_PWD_BYTES, FIXED_HEADER_SIZE, BYTE_MAX_CANDIDATES,
    FINGERPRINT_ALGORITHMS,
    QRSError, QRSFormatError, MissingFieldError, LengthOverflowError,
    ByteUnderflowError, UnknownDictionaryCodeError, DictionaryVersionError,
    AmbiguousFingerprintError, ip_to_bytes, ip_from_bytes, encode_ascii,
)

logger = logging.getLogger(__name__)

ROLE_OFFER_BIT = 0x80
SETUP_MASK = 0x03

# Byte-scheme codes are the bit-scheme codes + 1 (zero is never valid)
_SETUP_TO_BYTE = {s: int(s) + 1 for s in SetupRole}
_BYTE_TO_SETUP = {v: k for k, v in _SETUP_TO_BYTE.items()}
_TYPE_TO_BYTE = {t: int(t) + 1 for t in CandidateType}
_BYTE_TO_TYPE = {v: k for k, v in _TYPE_TO_BYTE.items()}

_SIZE_BY_TYPE = {CandidateType.HOST: 6, CandidateType.SRFLX: 12, CandidateType.RELAY: 6}

# Dictionary header: digest length code in bits 2-3, version in bits 4-6
_FP_LENGTH_CODES = {20: 0, 32: 1, 48: 2, 64: 3}
_FP_CODE_LENGTHS = {v: k for k, v in _FP_LENGTH_CODES.items()}
DICT_VERSION_MAX = 0x07

RAW_MARKER = 0x00


# ═══════════════════════════════════════════════════════════════
# SHARED HEADER
# ═══════════════════════════════════════════════════════════════

def _pack_text(value: str, size: int, name: str) -> bytes:
    raw = encode_ascii(value, name)
    if len(raw) > size:
        raise LengthOverflowError(f"{name} of {len(raw)} bytes exceeds fixed field of {size}")
    if b"\x00" in raw:
        raise QRSFormatError(f"{name} contains NUL")
    return raw.ljust(size, b"\x00")


def _unpack_text(data: bytes) -> str:
    return data.rstrip(b"\x00").decode("ascii", errors="replace")


def _pack_header(record: CompactRecord, extra_bits: int = 0) -> bytearray:
    if not record.fingerprint:
        raise MissingFieldError("fingerprint", "record")
    if len(record.candidates) > BYTE_MAX_CANDIDATES:
        raise LengthOverflowError(
            f"{len(record.candidates)} candidates exceed maximum {BYTE_MAX_CANDIDATES}")
    buf = bytearray()
    first = _SETUP_TO_BYTE[record.setup] | extra_bits
    if record.role == Role.OFFER:
        first |= ROLE_OFFER_BIT
    buf.append(first)
    buf.extend(_pack_text(record.ice_ufrag, FIXED_UFRAG_BYTES, "ice-ufrag"))
    buf.extend(_pack_text(record.ice_pwd, FIXED_PWD_BYTES, "ice-pwd"))
    return buf


def _unpack_header(data: bytes) -> Tuple[Role, SetupRole, str, str]:
    if len(data) < FIXED_HEADER_SIZE:
        raise ByteUnderflowError(
            f"Header needs {FIXED_HEADER_SIZE} bytes, got {len(data)}")
    first = data[0]
    role = Role.OFFER if first & ROLE_OFFER_BIT else Role.ANSWER
    setup = _BYTE_TO_SETUP.get(first & SETUP_MASK)
    if setup is None:
        raise QRSFormatError(f"Invalid setup code {first & SETUP_MASK}")
    ufrag = _unpack_text(data[1:1 + FIXED_UFRAG_BYTES])
    pwd = _unpack_text(data[1 + FIXED_UFRAG_BYTES:FIXED_HEADER_SIZE])
    return role, setup, ufrag, pwd


# ═══════════════════════════════════════════════════════════════
# FIXED-WIDTH CODEC
# ═══════════════════════════════════════════════════════════════

class FixedCodec:
    """
    Byte-aligned codec with fixed-size credential fields.

    Network-ids are not carried; decoded host/srflx candidates get 1.
    """

    def encode(self, record: CompactRecord) -> bytes:
        buf = _pack_header(record)
        buf.extend(record.fingerprint)
        buf.append(len(record.candidates))
        for cand in record.candidates:
            buf.append(_TYPE_TO_BYTE[cand.type])
            buf.extend(ip_to_bytes(cand.ip))
            buf.extend(struct.pack(">H", cand.port))
            if isinstance(cand, ServerReflexiveCandidate):
                buf.extend(ip_to_bytes(cand.related_ip))
                buf.extend(struct.pack(">H", cand.related_port))
        logger.debug("Fixed codec encoded %d candidates into %d bytes",
                     len(record.candidates), len(buf))
        return bytes(buf)

    @staticmethod
    def _read_candidate(data: bytes, pos: int) -> Tuple[CandidateRecord, int]:
        """One entry at pos → (candidate, new pos). Raises on any defect."""
        if pos >= len(data):
            raise ByteUnderflowError(f"No type byte at offset {pos}")
        cand_type = _BYTE_TO_TYPE.get(data[pos])
        if cand_type is None:
            raise QRSFormatError(f"Unknown candidate type byte 0x{data[pos]:02x} at offset {pos}")
        pos += 1
        size = _SIZE_BY_TYPE[cand_type]
        if pos + size > len(data):
            raise ByteUnderflowError(
                f"{cand_type.sdp_name} candidate needs {size} bytes at offset {pos}, "
                f"{len(data) - pos} remain")
        ip = ip_from_bytes(data[pos:pos + 4])
        port = struct.unpack(">H", data[pos + 4:pos + 6])[0]
        if cand_type == CandidateType.HOST:
            cand = HostCandidate(ip=ip, port=port)
        elif cand_type == CandidateType.RELAY:
            cand = RelayCandidate(ip=ip, port=port)
        else:
            rip = ip_from_bytes(data[pos + 6:pos + 10])
            rport = struct.unpack(">H", data[pos + 10:pos + 12])[0]
            cand = ServerReflexiveCandidate(ip=ip, port=port, related_ip=rip, related_port=rport)
        return cand, pos + size

    def _parses_exactly(self, data: bytes, fp_len: int) -> bool:
        pos = FIXED_HEADER_SIZE + fp_len
        if pos >= len(data):
            return False
        count = data[pos]
        pos += 1
        try:
            for _ in range(count):
                _, pos = self._read_candidate(data, pos)
        except QRSError:
            return False
        return pos == len(data)

    def infer_fingerprint_length(self, data: bytes) -> int:
        """
        Digest length consistent with the whole buffer.

        Raises:
            AmbiguousFingerprintError if several lengths fit.
            QRSFormatError if none does (truncated or corrupt payload).
        """
        fits = [n for n in sorted(FINGERPRINT_ALGORITHMS) if self._parses_exactly(data, n)]
        if len(fits) > 1:
            raise AmbiguousFingerprintError(fits)
        if not fits:
            raise QRSFormatError(
                f"No fingerprint length is consistent with a {len(data)}-byte payload; "
                f"pass fingerprint_length to decode a truncated buffer")
        logger.debug("Inferred fingerprint length %d", fits[0])
        return fits[0]

    def decode(self, data: bytes, fingerprint_length: Optional[int] = None) -> DecodeResult:
        """
        Decode a fixed-width payload.

        Args:
            data: Payload without CRC trailer.
            fingerprint_length: Known digest length. When omitted it is
                inferred, which requires an intact buffer.
        """
        data = bytes(data)
        role, setup, ufrag, pwd = _unpack_header(data)

        if fingerprint_length is None:
            fingerprint_length = self.infer_fingerprint_length(data)
        elif fingerprint_length not in FINGERPRINT_ALGORITHMS:
            raise QRSFormatError(f"Unsupported fingerprint length {fingerprint_length}")

        pos = FIXED_HEADER_SIZE
        if pos + fingerprint_length + 1 > len(data):
            raise ByteUnderflowError(
                f"Fingerprint and count need {fingerprint_length + 1} bytes at offset {pos}, "
                f"{len(data) - pos} remain")
        fingerprint = data[pos:pos + fingerprint_length]
        pos += fingerprint_length
        count = data[pos]
        pos += 1

        warnings: List[str] = []
        candidates: List[CandidateRecord] = []
        for i in range(count):
            try:
                cand, pos = self._read_candidate(data, pos)
            except ByteUnderflowError as e:
                warnings.append(f"Candidate list truncated at {i} of {count}: {e}")
                break
            except QRSError as e:
                warnings.append(f"Candidate {i + 1} of {count} unreadable: {e}")
                break
            candidates.append(cand)
        else:
            if pos != len(data):
                warnings.append(f"{len(data) - pos} trailing bytes ignored")

        for msg in warnings:
            logger.warning(msg)

        record = CompactRecord(role=role, setup=setup, ice_ufrag=ufrag, ice_pwd=pwd,
                               fingerprint=fingerprint, candidates=tuple(candidates))
        return DecodeResult(record=record, warnings=warnings,
                            complete=len(candidates) == count, bits_consumed=pos * 8)


# ═══════════════════════════════════════════════════════════════
# DICTIONARY CODEC
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AddressDictionary:
    """
    Shared substitution tables. Immutable; identify revisions by version.

    ip_prefixes maps a code to the first three octets of an IPv4 /24,
    ports maps a code to a port number. Codes must be non-zero.
    """
    version: int
    ip_prefixes: Mapping[int, Tuple[int, int, int]] = field(default_factory=dict)
    ports: Mapping[int, int] = field(default_factory=dict)

    def __post_init__(self):
        # private read-only copies; the caller's dicts stay theirs
        object.__setattr__(self, "ip_prefixes", MappingProxyType(
            {code: tuple(prefix) for code, prefix in self.ip_prefixes.items()}))
        object.__setattr__(self, "ports", MappingProxyType(dict(self.ports)))
        if not 0 <= self.version <= DICT_VERSION_MAX:
            raise QRSFormatError(f"Dictionary version must fit in 3 bits, got {self.version}")
        for code in list(self.ip_prefixes) + list(self.ports):
            if not 0 < code <= 0xFF:
                raise QRSFormatError(f"Dictionary code 0x{code:x} outside 0x01..0xff")
        if len(set(self.ip_prefixes.values())) != len(self.ip_prefixes):
            raise QRSFormatError("Duplicate IP prefix in dictionary")
        if len(set(self.ports.values())) != len(self.ports):
            raise QRSFormatError("Duplicate port in dictionary")

    def ip_code(self, octets: bytes) -> Optional[int]:
        prefix = tuple(octets[:3])
        for code, entry in self.ip_prefixes.items():
            if tuple(entry) == prefix:
                return code
        return None

    def port_code(self, port: int) -> Optional[int]:
        for code, entry in self.ports.items():
            if entry == port:
                return code
        return None


DEFAULT_DICTIONARY = AddressDictionary(
    version=1,
    ip_prefixes={
        0xF0: (192, 168, 1),
        0xF1: (192, 168, 0),
        0xF2: (10, 0, 0),
        0xF3: (172, 16, 0),
        0xF4: (172, 31, 0),   # AWS default VPC
        0xF5: (10, 0, 1),
    },
    ports={
        0xE0: 443,
        0xE1: 3478,           # STUN/TURN
        0xE2: 5349,           # STUN/TURN over TLS
        0xE3: 19302,          # Google STUN
        0xE4: 8080,
        0xE5: 1080,
    },
)


class DictionaryCodec:
    """Fixed-width layout with table-compressed addresses."""

    def __init__(self, dictionary: AddressDictionary = DEFAULT_DICTIONARY):
        self.dictionary = dictionary

    # ─── Encoding ─────────────────────────────────────────────

    def _write_address(self, buf: bytearray, ip: str, port: int) -> None:
        octets = ip_to_bytes(ip)
        code = self.dictionary.ip_code(octets)
        if code is None:
            buf.append(RAW_MARKER)
            buf.extend(octets)
        else:
            buf.append(code)
            buf.append(octets[3])

        code = self.dictionary.port_code(port)
        if code is None:
            buf.append(RAW_MARKER)
            buf.extend(struct.pack(">H", port))
        else:
            buf.append(code)

    def encode(self, record: CompactRecord) -> bytes:
        if not record.fingerprint:
            raise MissingFieldError("fingerprint", "record")
        extra = (self.dictionary.version << 4) | (_FP_LENGTH_CODES[len(record.fingerprint)] << 2)
        buf = _pack_header(record, extra)
        buf.extend(record.fingerprint)
        buf.append(len(record.candidates))
        for cand in record.candidates:
            buf.append(_TYPE_TO_BYTE[cand.type])
            self._write_address(buf, cand.ip, cand.port)
            if isinstance(cand, ServerReflexiveCandidate):
                self._write_address(buf, cand.related_ip, cand.related_port)
        logger.debug("Dictionary codec v%d encoded %d candidates into %d bytes",
                     self.dictionary.version, len(record.candidates), len(buf))
        return bytes(buf)

    # ─── Decoding ─────────────────────────────────────────────

    def _take(self, data: bytes, pos: int, n: int) -> bytes:
        if pos + n > len(data):
            raise ByteUnderflowError(
                f"Need {n} bytes at offset {pos}, {len(data) - pos} remain")
        return data[pos:pos + n]

    def _read_address(self, data: bytes, pos: int) -> Tuple[str, int, int]:
        code = self._take(data, pos, 1)[0]
        pos += 1
        if code == RAW_MARKER:
            octets = self._take(data, pos, 4)
            pos += 4
        else:
            prefix = self.dictionary.ip_prefixes.get(code)
            if prefix is None:
                raise UnknownDictionaryCodeError(f"Unknown IP dictionary code 0x{code:02x}")
            octets = bytes(prefix) + self._take(data, pos, 1)
            pos += 1

        code = self._take(data, pos, 1)[0]
        pos += 1
        if code == RAW_MARKER:
            port = struct.unpack(">H", self._take(data, pos, 2))[0]
            pos += 2
        else:
            port = self.dictionary.ports.get(code)
            if port is None:
                raise UnknownDictionaryCodeError(f"Unknown port dictionary code 0x{code:02x}")
        return ip_from_bytes(octets), port, pos

    def decode(self, data: bytes) -> DecodeResult:
        data = bytes(data)
        role, setup, ufrag, pwd = _unpack_header(data)

        first = data[0]
        version = (first >> 4) & DICT_VERSION_MAX
        if version != self.dictionary.version:
            raise DictionaryVersionError(
                f"Payload uses dictionary v{version}, decoder has v{self.dictionary.version}")
        fp_len = _FP_CODE_LENGTHS[(first >> 2) & 0x03]

        pos = FIXED_HEADER_SIZE
        fingerprint = self._take(data, pos, fp_len)
        pos += fp_len
        count = self._take(data, pos, 1)[0]
        pos += 1

        warnings: List[str] = []
        candidates: List[CandidateRecord] = []
        for i in range(count):
            try:
                type_byte = self._take(data, pos, 1)[0]
                cand_type = _BYTE_TO_TYPE.get(type_byte)
                if cand_type is None:
                    warnings.append(
                        f"Candidate {i + 1} of {count} has unknown type byte 0x{type_byte:02x}")
                    break
                ip, port, next_pos = self._read_address(data, pos + 1)
                if cand_type == CandidateType.SRFLX:
                    rip, rport, next_pos = self._read_address(data, next_pos)
                    cand = ServerReflexiveCandidate(ip=ip, port=port,
                                                    related_ip=rip, related_port=rport)
                elif cand_type == CandidateType.HOST:
                    cand = HostCandidate(ip=ip, port=port)
                else:
                    cand = RelayCandidate(ip=ip, port=port)
            except ByteUnderflowError as e:
                warnings.append(f"Candidate list truncated at {i} of {count}: {e}")
                break
            except UnknownDictionaryCodeError:
                raise
            except QRSError as e:
                warnings.append(f"Candidate {i + 1} of {count} unreadable: {e}")
                break
            candidates.append(cand)
            pos = next_pos
        else:
            if pos != len(data):
                warnings.append(f"{len(data) - pos} trailing bytes ignored")

        for msg in warnings:
            logger.warning(msg)

        record = CompactRecord(role=role, setup=setup, ice_ufrag=ufrag, ice_pwd=pwd,
                               fingerprint=fingerprint, candidates=tuple(candidates))
        return DecodeResult(record=record, warnings=warnings,
                            complete=len(candidates) == count, bits_consumed=pos * 8)
