"""
QRS Types & Constants — QRSignal compact signaling records
===========================================================

Foundational type definitions, constants, enumerations, and error classes
for the QRSignal codec. Every other qrs_ module imports from here.

Contents:
  - Wire constants shared by the bit-packed and fixed-width schemes
  - Role / SetupRole / CandidateType enumerations (codes are wire values)
  - CandidateRecord variants: HostCandidate, ServerReflexiveCandidate,
    RelayCandidate
  - CompactRecord: the intermediate form every encoder consumes
  - Error hierarchy rooted at QRSError
"""

import ipaddress
from enum import IntEnum
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional, Tuple, Union

# ═══════════════════════════════════════════════════════════════
# LIMITS & DEFAULTS
# ═══════════════════════════════════════════════════════════════

# Bit-packed scheme
UPER_VARIANT = "uper-2"        # 8-bit chars, constrained lengths, long-form LD
UPER_CHAR_BITS = 8
UPER_MAX_CANDIDATES = 20
DEFAULT_MAX_UFRAG = 32
DEFAULT_MAX_PWD = 64

# Fixed-width scheme
FIXED_UFRAG_BYTES = 4
FIXED_PWD_BYTES = 24
FIXED_HEADER_SIZE = 1 + FIXED_UFRAG_BYTES + FIXED_PWD_BYTES  # 29 bytes
BYTE_MAX_CANDIDATES = 255

# network-id attribute range carried per candidate
NETWORK_ID_MIN = 1
NETWORK_ID_MAX = 20
DEFAULT_NETWORK_ID = 1

# Digest length → SDP algorithm token. The algorithm is never stored.
FINGERPRINT_ALGORITHMS = {
    20: "sha-1",
    32: "sha-256",
    48: "sha-384",
    64: "sha-512",
}

# Fixed per-type priorities used when rebuilding candidate lines
HOST_PRIORITY = 2122260223
SRFLX_PRIORITY = 1686052607
RELAY_PRIORITY = 41885439


# ═══════════════════════════════════════════════════════════════
# ENUMERATIONS (values are the bit-packed wire codes)
# ═══════════════════════════════════════════════════════════════

class Role(IntEnum):
    """Which side generated the session description."""
    OFFER  = 0
    ANSWER = 1

    @property
    def sdp_type(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union[str, "Role"]) -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise QRSFormatError(f"Unknown role: {value!r}") from None


class SetupRole(IntEnum):
    """DTLS a=setup role. Three values in a 2-bit field; code 3 unused."""
    ACTPASS = 0
    PASSIVE = 1
    ACTIVE  = 2

    @property
    def sdp_name(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: str) -> "SetupRole":
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise QRSFormatError(f"Unsupported a=setup value: {value!r}") from None


class CandidateType(IntEnum):
    """ICE candidate type. 2-bit tag in the bit-packed scheme."""
    HOST  = 0  # typ host
    SRFLX = 1  # typ srflx, carries the related (base) address
    RELAY = 2  # typ relay, related address not kept

    @property
    def sdp_name(self) -> str:
        return self.name.lower()


CANDIDATE_TYPE_BY_NAME = {t.sdp_name: t for t in CandidateType}


# ═══════════════════════════════════════════════════════════════
# ERROR CLASSES
# ═══════════════════════════════════════════════════════════════

class QRSError(Exception):
    """Base error for all QRSignal operations."""
    pass

class QRSFormatError(QRSError):
    """Structural or parsing error in text or binary input."""
    pass

class MissingFieldError(QRSFormatError):
    """A required attribute is absent from the input text or record."""

    def __init__(self, field_name: str, where: str = "input"):
        self.field = field_name
        super().__init__(f"Missing required field '{field_name}' in {where}")

class InvalidCandidateFormat(QRSFormatError):
    """Malformed candidate line. Recoverable: the line is dropped."""
    pass

class RangeError(QRSError):
    """Value outside a constrained integer range."""
    pass

class LengthOverflowError(RangeError):
    """String or array longer than the encoding's declared maximum."""
    pass

class UnderflowError(QRSFormatError):
    """Decoder ran out of input before a field was satisfied."""
    pass

class BitUnderflowError(UnderflowError):
    pass

class ByteUnderflowError(UnderflowError):
    pass

class QRSIntegrityError(QRSError):
    """Checksum verification failure."""
    pass

class CRCMismatchError(QRSIntegrityError):
    pass

class InvalidCharacterError(QRSFormatError):
    """Character outside the Base45 alphabet."""
    pass

class UnknownDictionaryCodeError(QRSFormatError):
    """Dictionary code with no table entry (mismatched shared tables)."""
    pass

class DictionaryVersionError(QRSFormatError):
    """Payload was built against a different dictionary version."""
    pass

class AmbiguousFingerprintError(QRSFormatError):
    """More than one fingerprint length is consistent with a fixed-width payload."""

    def __init__(self, lengths: Iterable[int]):
        self.lengths = tuple(lengths)
        super().__init__(
            f"Fingerprint length is ambiguous: payload parses with {list(self.lengths)} byte "
            f"digests; pass fingerprint_length explicitly"
        )


# ═══════════════════════════════════════════════════════════════
# ADDRESS HELPERS
# ═══════════════════════════════════════════════════════════════

def ip_to_bytes(ip: str) -> bytes:
    """Dotted-quad IPv4 → 4 octets."""
    try:
        return ipaddress.IPv4Address(ip).packed
    except (ipaddress.AddressValueError, ValueError):
        raise QRSFormatError(f"Not an IPv4 address: {ip!r}") from None

def ip_from_bytes(octets: bytes) -> str:
    return str(ipaddress.IPv4Address(bytes(octets)))

def _check_ip(ip: str, what: str) -> None:
    try:
        ipaddress.IPv4Address(ip)
    except (ipaddress.AddressValueError, ValueError):
        raise QRSFormatError(f"{what}: not an IPv4 address: {ip!r}") from None

def _check_port(port: int, what: str) -> None:
    if not isinstance(port, int) or not 1 <= port <= 65535:
        raise RangeError(f"{what}: port {port!r} outside 1..65535")

def _check_network_id(network_id: int) -> None:
    if not isinstance(network_id, int) or not NETWORK_ID_MIN <= network_id <= NETWORK_ID_MAX:
        raise RangeError(
            f"network-id {network_id!r} outside {NETWORK_ID_MIN}..{NETWORK_ID_MAX}")


# ═══════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class HostCandidate:
    """typ host: a local interface address."""
    ip: str
    port: int
    network_id: int = DEFAULT_NETWORK_ID

    type = CandidateType.HOST

    def __post_init__(self):
        _check_ip(self.ip, "host candidate")
        _check_port(self.port, "host candidate")
        _check_network_id(self.network_id)


@dataclass(frozen=True)
class ServerReflexiveCandidate:
    """
    typ srflx: public mapping discovered via STUN.

    related_ip / related_port are the raddr / rport of the candidate line
    (the host address the mapping was observed from).
    """
    ip: str
    port: int
    related_ip: str
    related_port: int
    network_id: int = DEFAULT_NETWORK_ID

    type = CandidateType.SRFLX

    def __post_init__(self):
        _check_ip(self.ip, "srflx candidate")
        _check_port(self.port, "srflx candidate")
        _check_ip(self.related_ip, "srflx related address")
        _check_port(self.related_port, "srflx related address")
        _check_network_id(self.network_id)


@dataclass(frozen=True)
class RelayCandidate:
    """typ relay: TURN allocation. raddr/rport are not preserved."""
    ip: str
    port: int

    type = CandidateType.RELAY

    def __post_init__(self):
        _check_ip(self.ip, "relay candidate")
        _check_port(self.port, "relay candidate")


CandidateRecord = Union[HostCandidate, ServerReflexiveCandidate, RelayCandidate]


@dataclass(frozen=True)
class CompactRecord:
    """
    Minimal structured form of one offer/answer plus its candidates.

    fingerprint holds the raw digest bytes; its length (20/32/48/64)
    selects the hash algorithm. An empty fingerprint is allowed here so
    that decoders and the reconstructor can report it as a missing field.

    Candidate order is preserved end-to-end; the reconstructor numbers
    foundations by position.
    """
    role: Role
    setup: SetupRole
    ice_ufrag: str
    ice_pwd: str
    fingerprint: bytes
    candidates: Tuple[CandidateRecord, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "role", Role(self.role))
        object.__setattr__(self, "setup", SetupRole(self.setup))
        object.__setattr__(self, "fingerprint", bytes(self.fingerprint))
        object.__setattr__(self, "candidates", tuple(self.candidates))
        if self.fingerprint and len(self.fingerprint) not in FINGERPRINT_ALGORITHMS:
            raise QRSFormatError(
                f"Fingerprint digest must be one of {sorted(FINGERPRINT_ALGORITHMS)} bytes, "
                f"got {len(self.fingerprint)}")

    @property
    def fingerprint_algorithm(self) -> Optional[str]:
        return FINGERPRINT_ALGORITHMS.get(len(self.fingerprint))

    @property
    def fingerprint_hex(self) -> str:
        """Upper-case colon-separated digest, as written in a=fingerprint."""
        return ":".join(f"{b:02X}" for b in self.fingerprint)

    def with_candidates(self, candidates: Iterable[CandidateRecord]) -> "CompactRecord":
        return replace(self, candidates=tuple(candidates))

    def to_dict(self) -> dict:
        """JSON-friendly view (used by the CLI inspect command)."""
        cands = []
        for c in self.candidates:
            entry = {"type": c.type.sdp_name, "ip": c.ip, "port": c.port}
            if isinstance(c, ServerReflexiveCandidate):
                entry["related_ip"] = c.related_ip
                entry["related_port"] = c.related_port
            if not isinstance(c, RelayCandidate):
                entry["network_id"] = c.network_id
            cands.append(entry)
        return {
            "role": self.role.sdp_type,
            "setup": self.setup.sdp_name,
            "ice_ufrag": self.ice_ufrag,
            "ice_pwd": self.ice_pwd,
            "fingerprint_algorithm": self.fingerprint_algorithm,
            "fingerprint": self.fingerprint_hex,
            "candidates": cands,
        }


@dataclass
class DecodeResult:
    """
    Output of a binary decoder.

    complete is False when the candidate list was cut short (truncated
    input or an unreadable candidate entry); warnings explains why.
    """
    record: CompactRecord
    warnings: list = field(default_factory=list)
    complete: bool = True
    bits_consumed: int = 0


# ═══════════════════════════════════════════════════════════════
# UTILITY FUNCTIONS
# ═══════════════════════════════════════════════════════════════

def parse_fingerprint(hex_digest: str) -> bytes:
    """
    Colon-separated (or bare) hex digest → raw bytes.
    The result length must name a supported algorithm.
    """
    cleaned = hex_digest.strip().replace(":", "")
    try:
        digest = bytes.fromhex(cleaned)
    except ValueError:
        raise QRSFormatError(f"Fingerprint is not hex: {hex_digest!r}") from None
    if len(digest) not in FINGERPRINT_ALGORITHMS:
        raise QRSFormatError(
            f"Fingerprint of {len(digest)} bytes matches no supported algorithm")
    return digest


def encode_ascii(value: str, what: str) -> bytes:
    try:
        return value.encode("ascii")
    except UnicodeEncodeError:
        raise QRSFormatError(f"{what} must be ASCII: {value!r}") from None
