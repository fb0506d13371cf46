"""
QRS SDP — Compactor and Reconstructor
======================================

compact(): full session-description text → CompactRecord
expand():  CompactRecord → minimal, standards-shaped SDP text

Only a fixed attribute subset is understood:
  a=ice-ufrag, a=ice-pwd, a=fingerprint, a=setup, a=candidate
Everything else in the input is ignored; everything else in the output
is fixed boilerplate for a single data-channel m-section.
"""

import re
import time
import logging
from typing import Iterable, List, Optional, Tuple

from qrs_types import (
    CANDIDATE_TYPE_BY_NAME, CandidateType, CandidateRecord,
    HostCandidate, ServerReflexiveCandidate, RelayCandidate,
    CompactRecord, Role, SetupRole,
    DEFAULT_NETWORK_ID, NETWORK_ID_MIN, NETWORK_ID_MAX,
    HOST_PRIORITY, SRFLX_PRIORITY, RELAY_PRIORITY,
    QRSError, QRSFormatError, MissingFieldError, InvalidCandidateFormat,
    parse_fingerprint,
)

logger = logging.getLogger(__name__)

NETWORK_ID_RE = re.compile(r"\bnetwork-id\s+(\d+)")

# TCP candidates on port 9 are "active" placeholders with no listening port
INACTIVE_TCP_PORT = 9

CANDIDATE_PRIORITY = {
    CandidateType.HOST:  HOST_PRIORITY,
    CandidateType.SRFLX: SRFLX_PRIORITY,
    CandidateType.RELAY: RELAY_PRIORITY,
}


# ═══════════════════════════════════════════════════════════════
# CANDIDATE CLASSIFIER
# ═══════════════════════════════════════════════════════════════

def _parse_port(token: str, what: str) -> int:
    try:
        port = int(token)
    except ValueError:
        raise InvalidCandidateFormat(f"{what} is not a number: {token!r}") from None
    if not 1 <= port <= 65535:
        raise InvalidCandidateFormat(f"{what} {port} outside 1..65535")
    return port


def _token_after(fields: List[str], key: str) -> Optional[str]:
    """Value following a key token (e.g. 'raddr' → '192.168.1.7')."""
    try:
        idx = fields.index(key, 8)
    except ValueError:
        return None
    return fields[idx + 1] if idx + 1 < len(fields) else None


def parse_candidate(line: str) -> Optional[CandidateRecord]:
    """
    Classify one candidate line.

    Accepts "a=candidate:..." or bare "candidate:..." (trickled form).

    Returns:
        A CandidateRecord, or None for placeholder candidates that are
        skipped on purpose (TCP on port 9).

    Raises:
        InvalidCandidateFormat for anything that cannot be represented.
    """
    text = line.strip()
    if text.startswith("a="):
        text = text[2:]
    if not text.startswith("candidate:"):
        raise InvalidCandidateFormat(f"Not a candidate line: {line!r}")

    fields = text.split()
    if len(fields) < 8:
        raise InvalidCandidateFormat(
            f"Candidate has {len(fields)} fields, need at least 8: {line!r}")

    proto = fields[2].lower()
    ip = fields[4]
    port_token = fields[5]

    if proto == "tcp" and port_token.isdigit() and int(port_token) == INACTIVE_TCP_PORT:
        return None
    if proto != "udp":
        raise InvalidCandidateFormat(f"Only UDP candidates are supported, got {proto!r}")
    if fields[6] != "typ":
        raise InvalidCandidateFormat(f"Expected 'typ' at field 7, got {fields[6]!r}")

    cand_type = CANDIDATE_TYPE_BY_NAME.get(fields[7])
    if cand_type is None:
        raise InvalidCandidateFormat(f"Unsupported candidate type {fields[7]!r}")

    port = _parse_port(port_token, "port")

    network_id = DEFAULT_NETWORK_ID
    m = NETWORK_ID_RE.search(text)
    if m:
        network_id = int(m.group(1))
        if not NETWORK_ID_MIN <= network_id <= NETWORK_ID_MAX:
            logger.warning("network-id %d outside %d..%d, using %d",
                           network_id, NETWORK_ID_MIN, NETWORK_ID_MAX, DEFAULT_NETWORK_ID)
            network_id = DEFAULT_NETWORK_ID

    try:
        if cand_type == CandidateType.HOST:
            return HostCandidate(ip=ip, port=port, network_id=network_id)

        if cand_type == CandidateType.SRFLX:
            raddr = _token_after(fields, "raddr")
            rport = _token_after(fields, "rport")
            if raddr is None or rport is None:
                raise InvalidCandidateFormat(f"srflx candidate without raddr/rport: {line!r}")
            return ServerReflexiveCandidate(
                ip=ip, port=port,
                related_ip=raddr, related_port=_parse_port(rport, "rport"),
                network_id=network_id)

        # relay: raddr/rport intentionally dropped
        return RelayCandidate(ip=ip, port=port)
    except InvalidCandidateFormat:
        raise
    except QRSError as e:
        # e.g. IPv6 or mDNS (.local) addresses
        raise InvalidCandidateFormat(str(e)) from None


# ═══════════════════════════════════════════════════════════════
# COMPACTOR
# ═══════════════════════════════════════════════════════════════

def _truncate(value: str, limit: Optional[int], name: str, warnings: List[str]) -> str:
    if limit is not None and len(value) > limit:
        msg = f"{name} truncated from {len(value)} to {limit} characters"
        logger.warning(msg)
        warnings.append(msg)
        return value[:limit]
    return value


def compact_report(sdp_text: str,
                   role: Role = Role.OFFER,
                   extra_candidates: Iterable[str] = (),
                   max_ufrag: Optional[int] = None,
                   max_pwd: Optional[int] = None) -> Tuple[CompactRecord, List[str]]:
    """
    Extract a CompactRecord and the diagnostics produced on the way.

    Args:
        sdp_text: Offer or answer text. LF or CRLF, stray whitespace ok.
        role: Which side produced the text.
        extra_candidates: Candidates gathered outside the SDP (trickle ICE),
            appended after the SDP's own candidate lines.
        max_ufrag / max_pwd: Truncate credentials to the target encoding's
            maximum. Lossy; the caller should validate upstream.

    Returns:
        (record, warnings)

    Raises:
        MissingFieldError if ufrag, pwd, fingerprint or setup is absent.
    """
    warnings: List[str] = []
    ufrag = pwd = fingerprint = setup = None
    candidate_lines: List[str] = []

    for raw in sdp_text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("a=ice-ufrag:"):
            if ufrag is None:
                ufrag = line[len("a=ice-ufrag:"):].strip()
        elif line.startswith("a=ice-pwd:"):
            if pwd is None:
                pwd = line[len("a=ice-pwd:"):].strip()
        elif line.startswith("a=fingerprint:"):
            if fingerprint is None:
                fingerprint = line[len("a=fingerprint:"):].strip()
        elif line.startswith("a=setup:"):
            if setup is None:
                setup = line[len("a=setup:"):].strip()
        elif line.startswith("a=candidate:"):
            candidate_lines.append(line)

    candidate_lines.extend(c.strip() for c in extra_candidates if c.strip())

    if not ufrag:
        raise MissingFieldError("ice-ufrag", "session description")
    if not pwd:
        raise MissingFieldError("ice-pwd", "session description")
    if not fingerprint:
        raise MissingFieldError("fingerprint", "session description")
    if not setup:
        raise MissingFieldError("setup", "session description")

    # "sha-256 AB:CD:...": algorithm token is re-derived from the length
    parts = fingerprint.split()
    if len(parts) < 2:
        raise QRSFormatError(f"a=fingerprint needs '<algorithm> <digest>': {fingerprint!r}")
    algorithm, hex_digest = parts[0].lower(), parts[1]
    digest = parse_fingerprint(hex_digest)

    candidates: List[CandidateRecord] = []
    for line in candidate_lines:
        try:
            cand = parse_candidate(line)
        except InvalidCandidateFormat as e:
            msg = f"Skipped candidate: {e}"
            logger.warning(msg)
            warnings.append(msg)
            continue
        if cand is None:
            logger.debug("Skipped inactive TCP candidate: %s", line)
            continue
        candidates.append(cand)

    record = CompactRecord(
        role=Role.parse(role),
        setup=SetupRole.parse(setup),
        ice_ufrag=_truncate(ufrag, max_ufrag, "ice-ufrag", warnings),
        ice_pwd=_truncate(pwd, max_pwd, "ice-pwd", warnings),
        fingerprint=digest,
        candidates=tuple(candidates),
    )
    if record.fingerprint_algorithm != algorithm:
        msg = (f"Fingerprint declared as {algorithm} but digest length implies "
               f"{record.fingerprint_algorithm}")
        logger.warning(msg)
        warnings.append(msg)

    logger.debug("Compacted %s: %d candidates, %d lines skipped",
                 record.role.sdp_type, len(candidates),
                 len(candidate_lines) - len(candidates))
    return record, warnings


def compact(sdp_text: str,
            role: Role = Role.OFFER,
            extra_candidates: Iterable[str] = (),
            max_ufrag: Optional[int] = None,
            max_pwd: Optional[int] = None) -> CompactRecord:
    """SDP text → CompactRecord. See compact_report() for arguments."""
    record, _ = compact_report(sdp_text, role, extra_candidates, max_ufrag, max_pwd)
    return record


# ═══════════════════════════════════════════════════════════════
# RECONSTRUCTOR
# ═══════════════════════════════════════════════════════════════

def format_candidate(candidate: CandidateRecord, foundation: int, ufrag: str) -> str:
    """One a=candidate line with a positional foundation and fixed priority."""
    priority = CANDIDATE_PRIORITY[candidate.type]
    head = (f"a=candidate:{foundation} 1 udp {priority} "
            f"{candidate.ip} {candidate.port} typ {candidate.type.sdp_name}")

    if isinstance(candidate, ServerReflexiveCandidate):
        head += f" raddr {candidate.related_ip} rport {candidate.related_port}"
        network_id = candidate.network_id
    elif isinstance(candidate, RelayCandidate):
        head += " raddr 0.0.0.0 rport 0"
        network_id = DEFAULT_NETWORK_ID
    else:
        network_id = candidate.network_id

    return f"{head} generation 0 ufrag {ufrag} network-id {network_id}"


def expand(record: CompactRecord,
           role: Optional[Role] = None,
           session_id: Optional[int] = None) -> str:
    """
    Rebuild CRLF-terminated SDP text from a CompactRecord.

    Args:
        record: Decoded record.
        role: Expected role. A record of the other role is rejected.
        session_id: o= line session id. Defaults to current time in ms.

    Raises:
        MissingFieldError if ufrag, pwd or fingerprint is empty.
        QRSFormatError on a role mismatch.
    """
    if role is not None and Role.parse(role) != record.role:
        raise QRSFormatError(
            f"Expected {Role.parse(role).sdp_type}, got {record.role.sdp_type}")
    if not record.ice_ufrag:
        raise MissingFieldError("ice-ufrag", "record")
    if not record.ice_pwd:
        raise MissingFieldError("ice-pwd", "record")
    if not record.fingerprint:
        raise MissingFieldError("fingerprint", "record")

    if session_id is None:
        session_id = int(time.time() * 1000)

    lines = [
        "v=0",
        f"o=- {session_id} 2 IN IP4 127.0.0.1",
        "s=-",
        "t=0 0",
        "a=group:BUNDLE 0",
        "a=extmap-allow-mixed",
        "a=msid-semantic: WMS",
        "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
        "c=IN IP4 0.0.0.0",
        f"a=ice-ufrag:{record.ice_ufrag}",
        f"a=ice-pwd:{record.ice_pwd}",
        "a=ice-options:trickle",
        f"a=fingerprint:{record.fingerprint_algorithm} {record.fingerprint_hex}",
        f"a=setup:{record.setup.sdp_name}",
        "a=mid:0",
        "a=sctp-port:5000",
    ]
    for position, cand in enumerate(record.candidates, start=1):
        lines.append(format_candidate(cand, position, record.ice_ufrag))

    return "\r\n".join(lines) + "\r\n"
