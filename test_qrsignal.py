"""
QRSignal — Test Harness
========================

Round-trip verification: SDP → CompactRecord → payload → Base45 → SDP
  1. Bit stream primitives (constrained widths, length determinants)
  2. CRC16 trailer and Base45 text layer
  3. Candidate classifier and Compactor
  4. Reconstructor output shape
  5. Bit-packed codec: sizes, limits, truncated input
  6. Fixed-width codec: fingerprint inference and ambiguity
  7. Dictionary codec: table hits, version and code mismatches
  8. End-to-end encoder/decoder, integrity failures
  9. QR sizing and the command line

Run: python test_qrsignal.py   (or: pytest)
"""

import os
import sys
import json
import time
import random
import logging

from click.testing import CliRunner

# Ensure we can import from current directory
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from qrs_types import (
    CompactRecord, Role, SetupRole, CandidateType,
    HostCandidate, ServerReflexiveCandidate, RelayCandidate,
    QRSError, QRSFormatError, MissingFieldError, InvalidCandidateFormat,
    RangeError, LengthOverflowError, BitUnderflowError, ByteUnderflowError,
    CRCMismatchError, InvalidCharacterError, UnknownDictionaryCodeError,
    DictionaryVersionError, AmbiguousFingerprintError,
)
from qrs_sdp import parse_candidate, compact, compact_report, expand, format_candidate
from qrs_uper import BitWriter, BitReader, UperCodec, constrained_width
from qrs_binary import FixedCodec, DictionaryCodec, AddressDictionary, DEFAULT_DICTIONARY
from qrs_transport import crc16_ccitt, add_crc, verify_crc, b45encode, b45decode, BASE45_ALPHABET
from qrs_codec import CodecScheme, SignalEncoder, SignalDecoder
from qrs_sizing import qr_fit, size_report
from qrs_cli import main as cli_main


# ═══════════════════════════════════════════════════════════════
# TEST INFRASTRUCTURE
# ═══════════════════════════════════════════════════════════════

class CaseResult:
    def __init__(self, name):
        self.name = name
        self.passed = False
        self.message = ""
        self.elapsed = 0.0

    def __repr__(self):
        status = "PASS" if self.passed else "FAIL"
        return f"  [{status}] {self.name} ({self.elapsed:.1f}ms){': ' + self.message if self.message else ''}"


def run_test(name, func):
    """Run a single test, catching exceptions."""
    result = CaseResult(name)
    start = time.time()
    try:
        func(result)
        result.passed = True
    except AssertionError as e:
        result.message = str(e) or "Assertion failed"
    except Exception as e:
        result.message = f"{type(e).__name__}: {e}"
    result.elapsed = (time.time() - start) * 1000
    return result


def expect_raises(exc_type, func, *args, **kwargs):
    """Call func and return the exception it raises; fail if it returns."""
    try:
        func(*args, **kwargs)
    except exc_type as e:
        return e
    raise AssertionError(f"{getattr(func, '__name__', func)} did not raise {exc_type.__name__}")


# ═══════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════

SCENARIO_SDP = "\n".join([
    "v=0",
    "o=- 1750494244051 2 IN IP4 127.0.0.1",
    "s=-",
    "t=0 0",
    "a=group:BUNDLE 0",
    "a=extmap-allow-mixed",
    "a=msid-semantic: WMS",
    "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
    "c=IN IP4 0.0.0.0",
    "a=ice-ufrag:StWD",
    "a=ice-pwd:cmAa2n4/h+mt2ze+54N+nPG/",
    "a=ice-options:trickle",
    "a=fingerprint:sha-256 B0:B6:B6:6D:A3:CF:6F:13:46:D4:BD:76:D0:57:F1:CB:"
    "1A:0A:3A:E7:6E:03:0E:33:49:4B:8E:24:42:CD:2B:8B",
    "a=setup:actpass",
    "a=mid:0",
    "a=sctp-port:5000",
    "a=candidate:100000000 1 udp 2122260223 169.254.199.180 63362 typ host generation 0 network-id 1 network-cost 10",
    "a=candidate:100000001 1 udp 2122260223 172.27.80.1 63363 typ host generation 0 network-id 2 network-cost 10",
    "a=candidate:100000002 1 udp 2122260223 172.27.192.1 63364 typ host generation 0 network-id 3 network-cost 10",
    "a=candidate:100000003 1 udp 2122260223 192.168.1.7 63365 typ host generation 0 network-id 4 network-cost 10",
    "a=candidate:200000004 1 udp 1686052607 24.17.60.171 63365 typ srflx raddr 192.168.1.7 rport 63365 "
    "generation 0 network-id 4 network-cost 10",
]) + "\n"

SCENARIO_FINGERPRINT = bytes.fromhex(
    "B0B6B66DA3CF6F1346D4BD76D057F1CB1A0A3AE76E030E33494B8E2442CD2B8B")

ICE_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"


def scenario_record():
    return CompactRecord(
        role=Role.OFFER,
        setup=SetupRole.ACTPASS,
        ice_ufrag="StWD",
        ice_pwd="cmAa2n4/h+mt2ze+54N+nPG/",
        fingerprint=SCENARIO_FINGERPRINT,
        candidates=(
            HostCandidate("169.254.199.180", 63362, 1),
            HostCandidate("172.27.80.1", 63363, 2),
            HostCandidate("172.27.192.1", 63364, 3),
            HostCandidate("192.168.1.7", 63365, 4),
            ServerReflexiveCandidate("24.17.60.171", 63365, "192.168.1.7", 63365, 4),
        ),
    )


def ambiguous_fixed_record():
    """
    Fixed-width payload that parses with a 20-byte digest (two srflx) and
    with a 32-byte digest (rport 0x0201 becomes count 2 + a host type byte,
    port 0x0C01 supplies the second host type byte).
    """
    return CompactRecord(
        role=Role.ANSWER, setup=SetupRole.ACTIVE, ice_ufrag="abcd", ice_pwd="p" * 22,
        fingerprint=bytes(range(20)),
        candidates=(
            ServerReflexiveCandidate("203.0.113.9", 4000, "192.168.1.7", 0x0201),
            ServerReflexiveCandidate("198.51.100.5", 0x0C01, "10.0.0.2", 5000),
        ),
    )


def random_record(rng, ufrag_len, pwd_len, fp_len, n_candidates, network_ids=True):
    def ip():
        if rng.random() < 0.3:
            prefix = rng.choice(list(DEFAULT_DICTIONARY.ip_prefixes.values()))
            return ".".join(str(o) for o in prefix) + f".{rng.randint(0, 255)}"
        return ".".join(str(rng.randint(0, 255)) for _ in range(4))

    def port():
        if rng.random() < 0.3:
            return rng.choice(list(DEFAULT_DICTIONARY.ports.values()))
        return rng.randint(1, 65535)

    def nid():
        return rng.randint(1, 20) if network_ids else 1

    candidates = []
    for _ in range(n_candidates):
        kind = rng.choice(list(CandidateType))
        if kind == CandidateType.HOST:
            candidates.append(HostCandidate(ip(), port(), nid()))
        elif kind == CandidateType.SRFLX:
            candidates.append(ServerReflexiveCandidate(ip(), port(), ip(), port(), nid()))
        else:
            candidates.append(RelayCandidate(ip(), port()))

    return CompactRecord(
        role=rng.choice(list(Role)),
        setup=rng.choice(list(SetupRole)),
        ice_ufrag="".join(rng.choice(ICE_CHARS) for _ in range(ufrag_len)),
        ice_pwd="".join(rng.choice(ICE_CHARS) for _ in range(pwd_len)),
        fingerprint=bytes(rng.randint(0, 255) for _ in range(fp_len)),
        candidates=candidates,
    )


def record_grid(max_ufrag, max_pwd, network_ids):
    rng = random.Random(2024)
    for ufrag_len in (1, 4, 8):
        if ufrag_len > max_ufrag:
            continue
        for pwd_len in (1, 22, 24):
            if pwd_len > max_pwd:
                continue
            for fp_len in (20, 32, 48, 64):
                for n in (0, 1, 20):
                    yield random_record(rng, ufrag_len, pwd_len, fp_len, n, network_ids)


# ═══════════════════════════════════════════════════════════════
# TESTS — PRIMITIVES
# ═══════════════════════════════════════════════════════════════

def test_constrained_width(r):
    """Bits for [lo, hi] ranges used by the record layout."""
    cases = {(0, 0): 0, (0, 1): 1, (1, 20): 5, (0, 20): 5,
             (0, 32): 6, (0, 64): 7, (0, 255): 8, (0, 256): 9}
    for (lo, hi), width in cases.items():
        assert constrained_width(lo, hi) == width, f"{lo}..{hi}: {constrained_width(lo, hi)}"
    expect_raises(RangeError, constrained_width, 5, 4)


def test_bit_stream(r):
    """Constrained ints and both length determinant forms."""
    w = BitWriter()
    w.write_constrained_int(7, 1, 20)
    w.write_length_determinant(127)
    w.write_length_determinant(128)
    w.write_length_determinant(16383)
    w.write_bits(1, 1)
    assert w.bit_length == 5 + 8 + 16 + 16 + 1
    data = w.getvalue()
    assert len(data) == 6

    rd = BitReader(data)
    assert rd.read_constrained_int(1, 20) == 7
    assert rd.read_length_determinant() == 127
    assert rd.read_length_determinant() == 128
    assert rd.read_length_determinant() == 16383
    assert rd.read_bits(1) == 1
    assert rd.remaining == 2  # zero padding
    assert rd.read_bits(2) == 0
    expect_raises(BitUnderflowError, rd.read_bits, 1)

    expect_raises(LengthOverflowError, BitWriter().write_length_determinant, 16384)
    expect_raises(RangeError, BitWriter().write_constrained_int, 21, 1, 20)
    expect_raises(RangeError, BitWriter().write_bits, 8, 3)

    # 25 in a 0..20 field cannot have been written by a valid encoder
    w = BitWriter()
    w.write_bits(25, 5)
    expect_raises(QRSFormatError, BitReader(w.getvalue(), 5).read_constrained_int, 0, 20)


def test_crc16(r):
    """CCITT-FALSE check value, trailer layout, single-bit corruption."""
    assert crc16_ccitt(b"123456789") == 0x29B1
    assert crc16_ccitt(b"") == 0xFFFF

    payload = UperCodec().encode(scenario_record())
    framed = add_crc(payload)
    assert len(framed) == len(payload) + 2
    assert framed[-2:] == crc16_ccitt(payload).to_bytes(2, "big")

    check = verify_crc(framed)
    assert check.valid and check.payload == payload

    flips = 0
    for i in range(len(framed)):
        for bit in range(8):
            bad = bytearray(framed)
            bad[i] ^= 1 << bit
            assert not verify_crc(bytes(bad)).valid, f"flip at byte {i} bit {bit} undetected"
            flips += 1

    assert verify_crc(b"\xff\xff").valid  # empty payload
    expect_raises(ByteUnderflowError, verify_crc, b"\x00")
    r.message = f"{flips} single-bit flips detected"


def test_base45(r):
    """Output lengths, digit order, alphabet and malformed input."""
    rng = random.Random(45)
    for n, chars in ((0, 0), (1, 2), (2, 3), (3, 5), (101, 152)):
        data = bytes(rng.randint(0, 255) for _ in range(n))
        text = b45encode(data)
        assert len(text) == chars, f"{n} bytes → {len(text)} chars"
        assert all(c in BASE45_ALPHABET for c in text)
        assert b45decode(text) == data

    assert b45encode(b"AB") == "8BB"
    assert b45encode(b"\xff") == "5U"
    assert b45decode("8BB") == b"AB"

    expect_raises(InvalidCharacterError, b45decode, "8bb")
    e = expect_raises(QRSFormatError, b45decode, "8BB8")
    assert not isinstance(e, InvalidCharacterError)
    expect_raises(QRSFormatError, b45decode, ":::")
    expect_raises(QRSFormatError, b45decode, "::")
    # character check comes before the length check
    expect_raises(InvalidCharacterError, b45decode, "a")


# ═══════════════════════════════════════════════════════════════
# TESTS — COMPACTOR & RECONSTRUCTOR
# ═══════════════════════════════════════════════════════════════

def test_candidate_classifier(r):
    """Host / srflx / relay lines, skipped placeholders, rejects."""
    host = parse_candidate("a=candidate:1 1 udp 2122260223 10.0.0.5 5000 typ host network-id 3")
    assert host == HostCandidate("10.0.0.5", 5000, 3)

    srflx = parse_candidate(
        "candidate:2 1 UDP 1686052607 24.17.60.171 61000 typ srflx raddr 10.0.0.5 rport 5000")
    assert srflx == ServerReflexiveCandidate("24.17.60.171", 61000, "10.0.0.5", 5000, 1)

    relay = parse_candidate(
        "a=candidate:3 1 udp 41885439 203.0.113.4 3478 typ relay raddr 24.17.60.171 rport 61000")
    assert relay == RelayCandidate("203.0.113.4", 3478)

    assert parse_candidate("a=candidate:4 1 tcp 1518280447 10.0.0.5 9 typ host tcptype active") is None
    # port compared as a number
    assert parse_candidate("a=candidate:4 1 tcp 1518280447 10.0.0.5 09 typ host tcptype active") is None

    clamped = parse_candidate("a=candidate:5 1 udp 2122260223 10.0.0.5 5000 typ host network-id 50")
    assert clamped.network_id == 1

    bad_lines = [
        "a=candidate:1 1 udp 2122260223 10.0.0.5 5000",                          # too few fields
        "a=candidate:1 1 tcp 1518280447 10.0.0.5 5000 typ host",                  # tcp
        "a=candidate:1 1 udp 2122260223 fe80::1 5000 typ host",                   # ipv6
        "a=candidate:1 1 udp 2122260223 3f1c.local 5000 typ host",                # mDNS
        "a=candidate:1 1 udp 2122260223 10.0.0.5 5000 typ prflx",                 # type
        "a=candidate:1 1 udp 1686052607 24.17.60.171 61000 typ srflx",            # no raddr
        "a=candidate:1 1 udp 2122260223 10.0.0.5 70000 typ host",                 # port
        "a=ice-ufrag:abcd",
    ]
    for line in bad_lines:
        expect_raises(InvalidCandidateFormat, parse_candidate, line)


def test_compact_scenario(r):
    """Browser offer → record, first attribute wins, extras ignored."""
    record, warnings = compact_report(SCENARIO_SDP, Role.OFFER)
    assert record == scenario_record(), record
    assert warnings == []
    assert record.fingerprint_algorithm == "sha-256"

    doubled = SCENARIO_SDP.replace("a=setup:actpass", "a=setup:actpass\na=setup:active")
    doubled = doubled.replace("a=ice-ufrag:StWD", "a=ice-ufrag:StWD\r\na=ice-ufrag:XXXX")
    assert compact(doubled) == scenario_record()


def test_compact_skips_and_warnings(r):
    """Malformed candidates are dropped with a warning, placeholders silently."""
    sdp = SCENARIO_SDP + "\n".join([
        "a=candidate:9 1 tcp 1518280447 192.168.1.7 9 typ host tcptype active",
        "a=candidate:10 1 udp 2122260223 abcd.local 5000 typ host",
        "a=candidate:11 1 udp 2122260223 10.0.0.1",
    ]) + "\n"
    record, warnings = compact_report(sdp, Role.OFFER)
    assert len(record.candidates) == 5
    assert len(warnings) == 2, warnings

    extra = ["candidate:12 1 udp 41885439 203.0.113.4 3478 typ relay raddr 1.2.3.4 rport 5",
             "  ", "a=candidate:13 1 udp 2122260223 10.0.0.9 7000 typ host"]
    record = compact(SCENARIO_SDP, Role.OFFER, extra_candidates=extra)
    assert record.candidates[-2:] == (RelayCandidate("203.0.113.4", 3478),
                                      HostCandidate("10.0.0.9", 7000))

    mismatched = SCENARIO_SDP.replace("a=fingerprint:sha-256", "a=fingerprint:sha-1")
    _, warnings = compact_report(mismatched)
    assert any("sha-1" in w for w in warnings), warnings


def test_compact_missing_fields(r):
    for attr in ("a=ice-ufrag:", "a=ice-pwd:", "a=fingerprint:", "a=setup:"):
        sdp = "\n".join(l for l in SCENARIO_SDP.splitlines() if not l.startswith(attr))
        e = expect_raises(MissingFieldError, compact, sdp)
        assert e.field in attr, (e.field, attr)

    expect_raises(QRSFormatError, compact, SCENARIO_SDP.replace("a=setup:actpass", "a=setup:holdconn"))


def test_credential_truncation(r):
    """Long credentials are cut only when a limit is given."""
    sdp = (SCENARIO_SDP.replace("a=ice-ufrag:StWD", "a=ice-ufrag:f3b1c2d4")
           .replace("a=ice-pwd:cmAa2n4/h+mt2ze+54N+nPG/",
                    "a=ice-pwd:0123456789abcdef0123456789abcdef"))
    record, warnings = compact_report(sdp, max_ufrag=4, max_pwd=24)
    assert record.ice_ufrag == "f3b1"
    assert record.ice_pwd == "0123456789abcdef01234567"
    assert len(warnings) == 2

    expect_raises(LengthOverflowError, SignalEncoder(scheme="fixed").encode, sdp)
    result = SignalEncoder(scheme="fixed", truncate_credentials=True).encode(sdp)
    assert len(result["warnings"]) == 2
    assert SignalDecoder(scheme="fixed").decode(result["text"])["record"].ice_ufrag == "f3b1"


def test_expand_format(r):
    """Boilerplate, CRLF endings, positional foundations, fixed priorities."""
    record = scenario_record().with_candidates(
        scenario_record().candidates + (RelayCandidate("203.0.113.4", 3478),))
    sdp = expand(record, Role.OFFER, session_id=42)

    assert sdp.endswith("\r\n")
    lines = sdp.split("\r\n")[:-1]
    assert all("\n" not in l for l in lines)
    assert lines[0] == "v=0"
    assert lines[1] == "o=- 42 2 IN IP4 127.0.0.1"
    assert "a=ice-ufrag:StWD" in lines
    assert "a=ice-pwd:cmAa2n4/h+mt2ze+54N+nPG/" in lines
    assert "a=setup:actpass" in lines
    assert ("a=fingerprint:sha-256 B0:B6:B6:6D:A3:CF:6F:13:46:D4:BD:76:D0:57:F1:CB:"
            "1A:0A:3A:E7:6E:03:0E:33:49:4B:8E:24:42:CD:2B:8B") in lines

    cands = [l for l in lines if l.startswith("a=candidate:")]
    assert len(cands) == 6
    assert cands[0] == ("a=candidate:1 1 udp 2122260223 169.254.199.180 63362 typ host "
                        "generation 0 ufrag StWD network-id 1")
    assert cands[4] == ("a=candidate:5 1 udp 1686052607 24.17.60.171 63365 typ srflx "
                        "raddr 192.168.1.7 rport 63365 generation 0 ufrag StWD network-id 4")
    assert cands[5] == ("a=candidate:6 1 udp 41885439 203.0.113.4 3478 typ relay "
                        "raddr 0.0.0.0 rport 0 generation 0 ufrag StWD network-id 1")

    assert format_candidate(HostCandidate("10.0.0.1", 1), 7, "u").startswith("a=candidate:7 ")


def test_expand_rejects(r):
    record = scenario_record()
    expect_raises(QRSFormatError, expand, record, Role.ANSWER)
    for blank in ({"ice_ufrag": ""}, {"ice_pwd": ""}, {"fingerprint": b""}):
        broken = CompactRecord(**dict({
            "role": record.role, "setup": record.setup, "ice_ufrag": record.ice_ufrag,
            "ice_pwd": record.ice_pwd, "fingerprint": record.fingerprint}, **blank))
        expect_raises(MissingFieldError, expand, broken)


def test_text_roundtrip(r):
    """compact(expand(record)) gives the record back."""
    record = scenario_record().with_candidates(
        scenario_record().candidates + (RelayCandidate("203.0.113.4", 3478),))
    for role in Role:
        rec = CompactRecord(role=role, setup=SetupRole.PASSIVE, ice_ufrag=record.ice_ufrag,
                            ice_pwd=record.ice_pwd, fingerprint=record.fingerprint,
                            candidates=record.candidates)
        assert compact(expand(rec), role) == rec


# ═══════════════════════════════════════════════════════════════
# TESTS — BIT-PACKED CODEC
# ═══════════════════════════════════════════════════════════════

def test_uper_scenario(r):
    """Browser offer packs to 832 bits and decodes exactly."""
    codec = UperCodec()
    record = scenario_record()
    assert codec.measure(record) == 832
    payload = codec.encode(record)
    assert len(payload) == 104

    result = codec.decode(payload)
    assert result.complete and result.warnings == []
    assert result.record == record
    assert result.bits_consumed == 832
    r.message = f"{len(SCENARIO_SDP)} chars → {len(payload)} bytes"


def test_uper_roundtrip_grid(r):
    codec = UperCodec()
    count = 0
    for record in record_grid(32, 64, network_ids=True):
        result = codec.decode(codec.encode(record))
        assert result.complete
        assert result.record == record, record
        count += 1
    r.message = f"{count} records"


def test_uper_limits(r):
    codec = UperCodec()
    record = scenario_record()
    many = record.with_candidates([HostCandidate("10.0.0.1", 1000 + i) for i in range(21)])
    expect_raises(LengthOverflowError, codec.encode, many)
    assert codec.decode(codec.encode(many.with_candidates(many.candidates[:20]))).complete

    long_ufrag = CompactRecord(record.role, record.setup, "u" * 33, record.ice_pwd, record.fingerprint)
    expect_raises(LengthOverflowError, codec.encode, long_ufrag)
    expect_raises(LengthOverflowError, UperCodec(max_ufrag=8).encode,
                  CompactRecord(record.role, record.setup, "u" * 9, "p", record.fingerprint))
    expect_raises(MissingFieldError, codec.encode,
                  CompactRecord(record.role, record.setup, "u", "p", b""))

    # 7-bit characters shave a bit per character
    narrow = UperCodec(char_bits=7)
    assert narrow.measure(record) == codec.measure(record) - 28
    assert narrow.decode(narrow.encode(record)).record == record


def test_uper_truncated_candidates(r):
    """Cut-off candidate list degrades; a cut-off header is fatal."""
    codec = UperCodec()
    record = scenario_record()
    payload = codec.encode(record)

    result = codec.decode(payload, bit_length=codec.measure(record) - 2)
    assert not result.complete
    assert result.record.candidates == record.candidates[:4]
    assert len(result.warnings) == 1

    result = codec.decode(payload[:95])
    assert not result.complete
    assert len(result.record.candidates) < 5

    expect_raises(BitUnderflowError, codec.decode, payload[:10])

    # invalid type tag stops the list
    w = BitWriter()
    w.write_bits(0, 1)
    w.write_bits(0, 2)
    w.write_visible_string("abcd", 32)
    w.write_visible_string("p" * 22, 64)
    w.write_octet_string(bytes(20))
    w.write_constrained_int(2, 0, 20)
    w.write_bits(3, 2)
    w.write_bits(0, 60)
    result = codec.decode(w.getvalue())
    assert not result.complete and result.record.candidates == ()
    assert "type tag" in result.warnings[0]


# ═══════════════════════════════════════════════════════════════
# TESTS — BYTE CODECS
# ═══════════════════════════════════════════════════════════════

def test_fixed_scenario(r):
    """103-byte payload, digest length inferred, network-ids not carried."""
    codec = FixedCodec()
    payload = codec.encode(scenario_record())
    assert len(payload) == 103
    assert payload[0] == 0x81  # offer, actpass
    assert codec.infer_fingerprint_length(payload) == 32

    result = codec.decode(payload)
    assert result.complete
    decoded = result.record
    assert decoded.fingerprint == SCENARIO_FINGERPRINT
    assert all(getattr(c, "network_id", 1) == 1 for c in decoded.candidates)
    assert [(c.ip, c.port) for c in decoded.candidates] == \
        [(c.ip, c.port) for c in scenario_record().candidates]

    expect_raises(QRSFormatError, codec.decode, payload[:-3])
    assert not codec.decode(payload[:-3], fingerprint_length=32).complete
    expect_raises(ByteUnderflowError, codec.decode, payload[:20])


def test_fixed_roundtrip_grid(r):
    codec = FixedCodec()
    count = 0
    for record in record_grid(4, 24, network_ids=False):
        payload = codec.encode(record)
        result = codec.decode(payload, fingerprint_length=len(record.fingerprint))
        assert result.complete and result.warnings == []
        assert result.record == record, record
        count += 1
    r.message = f"{count} records"


def test_fixed_ambiguous_fingerprint(r):
    """Two srflx entries that also parse as a 32-byte digest plus two hosts."""
    record = ambiguous_fixed_record()
    codec = FixedCodec()
    payload = codec.encode(record)
    assert len(payload) == 76

    e = expect_raises(AmbiguousFingerprintError, codec.decode, payload)
    assert e.lengths == (20, 32)
    assert codec.decode(payload, fingerprint_length=20).record == record
    expect_raises(QRSFormatError, codec.decode, payload, fingerprint_length=21)


def test_fixed_limits(r):
    codec = FixedCodec()
    record = scenario_record()
    expect_raises(LengthOverflowError, codec.encode,
                  CompactRecord(record.role, record.setup, "abcde", "p", record.fingerprint))
    expect_raises(LengthOverflowError, codec.encode,
                  CompactRecord(record.role, record.setup, "abcd", "p" * 25, record.fingerprint))
    bad_setup = bytearray(codec.encode(record))
    bad_setup[0] &= 0xFC
    expect_raises(QRSFormatError, codec.decode, bytes(bad_setup))


def test_dictionary_roundtrip(r):
    codec = DictionaryCodec()
    count = 0
    for record in record_grid(4, 24, network_ids=False):
        result = codec.decode(codec.encode(record))
        assert result.complete and result.warnings == []
        assert result.record == record, record
        count += 1

    decoded = codec.decode(codec.encode(scenario_record())).record
    assert decoded.ice_pwd == "cmAa2n4/h+mt2ze+54N+nPG/"
    assert len(decoded.candidates) == 5

    # table hits beat the fixed layout
    lan = scenario_record().with_candidates([
        HostCandidate("192.168.1.7", 443),
        ServerReflexiveCandidate("24.17.60.171", 3478, "10.0.0.5", 19302),
    ])
    fixed_size = len(FixedCodec().encode(lan))
    dict_size = len(codec.encode(lan))
    assert dict_size < fixed_size, (dict_size, fixed_size)
    r.message = f"{count} records, LAN record {fixed_size}B → {dict_size}B"


def test_dictionary_mismatch(r):
    """Unknown codes and other dictionary versions are fatal."""
    payload = DictionaryCodec().encode(scenario_record())

    newer = AddressDictionary(version=2, ip_prefixes=dict(DEFAULT_DICTIONARY.ip_prefixes),
                              ports=dict(DEFAULT_DICTIONARY.ports))
    expect_raises(DictionaryVersionError, DictionaryCodec(newer).decode, payload)

    # same version, one extra prefix the default table does not know
    extended = AddressDictionary(version=1,
                                 ip_prefixes={**DEFAULT_DICTIONARY.ip_prefixes, 0xF6: (100, 64, 0)},
                                 ports=dict(DEFAULT_DICTIONARY.ports))
    cgnat = scenario_record().with_candidates([HostCandidate("100.64.0.9", 5000)])
    payload = DictionaryCodec(extended).encode(cgnat)
    expect_raises(UnknownDictionaryCodeError, DictionaryCodec().decode, payload)

    expect_raises(QRSFormatError, AddressDictionary, 8)
    expect_raises(QRSFormatError, AddressDictionary, 1, {0x00: (10, 0, 0)})
    expect_raises(QRSFormatError, AddressDictionary, 1, {}, {0xE0: 443, 0xE1: 443})


def test_dictionary_tables_frozen(r):
    """Tables are read-only and detached from the dicts they were built from."""
    expect_raises(TypeError, DEFAULT_DICTIONARY.ports.__setitem__, 0xE6, 5000)
    expect_raises(TypeError, DEFAULT_DICTIONARY.ip_prefixes.__setitem__, 0xF6, (100, 64, 0))

    prefixes = {0x01: [192, 168, 1]}
    ports = {0xE0: 443}
    table = AddressDictionary(version=1, ip_prefixes=prefixes, ports=ports)
    prefixes[0x02] = [10, 0, 0]
    prefixes[0x01][2] = 2
    ports[0xE0] = 8443
    assert dict(table.ip_prefixes) == {0x01: (192, 168, 1)}
    assert dict(table.ports) == {0xE0: 443}

    payload = DictionaryCodec(table).encode(
        scenario_record().with_candidates([HostCandidate("192.168.1.7", 443)]))
    decoded = DictionaryCodec(table).decode(payload).record
    assert [(c.ip, c.port) for c in decoded.candidates] == [("192.168.1.7", 443)]


# ═══════════════════════════════════════════════════════════════
# TESTS — END TO END
# ═══════════════════════════════════════════════════════════════

def test_signal_roundtrip(r):
    """SDP → text → SDP through every scheme."""
    sizes = []
    for scheme in CodecScheme:
        encoded = SignalEncoder(scheme=scheme).encode(SCENARIO_SDP, Role.OFFER)
        assert all(c in BASE45_ALPHABET for c in encoded["text"])
        assert encoded["candidate_count"] == 5
        assert encoded["size_framed"] == encoded["size_payload"] + 2

        decoded = SignalDecoder(scheme=scheme).decode(encoded["text"], Role.OFFER, session_id=1)
        assert decoded["valid"] and decoded["crc_valid"] and decoded["complete"]
        assert decoded["validation_errors"] == []

        again = compact(decoded["sdp"], Role.OFFER)
        assert [(c.ip, c.port) for c in again.candidates] == \
            [(c.ip, c.port) for c in scenario_record().candidates]
        assert again.ice_pwd == "cmAa2n4/h+mt2ze+54N+nPG/"
        if scheme == CodecScheme.UPER:
            assert again == scenario_record()
        sizes.append(f"{scheme.name}={encoded['size_text']}")

    assert SignalEncoder(scheme="uper").encode(SCENARIO_SDP)["size_payload"] == 104
    r.message = ", ".join(sizes)


def test_signal_integrity(r):
    """Corrupted text: strict decoding raises, lenient decoding flags it."""
    payload = UperCodec().encode(scenario_record())
    framed = bytearray(add_crc(payload))
    framed[12] ^= 0x01  # inside ice-pwd
    text = b45encode(bytes(framed))

    expect_raises(CRCMismatchError, SignalDecoder().decode, text)

    result = SignalDecoder(verify_integrity=False).decode(text)
    assert not result["valid"] and not result["crc_valid"]
    assert result["validation_errors"][0].startswith("CRC mismatch")
    assert result["record"].ice_pwd != scenario_record().ice_pwd
    assert result["record"].ice_ufrag == "StWD"

    answer = SignalEncoder().encode(SCENARIO_SDP, Role.ANSWER)["text"]
    expect_raises(QRSFormatError, SignalDecoder().decode, answer, Role.OFFER)
    expect_raises(InvalidCharacterError, SignalDecoder().decode, "abc")
    expect_raises(QRSFormatError, CodecScheme.parse, "zip")


# ═══════════════════════════════════════════════════════════════
# TESTS — SIZING & CLI
# ═══════════════════════════════════════════════════════════════

def test_qr_fit(r):
    text = SignalEncoder().encode(SCENARIO_SDP)["text"]
    fit = qr_fit(text, "M")
    assert fit["mode"] == "alphanumeric"
    assert fit["modules"] == 17 + 4 * fit["version"]
    assert fit["version"] <= 10

    raw = qr_fit(SCENARIO_SDP, "M")
    assert raw["mode"] == "byte"
    assert raw["version"] > fit["version"]

    expect_raises(LengthOverflowError, qr_fit, "A" * 5000, "L")
    expect_raises(QRSError, qr_fit, "A", "X")
    r.message = f"SDP v{raw['version']} → Base45 v{fit['version']}"


def test_size_report(r):
    report = size_report(SCENARIO_SDP)
    assert report["candidates"] == 5
    assert set(report["schemes"]) == {"UPER", "FIXED", "DICTIONARY"}
    assert report["schemes"]["UPER"]["bytes"] == 104
    assert report["schemes"]["FIXED"]["bytes"] == 103
    assert report["schemes"]["UPER"]["framed"] == 106
    assert report["zstd"]["mode"] == "alphanumeric"

    firefox = SCENARIO_SDP.replace("a=ice-ufrag:StWD", "a=ice-ufrag:f3b1c2d4")
    report = size_report(firefox)
    assert "error" in report["schemes"]["FIXED"]
    assert "error" not in report["schemes"]["UPER"]

    # raw text past version 40; zstd and the compact schemes still fit
    padded = SCENARIO_SDP + "a=x-filler:" + "y" * 4000 + "\n"
    report = size_report(padded, ec_level="L")
    assert "error" in report["sdp"] and report["sdp"]["bytes"] == len(padded)
    assert "version" not in report["sdp"]
    assert "version" in report["zstd"], report["zstd"]
    assert report["schemes"]["UPER"]["bytes"] == 104


def test_public_facade(r):
    """Top-level module re-exports the pipeline and carries the version."""
    import qrsignal
    missing = [name for name in qrsignal.__all__ if not hasattr(qrsignal, name)]
    assert missing == [], missing
    assert qrsignal.SignalEncoder is SignalEncoder
    assert isinstance(qrsignal.__version__, str) and qrsignal.__version__

    result = CliRunner().invoke(cli_main, ["--version"])
    assert result.exit_code == 0, result.output
    assert qrsignal.__version__ in result.output

    import qrs_cli
    assert qrs_cli.__doc__ and "qrsignal inspect" in qrs_cli.__doc__
    r.message = f"{len(qrsignal.__all__)} names, v{qrsignal.__version__}"


def test_cli(r):
    runner = CliRunner()
    with runner.isolated_filesystem():
        with open("offer.sdp", "w") as fh:
            fh.write(SCENARIO_SDP)

        result = runner.invoke(cli_main, ["-q", "encode", "offer.sdp"])
        assert result.exit_code == 0, result.output
        text = result.output.rstrip("\r\n").splitlines()[-1]
        assert all(c in BASE45_ALPHABET for c in text)

        result = runner.invoke(cli_main, ["-q", "decode", text, "--role", "offer"])
        assert result.exit_code == 0, result.output
        assert "a=ice-ufrag:StWD" in result.output

        result = runner.invoke(cli_main, ["-q", "decode", text, "--role", "answer"])
        assert result.exit_code != 0

        result = runner.invoke(cli_main, ["-q", "inspect", text])
        assert result.exit_code == 0, result.output
        info = json.loads(result.output)
        assert info["record"]["ice_ufrag"] == "StWD"
        assert info["crc_valid"] is True
        assert len(info["record"]["candidates"]) == 5

        result = runner.invoke(cli_main, ["-q", "encode", "offer.sdp", "--scheme", "fixed", "--json"])
        assert result.exit_code == 0, result.output
        summary = json.loads(result.output)
        assert summary["size_payload"] == 103

        result = runner.invoke(cli_main, ["-q", "size", "offer.sdp"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["schemes"]["UPER"]["bytes"] == 104

        # fixed payload whose digest length needs a hint
        ambiguous = b45encode(add_crc(FixedCodec().encode(ambiguous_fixed_record())))
        result = runner.invoke(cli_main, ["-q", "inspect", ambiguous, "--scheme", "fixed"])
        assert result.exit_code != 0
        result = runner.invoke(cli_main, ["-q", "inspect", ambiguous, "--scheme", "fixed",
                                          "--fingerprint-length", "20"])
        assert result.exit_code == 0, result.output
        assert len(json.loads(result.output)["record"]["candidates"]) == 2


# ═══════════════════════════════════════════════════════════════
# RUNNER
# ═══════════════════════════════════════════════════════════════

def main():
    logging.basicConfig(level=logging.ERROR)

    tests = [
        ("Constrained Integer Widths", test_constrained_width),
        ("Bit Stream Primitives", test_bit_stream),
        ("CRC16 Trailer", test_crc16),
        ("Base45 Text Layer", test_base45),
        ("Candidate Classifier", test_candidate_classifier),
        ("Compact Browser Offer", test_compact_scenario),
        ("Compact Skips & Warnings", test_compact_skips_and_warnings),
        ("Compact Missing Fields", test_compact_missing_fields),
        ("Credential Truncation", test_credential_truncation),
        ("Reconstructor Format", test_expand_format),
        ("Reconstructor Rejects", test_expand_rejects),
        ("SDP Text Round-Trip", test_text_roundtrip),
        ("UPER Browser Offer", test_uper_scenario),
        ("UPER Round-Trip Grid", test_uper_roundtrip_grid),
        ("UPER Limits", test_uper_limits),
        ("UPER Truncated Input", test_uper_truncated_candidates),
        ("Fixed Browser Offer", test_fixed_scenario),
        ("Fixed Round-Trip Grid", test_fixed_roundtrip_grid),
        ("Fixed Ambiguous Fingerprint", test_fixed_ambiguous_fingerprint),
        ("Fixed Limits", test_fixed_limits),
        ("Dictionary Round-Trip", test_dictionary_roundtrip),
        ("Dictionary Mismatch", test_dictionary_mismatch),
        ("Dictionary Tables Frozen", test_dictionary_tables_frozen),
        ("Signal Round-Trip (all schemes)", test_signal_roundtrip),
        ("Signal Integrity", test_signal_integrity),
        ("QR Fit", test_qr_fit),
        ("Size Report", test_size_report),
        ("Public Facade", test_public_facade),
        ("Command Line", test_cli),
    ]

    print("=" * 72)
    print("  QRSignal — Test Suite")
    print("  SDP compaction codecs, CRC16 + Base45 transport")
    print("=" * 72)
    print()

    results = []
    for name, func in tests:
        result = run_test(name, func)
        results.append(result)
        print(result)

    print()
    print("-" * 72)
    passed = sum(1 for r in results if r.passed)
    failed = sum(1 for r in results if not r.passed)
    total_ms = sum(r.elapsed for r in results)

    print(f"  Results: {passed} passed, {failed} failed, "
          f"{len(results)} total ({total_ms:.0f}ms)")

    if failed > 0:
        print()
        print("  FAILED TESTS:")
        for r in results:
            if not r.passed:
                print(f"    • {r.name}: {r.message}")

    print("=" * 72)

    return 0 if failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
