"""
QRSignal — WebRTC signaling in a single QR code
================================================

Compacts an offer/answer session description into a Base45 string that
fits one QR code, and rebuilds a minimal SDP from the scanned string.

This module is the public facade; the stages live in the qrs_* modules.
"""

from qrs_types import (
    Role, SetupRole, CandidateType, CompactRecord, DecodeResult,
    HostCandidate, ServerReflexiveCandidate, RelayCandidate,
    QRSError, QRSFormatError, QRSIntegrityError, MissingFieldError,
    LengthOverflowError, CRCMismatchError, AmbiguousFingerprintError,
)
from qrs_sdp import compact, compact_report, expand
from qrs_binary import AddressDictionary, DEFAULT_DICTIONARY
from qrs_codec import CodecScheme, SignalEncoder, SignalDecoder
from qrs_sizing import qr_fit, size_report

__version__ = "1.0.0"
__all__ = [
    'SignalEncoder', 'SignalDecoder', 'CodecScheme',
    'compact', 'compact_report', 'expand', 'qr_fit', 'size_report',
    'AddressDictionary', 'DEFAULT_DICTIONARY',
    'Role', 'SetupRole', 'CandidateType', 'CompactRecord', 'DecodeResult',
    'HostCandidate', 'ServerReflexiveCandidate', 'RelayCandidate',
    'QRSError', 'QRSFormatError', 'QRSIntegrityError', 'MissingFieldError',
    'LengthOverflowError', 'CRCMismatchError', 'AmbiguousFingerprintError',
]
