"""
QRS Sizing — how big a QR code each encoding needs
===================================================

qr_fit() asks the qrcode library for the smallest symbol version that
holds a string at a given error-correction level, and which data mode
it lands in (Base45 text should always be alphanumeric).

size_report() runs one SDP through every scheme and puts the results
next to two baselines: the raw SDP in byte mode, and the SDP compressed
with zstandard then Base45-encoded.

No images are produced here.
"""

import logging
from typing import Iterable

import qrcode
import zstandard as zstd
from qrcode import util as qr_util
from qrcode.exceptions import DataOverflowError

from qrs_types import (
    Role, DEFAULT_MAX_UFRAG, DEFAULT_MAX_PWD, UPER_CHAR_BITS,
    QRSError, LengthOverflowError,
)
from qrs_sdp import compact_report
from qrs_binary import DEFAULT_DICTIONARY
from qrs_transport import add_crc, b45encode
from qrs_codec import CodecScheme, build_codec

logger = logging.getLogger(__name__)

EC_LEVELS = {
    'L': qrcode.constants.ERROR_CORRECT_L,
    'M': qrcode.constants.ERROR_CORRECT_M,
    'Q': qrcode.constants.ERROR_CORRECT_Q,
    'H': qrcode.constants.ERROR_CORRECT_H,
}

MODE_NAMES = {
    qr_util.MODE_NUMBER: 'numeric',
    qr_util.MODE_ALPHA_NUM: 'alphanumeric',
    qr_util.MODE_8BIT_BYTE: 'byte',
    qr_util.MODE_KANJI: 'kanji',
}

ZSTD_LEVEL = 9


def qr_fit(text: str, ec_level: str = 'M') -> dict:
    """
    Smallest QR version for text.

    Returns:
        dict with version, modules (side length), mode, chars.

    Raises:
        LengthOverflowError if no version up to 40 can hold the text.
    """
    try:
        correction = EC_LEVELS[ec_level.upper()]
    except KeyError:
        raise QRSError(f"Unknown error-correction level {ec_level!r}") from None

    qr = qrcode.QRCode(version=None, error_correction=correction, border=0)
    qr.add_data(text, optimize=0)
    try:
        qr.make(fit=True)
    except (DataOverflowError, ValueError):
        # qrcode 8 rejects the version-41 best fit with ValueError
        raise LengthOverflowError(
            f"{len(text)} characters do not fit any QR version at level {ec_level}") from None

    return {
        'version': qr.version,
        'modules': qr.modules_count,
        'mode': MODE_NAMES.get(qr.data_list[0].mode, 'unknown'),
        'chars': len(text),
    }


def _baseline(text: str, ec_level: str, **extra) -> dict:
    """qr_fit plus byte counts; an oversized baseline reports its error."""
    try:
        return dict(qr_fit(text, ec_level), **extra)
    except LengthOverflowError as e:
        logger.info("Baseline does not fit a QR code: %s", e)
        return dict(extra, error=str(e))


def size_report(sdp_text: str,
                role: Role = Role.OFFER,
                extra_candidates: Iterable[str] = (),
                ec_level: str = 'M') -> dict:
    """
    Compare every scheme on one session description.

    A scheme that cannot carry the record (e.g. a Firefox 8-character
    ufrag in the 4-byte fixed field) reports its error instead of sizes,
    as does a baseline too large for any QR version.
    """
    record, warnings = compact_report(sdp_text, role, tuple(extra_candidates))

    raw = sdp_text.encode('utf-8')
    compressed = zstd.ZstdCompressor(level=ZSTD_LEVEL).compress(raw)
    report = {
        'candidates': len(record.candidates),
        'warnings': warnings,
        'sdp': _baseline(sdp_text, ec_level, bytes=len(raw)),
        'zstd': _baseline(b45encode(compressed), ec_level, bytes=len(compressed)),
    }

    schemes = {}
    for scheme in CodecScheme:
        codec = build_codec(scheme, DEFAULT_MAX_UFRAG, DEFAULT_MAX_PWD,
                            UPER_CHAR_BITS, DEFAULT_DICTIONARY)
        try:
            payload = codec.encode(record)
        except QRSError as e:
            logger.info("%s cannot encode this record: %s", scheme.name, e)
            schemes[scheme.name] = {'error': str(e)}
            continue
        text = b45encode(add_crc(payload))
        schemes[scheme.name] = dict(qr_fit(text, ec_level),
                                    bytes=len(payload), framed=len(payload) + 2)
    report['schemes'] = schemes
    return report
