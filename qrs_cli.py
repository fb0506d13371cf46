"""
QRS CLI — qrsignal command line
================================

    qrsignal encode offer.sdp [--scheme uper|fixed|dictionary]
    qrsignal decode TEXT      [--role offer] [--no-verify]
    qrsignal inspect TEXT     (JSON view of the carried record)
    qrsignal size offer.sdp   (QR versions per scheme vs. raw and zstd)

TEXT may be '-' to read the scanned string from stdin.
"""

import json
import logging
import click

from qrs_types import Role, QRSError, DEFAULT_MAX_UFRAG, DEFAULT_MAX_PWD, FINGERPRINT_ALGORITHMS
from qrs_codec import CodecScheme, SignalEncoder, SignalDecoder
from qrs_sizing import size_report
from qrsignal import __version__

CANONICAL_JSON_KW = {"sort_keys": True, "indent": 2, "ensure_ascii": False}

SCHEMES = click.Choice([s.name.lower() for s in CodecScheme], case_sensitive=False)
ROLES = click.Choice([r.sdp_type for r in Role], case_sensitive=False)


def credential_limits(func):
    """--max-ufrag / --max-pwd, shared by every bit-packed command."""
    func = click.option("--max-pwd", type=int, default=DEFAULT_MAX_PWD, show_default=True,
                        help="ice-pwd length bound (uper only; peers must agree).")(func)
    func = click.option("--max-ufrag", type=int, default=DEFAULT_MAX_UFRAG, show_default=True,
                        help="ice-ufrag length bound (uper only; peers must agree).")(func)
    return func


def fingerprint_length_option(func):
    """--fingerprint-length for fixed-scheme payloads whose digest length is ambiguous."""
    return click.option(
        "--fingerprint-length",
        type=click.Choice([str(n) for n in sorted(FINGERPRINT_ALGORITHMS)]), default=None,
        callback=lambda ctx, param, value: int(value) if value else None,
        help="Digest length for the fixed scheme when it cannot be inferred.")(func)


def _read_candidates(fh):
    if fh is None:
        return ()
    return [line for line in fh.read().splitlines() if line.strip()]


def _read_text(text):
    if text == "-":
        return click.get_text_stream("stdin").read()
    return text


@click.group()
@click.version_option(__version__, prog_name="qrsignal")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
@click.option("-q", "--quiet", is_flag=True, help="Warnings and errors only.")
def main(verbose, quiet):
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@main.command("encode")
@click.argument("sdp_file", type=click.File("r"))
@click.option("--role", type=ROLES, default="offer", show_default=True)
@click.option("--scheme", type=SCHEMES, default="uper", show_default=True)
@credential_limits
@click.option("--candidates", "candidates_file", type=click.File("r"),
              help="File of trickled candidate lines to append.")
@click.option("--truncate", is_flag=True, help="Truncate credentials to the scheme's limits.")
@click.option("--json", "as_json", is_flag=True, help="Print a JSON summary instead of the text.")
def encode_cmd(sdp_file, role, scheme, max_ufrag, max_pwd, candidates_file, truncate, as_json):
    """Compact an SDP file into a Base45 string."""
    try:
        encoder = SignalEncoder(scheme=scheme, max_ufrag=max_ufrag, max_pwd=max_pwd,
                                truncate_credentials=truncate)
        result = encoder.encode(sdp_file.read(), Role.parse(role), _read_candidates(candidates_file))
    except QRSError as e:
        raise click.ClickException(str(e))
    if as_json:
        summary = {k: v for k, v in result.items() if k not in ("record", "payload")}
        summary["record"] = result["record"].to_dict()
        click.echo(json.dumps(summary, **CANONICAL_JSON_KW))
    else:
        click.echo(result["text"])


@main.command("decode")
@click.argument("text")
@click.option("--scheme", type=SCHEMES, default="uper", show_default=True)
@credential_limits
@click.option("--role", type=ROLES, default=None, help="Reject payloads of the other role.")
@click.option("--no-verify", is_flag=True, help="Decode even if the CRC does not match.")
@fingerprint_length_option
def decode_cmd(text, scheme, max_ufrag, max_pwd, role, no_verify, fingerprint_length):
    """Rebuild SDP from a Base45 string ('-' reads stdin)."""
    try:
        decoder = SignalDecoder(scheme=scheme, verify_integrity=not no_verify,
                                max_ufrag=max_ufrag, max_pwd=max_pwd,
                                fingerprint_length=fingerprint_length)
        result = decoder.decode(_read_text(text), Role.parse(role) if role else None)
    except QRSError as e:
        raise click.ClickException(str(e))
    for msg in result["validation_errors"]:
        click.echo(f"warning: {msg}", err=True)
    click.echo(result["sdp"], nl=False)


@main.command("inspect")
@click.argument("text")
@click.option("--scheme", type=SCHEMES, default="uper", show_default=True)
@credential_limits
@fingerprint_length_option
def inspect_cmd(text, scheme, max_ufrag, max_pwd, fingerprint_length):
    """Show the record carried by a Base45 string."""
    try:
        decoder = SignalDecoder(scheme=scheme, verify_integrity=False,
                                max_ufrag=max_ufrag, max_pwd=max_pwd,
                                fingerprint_length=fingerprint_length)
        result = decoder.decode(_read_text(text))
    except QRSError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps({
        "record": result["record"].to_dict(),
        "crc_valid": result["crc_valid"],
        "complete": result["complete"],
        "validation_errors": result["validation_errors"],
        "size_payload": result["size_payload"],
        "size_text": result["size_text"],
    }, **CANONICAL_JSON_KW))


@main.command("size")
@click.argument("sdp_file", type=click.File("r"))
@click.option("--role", type=ROLES, default="offer", show_default=True)
@click.option("--ec-level", type=click.Choice(["L", "M", "Q", "H"], case_sensitive=False),
              default="M", show_default=True)
def size_cmd(sdp_file, role, ec_level):
    """Compare QR sizes for every scheme against raw and zstd baselines."""
    try:
        report = size_report(sdp_file.read(), Role.parse(role), ec_level=ec_level)
    except QRSError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(report, **CANONICAL_JSON_KW))


if __name__ == "__main__":
    main()
