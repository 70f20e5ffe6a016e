"""Minimal DER walker: just enough of X.509 to lift out the SubjectPublicKeyInfo.

This is not a certificate parser. It does not validate the issuer chain,
the validity window, the subject alternative names or any extension; it only
skips the fixed sequence of TBSCertificate fields that precede the public key
and returns the SubjectPublicKeyInfo bytes verbatim.
"""
import base64
import binascii
import re
from typing import NamedTuple

from app.errors import CertParseFailed

TAG_INTEGER = 0x02
TAG_SEQUENCE = 0x30
TAG_EXPLICIT_VERSION = 0xA0  # [0] EXPLICIT, constructed

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----(.+?)-----END CERTIFICATE-----",
    re.DOTALL,
)


class Tlv(NamedTuple):
    tag: int
    start: int  # offset of the tag byte
    value_start: int
    end: int  # offset just past the value

    @property
    def length(self) -> int:
        return self.end - self.value_start


def read_tlv(data: bytes, offset: int) -> Tlv:
    """Read one (tag, length, value) triple starting at ``offset``."""
    if offset + 2 > len(data):
        raise CertParseFailed("truncated element header", offset=offset)
    tag = data[offset]
    if tag & 0x1F == 0x1F:
        raise CertParseFailed("multi-byte tags are not supported", offset=offset)
    pos = offset + 1
    first = data[pos]
    pos += 1
    if first < 0x80:
        length = first
    else:
        num_bytes = first & 0x7F
        if num_bytes == 0:
            raise CertParseFailed("indefinite length is not valid DER", offset=offset)
        if num_bytes > 4 or pos + num_bytes > len(data):
            raise CertParseFailed("unsupported length encoding", offset=offset)
        length = int.from_bytes(data[pos:pos + num_bytes], "big")
        pos += num_bytes
    end = pos + length
    if end > len(data):
        raise CertParseFailed("element overruns buffer", offset=offset)
    return Tlv(tag=tag, start=offset, value_start=pos, end=end)


def _expect(data: bytes, offset: int, tag: int, field: str) -> Tlv:
    tlv = read_tlv(data, offset)
    if tlv.tag != tag:
        raise CertParseFailed(f"unexpected tag 0x{tlv.tag:02x} for {field}", offset=offset)
    return tlv


def extract_spki(der: bytes) -> bytes:
    """Return the SubjectPublicKeyInfo SEQUENCE (header included) of a DER certificate."""
    cert = _expect(der, 0, TAG_SEQUENCE, "certificate")
    tbs = _expect(der, cert.value_start, TAG_SEQUENCE, "tbsCertificate")

    offset = tbs.value_start
    if offset < tbs.end and der[offset] == TAG_EXPLICIT_VERSION:
        offset = read_tlv(der, offset).end

    offset = _expect(der, offset, TAG_INTEGER, "serialNumber").end
    for field in ("signature", "issuer", "validity", "subject"):
        offset = _expect(der, offset, TAG_SEQUENCE, field).end

    spki = _expect(der, offset, TAG_SEQUENCE, "subjectPublicKeyInfo")
    if spki.end > tbs.end:
        raise CertParseFailed("subjectPublicKeyInfo extends past tbsCertificate")
    return der[spki.start:spki.end]


def pem_to_der(pem: str) -> bytes:
    """Decode the first (leaf) certificate of a PEM bundle."""
    match = _PEM_CERT_RE.search(pem)
    if not match:
        raise CertParseFailed("no PEM certificate block")
    body = re.sub(r"[^A-Za-z0-9+/=]", "", match.group(1))
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CertParseFailed(f"bad base64 in certificate: {e}") from e


def spki_from_pem(pem: str) -> bytes:
    return extract_spki(pem_to_der(pem))
