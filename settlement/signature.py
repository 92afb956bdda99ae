"""
PayFast request signing.

The gateway signs a parameter set by joining the non-empty fields as
``key=value`` pairs, urlencoded the way PHP's ``urlencode`` does it, with the
merchant passphrase appended last, and taking the MD5 of the result. The same
code is used to sign outbound payment requests and to check ITN callbacks.

MD5 is fixed by the gateway's wire protocol; do not reuse this scheme for
anything else.
"""

import hashlib
import hmac
from typing import Mapping
from urllib.parse import quote_plus

from settlement.errors import SignatureMismatch

SIGNATURE_FIELD = "signature"


def php_urlencode(value: str) -> str:
    # quote_plus leaves "~" bare; PHP encodes it.
    return quote_plus(value, safe="").replace("~", "%7E")


def canonicalize(params: Mapping[str, object], passphrase: str = "") -> str:
    pairs = []
    for key in sorted(params):
        if key == SIGNATURE_FIELD:
            continue
        value = params[key]
        if value is None:
            continue
        value = str(value).strip()
        if value == "":
            continue
        pairs.append(f"{key}={php_urlencode(value)}")

    if passphrase:
        pairs.append(f"passphrase={php_urlencode(passphrase.strip())}")
    return "&".join(pairs)


def sign(params: Mapping[str, object], passphrase: str = "") -> str:
    payload = canonicalize(params, passphrase).encode("utf-8")
    return hashlib.md5(payload).hexdigest()


def verify(params: Mapping[str, object], passphrase: str, provided: str) -> bool:
    """Constant-time check of ``provided`` against the expected signature."""
    if not provided:
        return False
    expected = sign(params, passphrase)
    return hmac.compare_digest(
        expected.encode("ascii"), provided.strip().lower().encode("utf-8")
    )


def require_valid(params: Mapping[str, object], passphrase: str, provided: str) -> None:
    if not verify(params, passphrase, provided):
        raise SignatureMismatch("Signature does not match the received parameters")
