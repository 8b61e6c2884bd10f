"""Demo/Degraded Mode - non-cryptographic stand-in for the HSM

Self-Explanatory: Lets the portal run end-to-end without real HSM credentials.
Why: Local demos and CI have no Fortanix account; the rest of the system
must not notice which mode is active.
How: ``encrypted:<plaintext>:<epoch-ms>`` base64-encoded. Reversible, tagged,
NOT a security control.
"""

import base64
import binascii
import time
from typing import Optional

DEMO_TOKEN = "demo-access-token"
DEMO_TOKEN_TTL_SECONDS = 3600

_TAG = "encrypted:"

# Placeholder fragments shipped in sample env files
_PLACEHOLDER_PATTERNS = ("fff-ff-ff-ff-ff-f", "your-")
_MIN_REAL_KEY_LENGTH = 10


def is_placeholder_api_key(api_key: Optional[str]) -> bool:
    """Heuristic used to switch the API-key flow into demo mode

    Note: a legitimate key shorter than 10 characters, or one containing a
    placeholder fragment, is treated as a demo key as well.
    """
    if not api_key or len(api_key) < _MIN_REAL_KEY_LENGTH:
        return True
    return any(pattern in api_key for pattern in _PLACEHOLDER_PATTERNS)


def demo_encrypt(plaintext: str, now_ms: Optional[int] = None) -> str:
    """Produce the tagged demo placeholder for ``plaintext``"""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    raw = f"{_TAG}{plaintext}:{stamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def demo_decrypt(text: str) -> Optional[str]:
    """Invert ``demo_encrypt``

    Returns:
        The original plaintext, or None if ``text`` was not produced by
        ``demo_encrypt``
    """
    try:
        decoded = base64.b64decode(text.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None

    if not decoded.startswith(_TAG):
        return None

    body, sep, stamp = decoded[len(_TAG):].rpartition(":")
    if not sep or not stamp.isdigit():
        return None

    return body
