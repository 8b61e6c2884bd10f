"""Envelope Format - persisted shape of one encrypted field

Self-Explanatory: ``{"cipher": "...", "iv": "..."}`` stored as JSON text.
Why: The HSM returns AES-CBC ciphertext and IV separately; both are needed
to decrypt, so they travel together in one column.
How: ``parse_envelope`` is the only place that decides whether stored text is
an envelope or legacy plaintext written before encryption was enabled.

Known limitation:
    A legacy plaintext value that is itself a JSON object with non-empty
    ``cipher`` and ``iv`` strings is indistinguishable from an envelope and
    will be sent to the HSM (and fail) instead of passing through.
"""

import json
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Envelope(BaseModel):
    """Opaque ciphertext + IV pair produced by one encrypt call"""

    model_config = ConfigDict(frozen=True)

    cipher: str
    iv: str

    def to_text(self) -> str:
        """Canonical storage form"""
        return json.dumps({"cipher": self.cipher, "iv": self.iv})


def parse_envelope(text: str) -> Optional[Envelope]:
    """Parse stored text into an Envelope

    Returns:
        The Envelope, or None when the text is legacy plaintext (not JSON,
        not an object, or missing/empty ``cipher``/``iv``)
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return None

    if not isinstance(data, dict):
        return None

    cipher = data.get("cipher")
    iv = data.get("iv")
    if not cipher or not iv or not isinstance(cipher, str) or not isinstance(iv, str):
        return None

    return Envelope(cipher=cipher, iv=iv)
