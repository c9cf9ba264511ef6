"""Decoders turn raw chunk bytes into text the detectors can match."""

import base64
import binascii
import re
from typing import List, Optional

# Base64 runs long enough to hide a credential
BASE64_RUN = re.compile(rb'[A-Za-z0-9+/]{20,}={0,2}')
PRINTABLE_RATIO = 0.95


class Decoder:
    name = "DECODER"

    def decode(self, data: bytes) -> Optional[str]:
        raise NotImplementedError


class PlainDecoder(Decoder):
    name = "PLAIN"

    def decode(self, data: bytes) -> Optional[str]:
        if not data:
            return None
        return data.decode('utf-8', errors='replace')


class Base64Decoder(Decoder):
    """
    Decodes every base64 run in the chunk that turns into printable text.

    Returns None when nothing decodes, so the engine can skip the detector
    pass for this decoder entirely.
    """
    name = "BASE64"

    def decode(self, data: bytes) -> Optional[str]:
        decoded = []
        for match in BASE64_RUN.finditer(data):
            candidate = match.group(0)
            candidate += b"=" * (-len(candidate) % 4)
            try:
                text = base64.b64decode(candidate, validate=True).decode('utf-8')
            except (binascii.Error, UnicodeDecodeError):
                continue
            if text and _is_printable(text):
                decoded.append(text)
        return "\n".join(decoded) if decoded else None


def _is_printable(text: str) -> bool:
    printable = sum(1 for ch in text if ch.isprintable() or ch in "\r\n\t")
    return printable / len(text) >= PRINTABLE_RATIO


def default_decoders() -> List[Decoder]:
    return [PlainDecoder(), Base64Decoder()]
