"""Byte-escaping codec that keeps the frame terminator out of payloads.

Three byte values are reserved on the wire: ``ESCAPE``, ``STAND_IN`` and
``TERMINATOR``. A run of ``k`` escape bytes followed by a stand-in byte decodes to
``k // 2`` literal escape bytes and then a terminator (``k`` odd) or a stand-in
(``k`` even). Escape bytes not followed by a stand-in are literal.
"""

from __future__ import annotations

ESCAPE = 0x10
STAND_IN = 0x1A
TERMINATOR = 0x00


def decode(data: bytes) -> bytes:
    """Undo the escaping applied by the sender. Never raises."""
    out = bytearray()
    esc_len = 0
    for byte in data:
        if byte == ESCAPE:
            esc_len += 1
        elif byte == STAND_IN:
            out.extend(bytes([ESCAPE]) * (esc_len // 2))
            out.append(TERMINATOR if esc_len % 2 else STAND_IN)
            esc_len = 0
        else:
            out.extend(bytes([ESCAPE]) * esc_len)
            out.append(byte)
            esc_len = 0
    out.extend(bytes([ESCAPE]) * esc_len)
    return bytes(out)


def encode(data: bytes) -> bytes:
    """Escape ``data`` so that ``TERMINATOR`` never appears in the output."""
    out = bytearray()
    esc_len = 0
    for byte in data:
        if byte == ESCAPE:
            esc_len += 1
        elif byte == STAND_IN:
            out.extend(bytes([ESCAPE]) * (2 * esc_len))
            out.append(STAND_IN)
            esc_len = 0
        elif byte == TERMINATOR:
            out.extend(bytes([ESCAPE]) * (2 * esc_len + 1))
            out.append(STAND_IN)
            esc_len = 0
        else:
            out.extend(bytes([ESCAPE]) * esc_len)
            out.append(byte)
            esc_len = 0
    out.extend(bytes([ESCAPE]) * esc_len)
    return bytes(out)
