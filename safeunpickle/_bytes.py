"""Byte-level decoding — fixed-width numbers, long integers, text escapes.

Everything here is a pure function over a byte (or text) slice, except
ByteReader, which adapts the caller's byte source to the exact-length reads
the interpreter needs and keeps track of the stream offset.

Endianness is per field, not per platform:

    little-endian   every integer and length prefix
    big-endian      BINFLOAT (8-byte IEEE 754), and the float32 array
                    encoding used by array._array_reconstructor

The 4-byte integer decoder is signed while the 2-byte one is unsigned.
That asymmetry is how the protocol defines BININT vs BININT2; keep it.
"""

from __future__ import annotations

import io
import string
import struct
from typing import Any, Callable, List, Optional

from ._constants import ESCAPE_CONTEXT_CHARS, READ_CHUNK_SIZE
from ._errors import ERR_ESCAPE, ERR_MALFORMED, ERR_TRUNCATED, DecodeError


def _need(data: bytes, n: int, what: str) -> None:
    if len(data) < n:
        raise DecodeError(
            ERR_TRUNCATED,
            "too few bytes to decode {}: need {}, got {}".format(what, n, len(data)),
        )


# ── Fixed-width numbers ──────────────────────────────────────

def read_uint(data: bytes, width: int) -> int:
    """Decode a 2-byte unsigned or 4-byte signed little-endian integer."""
    if width == 2:
        _need(data, 2, "uint16")
        return struct.unpack("<H", data[:2])[0]
    if width == 4:
        _need(data, 4, "int32")
        return struct.unpack("<i", data[:4])[0]
    raise DecodeError(ERR_MALFORMED,
                      "invalid amount of bytes to convert to int: {}".format(width))


def read_int64(data: bytes) -> int:
    _need(data, 8, "int64")
    return struct.unpack("<q", data[:8])[0]


def read_uint32(data: bytes) -> int:
    _need(data, 4, "uint32")
    return struct.unpack("<I", data[:4])[0]


def read_uint64(data: bytes) -> int:
    _need(data, 8, "uint64")
    return struct.unpack("<Q", data[:8])[0]


def read_float64_bigendian(data: bytes) -> float:
    _need(data, 8, "float64")
    return struct.unpack(">d", data[:8])[0]


def read_float32_bigendian(data: bytes) -> float:
    _need(data, 4, "float32")
    return struct.unpack(">f", data[:4])[0]


def decode_arbitrary_precision_int(data: bytes) -> int:
    """Decode a two's-complement little-endian integer of any length.

    An empty payload is zero.  Python ints are unbounded, so there is no
    8-byte ceiling here: LONG4 payloads of any size decode exactly.
    """
    if not data:
        return 0
    return int.from_bytes(data, "little", signed=True)


# ── Protocol 0 text escapes ──────────────────────────────────
# STRING literals carry C-style escapes (what Python 2 repr() emitted);
# UNICODE literals carry raw-unicode-escape \u / \U sequences.  Both
# decoders only recognize the escapes their producer can emit and refuse
# everything else, quoting the literal so a corrupt stream is debuggable.

_SIMPLE_ESCAPES = {"\\": "\\", "n": "\n", "r": "\r", "t": "\t"}


def _escape_error(ch: str, text: str) -> DecodeError:
    snippet = text[:ESCAPE_CONTEXT_CHARS]
    return DecodeError(
        ERR_ESCAPE,
        "invalid escape sequence char {!r} in string \"{} [...]\" "
        "(possibly truncated)".format(ch, snippet),
    )


def _hex_escape(text: str, start: int, ndigits: int, marker: str) -> int:
    digits = text[start:start + ndigits]
    # int(x, 16) alone would accept signs, spaces and underscores.
    if len(digits) != ndigits or not all(c in string.hexdigits for c in digits):
        raise _escape_error(marker, text)
    return int(digits, 16)


def _decode_escapes(text: str, hex_escapes: dict, extra: dict) -> str:
    if "\\" not in text:
        return text
    out: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch != "\\":
            out.append(ch)
            i += 1
            continue
        if i + 1 >= n:
            raise _escape_error("\\", text)
        esc = text[i + 1]
        if esc in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[esc])
            i += 2
        elif esc in extra:
            out.append(extra[esc])
            i += 2
        elif esc in hex_escapes:
            width = hex_escapes[esc]
            cp = _hex_escape(text, i + 2, width, esc)
            if cp > 0x10FFFF:
                raise _escape_error(esc, text)
            out.append(chr(cp))
            i += 2 + width
        else:
            raise _escape_error(esc, text)
    return "".join(out)


def decode_c_escapes(text: str) -> str:
    r"""Expand \\ \n \r \t \' and \xHH in a protocol 0 STRING literal."""
    return _decode_escapes(text, {"x": 2}, {"'": "'"})


def decode_unicode_escapes(text: str) -> str:
    r"""Expand \\ \n \r \t \uHHHH and \UHHHHHHHH in a UNICODE literal."""
    return _decode_escapes(text, {"u": 4, "U": 8}, {})


def decode_raw_string(data: bytes) -> str:
    """8-bit-per-char legacy string: each byte becomes the same code point."""
    return data.decode("latin-1")


def decode_utf8(data: bytes) -> str:
    # surrogatepass: CPython writes lone surrogates through BINUNICODE.
    try:
        return data.decode("utf-8", "surrogatepass")
    except UnicodeDecodeError as e:
        raise DecodeError(ERR_MALFORMED, "invalid utf-8 in text payload: {}".format(e)) from None


# ── Byte source ──────────────────────────────────────────────

class ByteReader:
    """Exact-length reads over bytes or a binary file-like object.

    Short reads are retried until the source reports end of stream, so
    sockets and pipes that return partial chunks behave like files.  The
    reader never asks the source for more than READ_CHUNK_SIZE at once.
    """

    def __init__(self, source: Any) -> None:
        if isinstance(source, (bytes, bytearray, memoryview)):
            source = io.BytesIO(bytes(source))
        read = getattr(source, "read", None)
        if read is None:
            raise TypeError(
                "byte source must be bytes-like or have a read() method, got {}"
                .format(type(source).__name__)
            )
        self._read: Callable[[int], Optional[bytes]] = read
        self._readline: Optional[Callable[[], bytes]] = getattr(source, "readline", None)
        self.offset = 0

    def read_opcode(self) -> bytes:
        b = self._read(1)
        if not b:
            raise DecodeError(ERR_TRUNCATED, "premature end of stream")
        self.offset += 1
        return b

    def read(self, n: int) -> bytes:
        if n < 0:
            raise DecodeError(ERR_MALFORMED, "negative byte count {}".format(n))
        parts: List[bytes] = []
        remaining = n
        while remaining > 0:
            chunk = self._read(min(remaining, READ_CHUNK_SIZE))
            if not chunk:
                raise DecodeError(
                    ERR_TRUNCATED,
                    "premature end of stream: expected {} more bytes".format(remaining),
                )
            parts.append(chunk)
            remaining -= len(chunk)
            self.offset += len(chunk)
        return b"".join(parts)

    def readline(self) -> bytes:
        """Read one newline-terminated text operand, without the newline."""
        if self._readline is not None:
            line = self._readline()
        else:
            buf = bytearray()
            while True:
                b = self._read(1)
                if not b:
                    break
                buf += b
                if b == b"\n":
                    break
            line = bytes(buf)
        self.offset += len(line)
        if not line.endswith(b"\n"):
            raise DecodeError(ERR_TRUNCATED, "premature end of stream in text line")
        return line[:-1]
