"""Decode error codes and the exception carrying them.

Every failure aborts the whole decode.  There is no partial result: the
half-built object graph is dropped together with the interpreter state,
and the caller gets a single DecodeError naming what went wrong and, once
the interpreter has seen it, where.
"""

from __future__ import annotations

from typing import List, Optional

# ── Error codes ──────────────────────────────────────────────
# Grep-friendly; tests compare against these, never against messages.

ERR_TRUNCATED: str = "ERR_TRUNCATED"            # stream ended inside a field
ERR_UNKNOWN_OPCODE: str = "ERR_UNKNOWN_OPCODE"  # byte is not an opcode
ERR_STACK: str = "ERR_STACK"                    # underflow / missing mark
ERR_MEMO: str = "ERR_MEMO"                      # GET of an unset memo index
ERR_OVERFLOW: str = "ERR_OVERFLOW"              # reserved: ints are unbounded
ERR_ESCAPE: str = "ERR_ESCAPE"                  # bad escape in a text literal
ERR_CONSTRUCTOR: str = "ERR_CONSTRUCTOR"        # constructor refused its args
ERR_UNSUPPORTED: str = "ERR_UNSUPPORTED"        # feature needs a missing hook
ERR_MALFORMED: str = "ERR_MALFORMED"            # operand does not parse

ALL_CODES: List[str] = [
    ERR_TRUNCATED,
    ERR_UNKNOWN_OPCODE,
    ERR_STACK,
    ERR_MEMO,
    ERR_OVERFLOW,
    ERR_ESCAPE,
    ERR_CONSTRUCTOR,
    ERR_UNSUPPORTED,
    ERR_MALFORMED,
]


class DecodeError(Exception):
    """Exception for every pickle decoding failure.

    `.code` is one of the ERR_* strings above.  `.offset` is the byte
    offset of the opcode that was executing when the failure happened; it
    is None for errors raised outside an interpreter run (e.g. calling a
    byte decoder function directly).
    """

    def __init__(self, code: str, msg: str = "",
                 offset: Optional[int] = None) -> None:
        super().__init__(msg or code)
        self.code = code
        self.msg = msg or code
        self.offset = offset

    def __str__(self) -> str:
        if self.offset is None:
            return self.msg
        return "{} (at offset {})".format(self.msg, self.offset)
