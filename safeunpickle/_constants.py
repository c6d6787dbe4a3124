"""Pickle protocol constants — opcode bytes, protocol range, decoder limits.

Opcodes are grouped by the protocol version that introduced them.  The
one-character names follow the mnemonics used by pickletools so that a
disassembly listing can be read side by side with the dispatch table.
"""

from __future__ import annotations

HIGHEST_PROTOCOL: int = 5

# ── Protocol 0 (text) and 1 (binary) ─────────────────────────
MARK: bytes = b"("
STOP: bytes = b"."
POP: bytes = b"0"
POP_MARK: bytes = b"1"
DUP: bytes = b"2"
FLOAT: bytes = b"F"
INT: bytes = b"I"
BININT: bytes = b"J"
BININT1: bytes = b"K"
LONG: bytes = b"L"
BININT2: bytes = b"M"
NONE: bytes = b"N"
PERSID: bytes = b"P"
BINPERSID: bytes = b"Q"
REDUCE: bytes = b"R"
STRING: bytes = b"S"
BINSTRING: bytes = b"T"
SHORT_BINSTRING: bytes = b"U"
UNICODE: bytes = b"V"
BINUNICODE: bytes = b"X"
APPEND: bytes = b"a"
BUILD: bytes = b"b"
GLOBAL: bytes = b"c"
DICT: bytes = b"d"
EMPTY_DICT: bytes = b"}"
APPENDS: bytes = b"e"
GET: bytes = b"g"
BINGET: bytes = b"h"
INST: bytes = b"i"
LONG_BINGET: bytes = b"j"
LIST: bytes = b"l"
EMPTY_LIST: bytes = b"]"
OBJ: bytes = b"o"
PUT: bytes = b"p"
BINPUT: bytes = b"q"
LONG_BINPUT: bytes = b"r"
SETITEM: bytes = b"s"
TUPLE: bytes = b"t"
EMPTY_TUPLE: bytes = b")"
SETITEMS: bytes = b"u"
BINFLOAT: bytes = b"G"

# INT spells booleans as "I01\n" / "I00\n" in protocol 0.
TEXT_TRUE: str = "01"
TEXT_FALSE: str = "00"

# ── Protocol 2 ───────────────────────────────────────────────
PROTO: bytes = b"\x80"
NEWOBJ: bytes = b"\x81"
EXT1: bytes = b"\x82"
EXT2: bytes = b"\x83"
EXT4: bytes = b"\x84"
TUPLE1: bytes = b"\x85"
TUPLE2: bytes = b"\x86"
TUPLE3: bytes = b"\x87"
NEWTRUE: bytes = b"\x88"
NEWFALSE: bytes = b"\x89"
LONG1: bytes = b"\x8a"
LONG4: bytes = b"\x8b"

# ── Protocol 3 ───────────────────────────────────────────────
BINBYTES: bytes = b"B"
SHORT_BINBYTES: bytes = b"C"

# ── Protocol 4 ───────────────────────────────────────────────
SHORT_BINUNICODE: bytes = b"\x8c"
BINUNICODE8: bytes = b"\x8d"
BINBYTES8: bytes = b"\x8e"
EMPTY_SET: bytes = b"\x8f"
ADDITEMS: bytes = b"\x90"
FROZENSET: bytes = b"\x91"
NEWOBJ_EX: bytes = b"\x92"
STACK_GLOBAL: bytes = b"\x93"
MEMOIZE: bytes = b"\x94"
FRAME: bytes = b"\x95"

# ── Protocol 5 ───────────────────────────────────────────────
BYTEARRAY8: bytes = b"\x96"
NEXT_BUFFER: bytes = b"\x97"
READONLY_BUFFER: bytes = b"\x98"

# ── Decoder limits ───────────────────────────────────────────
# Length prefixes are attacker-controlled.  Payloads are read in chunks of
# at most READ_CHUNK_SIZE so a forged 8-byte length on a short stream fails
# as truncated input instead of allocating the advertised size up front.
READ_CHUNK_SIZE: int = 1 << 20

# Malformed-escape messages quote at most this many characters of the
# offending literal.
ESCAPE_CONTEXT_CHARS: int = 80
