"""safeunpickle — decode Python pickles without running Python's unpickler.

Reads pickle protocols 0 through 5 into plain Python values.  Classes named
in the stream are never imported: each (module, name) pair is looked up in
a constructor registry, and anything unregistered decodes to a
GenericRecord holding its fields plus a "__class__" label.

Quick start:
    >>> from safeunpickle import decode
    >>> decode(b"\\x80\\x02]q\\x00(K\\x01K\\x02e.")
    [1, 2]

Custom classes plug in through the registry:

    from safeunpickle import register_constructor
    register_constructor("myapp.models", "Point", Point)

Shared references and cycles come out aliased, exactly as they were
pickled: a list that contains itself decodes to a list that contains
itself.
"""

from __future__ import annotations

from typing import Optional

from ._bytes import (
    decode_arbitrary_precision_int,
    decode_c_escapes,
    decode_unicode_escapes,
    read_float32_bigendian,
    read_float64_bigendian,
    read_int64,
    read_uint,
    read_uint32,
    read_uint64,
)
from ._core import Unpickler, decode
from ._errors import (
    ERR_CONSTRUCTOR,
    ERR_ESCAPE,
    ERR_MALFORMED,
    ERR_MEMO,
    ERR_OVERFLOW,
    ERR_STACK,
    ERR_TRUNCATED,
    ERR_UNKNOWN_OPCODE,
    ERR_UNSUPPORTED,
    DecodeError,
)
from ._memo import MemoTable
from ._objects import GenericRecord, GlobalRef
from ._projection import to_plain
from ._registry import (
    Constructor,
    ConstructorRegistry,
    PersistentIdResolver,
    default_registry,
)

__version__ = "1.0.0"

__all__ = [
    # Decoding
    "decode",
    "Unpickler",
    # Registry
    "register_constructor",
    "register_extension",
    "set_persistent_resolver",
    "ConstructorRegistry",
    "default_registry",
    # Values
    "GenericRecord",
    "GlobalRef",
    "MemoTable",
    "to_plain",
    # Byte decoders
    "read_uint",
    "read_int64",
    "read_uint32",
    "read_uint64",
    "read_float64_bigendian",
    "read_float32_bigendian",
    "decode_arbitrary_precision_int",
    "decode_c_escapes",
    "decode_unicode_escapes",
    # Exception
    "DecodeError",
    # Error codes
    "ERR_TRUNCATED",
    "ERR_UNKNOWN_OPCODE",
    "ERR_STACK",
    "ERR_MEMO",
    "ERR_OVERFLOW",
    "ERR_ESCAPE",
    "ERR_CONSTRUCTOR",
    "ERR_UNSUPPORTED",
    "ERR_MALFORMED",
]


# ── Process-wide registration ─────────────────────────────────
# These act on default_registry, which decode() uses when no registry is
# passed.  Code that wants isolation builds its own ConstructorRegistry and
# hands it to decode(..., registry=...).

def register_constructor(namespace: str, name: str, constructor: Constructor) -> None:
    """Route construction of namespace.name through constructor.

    The constructor receives the positional arguments from the stream
    (REDUCE / NEWOBJ / INST / OBJ) and returns the decoded value.  If the
    stream then applies state with BUILD, the returned object's
    __setstate__ is called with it when present.
    """
    default_registry.register(namespace, name, constructor)


def register_extension(code: int, namespace: str, name: str) -> None:
    """Map an EXT1/EXT2/EXT4 extension code to namespace.name."""
    default_registry.register_extension(code, namespace, name)


def set_persistent_resolver(resolver: Optional[PersistentIdResolver]) -> None:
    """Install the function that resolves persistent ids (None removes it)."""
    default_registry.set_persistent_resolver(resolver)
