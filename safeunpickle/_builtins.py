"""Default constructors for the standard types pickle writes through REDUCE.

A pickle producer has no opcode for a set before protocol 4, for bytes
before protocol 3, or for Decimal and datetime at all: it emits a GLOBAL
naming the type and REDUCEs it over a tuple of plain values.  These
functions rebuild those values from the plain arguments.  They look only at
their arguments; none of them imports or calls anything named by the stream.

Each name is registered under its Python 3 module and, where one existed,
its Python 2 spelling (__builtin__, copy_reg) so that old pickles decode
the same way.
"""

from __future__ import annotations

import array
import codecs
import collections
import datetime
import decimal
import struct
from typing import Any, Dict, List, Tuple

from ._errors import ERR_CONSTRUCTOR, DecodeError
from ._objects import CLASS_KEY, STATE_KEY, GenericRecord, GlobalRef

_BYTES_LIKE = (bytes, bytearray)
_SEQUENCE_INIT = (bytes, bytearray, str, list, tuple)

# Codecs _codecs.encode may apply.  Protocol 2 writes bytes as
# _codecs.encode(text, "latin1"); nothing else needs more than this.
_ALLOWED_CODECS = {"iso8859-1", "utf-8", "ascii"}


def _fail(msg: str) -> DecodeError:
    return DecodeError(ERR_CONSTRUCTOR, msg)


# ── builtins ─────────────────────────────────────────────────

def _make_set(iterable: Any = ()) -> set:
    return set(iterable)


def _make_frozenset(iterable: Any = ()) -> frozenset:
    return frozenset(iterable)


def _to_bytes(data: Any, encoding: Any, what: str) -> bytes:
    # An int initializer would allocate that many zero bytes; never allowed.
    if not isinstance(data, _SEQUENCE_INIT):
        raise _fail("{} initializer must be bytes, str or a sequence, got {}"
                    .format(what, type(data).__name__))
    if isinstance(data, str):
        return _codecs_encode(data, encoding if encoding is not None else "latin-1")
    return bytes(data)


def _make_bytearray(data: Any = b"", encoding: Any = None) -> bytearray:
    return bytearray(_to_bytes(data, encoding, "bytearray"))


def _make_bytes(data: Any = b"", encoding: Any = None) -> bytes:
    return _to_bytes(data, encoding, "bytes")


def _make_complex(real: Any = 0.0, imag: Any = 0.0) -> complex:
    for part in (real, imag):
        if isinstance(part, bool) or not isinstance(part, (int, float)):
            raise _fail("complex parts must be numbers, got {}".format(type(part).__name__))
    return complex(real, imag)


def _codecs_encode(text: Any, encoding: Any = "utf-8") -> bytes:
    if not isinstance(text, str) or not isinstance(encoding, str):
        raise _fail("_codecs.encode expects (str, str)")
    try:
        codec = codecs.lookup(encoding).name
    except LookupError:
        raise _fail("unknown encoding {!r}".format(encoding)) from None
    if codec not in _ALLOWED_CODECS:
        raise _fail("encoding {!r} not allowed".format(encoding))
    return text.encode(codec)


def _make_decimal(value: Any = "0") -> decimal.Decimal:
    if not isinstance(value, (str, int)):
        raise _fail("Decimal expects a string, got {}".format(type(value).__name__))
    try:
        return decimal.Decimal(value)
    except decimal.InvalidOperation:
        raise _fail("invalid Decimal literal {!r}".format(value)) from None


# ── datetime ─────────────────────────────────────────────────
# The datetime types pickle a packed big-endian byte state:
#   date      YY YY MM DD
#   time      HH MM SS US US US          (fold in the high bit of HH)
#   datetime  YY YY MM DD HH MM SS US US US  (fold in the high bit of MM)
# Protocols 0-2 carry the state as a latin-1 str instead of bytes.

def _state_bytes(value: Any, size: int, what: str) -> bytes:
    if isinstance(value, str):
        value = value.encode("latin-1")
    if not isinstance(value, _BYTES_LIKE) or len(value) != size:
        raise _fail("invalid {} state".format(what))
    return bytes(value)


def _is_state(args: Tuple[Any, ...]) -> bool:
    return bool(args) and isinstance(args[0], (bytes, bytearray, str))


def _tzinfo(value: Any) -> Any:
    if value is None or isinstance(value, datetime.tzinfo):
        return value
    raise _fail("unsupported tzinfo {!r}".format(value))


def _microseconds(b: bytes) -> int:
    return (b[0] << 16) | (b[1] << 8) | b[2]


def _make_date(*args: Any) -> datetime.date:
    if _is_state(args) and len(args) == 1:
        b = _state_bytes(args[0], 4, "date")
        return datetime.date(b[0] * 256 + b[1], b[2], b[3])
    return datetime.date(*args)


def _make_time(*args: Any) -> datetime.time:
    if _is_state(args) and len(args) <= 2:
        b = _state_bytes(args[0], 6, "time")
        tz = _tzinfo(args[1]) if len(args) == 2 else None
        return datetime.time(b[0] & 0x7F, b[1], b[2], _microseconds(b[3:6]),
                             tz, fold=b[0] >> 7)
    return datetime.time(*args)


def _make_datetime(*args: Any) -> datetime.datetime:
    if _is_state(args) and len(args) <= 2:
        b = _state_bytes(args[0], 10, "datetime")
        tz = _tzinfo(args[1]) if len(args) == 2 else None
        return datetime.datetime(b[0] * 256 + b[1], b[2] & 0x7F, b[3],
                                 b[4], b[5], b[6], _microseconds(b[7:10]),
                                 tz, fold=b[2] >> 7)
    return datetime.datetime(*args)


def _make_timedelta(days: Any = 0, seconds: Any = 0,
                    microseconds: Any = 0) -> datetime.timedelta:
    return datetime.timedelta(days, seconds, microseconds)


def _make_timezone(offset: Any, name: Any = None) -> datetime.timezone:
    if not isinstance(offset, datetime.timedelta):
        raise _fail("timezone offset must be a timedelta")
    if name is None:
        return datetime.timezone(offset)
    return datetime.timezone(offset, name)


# ── array ────────────────────────────────────────────────────
# Machine format codes written by array.__reduce_ex__ for protocol 3+.

_MACHINE_FORMATS: Dict[int, str] = {
    0: "<B", 1: "<b",
    2: "<H", 3: ">H", 4: "<h", 5: ">h",
    6: "<I", 7: ">I", 8: "<i", 9: ">i",
    10: "<Q", 11: ">Q", 12: "<q", 13: ">q",
    14: "<f", 15: ">f", 16: "<d", 17: ">d",
}
_MACHINE_TEXT_FORMATS: Dict[int, str] = {
    18: "utf-16-le", 19: "utf-16-be", 20: "utf-32-le", 21: "utf-32-be",
}


def _new_array(typecode: Any, values: Any) -> array.array:
    if not isinstance(typecode, str) or typecode not in array.typecodes:
        raise _fail("invalid array typecode {!r}".format(typecode))
    try:
        return array.array(typecode, values)
    except OverflowError as e:
        raise _fail("array value out of range for typecode {!r}: {}".format(typecode, e)) from e


def _make_array(typecode: Any, initializer: Any = ()) -> array.array:
    if not isinstance(initializer, _SEQUENCE_INIT):
        raise _fail("array initializer must be a sequence")
    return _new_array(typecode, initializer)


def _array_reconstructor(cls: Any, typecode: Any, mformat_code: Any,
                         items: Any) -> array.array:
    if not (isinstance(cls, GlobalRef) and cls.qualname == "array.array"):
        raise _fail("array reconstructor called with {!r}".format(cls))
    if not isinstance(items, _BYTES_LIKE):
        raise _fail("array items must be bytes")
    if mformat_code in _MACHINE_TEXT_FORMATS:
        return _new_array(typecode, bytes(items).decode(_MACHINE_TEXT_FORMATS[mformat_code]))
    fmt = _MACHINE_FORMATS.get(mformat_code)
    if fmt is None:
        raise _fail("unknown array machine format code {!r}".format(mformat_code))
    if len(items) % struct.calcsize(fmt):
        raise _fail("array payload length {} is not a multiple of item size".format(len(items)))
    values: List[Any] = [v for (v,) in struct.iter_unpack(fmt, items)]
    return _new_array(typecode, values)


# ── copyreg ──────────────────────────────────────────────────

_MAPPING_BASES = frozenset(["builtins.dict", "__builtin__.dict"])
_SEQUENCE_BASES = frozenset(["builtins.list", "__builtin__.list"])


def _reconstructor(cls: Any, base: Any, state: Any = None) -> Any:
    """Protocol 0/1 instance creation: copyreg._reconstructor(cls, base, state).

    The class is called with no arguments through its own registered
    constructor, so an unknown class still becomes a GenericRecord.  A
    non-None state is the builtin base's value (the items of a dict or
    list subclass) and is folded into the new object.
    """
    if not isinstance(cls, GlobalRef):
        raise _fail("_reconstructor expects a class reference, got {!r}".format(cls))
    obj = cls()
    if state is None:
        return obj
    base_name = base.qualname if isinstance(base, GlobalRef) else repr(base)

    if isinstance(obj, GenericRecord):
        if base_name in _MAPPING_BASES and isinstance(state, dict):
            obj.update(state)
            obj[CLASS_KEY] = obj.class_name
        else:
            obj[STATE_KEY] = state
        return obj
    if base_name in _MAPPING_BASES and hasattr(obj, "update"):
        obj.update(state)
    elif base_name in _SEQUENCE_BASES and hasattr(obj, "extend"):
        obj.extend(state)
    else:
        raise _fail("cannot rebuild {} from {} state".format(cls.qualname, base_name))
    return obj


_DEFAULTS: List[Tuple[str, str, Any]] = [
    ("_codecs", "encode", _codecs_encode),
    ("decimal", "Decimal", _make_decimal),
    ("collections", "OrderedDict", collections.OrderedDict),
    ("datetime", "date", _make_date),
    ("datetime", "time", _make_time),
    ("datetime", "datetime", _make_datetime),
    ("datetime", "timedelta", _make_timedelta),
    ("datetime", "timezone", _make_timezone),
    ("array", "array", _make_array),
    ("array", "_array_reconstructor", _array_reconstructor),
    ("copyreg", "_reconstructor", _reconstructor),
    ("copy_reg", "_reconstructor", _reconstructor),
]

for _module in ("builtins", "__builtin__"):
    _DEFAULTS.extend([
        (_module, "set", _make_set),
        (_module, "frozenset", _make_frozenset),
        (_module, "bytearray", _make_bytearray),
        (_module, "bytes", _make_bytes),
        (_module, "complex", _make_complex),
    ])


def register_builtins(registry: Any) -> None:
    """Register every default constructor on registry."""
    for namespace, name, ctor in _DEFAULTS:
        registry.register(namespace, name, ctor)
