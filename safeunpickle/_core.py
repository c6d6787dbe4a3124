"""Opcode interpreter — the pickle virtual machine.

The interpreter reads one opcode byte at a time and runs its handler from
a dispatch table built once per class.  Its whole working state is:

    stack   decoded values, top at the end
    marks   stack depths saved by MARK; the latest one is the "fence" that
            ordinary pops may not cross
    memo    MemoTable of PUT / GET back-references

A run ends in exactly one of two ways: STOP pops the result, or a
DecodeError aborts the run.  Bytes after STOP are left in the source, so a
stream holding several pickles can be read with repeated load() calls.

Containers are ordinary mutable Python objects and the memo stores
references, not copies.  A list that is memoized right after EMPTY_LIST is
already reachable by GET while its items are still being appended, which
is how self-referencing structures decode without any special casing.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping, MutableSet
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from ._bytes import (
    ByteReader,
    decode_arbitrary_precision_int,
    decode_c_escapes,
    decode_raw_string,
    decode_unicode_escapes,
    decode_utf8,
    read_float64_bigendian,
    read_uint,
    read_uint32,
    read_uint64,
)
from ._constants import (
    ADDITEMS, APPEND, APPENDS, BINBYTES, BINBYTES8, BINFLOAT, BINGET, BININT,
    BININT1, BININT2, BINPERSID, BINPUT, BINSTRING, BINUNICODE, BINUNICODE8,
    BUILD, BYTEARRAY8, DICT, DUP, EMPTY_DICT, EMPTY_LIST, EMPTY_SET,
    EMPTY_TUPLE, ESCAPE_CONTEXT_CHARS, EXT1, EXT2, EXT4, FLOAT, FRAME,
    FROZENSET, GET, GLOBAL, HIGHEST_PROTOCOL, INST, INT, LIST, LONG, LONG1,
    LONG4, LONG_BINGET, LONG_BINPUT, MARK, MEMOIZE, NEWFALSE, NEWOBJ,
    NEWOBJ_EX, NEWTRUE, NEXT_BUFFER, NONE, OBJ, PERSID, POP, POP_MARK, PROTO,
    PUT, READONLY_BUFFER, REDUCE, SETITEM, SETITEMS, SHORT_BINBYTES,
    SHORT_BINSTRING, SHORT_BINUNICODE, STACK_GLOBAL, STOP, STRING, TEXT_FALSE,
    TEXT_TRUE, TUPLE, TUPLE1, TUPLE2, TUPLE3, UNICODE,
)
from ._errors import (
    ERR_CONSTRUCTOR,
    ERR_MALFORMED,
    ERR_STACK,
    ERR_TRUNCATED,
    ERR_UNKNOWN_OPCODE,
    ERR_UNSUPPORTED,
    DecodeError,
)
from ._memo import MemoTable
from ._objects import GlobalRef, apply_state
from ._registry import ConstructorRegistry, PersistentIdResolver, default_registry

logger = logging.getLogger(__name__)


class _Stop(Exception):
    """Raised by the STOP handler to carry the result out of the loop."""

    def __init__(self, value: Any) -> None:
        super().__init__()
        self.value = value


def _unhashable(e: Exception) -> DecodeError:
    return DecodeError(ERR_MALFORMED, "unhashable key or set item: {}".format(e))


class Unpickler:
    """Decode pickles (protocols 0-5) from a byte source.

    source           bytes-like, or a binary file-like with read(n)
    registry         ConstructorRegistry used for class resolution; the
                     process-wide default_registry when omitted
    persistent_load  resolver for PERSID / BINPERSID, overriding the
                     registry's resolver for this unpickler
    buffers          iterable of out-of-band buffers for NEXT_BUFFER
    """

    def __init__(self, source: Any, *,
                 registry: Optional[ConstructorRegistry] = None,
                 persistent_load: Optional[PersistentIdResolver] = None,
                 buffers: Optional[Iterable[Any]] = None) -> None:
        self._reader = ByteReader(source)
        self._registry = registry if registry is not None else default_registry
        self._persistent_load = persistent_load
        self._buffers: Optional[Iterator[Any]] = iter(buffers) if buffers is not None else None
        self._proto = 0
        self._op_offset = 0
        self._reset()

    def _reset(self) -> None:
        self._stack: List[Any] = []
        self._marks: List[int] = []
        self._memo = MemoTable()

    @property
    def offset(self) -> int:
        """Bytes consumed from the source so far."""
        return self._reader.offset

    @property
    def protocol(self) -> int:
        """Protocol announced by the last PROTO opcode (0 if none)."""
        return self._proto

    def load(self) -> Any:
        """Decode one pickle and return its value."""
        reader = self._reader
        dispatch = self.dispatch
        start = reader.offset
        self._proto = 0
        self._reset()
        try:
            while True:
                self._op_offset = reader.offset
                key = reader.read_opcode()
                handler = dispatch.get(key)
                if handler is None:
                    raise DecodeError(ERR_UNKNOWN_OPCODE,
                                      "invalid pickle opcode 0x{:02x}".format(key[0]))
                handler(self)
        except _Stop as stop:
            value = stop.value
        except DecodeError as e:
            if e.offset is None:
                e.offset = self._op_offset
            raise
        finally:
            # Drop the partial graph whether we finished or not.
            self._reset()
        logger.debug("decoded protocol %d pickle, %d bytes",
                     self._proto, reader.offset - start)
        return value

    # ── Stack discipline ─────────────────────────────────────

    def _fence(self) -> int:
        return self._marks[-1] if self._marks else 0

    def _pop(self) -> Any:
        if len(self._stack) <= self._fence():
            raise DecodeError(ERR_STACK, "unpickling stack underflow")
        return self._stack.pop()

    def _top(self) -> Any:
        if len(self._stack) <= self._fence():
            raise DecodeError(ERR_STACK, "unpickling stack underflow")
        return self._stack[-1]

    def _pop_mark(self) -> List[Any]:
        if not self._marks:
            raise DecodeError(ERR_STACK, "could not find MARK")
        depth = self._marks.pop()
        items = self._stack[depth:]
        del self._stack[depth:]
        return items

    # ── Operand helpers ──────────────────────────────────────

    def _read_byte(self) -> int:
        return self._reader.read(1)[0]

    def _read_length(self, nbytes: int) -> int:
        raw = self._reader.read(nbytes)
        if nbytes == 1:
            return raw[0]
        if nbytes == 4:
            return read_uint32(raw)
        return read_uint64(raw)

    def _read_signed_length(self, what: str) -> int:
        n = read_uint(self._reader.read(4), 4)
        if n < 0:
            raise DecodeError(ERR_MALFORMED, "{} has negative byte count {}".format(what, n))
        return n

    def _readline_text(self, what: str, encoding: str = "ascii") -> str:
        data = self._reader.readline()
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            raise DecodeError(ERR_MALFORMED,
                              "{} operand is not valid {}".format(what, encoding)) from None

    def _parse_text(self, conv: Callable[[str], Any], what: str, text: str) -> Any:
        try:
            return conv(text)
        except ValueError:
            raise DecodeError(
                ERR_MALFORMED,
                "invalid {} literal {!r}".format(what, text[:ESCAPE_CONTEXT_CHARS]),
            ) from None

    def _read_text_index(self, what: str) -> int:
        return self._parse_text(int, what, self._readline_text(what))

    # ── Construction ─────────────────────────────────────────

    def _find_global(self, namespace: str, name: str) -> GlobalRef:
        return GlobalRef(namespace, name, self._registry.resolve(namespace, name))

    def _construct(self, func: Any, args: Any,
                   kwargs: Optional[Dict[str, Any]] = None) -> Any:
        if not isinstance(func, GlobalRef):
            raise DecodeError(ERR_CONSTRUCTOR,
                              "cannot call {}: not a class reference".format(type(func).__name__))
        if not isinstance(args, tuple):
            raise DecodeError(ERR_CONSTRUCTOR,
                              "arguments for {} must be a tuple, got {}"
                              .format(func.qualname, type(args).__name__))
        try:
            return func(*args, **(kwargs or {}))
        except DecodeError:
            raise
        except (TypeError, ValueError, OverflowError) as e:
            raise DecodeError(ERR_CONSTRUCTOR,
                              "constructing {} failed: {}".format(func.qualname, e)) from e

    def _persistent(self, pid: Any) -> Any:
        resolver = self._persistent_load or self._registry.persistent_resolver
        if resolver is None:
            raise DecodeError(ERR_UNSUPPORTED,
                              "persistent id encountered but no persistent resolver is set")
        return resolver(pid)

    # ── Container mutation ───────────────────────────────────

    def _extend(self, target: Any, items: List[Any]) -> None:
        if isinstance(target, list):
            target.extend(items)
            return
        extend = getattr(target, "extend", None)
        if not callable(extend):
            raise DecodeError(ERR_MALFORMED,
                              "cannot append to {}".format(type(target).__name__))
        try:
            extend(items)
        except (TypeError, ValueError, OverflowError) as e:
            raise DecodeError(ERR_CONSTRUCTOR, "appending failed: {}".format(e)) from e

    def _set_items(self, target: Any, items: List[Any]) -> None:
        if len(items) % 2:
            raise DecodeError(ERR_STACK, "odd number of items for key/value run")
        if not isinstance(target, (dict, MutableMapping)):
            raise DecodeError(ERR_MALFORMED,
                              "cannot set items on {}".format(type(target).__name__))
        try:
            for i in range(0, len(items), 2):
                target[items[i]] = items[i + 1]
        except (TypeError, ValueError) as e:
            raise _unhashable(e) from e

    # ── Handlers ─────────────────────────────────────────────
    # Grouped like pickletools: framing, literals, stack shaping,
    # containers, memo, globals and construction.

    dispatch: Dict[bytes, Callable[["Unpickler"], None]] = {}

    def load_proto(self) -> None:
        proto = self._read_byte()
        if proto > HIGHEST_PROTOCOL:
            raise DecodeError(ERR_UNSUPPORTED, "unsupported pickle protocol: {}".format(proto))
        self._proto = proto
    dispatch[PROTO] = load_proto

    def load_frame(self) -> None:
        # Frames only batch reads for the producer's benefit; the length is
        # consumed and the opcodes inside decode as if unframed.
        read_uint64(self._reader.read(8))
    dispatch[FRAME] = load_frame

    def load_stop(self) -> None:
        raise _Stop(self._pop())
    dispatch[STOP] = load_stop

    # Literals

    def load_none(self) -> None:
        self._stack.append(None)
    dispatch[NONE] = load_none

    def load_false(self) -> None:
        self._stack.append(False)
    dispatch[NEWFALSE] = load_false

    def load_true(self) -> None:
        self._stack.append(True)
    dispatch[NEWTRUE] = load_true

    def load_int(self) -> None:
        text = self._readline_text("INT")
        if text == TEXT_FALSE:
            val: Any = False
        elif text == TEXT_TRUE:
            val = True
        else:
            val = self._parse_text(int, "INT", text)
        self._stack.append(val)
    dispatch[INT] = load_int

    def load_binint(self) -> None:
        self._stack.append(read_uint(self._reader.read(4), 4))
    dispatch[BININT] = load_binint

    def load_binint1(self) -> None:
        self._stack.append(self._read_byte())
    dispatch[BININT1] = load_binint1

    def load_binint2(self) -> None:
        self._stack.append(read_uint(self._reader.read(2), 2))
    dispatch[BININT2] = load_binint2

    def load_long(self) -> None:
        text = self._readline_text("LONG")
        if text.endswith("L"):
            text = text[:-1]
        self._stack.append(self._parse_text(int, "LONG", text))
    dispatch[LONG] = load_long

    def load_long1(self) -> None:
        n = self._read_byte()
        self._stack.append(decode_arbitrary_precision_int(self._reader.read(n)))
    dispatch[LONG1] = load_long1

    def load_long4(self) -> None:
        n = self._read_signed_length("LONG4")
        self._stack.append(decode_arbitrary_precision_int(self._reader.read(n)))
    dispatch[LONG4] = load_long4

    def load_float(self) -> None:
        self._stack.append(self._parse_text(float, "FLOAT", self._readline_text("FLOAT")))
    dispatch[FLOAT] = load_float

    def load_binfloat(self) -> None:
        self._stack.append(read_float64_bigendian(self._reader.read(8)))
    dispatch[BINFLOAT] = load_binfloat

    def load_string(self) -> None:
        data = self._reader.readline()
        if len(data) < 2 or data[0] != data[-1] or data[:1] not in (b"'", b'"'):
            raise DecodeError(ERR_MALFORMED, "the STRING opcode argument must be quoted")
        self._stack.append(decode_c_escapes(decode_raw_string(data[1:-1])))
    dispatch[STRING] = load_string

    def load_binstring(self) -> None:
        n = self._read_signed_length("BINSTRING")
        self._stack.append(decode_raw_string(self._reader.read(n)))
    dispatch[BINSTRING] = load_binstring

    def load_short_binstring(self) -> None:
        n = self._read_byte()
        self._stack.append(decode_raw_string(self._reader.read(n)))
    dispatch[SHORT_BINSTRING] = load_short_binstring

    def load_unicode(self) -> None:
        data = self._reader.readline()
        self._stack.append(decode_unicode_escapes(decode_raw_string(data)))
    dispatch[UNICODE] = load_unicode

    def load_binunicode(self) -> None:
        n = self._read_length(4)
        self._stack.append(decode_utf8(self._reader.read(n)))
    dispatch[BINUNICODE] = load_binunicode

    def load_short_binunicode(self) -> None:
        n = self._read_length(1)
        self._stack.append(decode_utf8(self._reader.read(n)))
    dispatch[SHORT_BINUNICODE] = load_short_binunicode

    def load_binunicode8(self) -> None:
        n = self._read_length(8)
        self._stack.append(decode_utf8(self._reader.read(n)))
    dispatch[BINUNICODE8] = load_binunicode8

    def load_binbytes(self) -> None:
        n = self._read_length(4)
        self._stack.append(self._reader.read(n))
    dispatch[BINBYTES] = load_binbytes

    def load_short_binbytes(self) -> None:
        n = self._read_length(1)
        self._stack.append(self._reader.read(n))
    dispatch[SHORT_BINBYTES] = load_short_binbytes

    def load_binbytes8(self) -> None:
        n = self._read_length(8)
        self._stack.append(self._reader.read(n))
    dispatch[BINBYTES8] = load_binbytes8

    def load_bytearray8(self) -> None:
        n = self._read_length(8)
        self._stack.append(bytearray(self._reader.read(n)))
    dispatch[BYTEARRAY8] = load_bytearray8

    def load_next_buffer(self) -> None:
        if self._buffers is None:
            raise DecodeError(ERR_UNSUPPORTED,
                              "stream refers to out-of-band data but no buffers were given")
        try:
            buf = next(self._buffers)
        except StopIteration:
            raise DecodeError(ERR_TRUNCATED, "not enough out-of-band buffers") from None
        self._stack.append(buf)
    dispatch[NEXT_BUFFER] = load_next_buffer

    def load_readonly_buffer(self) -> None:
        buf = self._top()
        try:
            with memoryview(buf) as m:
                if not m.readonly:
                    self._stack[-1] = m.toreadonly()
        except TypeError as e:
            raise DecodeError(ERR_MALFORMED, "READONLY_BUFFER on non-buffer: {}".format(e)) from e
    dispatch[READONLY_BUFFER] = load_readonly_buffer

    # Stack shaping

    def load_mark(self) -> None:
        self._marks.append(len(self._stack))
    dispatch[MARK] = load_mark

    def load_pop(self) -> None:
        # POP with nothing above the latest mark discards the mark itself.
        if self._marks and len(self._stack) <= self._marks[-1]:
            self._pop_mark()
        else:
            self._pop()
    dispatch[POP] = load_pop

    def load_pop_mark(self) -> None:
        self._pop_mark()
    dispatch[POP_MARK] = load_pop_mark

    def load_dup(self) -> None:
        self._stack.append(self._top())
    dispatch[DUP] = load_dup

    # Container assembly

    def load_empty_tuple(self) -> None:
        self._stack.append(())
    dispatch[EMPTY_TUPLE] = load_empty_tuple

    def load_tuple(self) -> None:
        self._stack.append(tuple(self._pop_mark()))
    dispatch[TUPLE] = load_tuple

    def load_tuple1(self) -> None:
        self._stack.append((self._pop(),))
    dispatch[TUPLE1] = load_tuple1

    def load_tuple2(self) -> None:
        b = self._pop()
        a = self._pop()
        self._stack.append((a, b))
    dispatch[TUPLE2] = load_tuple2

    def load_tuple3(self) -> None:
        c = self._pop()
        b = self._pop()
        a = self._pop()
        self._stack.append((a, b, c))
    dispatch[TUPLE3] = load_tuple3

    def load_empty_list(self) -> None:
        self._stack.append([])
    dispatch[EMPTY_LIST] = load_empty_list

    def load_list(self) -> None:
        self._stack.append(self._pop_mark())
    dispatch[LIST] = load_list

    def load_empty_dict(self) -> None:
        self._stack.append({})
    dispatch[EMPTY_DICT] = load_empty_dict

    def load_dict(self) -> None:
        items = self._pop_mark()
        d: Dict[Any, Any] = {}
        self._set_items(d, items)
        self._stack.append(d)
    dispatch[DICT] = load_dict

    def load_empty_set(self) -> None:
        self._stack.append(set())
    dispatch[EMPTY_SET] = load_empty_set

    def load_frozenset(self) -> None:
        items = self._pop_mark()
        try:
            self._stack.append(frozenset(items))
        except (TypeError, ValueError) as e:
            raise _unhashable(e) from e
    dispatch[FROZENSET] = load_frozenset

    # Container mutation

    def load_append(self) -> None:
        value = self._pop()
        self._extend(self._top(), [value])
    dispatch[APPEND] = load_append

    def load_appends(self) -> None:
        items = self._pop_mark()
        self._extend(self._top(), items)
    dispatch[APPENDS] = load_appends

    def load_setitem(self) -> None:
        value = self._pop()
        key = self._pop()
        self._set_items(self._top(), [key, value])
    dispatch[SETITEM] = load_setitem

    def load_setitems(self) -> None:
        items = self._pop_mark()
        self._set_items(self._top(), items)
    dispatch[SETITEMS] = load_setitems

    def load_additems(self) -> None:
        items = self._pop_mark()
        target = self._top()
        if not isinstance(target, (set, MutableSet)):
            raise DecodeError(ERR_MALFORMED,
                              "cannot add items to {}".format(type(target).__name__))
        try:
            for item in items:
                target.add(item)
        except (TypeError, ValueError) as e:
            raise _unhashable(e) from e
    dispatch[ADDITEMS] = load_additems

    # Memo

    def load_get(self) -> None:
        self._stack.append(self._memo.get(self._read_text_index("GET")))
    dispatch[GET] = load_get

    def load_binget(self) -> None:
        self._stack.append(self._memo.get(self._read_byte()))
    dispatch[BINGET] = load_binget

    def load_long_binget(self) -> None:
        self._stack.append(self._memo.get(self._read_length(4)))
    dispatch[LONG_BINGET] = load_long_binget

    def load_put(self) -> None:
        self._memo.put(self._read_text_index("PUT"), self._top())
    dispatch[PUT] = load_put

    def load_binput(self) -> None:
        self._memo.put(self._read_byte(), self._top())
    dispatch[BINPUT] = load_binput

    def load_long_binput(self) -> None:
        self._memo.put(self._read_length(4), self._top())
    dispatch[LONG_BINPUT] = load_long_binput

    def load_memoize(self) -> None:
        self._memo.put(len(self._memo), self._top())
    dispatch[MEMOIZE] = load_memoize

    # Globals

    def load_global(self) -> None:
        module = self._readline_text("GLOBAL", "utf-8")
        name = self._readline_text("GLOBAL", "utf-8")
        self._stack.append(self._find_global(module, name))
    dispatch[GLOBAL] = load_global

    def load_stack_global(self) -> None:
        name = self._pop()
        module = self._pop()
        if not isinstance(module, str) or not isinstance(name, str):
            raise DecodeError(ERR_MALFORMED, "STACK_GLOBAL requires str operands")
        self._stack.append(self._find_global(module, name))
    dispatch[STACK_GLOBAL] = load_stack_global

    def _load_extension(self, code: int) -> None:
        if code <= 0:
            raise DecodeError(ERR_MALFORMED, "EXT specifies code <= 0")
        key = self._registry.resolve_extension(code)
        if key is None:
            raise DecodeError(ERR_UNSUPPORTED, "unregistered extension code {}".format(code))
        self._stack.append(self._find_global(*key))

    def load_ext1(self) -> None:
        self._load_extension(self._read_byte())
    dispatch[EXT1] = load_ext1

    def load_ext2(self) -> None:
        self._load_extension(read_uint(self._reader.read(2), 2))
    dispatch[EXT2] = load_ext2

    def load_ext4(self) -> None:
        self._load_extension(read_uint(self._reader.read(4), 4))
    dispatch[EXT4] = load_ext4

    # Construction

    def load_reduce(self) -> None:
        args = self._pop()
        func = self._pop()
        self._stack.append(self._construct(func, args))
    dispatch[REDUCE] = load_reduce

    def load_newobj(self) -> None:
        args = self._pop()
        cls = self._pop()
        self._stack.append(self._construct(cls, args))
    dispatch[NEWOBJ] = load_newobj

    def load_newobj_ex(self) -> None:
        kwargs = self._pop()
        args = self._pop()
        cls = self._pop()
        if not isinstance(kwargs, dict) or not all(isinstance(k, str) for k in kwargs):
            raise DecodeError(ERR_CONSTRUCTOR, "NEWOBJ_EX keyword arguments must be a str-keyed dict")
        self._stack.append(self._construct(cls, args, kwargs))
    dispatch[NEWOBJ_EX] = load_newobj_ex

    def load_inst(self) -> None:
        module = self._readline_text("INST", "utf-8")
        name = self._readline_text("INST", "utf-8")
        args = tuple(self._pop_mark())
        self._stack.append(self._construct(self._find_global(module, name), args))
    dispatch[INST] = load_inst

    def load_obj(self) -> None:
        args = self._pop_mark()
        if not args:
            raise DecodeError(ERR_STACK, "OBJ needs a class reference after MARK")
        cls = args.pop(0)
        self._stack.append(self._construct(cls, tuple(args)))
    dispatch[OBJ] = load_obj

    def load_build(self) -> None:
        state = self._pop()
        inst = self._top()
        try:
            apply_state(inst, state)
        except DecodeError:
            raise
        except (TypeError, ValueError, OverflowError) as e:
            raise DecodeError(ERR_CONSTRUCTOR,
                              "restoring state of {} failed: {}".format(type(inst).__name__, e)) from e
    dispatch[BUILD] = load_build

    # Persistent ids

    def load_persid(self) -> None:
        pid = self._readline_text("PERSID")
        self._stack.append(self._persistent(pid))
    dispatch[PERSID] = load_persid

    def load_binpersid(self) -> None:
        self._stack.append(self._persistent(self._pop()))
    dispatch[BINPERSID] = load_binpersid


def decode(byte_source: Any, *,
           registry: Optional[ConstructorRegistry] = None,
           persistent_load: Optional[PersistentIdResolver] = None,
           buffers: Optional[Iterable[Any]] = None) -> Any:
    """Decode one pickle from byte_source and return the value.

    Raises DecodeError on any malformed, truncated or unsupported input.
    """
    return Unpickler(byte_source, registry=registry,
                     persistent_load=persistent_load, buffers=buffers).load()
