"""Tests for ConstructorRegistry and the default constructors it ships with."""

from __future__ import annotations

import array
import collections
import datetime
import decimal
import os
import pickle
import sys
import threading
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from safeunpickle import (
    ConstructorRegistry,
    DecodeError,
    ERR_CONSTRUCTOR,
    GenericRecord,
    GlobalRef,
    decode,
)
from safeunpickle._builtins import (
    _array_reconstructor,
    _codecs_encode,
    _make_bytearray,
    _make_complex,
    _make_datetime,
    _make_decimal,
)
from safeunpickle._objects import GenericRecordConstructor

CUSTOM_CLASS_PICKLE = (
    b"\x80\x02c__main__\nCustomClazz\nq\x00)\x81q\x01}q\x02(U\x03ageq\x03K\x22"
    b"U\x06valuesq\x04]q\x05(K\x01K\x02K\x03eU\x04nameq\x06U\x05Harryq\x07ub."
)


class Tagged:
    def __init__(self, tag="default"):
        self.tag = tag

    def __setstate__(self, state):
        self.state = state


# ── Registration ──────────────────────────────────────────────

class TestRegistry(unittest.TestCase):
    def test_defaults(self):
        reg = ConstructorRegistry()
        self.assertIn(("builtins", "set"), reg)
        self.assertIn(("__builtin__", "set"), reg)
        self.assertIn(("datetime", "datetime"), reg)
        self.assertEqual(len(ConstructorRegistry(defaults=False)), 0)

    def test_fallback(self):
        reg = ConstructorRegistry(defaults=False)
        self.assertIsNone(reg.lookup("foo", "Bar"))
        ctor = reg.resolve("foo", "Bar")
        self.assertIsInstance(ctor, GenericRecordConstructor)
        rec = ctor()
        self.assertEqual(rec, {"__class__": "foo.Bar"})

    def test_fallback_refuses_arguments(self):
        ctor = ConstructorRegistry().resolve("foo", "Bar")
        with self.assertRaises(DecodeError) as ctx:
            ctor(1)
        self.assertEqual(ctx.exception.code, ERR_CONSTRUCTOR)
        self.assertIn("(for foo.Bar)", ctx.exception.msg)

    def test_last_write_wins(self):
        reg = ConstructorRegistry()
        reg.register("__main__", "CustomClazz", lambda: Tagged("first"))
        reg.register("__main__", "CustomClazz", lambda: Tagged("second"))
        self.assertEqual(decode(CUSTOM_CLASS_PICKLE, registry=reg).tag, "second")

    def test_unregister(self):
        reg = ConstructorRegistry()
        reg.register("__main__", "CustomClazz", Tagged)
        self.assertTrue(reg.unregister("__main__", "CustomClazz"))
        self.assertFalse(reg.unregister("__main__", "CustomClazz"))
        self.assertIsInstance(decode(CUSTOM_CLASS_PICKLE, registry=reg), GenericRecord)

    def test_copy_is_independent(self):
        reg = ConstructorRegistry()
        clone = reg.copy()
        clone.register("__main__", "CustomClazz", Tagged)
        clone.register_extension(7, "foo", "Bar")
        self.assertNotIn(("__main__", "CustomClazz"), reg)
        self.assertIsNone(reg.resolve_extension(7))
        self.assertEqual(len(clone), len(reg) + 1)

    def test_register_validation(self):
        reg = ConstructorRegistry()
        with self.assertRaises(TypeError):
            reg.register("foo", "Bar", "not callable")
        with self.assertRaises(TypeError):
            reg.register(b"foo", "Bar", Tagged)
        with self.assertRaises(TypeError):
            reg.set_persistent_resolver(42)

    def test_extension_range(self):
        reg = ConstructorRegistry()
        for code in (0, -1, 0x80000000):
            with self.subTest(code=code):
                with self.assertRaises(ValueError):
                    reg.register_extension(code, "foo", "Bar")
        reg.register_extension(0x7FFFFFFF, "foo", "Bar")
        self.assertEqual(reg.resolve_extension(0x7FFFFFFF), ("foo", "Bar"))

    def test_persistent_resolver(self):
        reg = ConstructorRegistry()
        self.assertIsNone(reg.persistent_resolver)
        reg.set_persistent_resolver(str)
        self.assertIs(reg.persistent_resolver, str)
        reg.set_persistent_resolver(None)
        self.assertIsNone(reg.persistent_resolver)

    def test_registration_logged(self):
        reg = ConstructorRegistry(defaults=False)
        with self.assertLogs("safeunpickle", level="DEBUG") as logs:
            reg.register("foo", "Bar", Tagged)
        self.assertIn("foo.Bar", logs.output[0])

    def test_concurrent_register_and_decode(self):
        reg = ConstructorRegistry()
        errors = []
        stop = threading.Event()

        def churn():
            flip = False
            while not stop.is_set():
                if flip:
                    reg.register("__main__", "CustomClazz", Tagged)
                else:
                    reg.unregister("__main__", "CustomClazz")
                flip = not flip

        def decoder():
            try:
                for _ in range(200):
                    val = decode(CUSTOM_CLASS_PICKLE, registry=reg)
                    if not isinstance(val, (Tagged, GenericRecord)):
                        errors.append(type(val))
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        writer = threading.Thread(target=churn)
        readers = [threading.Thread(target=decoder) for _ in range(4)]
        writer.start()
        for t in readers:
            t.start()
        for t in readers:
            t.join()
        stop.set()
        writer.join()
        self.assertEqual(errors, [])


# ── Default constructors, through the stdlib pickler ─────────

class TestBuiltinTypes(unittest.TestCase):
    PROTOCOLS = range(pickle.HIGHEST_PROTOCOL + 1)

    def _round_trip(self, value, protocols=None):
        for proto in protocols or self.PROTOCOLS:
            with self.subTest(value=value, protocol=proto):
                got = decode(pickle.dumps(value, protocol=proto))
                self.assertEqual(got, value)
                self.assertIs(type(got), type(value))

    def test_sets(self):
        self._round_trip({1, "a"})
        self._round_trip(frozenset({2.5}))
        self._round_trip(set())

    def test_bytes_and_bytearray(self):
        self._round_trip(b"\x00\x01\xfe\xff")
        self._round_trip(b"")
        self._round_trip(bytearray(b"\x00\xff"))

    def test_complex(self):
        self._round_trip(complex(1.5, -2.0), protocols=range(2, pickle.HIGHEST_PROTOCOL + 1))

    def test_decimal(self):
        self._round_trip(decimal.Decimal("3.14"))
        self._round_trip(decimal.Decimal("-Infinity"))

    def test_ordered_dict(self):
        od = collections.OrderedDict([("b", 1), ("a", 2)])
        self._round_trip(od)
        self.assertEqual(list(decode(pickle.dumps(od, protocol=2))), ["b", "a"])

    def test_dates_and_times(self):
        ist = datetime.timezone(datetime.timedelta(hours=5, minutes=30), "IST")
        self._round_trip(datetime.date(2024, 2, 29))
        self._round_trip(datetime.time(23, 59, 59, 999999))
        self._round_trip(datetime.time(8, 0, tzinfo=ist))
        self._round_trip(datetime.datetime(2024, 2, 29, 13, 45, 10, 123456))
        self._round_trip(datetime.datetime(1, 1, 1, tzinfo=datetime.timezone.utc))
        self._round_trip(datetime.timedelta(days=-1, seconds=5, microseconds=7))
        self._round_trip(ist)

    def test_fold(self):
        dt = datetime.datetime(2024, 11, 3, 1, 30, fold=1)
        self.assertEqual(decode(pickle.dumps(dt, protocol=4)).fold, 1)
        t = datetime.time(1, 30, fold=1)
        self.assertEqual(decode(pickle.dumps(t, protocol=4)).fold, 1)

    def test_arrays(self):
        self._round_trip(array.array("i", [1, -2, 3]))
        self._round_trip(array.array("d", [0.5, -1e300]))
        self._round_trip(array.array("B", b"\x00\xff"))


class TestBuiltinGuards(unittest.TestCase):
    def test_bytearray_refuses_int_size(self):
        with self.assertRaises(DecodeError) as ctx:
            _make_bytearray(10 ** 12)
        self.assertEqual(ctx.exception.code, ERR_CONSTRUCTOR)

    def test_bytearray_from_text(self):
        self.assertEqual(_make_bytearray("\xe9", "latin-1"), bytearray(b"\xe9"))

    def test_complex_refuses_non_numbers(self):
        for args in (("1", 2), (True, 0.0)):
            with self.subTest(args=args):
                with self.assertRaises(DecodeError):
                    _make_complex(*args)

    def test_codecs_whitelist(self):
        self.assertEqual(_codecs_encode("\xe9", "latin1"), b"\xe9")
        self.assertEqual(_codecs_encode("\xe9", "utf-8"), b"\xc3\xa9")
        for encoding in ("rot13", "zlib", "no-such-codec"):
            with self.subTest(encoding=encoding):
                with self.assertRaises(DecodeError):
                    _codecs_encode("abc", encoding)

    def test_decimal_literal(self):
        with self.assertRaises(DecodeError) as ctx:
            _make_decimal("not a number")
        self.assertEqual(ctx.exception.code, ERR_CONSTRUCTOR)

    def test_datetime_state_length(self):
        with self.assertRaises(DecodeError):
            _make_datetime(b"\x07\xe8\x02")

    def test_array_reconstructor_checks_class(self):
        with self.assertRaises(DecodeError):
            _array_reconstructor(GlobalRef("foo", "Bar", None), "i", 8, b"\x00" * 4)
        with self.assertRaises(DecodeError):
            _array_reconstructor(GlobalRef("array", "array", None), "i", 99, b"\x00" * 4)
        with self.assertRaises(DecodeError):
            _array_reconstructor(GlobalRef("array", "array", None), "i", 8, b"\x00" * 3)

    def test_array_reconstructor_big_endian(self):
        arr = _array_reconstructor(GlobalRef("array", "array", None), "i", 9,
                                   b"\x00\x00\x01\x00")
        self.assertEqual(arr, array.array("i", [256]))


if __name__ == "__main__":
    unittest.main()
