"""Object model for class references and unknown classes.

GlobalRef      — a resolved (namespace, name) pair plus the constructor the
                 registry handed out for it.  GLOBAL / STACK_GLOBAL push one;
                 REDUCE / NEWOBJ / INST / OBJ call it.
GenericRecord  — what an instance of an unregistered class decodes to: a
                 dict of its fields plus a "__class__" label holding the
                 qualified class name.

apply_state() is the BUILD hook.  Objects that know how to restore
themselves expose __setstate__; everything else gets a mapping state merged
in as fields.
"""

from __future__ import annotations

from typing import Any, Dict

from ._errors import ERR_CONSTRUCTOR, DecodeError

CLASS_KEY = "__class__"
STATE_KEY = "__state__"


def qualified_name(namespace: str, name: str) -> str:
    """"<namespace>.<name>", or just the name when there is no namespace."""
    return "{}.{}".format(namespace, name) if namespace else name


class GlobalRef:
    """A class or function reference from the stream, resolved but not called."""

    __slots__ = ("namespace", "name", "constructor")

    def __init__(self, namespace: str, name: str, constructor: Any) -> None:
        self.namespace = namespace
        self.name = name
        self.constructor = constructor

    @property
    def qualname(self) -> str:
        return qualified_name(self.namespace, self.name)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.constructor(*args, **kwargs)

    # Equality is by name only: two GLOBAL opcodes naming the same class
    # should compare equal even if a registration changed in between.
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GlobalRef):
            return NotImplemented
        return (self.namespace, self.name) == (other.namespace, other.name)

    def __hash__(self) -> int:
        return hash((GlobalRef, self.namespace, self.name))

    def __repr__(self) -> str:
        return "GlobalRef({!r}, {!r})".format(self.namespace, self.name)


class GenericRecord(dict):
    """Fields of an instance whose class has no registered constructor."""

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__()
        self.namespace = namespace
        self.name = name
        self.class_name = qualified_name(namespace, name)
        self[CLASS_KEY] = self.class_name

    def __setstate__(self, state: Any) -> None:
        # (state, slotstate) is what classes with __slots__ produce.
        slotstate = None
        if (isinstance(state, tuple) and len(state) == 2
                and (state[0] is None or isinstance(state[0], dict))
                and (state[1] is None or isinstance(state[1], dict))):
            state, slotstate = state

        if isinstance(state, dict):
            self.clear()
            self.update(state)
        elif state is not None:
            self[STATE_KEY] = state
        if slotstate:
            self.update(slotstate)
        self[CLASS_KEY] = self.class_name

    def __repr__(self) -> str:
        return "GenericRecord({})".format(dict.__repr__(self))


class GenericRecordConstructor:
    """The registry's fallback: builds an empty GenericRecord, no arguments."""

    __slots__ = ("namespace", "name")

    def __init__(self, namespace: str, name: str) -> None:
        self.namespace = namespace
        self.name = name

    def __call__(self, *args: Any, **kwargs: Any) -> GenericRecord:
        if args or kwargs:
            raise DecodeError(
                ERR_CONSTRUCTOR,
                "expected zero arguments for construction of GenericRecord (for {})"
                .format(qualified_name(self.namespace, self.name)),
            )
        return GenericRecord(self.namespace, self.name)

    def __repr__(self) -> str:
        return "GenericRecordConstructor({!r}, {!r})".format(self.namespace, self.name)


# ── BUILD state application ──────────────────────────────────

def _merge_fields(obj: Any, fields: Dict[Any, Any]) -> None:
    if isinstance(obj, dict):
        obj.update(fields)
        return
    inst_dict = getattr(obj, "__dict__", None)
    for key, value in fields.items():
        if not isinstance(key, str):
            raise DecodeError(ERR_CONSTRUCTOR,
                              "attribute name must be a string, got {!r}".format(key))
        if inst_dict is not None:
            inst_dict[key] = value
            continue
        try:
            setattr(obj, key, value)
        except AttributeError as e:
            raise DecodeError(
                ERR_CONSTRUCTOR,
                "cannot set attribute {!r} on {}: {}".format(key, type(obj).__name__, e),
            ) from e


def apply_state(obj: Any, state: Any) -> None:
    """Apply a BUILD state payload to obj in place."""
    setstate = getattr(obj, "__setstate__", None)
    if callable(setstate):
        setstate(state)
        return

    slotstate = None
    if isinstance(state, tuple) and len(state) == 2:
        state, slotstate = state
    if state:
        if not isinstance(state, dict):
            raise DecodeError(
                ERR_CONSTRUCTOR,
                "cannot apply state of type {} to {} without __setstate__"
                .format(type(state).__name__, type(obj).__name__),
            )
        _merge_fields(obj, state)
    if slotstate:
        if not isinstance(slotstate, dict):
            raise DecodeError(ERR_CONSTRUCTOR, "slot state must be a dictionary")
        _merge_fields(obj, slotstate)
