"""Constructor registry — (namespace, name) → construction capability.

This is the only state shared between concurrent decodes.  Registrations
are rare and lookups frequent, so one lock guards every access and nothing
more clever is needed: registration is last-write-wins and visible to the
next lookup.  An interpreter takes its registry as an argument; the module
level default_registry only exists so that the convenience functions in
the package root have something to talk to.

Class resolution is a dictionary lookup.  Nothing named by a stream is ever
imported or executed; a name with no registration resolves to the
GenericRecord fallback.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from ._builtins import register_builtins
from ._objects import GenericRecordConstructor, qualified_name

logger = logging.getLogger(__name__)

Constructor = Callable[..., Any]
PersistentIdResolver = Callable[[Any], Any]


def _check_name(namespace: str, name: str) -> None:
    if not isinstance(namespace, str) or not isinstance(name, str):
        raise TypeError("namespace and name must be strings")


class ConstructorRegistry:
    """Thread-safe map from (namespace, name) to a constructor callable.

    A constructor is called with the positional arguments the stream
    supplies (keyword arguments too, for NEWOBJ_EX) and returns the value to
    push.  It signals a mismatch by raising DecodeError(ERR_CONSTRUCTOR), or
    TypeError / ValueError, which the interpreter converts.

    With defaults=True (the default) the registry starts out knowing the
    standard data types a pickle producer emits through REDUCE: sets,
    bytearray, complex, Decimal, the datetime family, arrays and so on.
    """

    def __init__(self, defaults: bool = True) -> None:
        self._lock = threading.RLock()
        self._constructors: Dict[Tuple[str, str], Constructor] = {}
        self._extensions: Dict[int, Tuple[str, str]] = {}
        self._persistent_resolver: Optional[PersistentIdResolver] = None
        if defaults:
            register_builtins(self)

    # ── Constructors ─────────────────────────────────────────

    def register(self, namespace: str, name: str, constructor: Constructor) -> None:
        """Register constructor for namespace.name, replacing any previous one."""
        _check_name(namespace, name)
        if not callable(constructor):
            raise TypeError("constructor for {} is not callable: {!r}".format(
                qualified_name(namespace, name), constructor))
        with self._lock:
            self._constructors[(namespace, name)] = constructor
        logger.debug("registered constructor for %s", qualified_name(namespace, name))

    def unregister(self, namespace: str, name: str) -> bool:
        """Drop a registration.  Returns False if there was none."""
        with self._lock:
            return self._constructors.pop((namespace, name), None) is not None

    def lookup(self, namespace: str, name: str) -> Optional[Constructor]:
        """The registered constructor, or None.  No fallback."""
        with self._lock:
            return self._constructors.get((namespace, name))

    def resolve(self, namespace: str, name: str) -> Constructor:
        """The registered constructor, or the GenericRecord fallback.  Never fails."""
        ctor = self.lookup(namespace, name)
        if ctor is None:
            logger.debug("no constructor for %s, using GenericRecord fallback",
                         qualified_name(namespace, name))
            return GenericRecordConstructor(namespace, name)
        return ctor

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._constructors

    def __len__(self) -> int:
        with self._lock:
            return len(self._constructors)

    def copy(self) -> "ConstructorRegistry":
        """An independent registry with the same registrations and hooks."""
        clone = ConstructorRegistry(defaults=False)
        with self._lock:
            clone._constructors = dict(self._constructors)
            clone._extensions = dict(self._extensions)
            clone._persistent_resolver = self._persistent_resolver
        return clone

    # ── Extension codes (EXT1/EXT2/EXT4) ─────────────────────
    # The producer side maps some classes to small integers (copyreg's
    # extension registry) to save space; the same table has to exist here.

    def register_extension(self, code: int, namespace: str, name: str) -> None:
        _check_name(namespace, name)
        if not 1 <= code <= 0x7FFFFFFF:
            raise ValueError("extension code {} out of range".format(code))
        with self._lock:
            self._extensions[code] = (namespace, name)
        logger.debug("registered extension code %d for %s", code,
                     qualified_name(namespace, name))

    def resolve_extension(self, code: int) -> Optional[Tuple[str, str]]:
        with self._lock:
            return self._extensions.get(code)

    # ── Persistent ids ───────────────────────────────────────

    def set_persistent_resolver(self, resolver: Optional[PersistentIdResolver]) -> None:
        """Install (or, with None, remove) the persistent-id resolver."""
        if resolver is not None and not callable(resolver):
            raise TypeError("persistent resolver is not callable: {!r}".format(resolver))
        with self._lock:
            self._persistent_resolver = resolver

    @property
    def persistent_resolver(self) -> Optional[PersistentIdResolver]:
        with self._lock:
            return self._persistent_resolver


default_registry = ConstructorRegistry()
