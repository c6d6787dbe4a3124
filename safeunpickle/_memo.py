"""Memo table — the index → value map behind PUT/GET back-references."""

from __future__ import annotations

from typing import Any, Dict

from ._errors import ERR_MALFORMED, ERR_MEMO, DecodeError


class MemoTable:
    """Sparse, insert-or-overwrite map from memo index to decoded value.

    Indices come from the stream, not from insertion order, so gaps are
    normal (a producer may skip indices, and MEMOIZE uses the current size).
    A dict handles that directly.  Values are stored by reference: GET hands
    back the very object PUT saw, which is what makes shared and cyclic
    structures come out aliased instead of copied.
    """

    __slots__ = ("_entries",)

    def __init__(self) -> None:
        self._entries: Dict[int, Any] = {}

    def put(self, index: int, value: Any) -> None:
        if index < 0:
            raise DecodeError(ERR_MALFORMED, "negative memo index {}".format(index))
        self._entries[index] = value

    def get(self, index: int) -> Any:
        try:
            return self._entries[index]
        except KeyError:
            raise DecodeError(ERR_MEMO, "memo value not found at index {}".format(index)) from None

    def __contains__(self, index: object) -> bool:
        return index in self._entries

    def __len__(self) -> int:
        return len(self._entries)
