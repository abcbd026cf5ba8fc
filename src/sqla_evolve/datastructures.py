from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable, insertion-ordered dictionary.

    Used for every mapping that ends up inside a published value: column
    specs, graph edge maps, ``where`` clauses of query ASTs. Being hashable
    lets those values act as ``lru_cache`` keys and compare structurally.

    Example:
        >>> fd = frozendict({"a": 1, "b": 2})
        >>> fd["a"]
        1
        >>> fd.copy(c=3)
        <frozendict {'a': 1, 'b': 2, 'c': 3}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Create a new frozendict with additional or replaced items."""
        return type(self)(self, **add_or_replace)

    def merge(self, other: Mapping[K, V]) -> Self:
        """Create a new frozendict with the items of *other* laid over this one.

        Unlike :meth:`copy` this accepts non-string keys.
        """
        return type(self)({**self._dict, **other})

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        # Computed lazily: values are only required to be hashable once the
        # mapping is actually used as a key.
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


def freeze(value: Any) -> Any:
    """Recursively convert dicts to ``frozendict`` and lists/sets to tuples."""
    if isinstance(value, Mapping):
        return frozendict({key: freeze(item) for key, item in value.items()})

    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)

    if isinstance(value, (set, frozenset)):
        return tuple(sorted(freeze(item) for item in value))

    return value


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`, producing JSON-friendly dicts and lists."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}

    if isinstance(value, tuple):
        return [thaw(item) for item in value]

    return value
