from collections.abc import Iterator, Mapping, MutableMapping
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)

    def all(self) -> list[V]:
        return list(self._store.values())

    def items(self, prefix: str = "") -> list[tuple[K, V]]:
        return [
            (k, v) for k, v in self._store.items() if str(k).startswith(prefix)
        ]

    def clear(self) -> None:
        self._store.clear()

    def __iter__(self) -> Iterator[V]:
        return iter(self._store.values())

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: object) -> bool:
        return key in self._store

    def apply(self, writes: Mapping[K, V | None]) -> None:
        """
        Apply a batch of writes in one step. A ``None`` value deletes the key.
        There is no await between the first and last write, so concurrent
        readers see either none or all of the batch.
        """
        for key, value in writes.items():
            if value is None:
                self._store.pop(key, None)
            else:
                self._store[key] = value
