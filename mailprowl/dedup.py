from __future__ import annotations

from typing import Iterable, Iterator

from .types import UID


class DedupCache:
    """UIDs already notified for one account.

    The cache is a snapshot of the server's unseen set, not a log: every
    unseen-check cycle builds a fresh set and installs it with
    :meth:`replace`, so UIDs read elsewhere or expunged are forgotten.
    """

    def __init__(self, uids: Iterable[UID] = ()):
        self._uids: frozenset[UID] = frozenset(uids)

    def __contains__(self, uid: object) -> bool:
        return uid in self._uids

    def __iter__(self) -> Iterator[UID]:
        return iter(sorted(self._uids))

    def __len__(self) -> int:
        return len(self._uids)

    def __repr__(self):
        return f"DedupCache({sorted(self._uids)})"

    def snapshot(self) -> frozenset[UID]:
        return self._uids

    def unknown(self, uids: Iterable[UID]) -> list[UID]:
        """Return the UIDs from ``uids`` not yet in the cache, in order."""
        return [uid for uid in uids if uid not in self._uids]

    def replace(self, uids: Iterable[UID]) -> None:
        self._uids = frozenset(uids)

    def clear(self) -> None:
        self._uids = frozenset()
