from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol, Union

UID = int


@dataclass(frozen=True)
class BodyPart:
    """Leaf of a message structure (a single MIME part)."""

    maintype: str
    subtype: str
    params: dict[str, str] = field(default_factory=dict)
    encoding: Optional[str] = None

    @property
    def charset(self) -> Optional[str]:
        return self.params.get('charset')


@dataclass(frozen=True)
class Multipart:
    """Container node; ``parts`` are numbered from 1 in IMAP part paths."""

    subtype: str
    parts: tuple[Structure, ...] = ()


Structure = Union[BodyPart, Multipart]


@dataclass(frozen=True)
class MessageRecord:
    """What a single UID FETCH tells us about a message.

    ``structure`` is ``None`` when the server's BODYSTRUCTURE could not be
    parsed; ``headers`` holds the raw Subject/From header block.
    """

    uid: UID
    structure: Optional[Structure]
    headers: bytes = b''


EventCallback = Callable[[list[bytes]], Awaitable[None] | None]


class MailClient(Protocol):
    """Capability the watcher needs from an IMAP connection."""

    async def connect(self) -> None: ...

    async def login(self, user: str, password: str) -> bool: ...

    async def select(self, mailbox: str) -> None: ...

    async def capabilities(self) -> set[str]: ...

    async def search(self, criteria: str) -> list[UID]: ...

    async def fetch(self, uids: list[UID]) -> list[MessageRecord]: ...

    async def fetch_part(self, uid: UID, path: str) -> bytes: ...

    async def long_poll(self, on_event: Optional[EventCallback] = None) -> bool: ...

    def cancel_long_poll(self) -> None: ...

    async def unseen_count(self, mailbox: str) -> int: ...

    def is_disconnected(self) -> bool: ...

    async def logout(self) -> None: ...
