"""Push notifications for new mail (Prowl public API).

The event line is rendered from a per-account ``str.format`` template with
the fields ``{subject}``, ``{from}``, ``{name}`` and ``{address}``. Templates
are validated once per account before the first message; a
broken template falls back to :data:`DEFAULT_TEMPLATE` with a warning.
"""
from __future__ import annotations

import asyncio
import logging
import re
import string
from dataclasses import dataclass
from typing import Mapping, Optional

import aiohttp

from . import http_async as ha

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = 'https://api.prowlapp.com/publicapi/add'
DEFAULT_TEMPLATE = '{subject} from: {from}'
SUCCESS_CODE = '200'
_SAFE_BYTES = frozenset(b'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_.-')
_CODE_RE = re.compile(r'code\s*=\s*"(\d+)"')
TEMPLATE_FIELDS = frozenset({'subject', 'from', 'name', 'address'})


@dataclass(frozen=True)
class NotificationEvent:
    subject: str
    sender: str
    name: str
    address: str
    body: str
    priority: int
    source: str

    def fields(self) -> dict[str, str]:
        return {'subject': self.subject, 'from': self.sender, 'name': self.name, 'address': self.address}


def form_escape(value: str) -> str:
    """Percent-escape ``value`` for a form body.

    Space becomes ``+``; every UTF-8 byte outside ``[A-Za-z0-9_.-]`` becomes
    ``%XX``.
    """
    out = []
    for byte in value.encode('utf-8'):
        if byte in _SAFE_BYTES:
            out.append(chr(byte))
        elif byte == 0x20:
            out.append('+')
        else:
            out.append('%%%02X' % byte)
    return ''.join(out)


def encode_form(fields: Mapping[str, object]) -> str:
    return '&'.join(f"{form_escape(str(k))}={form_escape(str(v))}" for k, v in fields.items())


def _check_template(template: str) -> None:
    for _, field_name, spec, _ in string.Formatter().parse(template):
        if field_name is not None and field_name not in TEMPLATE_FIELDS:
            raise KeyError(field_name)
        if spec and '{' in spec:
            raise ValueError(f"nested field in format spec {spec!r}")
    # Any field may be empty at send time (no display name, no subject)
    template.format(**dict.fromkeys(TEMPLATE_FIELDS, ''))


def validate_template(template: Optional[str], label: str = '') -> str:
    """Return ``template`` if it is safe to render for any message, else the default.

    Only the bare fields ``{subject}``, ``{from}``, ``{name}`` and
    ``{address}`` are accepted; indexing or attribute access on them is not.
    """
    if not template:
        return DEFAULT_TEMPLATE
    try:
        _check_template(template)
    except (KeyError, IndexError, ValueError, AttributeError, TypeError) as e:
        logger.warning("[%s] Invalid message template %r (%s); using %r",
                       label, template, e, DEFAULT_TEMPLATE)
        return DEFAULT_TEMPLATE
    return template


def response_code(status: int, text: str) -> str:
    """Prowl answers with ``<success code="200" .../>``; prefer that over the HTTP status."""
    m = _CODE_RE.search(text or '')
    return m.group(1) if m else str(status)


class Notifier:
    """Sends :class:`NotificationEvent` objects to the push endpoint.

    Holds the API key and proxy credentials; shared read-only by every
    watcher.
    """

    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        proxy: Optional[str] = None,
        proxy_user: Optional[str] = None,
        proxy_password: Optional[str] = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.proxy = proxy or None
        self.proxy_auth = (
            aiohttp.BasicAuth(proxy_user, proxy_password or '') if proxy and proxy_user else None
        )

    def render(self, template: str, event: NotificationEvent) -> str:
        """Render ``template``; it must already have passed :func:`validate_template`."""
        return template.format(**event.fields())

    def payload(self, template: str, event: NotificationEvent) -> dict[str, object]:
        return {
            'apikey': self.api_key,
            'application': event.source,
            'event': self.render(template, event),
            'description': event.body,
            'priority': event.priority,
        }

    async def send(self, template: str, event: NotificationEvent) -> bool:
        """Post one event. Returns True only on a literal ``200`` code.

        Never raises for transport failures: they are logged and reported as
        False so the caller's cycle continues.
        """
        body = encode_form(self.payload(template, event))
        logger.debug("[%s] Prowling: %s", event.source, event.subject)
        try:
            status, text = await ha.post_form(
                self.endpoint, body, proxy=self.proxy, proxy_auth=self.proxy_auth
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[%s] Notification transport error: %s", event.source, e)
            return False
        code = response_code(status, text)
        if code != SUCCESS_CODE:
            logger.error("[%s] Notification rejected: code=%s response=%s", event.source, code, text[:300])
            return False
        logger.debug("[%s] Response: %s", event.source, code)
        return True
