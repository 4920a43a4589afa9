"""Configuration loading.

An INI file holds one ``[account:<name>]`` section per mailbox plus the
``[prowl]`` and ``[general]`` sections. Secrets may instead come from the
environment (``PROWL_API_KEY`` etc.), which wins over the file.

Example::

    [prowl]
    api_key = 0123456789abcdef

    [account:work]
    host = imap.example.com
    user = me@example.com
    password = secret
    idle_timeout = 20
"""
from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigurationError
from .notifier import DEFAULT_ENDPOINT, DEFAULT_TEMPLATE

CONFIG_FILE_PATH = 'config.ini'
ACCOUNT_PREFIX = 'account:'
DEFAULT_APPLICATION = 'IMAProwl'
DEFAULT_TICK = 60


def _env(name: str, default: str | None = None) -> str | None:
    '''Return environment variable value, or ``default`` when unset or empty.'''
    value = os.getenv(name)
    return value if value else default


def _int(section: Any, key: str, default: int, min_val: Optional[int] = None,
         max_val: Optional[int] = None) -> int:
    raw = section.get(key)
    if raw is None or str(raw).strip() == '':
        return default
    try:
        value = int(str(raw).strip())
    except ValueError as e:
        raise ConfigurationError(f"[{section.name}] {key} must be an integer, got {raw!r}") from e
    if (min_val is not None and value < min_val) or (max_val is not None and value > max_val):
        raise ConfigurationError(f"[{section.name}] {key}={value} out of range [{min_val}, {max_val}]")
    return value


def _bool(section: Any, key: str, default: bool) -> bool:
    try:
        return section.getboolean(key, fallback=default)
    except ValueError as e:
        raise ConfigurationError(f"[{section.name}] {key} must be a boolean") from e


def _required(section: Any, key: str) -> str:
    value = section.get(key, '').strip()
    if not value:
        raise ConfigurationError(f"[{section.name}] missing required key '{key}'")
    return value


@dataclass(frozen=True)
class AccountConfig:
    """Settings for one watched mailbox."""

    host: str
    user: str
    password: str
    label: str = DEFAULT_APPLICATION
    port: int = 993
    mailbox: str = 'INBOX'
    enabled: bool = True
    idle_timeout: int = 20  # minutes; <= 0 disables the forced IDLE refresh
    poll_interval: int = 60  # seconds between fallback polls
    subject_length: int = 100
    body_length: int = 100
    priority: int = 0
    template: str = DEFAULT_TEMPLATE
    force_poll: bool = False
    secure: bool = True
    verify_ssl: bool = True

    @classmethod
    def from_section(cls, section: configparser.SectionProxy) -> 'AccountConfig':
        """Create an AccountConfig from an ``[account:<name>]`` section."""
        name = section.name[len(ACCOUNT_PREFIX):].strip()
        return cls(
            host=_required(section, 'host'),
            user=_required(section, 'user'),
            password=_required(section, 'password'),
            label=section.get('label', '').strip() or name or DEFAULT_APPLICATION,
            port=_int(section, 'port', 993, min_val=1, max_val=65535),
            mailbox=section.get('mailbox', 'INBOX').strip() or 'INBOX',
            enabled=_bool(section, 'enabled', True),
            idle_timeout=_int(section, 'idle_timeout', 20),
            poll_interval=_int(section, 'poll_interval', 60, min_val=1),
            subject_length=_int(section, 'subject_length', 100, min_val=1),
            body_length=_int(section, 'body_length', 100, min_val=1),
            priority=_int(section, 'priority', 0, min_val=-2, max_val=2),
            template=section.get('template', DEFAULT_TEMPLATE, raw=True),
            force_poll=_bool(section, 'force_poll', False),
            secure=_bool(section, 'secure', True),
            verify_ssl=_bool(section, 'verify_ssl', True),
        )


@dataclass(frozen=True)
class AppConfig:
    api_key: str
    accounts: tuple[AccountConfig, ...] = field(default_factory=tuple)
    endpoint: str = DEFAULT_ENDPOINT
    proxy: Optional[str] = None
    proxy_user: Optional[str] = None
    proxy_password: Optional[str] = None
    log_dir: Optional[str] = None
    debug: bool = False
    tick: int = DEFAULT_TICK

    @property
    def enabled_accounts(self) -> list[AccountConfig]:
        return [a for a in self.accounts if a.enabled]


def parse_config(parser: configparser.ConfigParser) -> AppConfig:
    """Build an :class:`AppConfig` from an already-read parser.

    Raises:
        ConfigurationError: a required key is missing or a value is invalid.
    """
    prowl = parser['prowl'] if parser.has_section('prowl') else parser[parser.default_section]
    general = parser['general'] if parser.has_section('general') else parser[parser.default_section]
    api_key = _env('PROWL_API_KEY', prowl.get('api_key', '').strip())
    if not api_key:
        raise ConfigurationError("missing required key 'api_key' in [prowl] (or PROWL_API_KEY)")
    accounts = tuple(
        AccountConfig.from_section(parser[name])
        for name in parser.sections()
        if name.startswith(ACCOUNT_PREFIX)
    )
    if not accounts:
        raise ConfigurationError("no [account:<name>] sections configured")
    return AppConfig(
        api_key=api_key,
        accounts=accounts,
        endpoint=prowl.get('endpoint', DEFAULT_ENDPOINT).strip() or DEFAULT_ENDPOINT,
        proxy=_env('PROWL_PROXY', prowl.get('proxy', '').strip() or None),
        proxy_user=_env('PROWL_PROXY_USER', prowl.get('proxy_user', '').strip() or None),
        proxy_password=_env('PROWL_PROXY_PASSWORD', prowl.get('proxy_password', '') or None),
        log_dir=general.get('log_dir', '').strip() or None,
        debug=_bool(general, 'debug', False),
        tick=_int(general, 'tick', DEFAULT_TICK, min_val=1),
    )


def load_config(config_file: str | os.PathLike | None = None) -> AppConfig:
    """Read and validate the configuration file.

    The path defaults to ``MAILPROWL_CONFIG`` and then ``config.ini``.
    """
    path = Path(config_file or _env('MAILPROWL_CONFIG', CONFIG_FILE_PATH))
    if not path.is_file():
        raise ConfigurationError(f"configuration file not found: {path}")
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding='utf-8')
    except configparser.Error as e:
        raise ConfigurationError(f"cannot parse {path}: {e}") from e
    return parse_config(parser)
