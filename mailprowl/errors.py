"""Exception hierarchy shared by the watcher, client and config loader."""


class MailprowlError(Exception):
    """Base exception for mailprowl errors."""


class ConfigurationError(MailprowlError):
    """Raised when the configuration is missing a required key or holds an invalid value."""


class MailConnectionError(MailprowlError, ConnectionError):
    """Connection or protocol failure; fatal for the current IMAP connection only."""


class MessageParseError(MailprowlError, ValueError):
    """A single message carried data that could not be parsed."""
