"""Watch IMAP mailboxes and send a push notification for each new message."""

__version__ = "0.6.0"
