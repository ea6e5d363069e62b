from netjournal.mail.mailbox_connection import MailboxConnection
from netjournal.mail.imap import IMAPConnection

__all__ = [
    "MailboxConnection",
    "IMAPConnection",
]
