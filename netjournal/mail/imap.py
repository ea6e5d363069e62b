# -*- coding: utf-8 -*-

from __future__ import annotations

from typing import cast

from imapclient import SEEN
from imapclient.exceptions import IMAPClientError
from mailsuite.imap import IMAPClient

from netjournal.log import logger
from netjournal.mail.mailbox_connection import MailboxConnection


class IMAPConnection(MailboxConnection):
    """A mailbox connection over IMAP, opened and logged in on creation"""

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        port: int = 993,
        ssl: bool = True,
        verify: bool = True,
        timeout: int = 30,
        max_retries: int = 4,
    ):
        self._client = IMAPClient(
            host,
            user,
            password,
            port=port,
            ssl=ssl,
            verify=verify,
            timeout=timeout,
            max_retries=max_retries,
        )

    def create_folder(self, folder_name: str):
        self._client.create_folder(folder_name)

    def fetch_messages(self, reports_folder: str, **kwargs):
        self._client.select_folder(reports_folder)
        if kwargs.get("unseen"):
            return self._client.search("UNSEEN")
        return self._client.search()

    def fetch_message(self, message_id: int):
        return cast(str, self._client.fetch_message(message_id, parse=False))

    def mark_message_seen(self, message_id: int):
        self._client.add_flags([message_id], [SEEN])

    def move_message(self, message_id: int, folder_name: str):
        self._client.move_messages([message_id], folder_name)

    def close(self):
        try:
            self._client.logout()
        except (IMAPClientError, OSError) as e:
            logger.debug("IMAP logout failed: {0}".format(e))
