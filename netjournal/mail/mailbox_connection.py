# -*- coding: utf-8 -*-

from __future__ import annotations

from abc import ABC


class MailboxConnection(ABC):
    """
    A mailbox that reports are collected from

    A mailbox check lists the unseen messages of the reports folder, fetches
    each one, and hands its reports to the caller. Only then is the message
    marked as seen, and moved when an archive folder is configured. A message
    that is never marked stays unseen and is fetched again by the next check.
    """

    def create_folder(self, folder_name: str):
        """Creates a folder, if it does not exist yet"""
        raise NotImplementedError

    def fetch_messages(self, reports_folder: str, **kwargs):
        """
        Lists the message ids in ``reports_folder``

        With ``unseen=True`` only messages not yet marked as seen are listed.
        """
        raise NotImplementedError

    def fetch_message(self, message_id) -> str:
        """Returns the full message in RFC 822 format"""
        raise NotImplementedError

    def mark_message_seen(self, message_id):
        """Flags a message so later checks skip it"""
        raise NotImplementedError

    def move_message(self, message_id, folder_name: str):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError
