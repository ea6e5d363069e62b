# -*- coding: utf-8 -*-

"""Periodically collects DMARC and SMTP TLS reports from a mailbox"""

from __future__ import annotations

import threading
from typing import Callable, Optional

from netjournal import DEFAULT_MAX_REPORT_SIZE, get_reports_from_mailbox
from netjournal.log import logger
from netjournal.mail import MailboxConnection
from netjournal.pipeline import Pipeline
from netjournal.types import ParsingResults


class MailboxPoller(object):
    """Checks a mailbox every ``check_interval`` seconds

    Every check opens a fresh connection from ``connection_factory``. A check
    that fails to connect is logged and retried at the next interval. Only one
    check runs at a time; a check requested while another is running is
    skipped.
    """

    def __init__(
        self,
        connection_factory: Callable[[], MailboxConnection],
        pipeline: Pipeline,
        *,
        reports_folder: str = "INBOX",
        archive_folder: Optional[str] = None,
        check_interval: float = 300,
        batch_size: int = 0,
        test: bool = False,
        max_report_size: Optional[int] = DEFAULT_MAX_REPORT_SIZE,
    ):
        self.connection_factory = connection_factory
        self.pipeline = pipeline
        self.reports_folder = reports_folder
        self.archive_folder = archive_folder
        self.check_interval = check_interval
        self.batch_size = batch_size
        self.test = test
        self.max_report_size = max_report_size
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll(self) -> Optional[ParsingResults]:
        """
        Runs one mailbox check

        Reports reach the pipeline one message at a time, before the message
        is marked as processed.

        Returns:
            dict: The parsing results, or ``None`` when the check was skipped
            or failed
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Skipping mailbox check: the previous one is still running")
            return None
        try:
            try:
                connection = self.connection_factory()
            except Exception as e:
                logger.error("Mailbox connection error: {0}".format(e))
                return None
            emitted = 0

            def process(message_results: ParsingResults):
                nonlocal emitted
                emitted += self.pipeline.process(message_results)

            try:
                results = get_reports_from_mailbox(
                    connection,
                    reports_folder=self.reports_folder,
                    archive_folder=self.archive_folder,
                    batch_size=self.batch_size,
                    test=self.test,
                    max_report_size=self.max_report_size,
                    callback=process,
                )
            except Exception as e:
                logger.error("Mailbox error: {0}".format(e))
                return None
            finally:
                try:
                    connection.close()
                except Exception as e:
                    logger.debug("Error closing mailbox connection: {0}".format(e))
            logger.info(
                "Mailbox check done: {0} reports logged, {1} invalid".format(
                    emitted, len(results["failures"])
                )
            )
            return results
        finally:
            self._lock.release()

    def _run(self):
        while not self._stop.is_set():
            self.poll()
            self._stop.wait(self.check_interval)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="mailbox-poller", daemon=True
        )
        self._thread.start()
        logger.info(
            "Checking {0} every {1} seconds".format(
                self.reports_folder, self.check_interval
            )
        )

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
