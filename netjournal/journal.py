# -*- coding: utf-8 -*-

"""Writes accepted reports to the report log, one JSON line per report"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

from netjournal.log import logger
from netjournal.types import DerivedMetrics

DEFAULT_TAG = "netjournal.reports"
LOG_FORMAT = "%(asctime)s %(levelname)s  [%(name)s]  %(message)s"


class UTCFormatter(logging.Formatter):
    """Formats record times as ISO 8601 UTC with milliseconds"""

    def formatTime(self, record, datefmt=None):
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return "{0}.{1:03d}Z".format(
            timestamp.strftime("%Y-%m-%dT%H:%M:%S"), int(record.msecs)
        )


class ReportJournal(object):
    """The append-only report log

    Each report becomes a single line:

    ``2025-01-01T00:00:00.000Z INFO  [netjournal.reports]  CSP {"report": ...}``

    Lines go to ``path`` through a ``WatchedFileHandler``, so external log
    rotation is picked up, or to ``stream`` (stdout by default). The handler
    lock serializes writes from the HTTP workers and the mailbox poller.

    ``tag`` names a logger the journal owns; it cannot be the application
    logger.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        tag: str = DEFAULT_TAG,
        stream: Optional[TextIO] = None,
    ):
        if not tag or tag in (logger.name, "root"):
            raise ValueError(
                "The journal tag must differ from the {0} logger".format(logger.name)
            )
        self.path = path
        self.tag = tag
        if path:
            handler: logging.Handler = logging.handlers.WatchedFileHandler(
                path, encoding="utf-8"
            )
        else:
            handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(UTCFormatter(LOG_FORMAT))
        self._handler = handler
        self._logger = logging.getLogger(tag)
        for old_handler in list(self._logger.handlers):
            self._logger.removeHandler(old_handler)
            old_handler.close()
        self._logger.addHandler(handler)
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False

    def emit(
        self,
        report_type: str,
        report: Dict[str, Any],
        derived: Optional[DerivedMetrics] = None,
    ):
        """
        Writes one report to the log

        Args:
            report_type (str): The report type tag, e.g. ``CSP``
            report (dict): The normalized report
            derived (dict): Derived metrics, if any
        """
        body = json.dumps(
            {"report": report, "derived": derived}, ensure_ascii=False, allow_nan=False
        )
        self._logger.info("{0} {1}".format(report_type, body))

    def close(self):
        self._logger.removeHandler(self._handler)
        self._handler.close()
