# -*- coding: utf-8 -*-

"""Runs parsed reports through the domain filter and the metrics enricher
into the report journal"""

from __future__ import annotations

from typing import Iterable, Optional

from netjournal import REPORT_TYPE_DMARC, REPORT_TYPE_SMTP_TLS
from netjournal.derivation import MetricsEnricher
from netjournal.domain_filter import DomainFilter, get_origin_domain
from netjournal.journal import ReportJournal
from netjournal.log import logger
from netjournal.types import DerivedMetrics, ParsingResults, ReportRecord


class Pipeline(object):
    """Filters, enriches and logs parsed reports

    ``domain_filter`` and ``enricher`` are snapshots: a reload builds a new
    object and swaps the reference, so readers never see a half-built one.
    """

    def __init__(
        self,
        journal: ReportJournal,
        domain_filter: Optional[DomainFilter] = None,
        enricher: Optional[MetricsEnricher] = None,
    ):
        self.journal = journal
        self.domain_filter = domain_filter or DomainFilter()
        self.enricher = enricher or MetricsEnricher()

    def reload_filter(self, domains: Iterable[str]):
        self.domain_filter = DomainFilter(domains)
        logger.info("Loaded domain filter {0}".format(self.domain_filter))

    def reload_enricher(self, user_agent_regexes: Optional[str] = None):
        self.enricher.reload(user_agent_regexes)

    def derive(
        self, record: ReportRecord, user_agent: Optional[str] = None
    ) -> DerivedMetrics:
        """
        Derives metrics for a parsed report

        Mail reports have no user agent: the policy domain stands in for the
        URL host, and for DMARC the reporting organization for the client.

        Args:
            record (dict): A parsed report
            user_agent (str): User-Agent of the HTTP request, used when the
                report does not carry its own

        Returns:
            dict: The derived metrics
        """
        report = record["report"]
        if record["report_type"] == REPORT_TYPE_DMARC:
            derived = self.enricher.derive()
            derived["client"]["family"] = report["report_metadata"]["org_name"]
            derived["url"]["host"] = get_origin_domain(record)
            return derived
        if record["report_type"] == REPORT_TYPE_SMTP_TLS:
            derived = self.enricher.derive()
            derived["url"]["host"] = get_origin_domain(record)
            return derived
        return self.enricher.derive(
            report.get("user_agent") or user_agent, report.get("url")
        )

    def process_record(
        self, record: ReportRecord, user_agent: Optional[str] = None
    ) -> bool:
        """
        Filters, enriches and logs one parsed report

        Args:
            record (dict): A parsed report
            user_agent (str): User-Agent of the HTTP request

        Returns:
            bool: ``True`` when the report was written to the journal
        """
        domain_filter = self.domain_filter
        if not domain_filter.accept_record(record):
            logger.debug(
                "Dropped {0} report for {1}".format(
                    record["report_type"], get_origin_domain(record)
                )
            )
            return False
        derived = self.derive(record, user_agent)
        self.journal.emit(record["report_type"], record["report"], derived)
        return True

    def process(
        self, results: ParsingResults, user_agent: Optional[str] = None
    ) -> int:
        """
        Logs parse failures and runs every parsed report through the pipeline

        Args:
            results (dict): Output of one of the resolvers
            user_agent (str): User-Agent of the HTTP request

        Returns:
            int: The number of reports written to the journal
        """
        for failure in results["failures"]:
            message = "Invalid {0} report ({1} bytes): {2}".format(
                failure["report_type"],
                failure["payload_length"],
                failure["reason"],
            )
            if "payload" in failure:
                message += " payload={0}".format(failure["payload"])
            logger.warning(message)
        emitted = 0
        for record in results["reports"]:
            if self.process_record(record, user_agent):
                emitted += 1
        return emitted
