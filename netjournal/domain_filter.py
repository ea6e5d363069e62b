# -*- coding: utf-8 -*-

"""Drops reports whose origin domain is not on an allow-list"""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Iterable, Optional, Tuple

from netjournal import REPORT_TYPE_DMARC, REPORT_TYPE_SMTP_TLS
from netjournal.derivation import split_url
from netjournal.types import ReportRecord


def _normalize_domain(domain: str) -> str:
    return domain.strip().rstrip(".").lower()


class DomainFilter(object):
    """An immutable allow-list of domain patterns

    A pattern is either an exact domain name or a wildcard such as
    ``*.example.com``. An empty allow-list accepts everything.
    """

    def __init__(self, domains: Optional[Iterable[str]] = None):
        patterns = []
        for domain in domains or ():
            domain = _normalize_domain(domain)
            if domain and domain not in patterns:
                patterns.append(domain)
        self._patterns: Tuple[str, ...] = tuple(patterns)

    @property
    def patterns(self) -> Tuple[str, ...]:
        return self._patterns

    def __bool__(self):
        return len(self._patterns) > 0

    def __repr__(self):
        return "DomainFilter({0!r})".format(list(self._patterns))

    def accept(self, domain: Optional[str]) -> bool:
        """Checks a domain against the allow-list"""
        if not self._patterns:
            return True
        if not domain:
            return False
        domain = _normalize_domain(domain)
        for pattern in self._patterns:
            if "*" in pattern or "?" in pattern:
                if fnmatchcase(domain, pattern):
                    return True
            elif domain == pattern:
                return True
        return False

    def accept_record(self, record: ReportRecord) -> bool:
        """Checks the origin domain of a parsed report against the
        allow-list"""
        if record["report_type"] == REPORT_TYPE_SMTP_TLS:
            # a report without policies names no domain to check
            if not record["report"]["policies"]:
                return True
        return self.accept(get_origin_domain(record))


def get_origin_domain(record: ReportRecord) -> Optional[str]:
    """
    Finds the domain a parsed report is about

    * DMARC: the published policy domain
    * SMTP TLS: the domain of the first policy
    * Reporting API and CSP: the host of the report ``url``

    Args:
        record (dict): A parsed report

    Returns:
        str: The domain, or ``None`` when the report names none
    """
    report = record["report"]
    if record["report_type"] == REPORT_TYPE_DMARC:
        return report["policy_published"]["domain"]
    if record["report_type"] == REPORT_TYPE_SMTP_TLS:
        if report["policies"]:
            return report["policies"][0]["policy_domain"]
        return None
    return split_url(report.get("url"))["host"]


def accept(domain: Optional[str], domain_filter: DomainFilter) -> bool:
    """Checks a domain against a ``DomainFilter``"""
    return domain_filter.accept(domain)
