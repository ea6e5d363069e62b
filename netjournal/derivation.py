# -*- coding: utf-8 -*-

"""Derives client, operating system, device and URL details from report
fields"""

from __future__ import annotations

from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import ua_parser
import yaml
from ua_parser.loaders import load_data

from netjournal.log import logger
from netjournal.types import DerivedMetrics, DeviceInfo, URLInfo, UserAgentInfo
from netjournal.utils import load_resource

OTHER = "Other"


def load_user_agent_parser(location: Optional[str] = None) -> Callable[[str], Any]:
    """
    Builds a user agent parser

    Args:
        location (str): Path or URL of a uap-core ``regexes.yaml`` ruleset;
            the ruleset bundled with ``ua-parser`` is used when omitted

    Returns:
        callable: A function that parses a user agent string
    """
    if location is None:
        return ua_parser.parse
    logger.info("Loading user agent ruleset from {0}".format(location))
    data = yaml.safe_load(load_resource(location))
    if not isinstance(data, dict) or "user_agent_parsers" not in data:
        raise ValueError("{0} is not a uap-core ruleset".format(location))
    parser = ua_parser.Parser(ua_parser.BasicResolver(load_data(data)))
    return parser.parse


def _user_agent_info(value: Any) -> UserAgentInfo:
    if value is None:
        return {
            "family": OTHER,
            "major": None,
            "minor": None,
            "patch": None,
            "patch_minor": None,
        }
    return {
        "family": value.family or OTHER,
        "major": value.major,
        "minor": value.minor,
        "patch": value.patch,
        "patch_minor": value.patch_minor,
    }


def _device_info(value: Any) -> DeviceInfo:
    if value is None:
        return {"family": OTHER, "brand": None, "model": None}
    return {
        "family": value.family or OTHER,
        "brand": value.brand,
        "model": value.model,
    }


def split_url(url: Optional[str]) -> URLInfo:
    """
    Splits a URL into host, path and query

    URLs without a scheme, such as ``example.com/page``, are split as if
    they had one.

    Args:
        url (str): The URL

    Returns:
        dict: ``host``, ``path`` and ``query``, each ``None`` when absent
    """
    info: URLInfo = {"host": None, "path": None, "query": None}
    if not url:
        return info
    if "://" not in url and not url.startswith("//"):
        url = "//{0}".format(url)
    try:
        parts = urlsplit(url)
        info["host"] = parts.hostname or None
    except ValueError:
        return info
    info["path"] = parts.path or None
    info["query"] = parts.query or None
    return info


class MetricsEnricher(object):
    """Adds derived metrics to reports

    The user agent ruleset can be swapped at runtime with ``reload``; the new
    parser is built first and replaces the old one in a single assignment.
    """

    def __init__(self, user_agent_regexes: Optional[str] = None):
        self._parse = load_user_agent_parser(user_agent_regexes)

    def reload(self, user_agent_regexes: Optional[str] = None):
        self._parse = load_user_agent_parser(user_agent_regexes)

    def parse_user_agent(self, user_agent: Optional[str]):
        parse = self._parse
        client = os = device = None
        if user_agent:
            result = parse(user_agent)
            client = result.user_agent
            os = result.os
            device = result.device
        return _user_agent_info(client), _user_agent_info(os), _device_info(device)

    def derive(
        self, user_agent: Optional[str] = None, url: Optional[str] = None
    ) -> DerivedMetrics:
        """
        Derives metrics from a user agent string and a URL

        Nothing here fails: unknown user agents give the ``Other`` family and
        a missing URL gives ``None`` parts.

        Args:
            user_agent (str): The User-Agent of the reporting client
            url (str): The URL the report is about

        Returns:
            dict: ``client``, ``os``, ``device`` and ``url``
        """
        client, os, device = self.parse_user_agent(user_agent)
        return {"client": client, "os": os, "device": device, "url": split_url(url)}
