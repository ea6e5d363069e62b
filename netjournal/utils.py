"""Utility functions that might be useful for other projects"""

import logging
import re
import zlib
from datetime import datetime, timezone

import requests
from dateutil.parser import parse as parse_date

from netjournal.constants import USER_AGENT
from netjournal.log import logger

parenthesis_regex = re.compile(r"\s*\(.*\)\s*")
url_regex = re.compile(r"^https?://", re.IGNORECASE)

mailparser_logger = logging.getLogger("mailparser")
mailparser_logger.setLevel(logging.CRITICAL)


class DownloadError(RuntimeError):
    """Raised when an error occurs when downloading a file"""


class DecompressionError(RuntimeError):
    """Raised when a compressed payload cannot be expanded"""


def timestamp_to_datetime(timestamp):
    """
    Converts a UNIX/DMARC timestamp to a timezone-aware UTC ``datetime``

    Args:
        timestamp (int): The timestamp

    Returns:
        datetime: The converted timestamp as a Python ``datetime`` object
    """
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def timestamp_to_human(timestamp):
    """
    Converts a UNIX/DMARC timestamp to a human-readable UTC string

    Args:
        timestamp: The timestamp

    Returns:
        str: The converted timestamp in ``YYYY-MM-DD HH:MM:SS`` format
    """
    return timestamp_to_datetime(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def human_timestamp_to_datetime(human_timestamp, to_utc=False):
    """
    Converts a human-readable timestamp into a Python ``datetime`` object

    Args:
        human_timestamp (str): A timestamp string
        to_utc (bool): Convert the timestamp to UTC

    Returns:
        datetime: The converted timestamp
    """

    human_timestamp = human_timestamp.replace("-0000", "")
    human_timestamp = parenthesis_regex.sub("", human_timestamp)

    dt = parse_date(human_timestamp)
    return dt.astimezone(timezone.utc) if to_utc else dt


def decompress_gzip(data, max_size=None):
    """
    Expands a gzip stream

    Args:
        data (bytes): The compressed bytes
        max_size (int): Refuse to expand beyond this many bytes

    Returns:
        bytes: The decompressed bytes
    """
    try:
        if max_size is None:
            return zlib.decompress(data, zlib.MAX_WBITS | 16)
        decompressor = zlib.decompressobj(zlib.MAX_WBITS | 16)
        expanded = decompressor.decompress(data, max_size + 1)
        if len(expanded) > max_size:
            raise DecompressionError(
                "Decompressed payload exceeds {0} bytes".format(max_size)
            )
        if not decompressor.eof:
            raise DecompressionError("Truncated gzip stream")
        return expanded
    except zlib.error as e:
        raise DecompressionError("Invalid gzip stream: {0}".format(e))


def reject_json_constant(name):
    """Refuses the non-standard NaN and Infinity JSON constants"""
    raise ValueError("Invalid JSON constant: {0}".format(name))


def load_resource(location):
    """
    Reads a text resource from a local path or an HTTP(S) URL

    Args:
        location (str): A file path or URL

    Returns:
        str: The resource contents
    """
    if url_regex.match(location):
        logger.debug("Trying to fetch {0}...".format(location))
        headers = {"User-Agent": USER_AGENT}
        try:
            response = requests.get(location, headers=headers, timeout=30)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise DownloadError("Failed to fetch {0}: {1}".format(location, e))
        return response.text
    with open(location, encoding="utf-8") as resource_file:
        return resource_file.read()
