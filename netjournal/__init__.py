# -*- coding: utf-8 -*-

"""A Python package for ingesting browser and mail server reports"""

from __future__ import annotations

import binascii
import email
import email.utils
import json
import re
import xml.parsers.expat as expat
import zipfile
from base64 import b64decode, b64encode
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, BinaryIO, Callable, Optional, Union, cast

import lxml.etree as etree
import mailparser
import xmltodict
from expiringdict import ExpiringDict

from netjournal.constants import __version__
from netjournal.log import logger
from netjournal.mail import MailboxConnection
from netjournal.types import (
    AggregateReport,
    ParseFailure,
    ParsingResults,
    ReportRecord,
    SMTPTLSReport,
)
from netjournal.utils import (
    DecompressionError,
    decompress_gzip,
    human_timestamp_to_datetime,
    reject_json_constant,
    timestamp_to_human,
)

logger.debug("netjournal v{0}".format(__version__))

xml_header_regex = re.compile(r"^<\?xml .*?>", re.MULTILINE)
xml_schema_regex = re.compile(r"</??xs:schema.*>", re.MULTILINE)
report_subject_regex = re.compile(r"^\s*report domain:", re.IGNORECASE)

MAGIC_ZIP = b"\x50\x4b\x03\x04"
MAGIC_GZIP = b"\x1f\x8b"
MAGIC_XML = b"\x3c\x3f\x78\x6d\x6c\x20"
MAGIC_JSON = b"\x7b"

REPORT_TYPE_DMARC = "DMARC"
REPORT_TYPE_SMTP_TLS = "SMTP-TLS-RPT"

DEFAULT_MAX_REPORT_SIZE = 10 * 1024 * 1024

REPORT_ATTACHMENT_EXTENSIONS = (".xml", ".xml.gz", ".gz", ".zip", ".json")

REPORT_ATTACHMENT_CONTENT_TYPES = (
    "application/gzip",
    "application/x-gzip",
    "application/zip",
    "application/x-zip-compressed",
    "application/xml",
    "text/xml",
    "application/tlsrpt+json",
    "application/tlsrpt+gzip",
)

SEEN_AGGREGATE_REPORT_IDS = ExpiringDict(max_len=100000000, max_age_seconds=3600)


class ParserError(RuntimeError):
    """Raised whenever the parser fails for some reason"""


class InvalidEnvelope(ParserError):
    """Raised when a request body cannot be unwrapped into reports"""


class InvalidReport(ParserError):
    """Raised when a single report fails validation"""

    report_type: Optional[str] = None

    def __init__(self, message, report_type: Optional[str] = None):
        super().__init__(message)
        if report_type is not None:
            self.report_type = report_type


class InvalidReportingAPIReport(InvalidReport):
    """Raised when an invalid Reporting API report is encountered"""


class InvalidSMTPTLSReport(InvalidReport):
    """Raised when an invalid SMTP TLS report is encountered"""

    report_type = REPORT_TYPE_SMTP_TLS


class InvalidDMARCReport(InvalidReport):
    """Raised when an invalid DMARC report is encountered"""

    report_type = REPORT_TYPE_DMARC


class InvalidAggregateReport(InvalidDMARCReport):
    """Raised when an invalid DMARC aggregate report is encountered"""


def build_parse_failure(
    error: ParserError, payload: Union[str, bytes, None] = None
) -> ParseFailure:
    """
    Describes a report that could not be parsed

    SMTP TLS failures keep the raw payload, base64 encoded, so the report can
    be examined later.

    Args:
        error: The exception raised by the parser
        payload: The raw bytes of the report

    Returns:
        dict: ``report_type``, ``reason``, ``payload_length`` and, for SMTP
        TLS reports, ``payload``
    """
    if payload is None:
        payload = b""
    if isinstance(payload, str):
        payload = payload.encode("utf-8", errors="replace")
    report_type = getattr(error, "report_type", None) or "Unknown"
    failure: ParseFailure = {
        "report_type": report_type,
        "reason": error.__str__(),
        "payload_length": len(payload),
    }
    if report_type == REPORT_TYPE_SMTP_TLS:
        failure["payload"] = b64encode(payload).decode("ascii")
    return failure


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _parse_report_record(record: dict[str, Any]) -> dict[str, Any]:
    """
    Converts a record from a DMARC aggregate report into a more consistent
    format

    Args:
        record (dict): The record to convert

    Returns:
        dict: The converted record
    """
    record = record.copy()
    new_record: dict[str, Any] = {}
    if record["row"]["source_ip"] is None:
        raise ValueError("Source IP address is empty")
    new_record["source"] = {"ip_address": record["row"]["source_ip"]}
    new_record["count"] = int(record["row"]["count"])
    policy_evaluated = record["row"].get("policy_evaluated") or {}
    new_policy_evaluated: dict[str, Any] = {
        "disposition": "none",
        "dkim": "fail",
        "spf": "fail",
        "policy_override_reasons": [],
    }
    if policy_evaluated.get("disposition") is not None:
        new_policy_evaluated["disposition"] = policy_evaluated["disposition"]
        if new_policy_evaluated["disposition"].strip().lower() == "pass":
            new_policy_evaluated["disposition"] = "none"
    if policy_evaluated.get("dkim") is not None:
        new_policy_evaluated["dkim"] = policy_evaluated["dkim"]
    if policy_evaluated.get("spf") is not None:
        new_policy_evaluated["spf"] = policy_evaluated["spf"]
    spf_aligned = new_policy_evaluated["spf"].lower() == "pass"
    dkim_aligned = new_policy_evaluated["dkim"].lower() == "pass"
    new_record["alignment"] = {
        "spf": spf_aligned,
        "dkim": dkim_aligned,
        "dmarc": spf_aligned or dkim_aligned,
    }
    reasons = []
    for reason in _as_list(policy_evaluated.get("reason")):
        reasons.append(
            {"type": reason.get("type"), "comment": reason.get("comment")}
        )
    new_policy_evaluated["policy_override_reasons"] = reasons
    new_record["policy_evaluated"] = new_policy_evaluated
    if "identities" in record:
        new_record["identifiers"] = dict(record["identities"] or {})
    else:
        new_record["identifiers"] = dict(record["identifiers"] or {})
    if isinstance(new_record["identifiers"].get("header_from"), str):
        lowered_from = new_record["identifiers"]["header_from"].lower()
    else:
        lowered_from = ""
    new_record["identifiers"]["header_from"] = lowered_from

    new_record["auth_results"] = {"dkim": [], "spf": []}
    auth_results = record.get("auth_results")
    if not isinstance(auth_results, dict):
        auth_results = {}

    for result in _as_list(auth_results.get("dkim")):
        if result.get("domain") is not None:
            new_result: dict[str, Any] = {"domain": result["domain"]}
            new_result["selector"] = result.get("selector") or "none"
            new_result["result"] = result.get("result") or "none"
            new_record["auth_results"]["dkim"].append(new_result)

    for result in _as_list(auth_results.get("spf")):
        if result.get("domain") is not None:
            new_result = {"domain": result["domain"]}
            new_result["scope"] = result.get("scope") or "mfrom"
            new_result["result"] = result.get("result") or "none"
            new_record["auth_results"]["spf"].append(new_result)

    if new_record["identifiers"].get("envelope_from") is None:
        envelope_from = None
        if len(new_record["auth_results"]["spf"]) > 0:
            envelope_from = new_record["auth_results"]["spf"][-1]["domain"]
        if envelope_from is not None:
            envelope_from = str(envelope_from).lower()
        new_record["identifiers"]["envelope_from"] = envelope_from

    envelope_to = new_record["identifiers"].pop("envelope_to", None)
    new_record["identifiers"]["envelope_to"] = envelope_to

    return new_record


def _parse_smtp_tls_failure_details(failure_details: dict[str, Any]):
    try:
        new_failure_details: dict[str, Any] = {
            "result_type": failure_details["result-type"],
            "failed_session_count": failure_details["failed-session-count"],
        }

        if "sending-mta-ip" in failure_details:
            new_failure_details["sending_mta_ip"] = failure_details["sending-mta-ip"]
        if "receiving-ip" in failure_details:
            new_failure_details["receiving_ip"] = failure_details["receiving-ip"]
        if "receiving-mx-hostname" in failure_details:
            new_failure_details["receiving_mx_hostname"] = failure_details[
                "receiving-mx-hostname"
            ]
        if "receiving-mx-helo" in failure_details:
            new_failure_details["receiving_mx_helo"] = failure_details[
                "receiving-mx-helo"
            ]
        for key in ("additional-info-uri", "additional-information"):
            if key in failure_details:
                new_failure_details["additional_info_uri"] = failure_details[key]
        if "failure-reason-code" in failure_details:
            new_failure_details["failure_reason_code"] = failure_details[
                "failure-reason-code"
            ]

        return new_failure_details

    except KeyError as e:
        raise InvalidSMTPTLSReport(f"Missing required failure details field: {e}")
    except Exception as e:
        raise InvalidSMTPTLSReport(str(e))


def _parse_smtp_tls_report_policy(policy: dict[str, Any]):
    policy_types = ["tlsa", "sts", "no-policy-found"]
    try:
        policy_domain = policy["policy"]["policy-domain"]
        policy_type = policy["policy"]["policy-type"]
        failure_details = []
        if policy_type not in policy_types:
            raise InvalidSMTPTLSReport(f"Invalid policy type {policy_type}")
        new_policy: dict[str, Any] = {
            "policy_domain": policy_domain,
            "policy_type": policy_type,
        }
        if "policy-string" in policy["policy"]:
            if isinstance(policy["policy"]["policy-string"], list):
                if len(policy["policy"]["policy-string"]) > 0:
                    new_policy["policy_strings"] = policy["policy"]["policy-string"]

        for key in ("mx-host-pattern", "mx-host"):
            patterns = _as_list(policy["policy"].get(key))
            if len(patterns) > 0:
                new_policy["mx_host_patterns"] = patterns
        for key in ("total-successful-session-count", "total-failure-session-count"):
            count = policy["summary"][key]
            if not isinstance(count, int) or isinstance(count, bool):
                raise InvalidSMTPTLSReport(f"{key} must be an integer")
        new_policy["successful_session_count"] = policy["summary"][
            "total-successful-session-count"
        ]
        new_policy["failed_session_count"] = policy["summary"][
            "total-failure-session-count"
        ]
        for details in policy.get("failure-details") or []:
            failure_details.append(_parse_smtp_tls_failure_details(details))
        new_policy["failure_details"] = failure_details

        return new_policy

    except KeyError as e:
        raise InvalidSMTPTLSReport(f"Missing required policy field: {e}")
    except Exception as e:
        raise InvalidSMTPTLSReport(str(e))


def parse_smtp_tls_report_json(report: Union[str, bytes]) -> SMTPTLSReport:
    """Parses and validates an SMTP TLS report"""
    required_fields = [
        "organization-name",
        "date-range",
        "contact-info",
        "report-id",
        "policies",
    ]

    try:
        if isinstance(report, bytes):
            report = report.decode("utf-8", errors="replace")

        policies = []
        report_dict = json.loads(report, parse_constant=reject_json_constant)
        if not isinstance(report_dict, dict):
            raise InvalidSMTPTLSReport("The report must be a JSON object")
        for required_field in required_fields:
            if required_field not in report_dict:
                raise InvalidSMTPTLSReport(f"Missing required field: {required_field}")
        if not isinstance(report_dict["policies"], list):
            policies_type = type(report_dict["policies"])
            raise InvalidSMTPTLSReport(f"policies must be a list, not {policies_type}")
        for policy in report_dict["policies"]:
            policies.append(_parse_smtp_tls_report_policy(policy))

        new_report: SMTPTLSReport = {
            "organization_name": report_dict["organization-name"],
            "begin_date": report_dict["date-range"]["start-datetime"],
            "end_date": report_dict["date-range"]["end-datetime"],
            "contact_info": report_dict["contact-info"],
            "report_id": report_dict["report-id"],
            "policies": policies,
        }

        return new_report

    except KeyError as e:
        raise InvalidSMTPTLSReport(f"Missing required field: {e}")
    except Exception as e:
        raise InvalidSMTPTLSReport(str(e))


def parse_smtp_tls_report(
    content: Union[str, bytes], max_size: Optional[int] = None
) -> SMTPTLSReport:
    """
    Parses an SMTP TLS report that may be gzip compressed

    The gzip magic bytes decide whether the content is expanded, whatever the
    declared ``Content-Type`` or ``Content-Encoding`` claimed.

    Args:
        content: The report body
        max_size (int): Maximum size of the decompressed report in bytes

    Returns:
        dict: The parsed SMTP TLS report
    """
    if isinstance(content, (bytes, bytearray)) and bytes(content).startswith(
        MAGIC_GZIP
    ):
        try:
            content = decompress_gzip(bytes(content), max_size=max_size)
        except DecompressionError as e:
            raise InvalidSMTPTLSReport(e.__str__())
    return parse_smtp_tls_report_json(content)


def parse_aggregate_report_xml(xml: Union[str, bytes]) -> AggregateReport:
    """Parses a DMARC XML report string and returns a consistent dict

    Args:
        xml (str): A string of DMARC aggregate report XML

    Returns:
        dict: The parsed aggregate DMARC report
    """
    errors = []
    # Parse XML and recover from errors
    if isinstance(xml, bytes):
        xml = xml.decode(errors="ignore")
    try:
        xmltodict.parse(xml)["feedback"]
    except Exception as e:
        errors.append("Invalid XML: {0}".format(e.__str__()))
        try:
            tree = etree.parse(
                BytesIO(xml.encode("utf-8")),
                etree.XMLParser(recover=True, resolve_entities=False),
            )
            s = etree.tostring(tree)
            xml = "" if s is None else s.decode("utf-8")
        except Exception:
            xml = "<a/>"

    try:
        # Replace XML header (sometimes they are invalid)
        xml = xml_header_regex.sub('<?xml version="1.0"?>', xml)

        # Remove invalid schema tags
        xml = xml_schema_regex.sub("", xml)

        report = xmltodict.parse(xml)["feedback"]
        report_metadata = report["report_metadata"]
        schema = "draft"
        if report.get("version") is not None:
            schema = report["version"]
        new_report: dict[str, Any] = {"xml_schema": schema}
        new_report_metadata: dict[str, Any] = {}
        if report_metadata.get("org_name") is None:
            if report_metadata.get("email") is not None:
                report_metadata["org_name"] = report_metadata["email"].split("@")[-1]
        org_name = report_metadata.get("org_name")
        if not org_name:
            logger.debug(
                "Could not parse org_name from XML.\r\n{0}".format(report.__str__())
            )
            raise KeyError("org_name")
        new_report_metadata["org_name"] = org_name
        new_report_metadata["org_email"] = report_metadata.get("email")
        new_report_metadata["org_extra_contact_info"] = report_metadata.get(
            "extra_contact_info"
        )
        report_id = report_metadata["report_id"]
        report_id = report_id.replace("<", "").replace(">", "").split("@")[0]
        new_report_metadata["report_id"] = report_id
        date_range = report_metadata["date_range"]
        new_report_metadata["begin_date"] = timestamp_to_human(date_range["begin"])
        new_report_metadata["end_date"] = timestamp_to_human(date_range["end"])
        errors += _as_list(report_metadata.get("error"))
        new_report_metadata["errors"] = errors
        new_report["report_metadata"] = new_report_metadata

        policy_published = report["policy_published"]
        if type(policy_published) is list:
            policy_published = policy_published[0]
        new_policy_published: dict[str, Any] = {}
        new_policy_published["domain"] = policy_published["domain"]
        new_policy_published["adkim"] = policy_published.get("adkim") or "r"
        new_policy_published["aspf"] = policy_published.get("aspf") or "r"
        new_policy_published["p"] = policy_published["p"]
        new_policy_published["sp"] = (
            policy_published.get("sp") or new_policy_published["p"]
        )
        new_policy_published["pct"] = policy_published.get("pct") or "100"
        new_policy_published["fo"] = policy_published.get("fo") or "0"
        new_report["policy_published"] = new_policy_published

        records = []
        for record in _as_list(report.get("record")):
            records.append(_parse_report_record(record))
        new_report["records"] = records
        new_report["extensions"] = _as_list(report.get("extensions"))

        return cast(AggregateReport, new_report)

    except expat.ExpatError as error:
        raise InvalidAggregateReport("Invalid XML: {0}".format(error.__str__()))

    except KeyError as error:
        raise InvalidAggregateReport("Missing field: {0}".format(error.__str__()))
    except AttributeError:
        raise InvalidAggregateReport("Report missing required section")

    except Exception as error:
        raise InvalidAggregateReport("Unexpected error: {0}".format(error.__str__()))


def extract_report(
    content: Union[bytes, str, BinaryIO], max_size: Optional[int] = None
) -> str:
    """
    Extracts text from a zip or gzip file, as a base64-encoded string,
    file-like object, or bytes.

    Args:
        content: report file as a base64-encoded string, file-like object or
        bytes.
        max_size (int): Maximum size of the extracted report in bytes

    Returns:
        str: The extracted text

    """
    try:
        if isinstance(content, str):
            try:
                data = b64decode(content, validate=True)
            except binascii.Error:
                return content
        elif isinstance(content, (bytes, bytearray)):
            data = bytes(content)
        else:
            data = content.read()
            if isinstance(data, str):
                raise ParserError("File objects must be opened in binary (rb) mode")

        if data.startswith(MAGIC_ZIP):
            with zipfile.ZipFile(BytesIO(data)) as _zip:
                with _zip.open(_zip.namelist()[0]) as member:
                    if max_size is None:
                        expanded = member.read()
                    else:
                        expanded = member.read(max_size + 1)
            if max_size is not None and len(expanded) > max_size:
                raise ParserError("Extracted report exceeds {0} bytes".format(max_size))
            report = expanded.decode(errors="ignore")
        elif data.startswith(MAGIC_GZIP):
            try:
                expanded = decompress_gzip(data, max_size=max_size)
            except DecompressionError as e:
                raise ParserError(e.__str__())
            report = expanded.decode(errors="ignore")
        elif data.startswith(MAGIC_XML) or data.lstrip().startswith(
            (b"<", MAGIC_JSON)
        ):
            report = data.decode(errors="ignore")
        else:
            raise ParserError("Not a valid zip, gzip, json, or xml file")

    except ParserError:
        raise
    except Exception as error:
        raise ParserError("Invalid archive file: {0}".format(error.__str__()))

    return report


def parse_aggregate_report_file(
    _input: Union[str, bytes, BinaryIO], max_size: Optional[int] = None
) -> AggregateReport:
    """Parses a file-like object or bytes as an aggregate DMARC report

    Args:
        _input (str | bytes | IO): The report XML, a zip or gzip file, or a
            file like object
        max_size (int): Maximum size of the extracted report in bytes

    Returns:
        dict: The parsed DMARC aggregate report
    """

    try:
        xml = extract_report(_input, max_size=max_size)
    except Exception as e:
        raise InvalidAggregateReport(e.__str__())

    return parse_aggregate_report_xml(xml)


def is_report_email(input_: Union[bytes, str]) -> bool:
    """
    Checks whether a message looks like it carries a DMARC or SMTP TLS report

    The subject convention of RFC 7489 section 7.2.1.1 is honored, and so are
    attachments named or typed like a compressed or plain report.

    Args:
        input_: The message in RFC 822 format

    Returns:
        bool: ``True`` when the message should be parsed
    """
    if isinstance(input_, (bytes, bytearray)):
        msg = email.message_from_bytes(bytes(input_))
    else:
        msg = email.message_from_string(input_)
    subject = str(msg.get("Subject", ""))
    if report_subject_regex.match(subject):
        return True
    for part in msg.walk():
        if part.get_content_type().lower() in REPORT_ATTACHMENT_CONTENT_TYPES:
            return True
        filename = part.get_filename()
        if filename and filename.lower().endswith(REPORT_ATTACHMENT_EXTENSIONS):
            return True
    return False


def parse_report_email(
    input_: Union[bytes, str], max_size: Optional[int] = None
) -> ReportRecord:
    """
    Parses a DMARC aggregate or SMTP TLS report from an email

    Args:
        input_: An emailed report in RFC 822 format, as bytes or a string
        max_size (int): Maximum size of an expanded attachment in bytes

    Returns:
        dict:
        * ``report_type``: ``DMARC`` or ``SMTP-TLS-RPT``
        * ``report``: The parsed report
    """
    msg_date: datetime = datetime.now(timezone.utc)

    try:
        if isinstance(input_, (bytes, bytearray)):
            input_str = bytes(input_).decode(encoding="utf8", errors="replace")
        else:
            input_str = input_

        parsed_msg = mailparser.parse_from_string(input_str)
        msg_headers = json.loads(parsed_msg.headers_json)
        if "Date" in msg_headers:
            msg_date = human_timestamp_to_datetime(msg_headers["Date"])
        date = email.utils.format_datetime(msg_date)
        msg = email.message_from_string(input_str)

    except Exception as e:
        raise InvalidDMARCReport(e.__str__())
    subject = None
    if "From" in msg_headers:
        logger.info("Parsing mail from {0} on {1}".format(msg_headers["From"], date))
    if "Subject" in msg_headers:
        subject = msg_headers["Subject"]
    for part in msg.walk():
        content_type = part.get_content_type().lower()
        if content_type.startswith("multipart/"):
            continue
        if content_type in ("text/html", "text/plain"):
            continue
        payload = part.get_payload(decode=True)
        if not payload:
            continue
        try:
            if content_type in ("application/tlsrpt+json", "application/tlsrpt+gzip"):
                smtp_tls_report = parse_smtp_tls_report(payload, max_size=max_size)
                return {"report_type": REPORT_TYPE_SMTP_TLS, "report": smtp_tls_report}

            if payload.startswith(MAGIC_ZIP) or payload.startswith(MAGIC_GZIP):
                payload_text = extract_report(payload, max_size=max_size)
            else:
                payload_text = payload.decode("utf-8", errors="replace")

            if payload_text.strip().startswith("{"):
                smtp_tls_report = parse_smtp_tls_report_json(payload_text)
                return {"report_type": REPORT_TYPE_SMTP_TLS, "report": smtp_tls_report}
            elif payload_text.strip().startswith("<"):
                aggregate_report = parse_aggregate_report_xml(payload_text)
                return {"report_type": REPORT_TYPE_DMARC, "report": aggregate_report}

        except InvalidReport as e:
            error = 'Message with subject "{0}" is not a valid report: {1}'.format(
                subject, e
            )
            raise type(e)(error)

        except ParserError as e:
            error = 'Unable to parse message with subject "{0}": {1}'.format(
                subject, e
            )
            raise InvalidDMARCReport(error)

    error = 'Message with subject "{0}" is not a valid report'.format(subject)
    raise InvalidDMARCReport(error)


def parse_report_file(
    input_: Union[bytes, str, BinaryIO], max_size: Optional[int] = None
) -> ReportRecord:
    """Parses a DMARC aggregate or SMTP TLS report file at the given path, a
    file-like object, or bytes

    Args:
        input_ (str | bytes | BinaryIO): A path to a file, a file like object, or bytes
        max_size (int): Maximum size of an expanded report in bytes

    Returns:
        dict: The parsed report
    """
    if isinstance(input_, str):
        logger.debug("Parsing {0}".format(input_))
        with open(input_, "rb") as file_object:
            content = file_object.read()
    elif isinstance(input_, (bytes, bytearray, memoryview)):
        content = bytes(input_)
    else:
        content = input_.read()

    if content.startswith(MAGIC_ZIP) or content.startswith(MAGIC_GZIP):
        try:
            content = extract_report(content, max_size=max_size).encode("utf-8")
        except ParserError as e:
            raise InvalidDMARCReport(e.__str__())

    try:
        report = parse_aggregate_report_file(content)
        return {"report_type": REPORT_TYPE_DMARC, "report": report}
    except InvalidAggregateReport:
        pass
    try:
        smtp_tls_report = parse_smtp_tls_report_json(content)
        return {"report_type": REPORT_TYPE_SMTP_TLS, "report": smtp_tls_report}
    except InvalidSMTPTLSReport:
        pass
    try:
        return parse_report_email(content, max_size=max_size)
    except InvalidReport:
        raise ParserError("Not a valid report")


def get_reports_from_mailbox(
    connection: MailboxConnection,
    *,
    reports_folder: str = "INBOX",
    archive_folder: Optional[str] = None,
    test: bool = False,
    batch_size: int = 0,
    max_report_size: Optional[int] = DEFAULT_MAX_REPORT_SIZE,
    callback: Optional[Callable[[ParsingResults], Any]] = None,
) -> ParsingResults:
    """
    Fetches and parses DMARC and SMTP TLS reports from a mailbox

    Each unseen message that looks like a report is parsed once and then
    marked as processed, whether or not it parsed. Messages that fail are
    moved to the ``Invalid`` subfolder of ``archive_folder`` when one is set.

    ``callback`` receives the results of each message before the message is
    marked as processed. A mailbox error ends the check early and the results
    gathered so far are returned.

    Args:
        connection: A Mailbox connection object
        reports_folder (str): The folder where reports can be found
        archive_folder (str): The folder to move processed mail to
        test (bool): Do not mark or move messages after processing them
        batch_size (int): Number of messages to read and process
            (use 0 for no limit)
        max_report_size (int): Maximum size of an expanded attachment in bytes
        callback: Called with the results of each message

    Returns:
        dict: Lists of parsed ``reports`` and ``failures``
    """
    if connection is None:
        raise ValueError("Must supply a connection")

    reports: list[ReportRecord] = []
    failures: list[ParseFailure] = []
    invalid_reports_folder = None
    if archive_folder:
        invalid_reports_folder = "{0}/Invalid".format(archive_folder)
        if not test:
            connection.create_folder(archive_folder)
            connection.create_folder(invalid_reports_folder)

    messages = connection.fetch_messages(reports_folder, unseen=True)
    total_messages = len(messages)
    logger.debug("Found {0} messages in {1}".format(total_messages, reports_folder))

    if batch_size:
        message_limit = min(total_messages, batch_size)
    else:
        message_limit = total_messages

    logger.debug("Processing {0} messages".format(message_limit))

    for i in range(message_limit):
        msg_uid = messages[i]
        logger.debug(
            "Processing message {0} of {1}: UID {2}".format(
                i + 1, message_limit, msg_uid
            )
        )
        try:
            msg_content = connection.fetch_message(msg_uid)
        except Exception as e:
            logger.error(
                "Mailbox error: Error fetching message UID {0}: {1}".format(msg_uid, e)
            )
            break
        if not is_report_email(msg_content):
            logger.debug("Skipping message UID {0}: not a report".format(msg_uid))
            continue
        message_results: ParsingResults = {"reports": [], "failures": []}
        destination = archive_folder
        try:
            parsed_email = parse_report_email(msg_content, max_size=max_report_size)
            if parsed_email["report_type"] == REPORT_TYPE_DMARC:
                report_org = parsed_email["report"]["report_metadata"]["org_name"]
                report_id = parsed_email["report"]["report_metadata"]["report_id"]
                report_key = f"{report_org}_{report_id}"
                if report_key not in SEEN_AGGREGATE_REPORT_IDS:
                    SEEN_AGGREGATE_REPORT_IDS[report_key] = True
                    message_results["reports"].append(parsed_email)
                else:
                    logger.debug(
                        f"Skipping duplicate aggregate report with ID: {report_id}"
                    )
            else:
                message_results["reports"].append(parsed_email)
        except ParserError as error:
            logger.warning(error.__str__())
            message_results["failures"].append(
                build_parse_failure(error, msg_content)
            )
            destination = invalid_reports_folder

        reports += message_results["reports"]
        failures += message_results["failures"]
        if callback is not None:
            callback(message_results)

        if test:
            continue
        try:
            connection.mark_message_seen(msg_uid)
            if destination:
                logger.debug(
                    "Moving message UID {0} to {1}".format(msg_uid, destination)
                )
                connection.move_message(msg_uid, destination)
        except Exception as e:
            logger.error(
                "Mailbox error: Error marking message UID {0}: {1}".format(msg_uid, e)
            )

    return {"reports": reports, "failures": failures}
