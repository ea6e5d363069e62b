# -*- coding: utf-8 -*-

"""Parsers for browser reports delivered through the Reporting API, and for
legacy CSP ``report-uri`` and SMTP TLS deliveries"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

from netjournal import (
    InvalidEnvelope,
    InvalidReport,
    InvalidReportingAPIReport,
    InvalidSMTPTLSReport,
    REPORT_TYPE_SMTP_TLS,
    build_parse_failure,
    parse_smtp_tls_report,
)
from netjournal.log import logger
from netjournal.types import ParsingResults, ReportRecord
from netjournal.utils import reject_json_constant

CRASH_REASONS = ("oom", "unresponsive")
PAGE_VISIBILITIES = ("visible", "hidden")
CSP_DISPOSITIONS = ("enforce", "report")
REPORTING_DISPOSITIONS = ("enforce", "reporting")
NEL_PHASES = ("dns", "connection", "application")
COOP_POLICIES = (
    "unsafe-none",
    "same-origin",
    "same-origin-allow-popups",
    "same-origin-plus-coep",
    "noopener-allow-popups",
)

CSP_TYPES = ("csp-violation", "csp-hash")

_TYPE_NAMES = {
    str: "a string",
    int: "an integer",
    float: "a number",
    bool: "a boolean",
    dict: "an object",
    list: "a list",
}


def _is_type(value: Any, expected: type) -> bool:
    if isinstance(value, bool) and expected is not bool:
        return False
    if expected is float:
        return isinstance(value, (int, float))
    return isinstance(value, expected)


def _copy_field(
    body: Dict[str, Any],
    new_body: Dict[str, Any],
    field: str,
    expected: type,
    *,
    required: bool = False,
    aliases: Sequence[str] = (),
    choices: Optional[Sequence[str]] = None,
):
    """Validates ``field`` (or one of its aliases) and copies it under
    ``field``. Absent or null optional fields are left out."""
    for name in (field,) + tuple(aliases):
        if body.get(name) is not None:
            value = body[name]
            break
    else:
        if required:
            raise KeyError(field)
        return
    if not _is_type(value, expected):
        raise InvalidReportingAPIReport(
            "{0} must be {1}".format(field, _TYPE_NAMES[expected])
        )
    if choices is not None and value not in choices:
        raise InvalidReportingAPIReport("Invalid {0} {1}".format(field, value))
    new_body[field] = value


def _copy_location(body: Dict[str, Any], new_body: Dict[str, Any]):
    _copy_field(body, new_body, "sourceFile", str, aliases=("source-file",))
    _copy_field(body, new_body, "lineNumber", int, aliases=("line-number",))
    _copy_field(body, new_body, "columnNumber", int, aliases=("column-number",))


def _parse_headers(field: str, headers: Any) -> Dict[str, list]:
    if not isinstance(headers, dict):
        raise InvalidReportingAPIReport("{0} must be an object".format(field))
    for name, values in headers.items():
        if not isinstance(values, list) or not all(
            isinstance(value, str) for value in values
        ):
            raise InvalidReportingAPIReport(
                "{0} {1} must be a list of strings".format(field, name)
            )
    return headers


def _parse_coep_body(body: Dict[str, Any]) -> Dict[str, Any]:
    new_body: Dict[str, Any] = {}
    _copy_field(body, new_body, "type", str, required=True)
    _copy_field(body, new_body, "blockedURL", str, required=True)
    _copy_field(
        body,
        new_body,
        "disposition",
        str,
        required=True,
        choices=REPORTING_DISPOSITIONS,
    )
    _copy_field(body, new_body, "destination", str)
    return new_body


def _parse_coop_body(body: Dict[str, Any]) -> Dict[str, Any]:
    new_body: Dict[str, Any] = {}
    _copy_field(
        body,
        new_body,
        "disposition",
        str,
        required=True,
        choices=REPORTING_DISPOSITIONS,
    )
    _copy_field(
        body, new_body, "effectivePolicy", str, required=True, choices=COOP_POLICIES
    )
    _copy_field(body, new_body, "type", str, required=True)
    # access reports name the window property that was touched
    _copy_field(
        body, new_body, "property", str, required=new_body["type"].startswith("access")
    )
    for field in (
        "openerURL",
        "openedWindowURL",
        "openedWindowInitialURL",
        "otherURL",
        "previousResponseURL",
        "nextResponseURL",
        "referrer",
    ):
        _copy_field(body, new_body, field, str)
    _copy_location(body, new_body)
    return new_body


def _parse_crash_body(body: Dict[str, Any]) -> Dict[str, Any]:
    new_body: Dict[str, Any] = {}
    _copy_field(body, new_body, "reason", str, required=True, choices=CRASH_REASONS)
    _copy_field(body, new_body, "stack", str)
    _copy_field(body, new_body, "is_top_level", bool)
    _copy_field(
        body,
        new_body,
        "page_visibility",
        str,
        aliases=("visibility_state",),
        choices=PAGE_VISIBILITIES,
    )
    return new_body


def _parse_csp_body(body: Dict[str, Any]) -> Dict[str, Any]:
    """Accepts CSP level 2 (kebab-case) and level 3 (camelCase) bodies and
    returns the level 3 form"""
    new_body: Dict[str, Any] = {}
    _copy_field(
        body, new_body, "documentURL", str, required=True, aliases=("document-uri",)
    )
    _copy_field(body, new_body, "referrer", str)
    _copy_field(body, new_body, "blockedURL", str, aliases=("blocked-uri",))
    _copy_field(
        body,
        new_body,
        "effectiveDirective",
        str,
        required=True,
        aliases=("effective-directive", "violated-directive", "violatedDirective"),
    )
    _copy_field(
        body, new_body, "violatedDirective", str, aliases=("violated-directive",)
    )
    _copy_field(
        body,
        new_body,
        "originalPolicy",
        str,
        required=True,
        aliases=("original-policy",),
    )
    _copy_field(body, new_body, "sample", str, aliases=("script-sample",))
    _copy_field(body, new_body, "disposition", str, choices=CSP_DISPOSITIONS)
    _copy_field(body, new_body, "statusCode", int, aliases=("status-code",))
    _copy_location(body, new_body)
    return new_body


def _parse_csp_hash_body(body: Dict[str, Any]) -> Dict[str, Any]:
    return dict(body)


def _parse_deprecation_body(body: Dict[str, Any]) -> Dict[str, Any]:
    new_body: Dict[str, Any] = {}
    _copy_field(body, new_body, "id", str, required=True)
    _copy_field(body, new_body, "message", str, required=True)
    _copy_field(body, new_body, "anticipatedRemoval", str)
    _copy_location(body, new_body)
    return new_body


def _parse_integrity_violation_body(body: Dict[str, Any]) -> Dict[str, Any]:
    new_body: Dict[str, Any] = {}
    _copy_field(body, new_body, "documentURL", str, required=True)
    _copy_field(body, new_body, "blockedURL", str, required=True)
    _copy_field(body, new_body, "destination", str, required=True)
    _copy_field(body, new_body, "reportOnly", bool, required=True)
    return new_body


def _parse_intervention_body(body: Dict[str, Any]) -> Dict[str, Any]:
    new_body: Dict[str, Any] = {}
    _copy_field(body, new_body, "id", str, required=True)
    _copy_field(body, new_body, "message", str, required=True)
    _copy_location(body, new_body)
    return new_body


def _parse_network_error_body(body: Dict[str, Any]) -> Dict[str, Any]:
    new_body: Dict[str, Any] = {}
    _copy_field(body, new_body, "sampling_fraction", float, required=True)
    _copy_field(body, new_body, "elapsed_time", int, required=True)
    _copy_field(body, new_body, "phase", str, required=True, choices=NEL_PHASES)
    _copy_field(body, new_body, "type", str, required=True)
    _copy_field(body, new_body, "method", str, required=True)
    _copy_field(body, new_body, "protocol", str, required=True)
    _copy_field(body, new_body, "server_ip", str, required=True)
    _copy_field(body, new_body, "status_code", int, required=True)
    _copy_field(body, new_body, "referrer", str)
    _copy_field(body, new_body, "url", str)
    for field in ("request_headers", "response_headers"):
        if body.get(field) is not None:
            new_body[field] = _parse_headers(field, body[field])
    return new_body


def _parse_permissions_policy_violation_body(body: Dict[str, Any]) -> Dict[str, Any]:
    new_body: Dict[str, Any] = {}
    _copy_field(body, new_body, "featureId", str, required=True)
    _copy_field(body, new_body, "disposition", str, required=True)
    _copy_field(body, new_body, "message", str)
    _copy_field(body, new_body, "allowAttribute", str)
    _copy_field(body, new_body, "srcAttribute", str)
    _copy_location(body, new_body)
    return new_body


# Reporting API ``type`` -> (log tag, body parser)
PARSERS: Dict[str, Tuple[str, Callable[[Dict[str, Any]], Dict[str, Any]]]] = {
    "coep": ("COEP", _parse_coep_body),
    "coop": ("COOP", _parse_coop_body),
    "crash": ("Crash", _parse_crash_body),
    "csp-hash": ("CSP-Hash", _parse_csp_hash_body),
    "csp-violation": ("CSP", _parse_csp_body),
    "deprecation": ("Deprecation", _parse_deprecation_body),
    "integrity-violation": ("IntegrityViolation", _parse_integrity_violation_body),
    "intervention": ("Intervention", _parse_intervention_body),
    "network-error": ("NEL", _parse_network_error_body),
    "permissions-policy-violation": (
        "PermissionsPolicyViolation",
        _parse_permissions_policy_violation_body,
    ),
}


def parse_reporting_api_report(
    report: Any, expected_types: Optional[Sequence[str]] = None
) -> ReportRecord:
    """
    Parses and validates a single Reporting API report

    Args:
        report: The decoded JSON object of one report
        expected_types (list): Reporting API types accepted here; any type
            known to the parser when ``None``

    Returns:
        dict:
        * ``report_type``: The log tag of the report kind
        * ``report``: The normalized report
    """
    if not isinstance(report, dict):
        raise InvalidReportingAPIReport("A report must be a JSON object")
    report_type = report.get("type")
    if not isinstance(report_type, str) or report_type not in PARSERS:
        raise InvalidReportingAPIReport("Unknown report type {0}".format(report_type))
    tag, parse_body = PARSERS[report_type]
    try:
        if expected_types is not None and report_type not in expected_types:
            raise InvalidReportingAPIReport(
                "Unexpected report type {0}".format(report_type)
            )
        body = report["body"]
        if not isinstance(body, dict):
            raise InvalidReportingAPIReport("body must be an object")
        new_report: Dict[str, Any] = {"type": report_type}
        _copy_field(report, new_report, "age", int)
        if new_report.get("age", 0) < 0:
            raise InvalidReportingAPIReport("age must not be negative")
        _copy_field(report, new_report, "url", str, required=True)
        _copy_field(report, new_report, "user_agent", str)
        new_report["body"] = parse_body(body)
    except KeyError as e:
        raise InvalidReportingAPIReport(
            "Missing required field: {0}".format(e), report_type=tag
        )
    except InvalidReport as e:
        raise InvalidReportingAPIReport(e.__str__(), report_type=tag)

    return {"report_type": tag, "report": new_report}


def parse_csp_level_2_report(report: Dict[str, Any]) -> ReportRecord:
    """
    Converts a CSP level 2 ``report-uri`` delivery into the Reporting API
    ``csp-violation`` shape

    Args:
        report (dict): The decoded ``{"csp-report": {...}}`` object

    Returns:
        dict: The parsed CSP report
    """
    try:
        body = report["csp-report"]
        if not isinstance(body, dict):
            raise InvalidReportingAPIReport("csp-report must be an object")
        new_body = _parse_csp_body(body)
    except KeyError as e:
        raise InvalidReportingAPIReport(
            "Missing required field: {0}".format(e), report_type="CSP"
        )
    except InvalidReport as e:
        raise InvalidReportingAPIReport(e.__str__(), report_type="CSP")
    new_report = {
        "type": "csp-violation",
        "url": new_body["documentURL"],
        "body": new_body,
    }
    return {"report_type": "CSP", "report": new_report}


def _load_json(payload: Union[str, bytes]) -> Any:
    try:
        if isinstance(payload, (bytes, bytearray)):
            payload = bytes(payload).decode("utf-8-sig")
        return json.loads(payload, parse_constant=reject_json_constant)
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        raise InvalidEnvelope("Invalid JSON: {0}".format(e))


def _resolve(
    data: Any,
    parse: Callable[[Any], ReportRecord],
) -> ParsingResults:
    # the outermost JSON value decides between one report and a batch
    if isinstance(data, dict):
        elements = [data]
    elif isinstance(data, list):
        elements = data
    else:
        raise InvalidEnvelope("Expected a JSON object or array")

    results: ParsingResults = {"reports": [], "failures": []}
    for element in elements:
        try:
            results["reports"].append(parse(element))
        except InvalidReport as e:
            logger.debug("Rejected report: {0}".format(e))
            results["failures"].append(
                build_parse_failure(e, json.dumps(element, ensure_ascii=False))
            )
    return results


def resolve_reports(
    payload: Union[str, bytes], expected_types: Optional[Sequence[str]] = None
) -> ParsingResults:
    """
    Unwraps a Reporting API delivery, a single report object or an array of
    them, and parses every report independently

    Args:
        payload: The raw request body
        expected_types (list): Reporting API types accepted here

    Returns:
        dict: Lists of parsed ``reports`` and ``failures``
    """
    data = _load_json(payload)
    return _resolve(
        data, lambda element: parse_reporting_api_report(element, expected_types)
    )


def resolve_csp_reports(
    payload: Union[str, bytes], expected_types: Optional[Sequence[str]] = CSP_TYPES
) -> ParsingResults:
    """
    Parses a CSP delivery, picking level 2 or level 3 from the JSON shape

    Browsers have been seen sending level 3 bodies under the level 2
    ``application/csp-report`` content type, so the header is ignored.

    Args:
        payload: The raw request body
        expected_types (list): Reporting API types accepted besides level 2
            reports; any type when ``None``

    Returns:
        dict: Lists of parsed ``reports`` and ``failures``
    """
    data = _load_json(payload)

    def parse(element):
        if isinstance(element, dict) and "csp-report" in element:
            return parse_csp_level_2_report(element)
        return parse_reporting_api_report(element, expected_types)

    return _resolve(data, parse)


def resolve_smtp_tls_report(
    payload: bytes, max_size: Optional[int] = None
) -> ParsingResults:
    """
    Parses an SMTP TLS report delivered over HTTPS, compressed or not

    Args:
        payload (bytes): The raw request body
        max_size (int): Maximum size of the decompressed report in bytes

    Returns:
        dict: Lists of parsed ``reports`` and ``failures``
    """
    results: ParsingResults = {"reports": [], "failures": []}
    try:
        report = parse_smtp_tls_report(payload, max_size=max_size)
        results["reports"].append(
            {"report_type": REPORT_TYPE_SMTP_TLS, "report": report}
        )
    except InvalidSMTPTLSReport as e:
        results["failures"].append(build_parse_failure(e, payload))
    return results
