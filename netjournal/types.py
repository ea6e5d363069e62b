from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, TypedDict

# NOTE: This module is intentionally Python 3.9 compatible.
# - No PEP 604 unions (A | B)
# - No typing.NotRequired / Required (3.11+) to avoid an extra dependency.
#   For optional keys, use total=False TypedDicts.


ReportType = Literal[
    "COEP",
    "COOP",
    "Crash",
    "CSP",
    "CSP-Hash",
    "Deprecation",
    "DMARC",
    "IntegrityViolation",
    "Intervention",
    "NEL",
    "PermissionsPolicyViolation",
    "SMTP-TLS-RPT",
]


class AggregateReportMetadata(TypedDict):
    org_name: str
    org_email: Optional[str]
    org_extra_contact_info: Optional[str]
    report_id: str
    begin_date: str
    end_date: str
    errors: List[str]


class AggregatePolicyPublished(TypedDict):
    domain: str
    adkim: str
    aspf: str
    p: str
    sp: str
    pct: str
    fo: str


class AggregateAlignment(TypedDict):
    spf: bool
    dkim: bool
    dmarc: bool


class AggregateIdentifiers(TypedDict):
    header_from: str
    envelope_from: Optional[str]
    envelope_to: Optional[str]


class AggregatePolicyOverrideReason(TypedDict):
    type: Optional[str]
    comment: Optional[str]


class AggregateAuthResultDKIM(TypedDict):
    domain: str
    result: str
    selector: str


class AggregateAuthResultSPF(TypedDict):
    domain: str
    result: str
    scope: str


class AggregateAuthResults(TypedDict):
    dkim: List[AggregateAuthResultDKIM]
    spf: List[AggregateAuthResultSPF]


class AggregatePolicyEvaluated(TypedDict):
    disposition: str
    dkim: str
    spf: str
    policy_override_reasons: List[AggregatePolicyOverrideReason]


class AggregateRecord(TypedDict):
    source: Dict[str, str]
    count: int
    alignment: AggregateAlignment
    policy_evaluated: AggregatePolicyEvaluated
    identifiers: AggregateIdentifiers
    auth_results: AggregateAuthResults


class AggregateReport(TypedDict):
    xml_schema: str
    report_metadata: AggregateReportMetadata
    policy_published: AggregatePolicyPublished
    records: List[AggregateRecord]
    extensions: List[Any]


class SMTPTLSFailureDetails(TypedDict, total=False):
    result_type: str
    failed_session_count: int
    sending_mta_ip: str
    receiving_ip: str
    receiving_mx_hostname: str
    receiving_mx_helo: str
    additional_info_uri: str
    failure_reason_code: str


class _SMTPTLSPolicyBase(TypedDict):
    policy_domain: str
    policy_type: str
    successful_session_count: int
    failed_session_count: int
    failure_details: List[SMTPTLSFailureDetails]


class SMTPTLSPolicy(_SMTPTLSPolicyBase, total=False):
    policy_strings: List[str]
    mx_host_patterns: List[str]


class SMTPTLSReport(TypedDict):
    organization_name: str
    begin_date: str
    end_date: str
    contact_info: str
    report_id: str
    policies: List[SMTPTLSPolicy]


class ReportRecord(TypedDict):
    report_type: ReportType
    report: Dict[str, Any]


class _ParseFailureBase(TypedDict):
    report_type: str
    reason: str
    payload_length: int


class ParseFailure(_ParseFailureBase, total=False):
    payload: str


class ParsingResults(TypedDict):
    reports: List[ReportRecord]
    failures: List[ParseFailure]


class UserAgentInfo(TypedDict):
    family: str
    major: Optional[str]
    minor: Optional[str]
    patch: Optional[str]
    patch_minor: Optional[str]


class DeviceInfo(TypedDict):
    family: str
    brand: Optional[str]
    model: Optional[str]


class URLInfo(TypedDict):
    host: Optional[str]
    path: Optional[str]
    query: Optional[str]


class DerivedMetrics(TypedDict):
    client: UserAgentInfo
    os: UserAgentInfo
    device: DeviceInfo
    url: URLInfo
