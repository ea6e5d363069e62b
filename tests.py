import gzip
import io
import json
import logging
import os
import re
import tempfile
import unittest
import zipfile
from argparse import Namespace
from base64 import b64decode
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from glob import glob

from fastapi.testclient import TestClient

import netjournal
import netjournal.cli
import netjournal.utils
from netjournal.derivation import MetricsEnricher, split_url
from netjournal.domain_filter import DomainFilter, accept, get_origin_domain
from netjournal.journal import ReportJournal
from netjournal.mail import MailboxConnection
from netjournal.pipeline import Pipeline
from netjournal.poller import MailboxPoller
from netjournal.reporting import (
    parse_reporting_api_report,
    resolve_csp_reports,
    resolve_reports,
    resolve_smtp_tls_report,
)
from netjournal.server import create_app

FIREFOX_60 = (
    "Mozilla/5.0 (X11; Linux x86_64; rv:60.0) Gecko/20100101 Firefox/60.0"
)

LINE_REGEX = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z INFO  "
    r"\[netjournal\.reports\]  (\S+) (\{.*\})$"
)

CRASH_REPORT = {
    "type": "crash",
    "body": {"reason": "oom"},
    "age": 42,
    "url": "https://example.com/",
    "user_agent": FIREFOX_60,
}

DEPRECATION_REPORT = {
    "type": "deprecation",
    "age": 27,
    "url": "https://example.com/",
    "body": {
        "id": "websql",
        "anticipatedRemoval": "2020-01-01",
        "message": "WebSQL is deprecated and will be removed in Chrome 97",
        "sourceFile": "https://example.com/index.js",
        "lineNumber": 1234,
        "columnNumber": 42,
    },
}

NEL_REPORT = {
    "type": "network-error",
    "age": 0,
    "url": "https://www.example.com/",
    "body": {
        "sampling_fraction": 0.5,
        "referrer": "http://example.com/",
        "server_ip": "2001:DB8:0:0:0:0:0:42",
        "protocol": "h2",
        "method": "GET",
        "request_headers": {},
        "response_headers": {},
        "status_code": 200,
        "elapsed_time": 823,
        "phase": "application",
        "type": "http.protocol.error",
    },
}


def read_sample(path):
    with open(path, "rb") as sample_file:
        return sample_file.read()


def make_pipeline(domains=None):
    stream = io.StringIO()
    return Pipeline(ReportJournal(stream=stream), DomainFilter(domains)), stream


def journal_lines(stream):
    """Splits journal output into (tag, document) pairs"""
    lines = []
    for line in stream.getvalue().splitlines():
        match = LINE_REGEX.match(line)
        assert match is not None, line
        lines.append((match.group(1), json.loads(match.group(2))))
    return lines


def build_report_email(subject, attachment, filename, subtype):
    msg = MIMEMultipart()
    msg["From"] = "Yahoo <noreply@dmarc.yahoo.com>"
    msg["To"] = "dmarc@nerou.de"
    msg["Subject"] = subject
    msg.attach(MIMEText("This is a DMARC aggregate report"))
    part = MIMEApplication(attachment, subtype)
    part.add_header("Content-Disposition", "attachment", filename=filename)
    msg.attach(part)
    return msg.as_string()


def zip_bytes(filename, content):
    output = io.BytesIO()
    with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as _zip:
        _zip.writestr(filename, content)
    return output.getvalue()


class FakeConnection(MailboxConnection):
    def __init__(self, messages):
        self.messages = dict(messages)
        self.seen = set()
        self.moved = {}
        self.folders = []
        self.closed = False

    def create_folder(self, folder_name):
        self.folders.append(folder_name)

    def fetch_messages(self, reports_folder, **kwargs):
        uids = sorted(self.messages)
        if kwargs.get("unseen"):
            uids = [uid for uid in uids if uid not in self.seen]
        return uids

    def fetch_message(self, message_id):
        return self.messages[message_id]

    def mark_message_seen(self, message_id):
        self.seen.add(message_id)

    def move_message(self, message_id, folder_name):
        self.moved[message_id] = folder_name

    def close(self):
        self.closed = True


class FailingConnection(FakeConnection):
    """Drops the connection when a given message is fetched"""

    def __init__(self, messages, failing_uid):
        super().__init__(messages)
        self.failing_uid = failing_uid

    def fetch_message(self, message_id):
        if message_id == self.failing_uid:
            raise OSError("connection reset by peer")
        return super().fetch_message(message_id)


class Test(unittest.TestCase):
    def testDecompressGzip(self):
        """Test gzip expansion and its size limit"""
        data = b"x" * 1000
        compressed = gzip.compress(data)
        assert netjournal.utils.decompress_gzip(compressed) == data
        assert netjournal.utils.decompress_gzip(compressed, max_size=1000) == data
        with self.assertRaises(netjournal.utils.DecompressionError):
            netjournal.utils.decompress_gzip(compressed, max_size=999)
        with self.assertRaises(netjournal.utils.DecompressionError):
            netjournal.utils.decompress_gzip(compressed[:12], max_size=1000)

    def testTimestampToHuman(self):
        """DMARC timestamps are rendered in UTC"""
        assert netjournal.utils.timestamp_to_human(1665532800) == (
            "2022-10-12 00:00:00"
        )

    def testAggregateSamples(self):
        """Test sample aggregate/rua DMARC reports"""
        print()
        sample_paths = glob("samples/dmarc/*")
        for sample_path in sample_paths:
            if os.path.isdir(sample_path):
                continue
            print("Testing {0}: ".format(sample_path), end="")
            parsed = netjournal.parse_report_file(sample_path)
            self.assertEqual(parsed["report_type"], "DMARC")
            print("Passed!")

    def testAggregateReport(self):
        report = netjournal.parse_report_file("samples/dmarc/yahoo.xml")["report"]
        metadata = report["report_metadata"]
        self.assertEqual(metadata["org_name"], "Yahoo")
        self.assertEqual(metadata["org_email"], "dmarchelp@yahooinc.com")
        self.assertEqual(metadata["report_id"], "1665623424.142074")
        self.assertEqual(metadata["begin_date"], "2022-10-12 00:00:00")
        self.assertEqual(metadata["errors"], [])
        self.assertEqual(report["policy_published"]["domain"], "nerou.de")
        self.assertEqual(report["policy_published"]["sp"], "reject")
        self.assertEqual(report["extensions"], [])
        self.assertEqual(len(report["records"]), 1)
        record = report["records"][0]
        self.assertEqual(record["source"]["ip_address"], "23.88.125.229")
        self.assertEqual(record["count"], 1)
        self.assertTrue(record["alignment"]["dmarc"])
        self.assertEqual(record["policy_evaluated"]["policy_override_reasons"], [])
        self.assertEqual(record["identifiers"]["envelope_from"], "nerou.de")
        self.assertEqual(
            record["auth_results"]["dkim"],
            [{"domain": "nerou.de", "selector": "default", "result": "pass"}],
        )
        self.assertEqual(record["auth_results"]["spf"][0]["scope"], "mfrom")

    def testAggregateReportWithoutRecords(self):
        """Absent optional blocks become empty lists"""
        report = netjournal.parse_report_file("samples/dmarc/empty_report.xml")[
            "report"
        ]
        self.assertEqual(report["xml_schema"], "1.0")
        self.assertEqual(report["records"], [])
        self.assertEqual(report["extensions"], [])
        self.assertEqual(report["report_metadata"]["errors"], [])
        self.assertEqual(report["policy_published"]["adkim"], "r")

    def testAggregateReportInvalidRecord(self):
        """One invalid record fails the whole report"""
        data = read_sample("samples/invalid/dmarc_invalid_record.xml")
        with self.assertRaises(netjournal.InvalidAggregateReport):
            netjournal.parse_aggregate_report_file(data)

    def testEmptySample(self):
        """Test empty/unparasable report"""
        with self.assertRaises(netjournal.ParserError):
            netjournal.parse_report_file("samples/invalid/empty.xml")

    def testExtractReportArchives(self):
        xml = read_sample("samples/dmarc/yahoo.xml")
        assert netjournal.extract_report(gzip.compress(xml)) == xml.decode()
        assert netjournal.extract_report(zip_bytes("yahoo.xml", xml)) == xml.decode()
        with self.assertRaises(netjournal.ParserError):
            netjournal.extract_report(b"\x00\x01 not a report")

    def testExtractReportSizeLimit(self):
        xml = read_sample("samples/dmarc/yahoo.xml")
        for archive in (gzip.compress(xml), zip_bytes("yahoo.xml", xml)):
            self.assertEqual(
                netjournal.extract_report(archive, max_size=len(xml)), xml.decode()
            )
            with self.assertRaises(netjournal.ParserError):
                netjournal.extract_report(archive, max_size=len(xml) - 1)
        with self.assertRaises(netjournal.InvalidAggregateReport):
            netjournal.parse_aggregate_report_file(gzip.compress(xml), max_size=100)

    def testSmtpTlsSamples(self):
        """Test sample SMTP TLS reports"""
        print()
        sample_paths = glob("samples/smtp_tls/*")
        for sample_path in sample_paths:
            if os.path.isdir(sample_path):
                continue
            print("Testing {0}: ".format(sample_path), end="")
            parsed = netjournal.parse_report_file(sample_path)
            self.assertEqual(parsed["report_type"], "SMTP-TLS-RPT")
            print("Passed!")

    def testSmtpTlsReport(self):
        data = read_sample("samples/smtp_tls/rfc8460.json")
        report = netjournal.parse_smtp_tls_report(data)
        self.assertEqual(report["organization_name"], "Company-X")
        self.assertEqual(report["begin_date"], "2016-04-01T00:00:00Z")
        self.assertEqual(report["report_id"], "5065427c-23d3-47ca-b6e0-946ea0e8c4be")
        policy = report["policies"][0]
        self.assertEqual(policy["policy_domain"], "company-y.example")
        self.assertEqual(policy["policy_type"], "sts")
        self.assertEqual(policy["mx_host_patterns"], ["*.mail.company-y.example"])
        self.assertEqual(policy["successful_session_count"], 5326)
        self.assertEqual(policy["failed_session_count"], 303)
        details = policy["failure_details"]
        self.assertEqual(
            [d["failed_session_count"] for d in details], [100, 200, 3]
        )
        self.assertTrue(details[1]["additional_info_uri"].startswith("https://"))
        self.assertEqual(
            details[2]["failure_reason_code"], "X509_V_ERR_PROXY_PATH_LENGTH_EXCEEDED"
        )

    def testSmtpTlsReportGzipSniffing(self):
        """Compressed reports are recognized by their magic bytes"""
        data = read_sample("samples/smtp_tls/rfc8460.json")
        plain = netjournal.parse_smtp_tls_report(data)
        compressed = netjournal.parse_smtp_tls_report(gzip.compress(data))
        self.assertEqual(plain, compressed)
        self.assertEqual(
            netjournal.parse_report_file(gzip.compress(data))["report"], plain
        )

    def testSmtpTlsReportDefaults(self):
        report = json.loads(read_sample("samples/smtp_tls/rfc8460.json"))
        del report["policies"][0]["failure-details"]
        parsed = netjournal.parse_smtp_tls_report(json.dumps(report))
        self.assertEqual(parsed["policies"][0]["failure_details"], [])

    def testSmtpTlsReportFailures(self):
        data = read_sample("samples/smtp_tls/rfc8460.json")
        with self.assertRaises(netjournal.InvalidSMTPTLSReport):
            netjournal.parse_smtp_tls_report(gzip.compress(data), max_size=100)
        report = json.loads(data)
        report["policies"][0]["policy"]["policy-type"] = "dane"
        with self.assertRaises(netjournal.InvalidSMTPTLSReport):
            netjournal.parse_smtp_tls_report(json.dumps(report))
        report = json.loads(data)
        report["policies"][0]["summary"]["total-failure-session-count"] = "303"
        with self.assertRaises(netjournal.InvalidSMTPTLSReport):
            netjournal.parse_smtp_tls_report(json.dumps(report))

    def testSmtpTlsReportNonFiniteNumbers(self):
        data = read_sample("samples/smtp_tls/rfc8460.json")
        for constant in (b"NaN", b"Infinity", b"-Infinity"):
            with self.assertRaises(netjournal.InvalidSMTPTLSReport):
                netjournal.parse_smtp_tls_report(data.replace(b"5326", constant))

    def testSmtpTlsFailureKeepsPayload(self):
        payload = b'{"organization-name": "Company-X"}'
        results = resolve_smtp_tls_report(payload)
        self.assertEqual(results["reports"], [])
        failure = results["failures"][0]
        self.assertEqual(failure["report_type"], "SMTP-TLS-RPT")
        self.assertEqual(failure["payload_length"], len(payload))
        self.assertEqual(b64decode(failure["payload"]), payload)

    def testParseFailureWithoutType(self):
        failure = netjournal.build_parse_failure(netjournal.ParserError("nope"))
        self.assertEqual(
            failure, {"report_type": "Unknown", "reason": "nope", "payload_length": 0}
        )


class TestReportingAPI(unittest.TestCase):
    def testEnvelopeTransparency(self):
        """A report parses the same alone and inside a batch"""
        single = resolve_reports(json.dumps(CRASH_REPORT))
        batch = resolve_reports(json.dumps([CRASH_REPORT]))
        self.assertEqual(single, batch)
        self.assertEqual(single["reports"][0]["report_type"], "Crash")
        self.assertEqual(single["reports"][0]["report"], CRASH_REPORT)

    def testBatchWithInvalidElement(self):
        bad_crash = dict(CRASH_REPORT, body={"reason": "bored"})
        results = resolve_reports(
            json.dumps([CRASH_REPORT, bad_crash, DEPRECATION_REPORT])
        )
        self.assertEqual(
            [r["report_type"] for r in results["reports"]], ["Crash", "Deprecation"]
        )
        self.assertEqual(len(results["failures"]), 1)
        self.assertEqual(results["failures"][0]["report_type"], "Crash")

    def testInvalidEnvelopes(self):
        for payload in (b"not json", b"42", b'"crash"', b"\xff\xfe{}"):
            with self.assertRaises(netjournal.InvalidEnvelope):
                resolve_reports(payload)

    def testNonFiniteNumbers(self):
        payload = json.dumps(NEL_REPORT).replace("0.5", "NaN")
        with self.assertRaises(netjournal.InvalidEnvelope):
            resolve_reports(payload)
        with self.assertRaises(netjournal.InvalidEnvelope):
            resolve_csp_reports(payload.replace("NaN", "Infinity"))

    def testDeeplyNestedEnvelope(self):
        with self.assertRaises(netjournal.InvalidEnvelope):
            resolve_reports(b"[" * 200000)

    def testUnknownAndNonObjectElements(self):
        results = resolve_reports(json.dumps([{"type": "mystery", "url": "x"}, 42]))
        self.assertEqual(results["reports"], [])
        self.assertEqual(
            [f["report_type"] for f in results["failures"]], ["Unknown", "Unknown"]
        )

    def testExpectedTypes(self):
        results = resolve_reports(
            json.dumps(DEPRECATION_REPORT), expected_types=("crash",)
        )
        self.assertEqual(results["reports"], [])
        self.assertEqual(results["failures"][0]["report_type"], "Deprecation")

    def testEnvelopeFields(self):
        with self.assertRaises(netjournal.InvalidReportingAPIReport):
            parse_reporting_api_report(dict(CRASH_REPORT, age=-1))
        with self.assertRaises(netjournal.InvalidReportingAPIReport):
            parse_reporting_api_report({"type": "crash", "body": {"reason": "oom"}})
        report = dict(CRASH_REPORT)
        del report["age"]
        del report["user_agent"]
        parsed = parse_reporting_api_report(report)["report"]
        self.assertNotIn("age", parsed)
        self.assertNotIn("user_agent", parsed)

    def testNetworkError(self):
        """sampling_fraction is a number and the body url is optional"""
        parsed = parse_reporting_api_report(NEL_REPORT)
        self.assertEqual(parsed["report_type"], "NEL")
        body = parsed["report"]["body"]
        self.assertEqual(body["sampling_fraction"], 0.5)
        self.assertNotIn("url", body)
        parsed = parse_reporting_api_report(
            dict(NEL_REPORT, body=dict(NEL_REPORT["body"], sampling_fraction=1))
        )
        self.assertEqual(parsed["report"]["body"]["sampling_fraction"], 1)
        with self.assertRaises(netjournal.InvalidReportingAPIReport):
            parse_reporting_api_report(
                dict(NEL_REPORT, body=dict(NEL_REPORT["body"], sampling_fraction=True))
            )
        with self.assertRaises(netjournal.InvalidReportingAPIReport):
            parse_reporting_api_report(
                dict(NEL_REPORT, body=dict(NEL_REPORT["body"], phase="tls"))
            )

    def testCrash(self):
        body = {"reason": "unresponsive", "visibility_state": "hidden", "extra": 1}
        parsed = parse_reporting_api_report(dict(CRASH_REPORT, body=body))
        self.assertEqual(
            parsed["report"]["body"],
            {"reason": "unresponsive", "page_visibility": "hidden"},
        )

    def testCoop(self):
        report = {
            "type": "coop",
            "url": "bar.example/foo",
            "body": {
                "disposition": "reporting",
                "effectivePolicy": "same-origin",
                "property": "postMessage",
                "referrer": "foo.example",
                "type": "access-to-opener",
            },
        }
        parsed = parse_reporting_api_report(report)
        self.assertEqual(parsed["report_type"], "COOP")
        del report["body"]["property"]
        with self.assertRaises(netjournal.InvalidReportingAPIReport):
            parse_reporting_api_report(report)
        report["body"]["type"] = "navigation-from-response"
        self.assertEqual(parse_reporting_api_report(report)["report_type"], "COOP")

    def testOtherKinds(self):
        reports = [
            (
                "COEP",
                {
                    "disposition": "reporting",
                    "blockedURL": "https://example.com/",
                    "type": "corp",
                },
            ),
            (
                "IntegrityViolation",
                {
                    "documentURL": "https://example.com/",
                    "blockedURL": "https://cdn.example.com/app.js",
                    "destination": "script",
                    "reportOnly": False,
                },
            ),
            (
                "Intervention",
                {
                    "id": "audio-no-gesture",
                    "message": "A request to play audio was blocked",
                    "sourceFile": "https://example.com/index.js",
                    "lineNumber": 1234,
                    "columnNumber": 42,
                },
            ),
            (
                "PermissionsPolicyViolation",
                {"featureId": "geolocation", "disposition": "enforce"},
            ),
            (
                "CSP-Hash",
                {
                    "document_url": "https://example.com/",
                    "subresource_url": "https://example.com/app.js",
                    "hash": "sha256-abc",
                    "type": "subresource",
                    "destination": "script",
                },
            ),
        ]
        types = {
            "COEP": "coep",
            "IntegrityViolation": "integrity-violation",
            "Intervention": "intervention",
            "PermissionsPolicyViolation": "permissions-policy-violation",
            "CSP-Hash": "csp-hash",
        }
        for tag, body in reports:
            report = {"type": types[tag], "url": "https://example.com/", "body": body}
            parsed = parse_reporting_api_report(report)
            self.assertEqual(parsed["report_type"], tag)
            self.assertEqual(parsed["report"]["body"], body)
        with self.assertRaises(netjournal.InvalidReportingAPIReport):
            parse_reporting_api_report(
                {
                    "type": "permissions-policy-violation",
                    "url": "https://example.com/",
                    "body": {"featureId": "geolocation"},
                }
            )

    def testCspLevel2(self):
        """Level 2 reports are re-expressed with level 3 keys"""
        payload = read_sample("samples/reporting_api/csp_level_2.json")
        results = resolve_csp_reports(payload)
        self.assertEqual(results["failures"], [])
        record = results["reports"][0]
        self.assertEqual(record["report_type"], "CSP")
        report = record["report"]
        self.assertEqual(report["type"], "csp-violation")
        self.assertEqual(report["url"], "http://example.org/page.html")
        self.assertEqual(
            report["body"],
            {
                "documentURL": "http://example.org/page.html",
                "referrer": "http://evil.example.com/haxor.html",
                "blockedURL": "http://evil.example.com/image.png",
                "effectiveDirective": "img-src",
                "violatedDirective": "default-src 'self'",
                "originalPolicy": "default-src 'self'; "
                "report-uri http://example.org/csp-report.cgi",
            },
        )

    def testCspLevel2WithoutEffectiveDirective(self):
        report = json.loads(read_sample("samples/reporting_api/csp_level_2.json"))
        del report["csp-report"]["effective-directive"]
        body = resolve_csp_reports(json.dumps(report))["reports"][0]["report"]["body"]
        self.assertEqual(body["effectiveDirective"], "default-src 'self'")

    def testCspLevel3(self):
        payload = read_sample("samples/reporting_api/csp_level_3.json")
        results = resolve_csp_reports(payload)
        report = results["reports"][0]["report"]
        self.assertEqual(report["age"], 53531)
        self.assertEqual(report["body"]["effectiveDirective"], "script-src-elem")
        self.assertEqual(report["body"]["statusCode"], 200)
        results = resolve_csp_reports(json.dumps(CRASH_REPORT))
        self.assertEqual(results["reports"], [])
        self.assertEqual(results["failures"][0]["report_type"], "Crash")


class TestDomainFilter(unittest.TestCase):
    def testMatching(self):
        domain_filter = DomainFilter(["*.Example.com", "example.org.", ""])
        self.assertEqual(domain_filter.patterns, ("*.example.com", "example.org"))
        self.assertTrue(domain_filter.accept("www.example.com"))
        self.assertTrue(domain_filter.accept("WWW.EXAMPLE.COM."))
        self.assertFalse(domain_filter.accept("example.com"))
        self.assertTrue(domain_filter.accept("example.org"))
        self.assertFalse(domain_filter.accept("www.example.org"))
        self.assertFalse(domain_filter.accept(None))
        self.assertTrue(accept("example.org", domain_filter))

    def testEmptyFilterAcceptsEverything(self):
        domain_filter = DomainFilter()
        self.assertFalse(domain_filter)
        self.assertTrue(domain_filter.accept("example.net"))
        self.assertTrue(domain_filter.accept(None))

    def testOriginDomains(self):
        crash = parse_reporting_api_report(CRASH_REPORT)
        self.assertEqual(get_origin_domain(crash), "example.com")
        dmarc = netjournal.parse_report_file("samples/dmarc/yahoo.xml")
        self.assertEqual(get_origin_domain(dmarc), "nerou.de")
        tls = netjournal.parse_report_file("samples/smtp_tls/rfc8460.json")
        self.assertEqual(get_origin_domain(tls), "company-y.example")
        csp = resolve_csp_reports(read_sample("samples/reporting_api/csp_level_2.json"))
        self.assertEqual(get_origin_domain(csp["reports"][0]), "example.org")

    def testSmtpTlsReportWithoutPolicies(self):
        record = {
            "report_type": "SMTP-TLS-RPT",
            "report": {
                "organization_name": "Company-X",
                "begin_date": "2016-04-01T00:00:00Z",
                "end_date": "2016-04-01T23:59:59Z",
                "contact_info": "sts-reporting@company-x.example",
                "report_id": "1",
                "policies": [],
            },
        }
        self.assertTrue(DomainFilter(["example.com"]).accept_record(record))


class TestDerivation(unittest.TestCase):
    def testUserAgent(self):
        derived = MetricsEnricher().derive(
            FIREFOX_60, "https://example.com/page?lang=en"
        )
        self.assertEqual(derived["client"]["family"], "Firefox")
        self.assertEqual(derived["client"]["major"], "60")
        self.assertEqual(derived["os"]["family"], "Linux")
        self.assertEqual(
            derived["url"], {"host": "example.com", "path": "/page", "query": "lang=en"}
        )

    def testMissingSources(self):
        derived = MetricsEnricher().derive()
        self.assertEqual(derived["client"]["family"], "Other")
        self.assertIsNone(derived["client"]["major"])
        self.assertEqual(
            derived["device"], {"family": "Other", "brand": None, "model": None}
        )
        self.assertEqual(derived["url"], {"host": None, "path": None, "query": None})

    def testSplitUrl(self):
        self.assertEqual(
            split_url("bar.example/foo"),
            {"host": "bar.example", "path": "/foo", "query": None},
        )
        self.assertEqual(split_url("inline")["host"], "inline")
        self.assertEqual(split_url("http://[::1")["host"], None)

    def testCustomRuleset(self):
        ruleset = (
            "user_agent_parsers:\n"
            "  - regex: '(NetjournalAgent)/(\\d+)\\.(\\d+)'\n"
            "os_parsers: []\n"
            "device_parsers: []\n"
        )
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "regexes.yaml")
            with open(path, "w") as ruleset_file:
                ruleset_file.write(ruleset)
            enricher = MetricsEnricher()
            enricher.reload(path)
        derived = enricher.derive("NetjournalAgent/3.14")
        self.assertEqual(derived["client"]["family"], "NetjournalAgent")
        self.assertEqual(derived["client"]["major"], "3")
        self.assertEqual(derived["client"]["minor"], "14")
        self.assertEqual(enricher.derive(FIREFOX_60)["client"]["family"], "Other")

    def testInvalidRuleset(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "regexes.yaml")
            with open(path, "w") as ruleset_file:
                ruleset_file.write("- not a ruleset\n")
            with self.assertRaises(ValueError):
                MetricsEnricher(path)


class TestPipeline(unittest.TestCase):
    def testJournalLineFormat(self):
        pipeline, stream = make_pipeline()
        pipeline.process(resolve_reports(json.dumps(CRASH_REPORT)))
        lines = journal_lines(stream)
        self.assertEqual(len(lines), 1)
        tag, document = lines[0]
        self.assertEqual(tag, "Crash")
        self.assertEqual(document["report"], CRASH_REPORT)
        self.assertEqual(document["derived"]["client"]["family"], "Firefox")
        self.assertEqual(document["derived"]["url"]["host"], "example.com")

    def testJournalEmitWithoutDerived(self):
        stream = io.StringIO()
        journal = ReportJournal(stream=stream)
        journal.emit("Crash", {"type": "crash"})
        self.assertEqual(
            journal_lines(stream),
            [("Crash", {"report": {"type": "crash"}, "derived": None})],
        )

    def testJournalRefusesNonFiniteNumbers(self):
        stream = io.StringIO()
        journal = ReportJournal(stream=stream)
        with self.assertRaises(ValueError):
            journal.emit("NEL", {"body": {"sampling_fraction": float("nan")}})
        self.assertEqual(stream.getvalue(), "")

    def testJournalTagMustDifferFromAppLogger(self):
        app_logger = logging.getLogger("netjournal")
        handlers = list(app_logger.handlers)
        for tag in ("netjournal", "", "root"):
            with self.assertRaises(ValueError):
                ReportJournal(stream=io.StringIO(), tag=tag)
        self.assertEqual(app_logger.handlers, handlers)
        self.assertTrue(app_logger.propagate)
        stream = io.StringIO()
        journal = ReportJournal(stream=stream, tag="netjournal.csp")
        journal.emit("CSP", {})
        self.assertIn("[netjournal.csp]  CSP", stream.getvalue())
        journal.close()

    def testJournalFile(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "reports.log")
            journal = ReportJournal(path)
            journal.emit("NEL", {"type": "network-error"})
            journal.emit("NEL", {"type": "network-error", "note": "größe"})
            journal.close()
            with open(path, encoding="utf-8") as log_file:
                lines = log_file.read().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertTrue(LINE_REGEX.match(lines[1]))
        self.assertIn("größe", lines[1])

    def testRequestUserAgentFallback(self):
        pipeline, stream = make_pipeline()
        report = dict(NEL_REPORT)
        pipeline.process(resolve_reports(json.dumps(report)), FIREFOX_60)
        derived = journal_lines(stream)[0][1]["derived"]
        self.assertEqual(derived["client"]["family"], "Firefox")

    def testFilterRejectionWritesNothing(self):
        pipeline, stream = make_pipeline(["example.org"])
        emitted = pipeline.process(resolve_reports(json.dumps(CRASH_REPORT)))
        self.assertEqual(emitted, 0)
        self.assertEqual(stream.getvalue(), "")
        pipeline.reload_filter(["*.com", "example.com"])
        emitted = pipeline.process(resolve_reports(json.dumps(CRASH_REPORT)))
        self.assertEqual(emitted, 1)

    def testFailuresAreLogged(self):
        pipeline, stream = make_pipeline()
        results = resolve_reports(json.dumps([CRASH_REPORT, {"type": "crash"}]))
        with self.assertLogs("netjournal", level="WARNING") as logs:
            emitted = pipeline.process(results)
        self.assertEqual(emitted, 1)
        self.assertIn("Invalid Crash report", logs.output[0])

    def testMailReportDerivation(self):
        pipeline, stream = make_pipeline()
        record = netjournal.parse_report_file("samples/dmarc/yahoo.xml")
        derived = pipeline.derive(record)
        self.assertEqual(derived["client"]["family"], "Yahoo")
        self.assertEqual(derived["url"]["host"], "nerou.de")
        record = netjournal.parse_report_file("samples/smtp_tls/rfc8460.json")
        derived = pipeline.derive(record)
        self.assertEqual(derived["client"]["family"], "Other")
        self.assertEqual(derived["url"]["host"], "company-y.example")

    def testCliParse(self):
        pipeline, stream = make_pipeline()
        expected = {
            "samples/dmarc/yahoo.xml": 1,
            "samples/smtp_tls/rfc8460.json": 1,
            "samples/reporting_api/crash.json": 1,
            "samples/reporting_api/csp_level_2.json": 1,
            "samples/reporting_api/csp_level_3.json": 1,
            "samples/reporting_api/batch.json": 4,
        }
        for path, count in expected.items():
            self.assertEqual(netjournal.cli.cli_parse(path, pipeline), count, path)
        tags = [tag for tag, document in journal_lines(stream)]
        self.assertEqual(
            tags,
            ["DMARC", "SMTP-TLS-RPT", "Crash", "CSP", "CSP", "NEL", "COOP", "COEP",
             "Intervention"],
        )


class TestMailbox(unittest.TestCase):
    def setUp(self):
        netjournal.SEEN_AGGREGATE_REPORT_IDS.clear()
        self.xml = read_sample("samples/dmarc/yahoo.xml")
        self.subject = (
            "Report Domain: nerou.de Submitter: Yahoo Report-ID: <1665623424.142074>"
        )

    def testIsReportEmail(self):
        msg = build_report_email("Hello", b"{}", "report.json", "json")
        self.assertTrue(netjournal.is_report_email(msg))
        msg = build_report_email(self.subject, b"data", "notes.bin", "octet-stream")
        self.assertTrue(netjournal.is_report_email(msg))
        msg = MIMEText("Lunch?")
        msg["Subject"] = "Hello"
        self.assertFalse(netjournal.is_report_email(msg.as_string()))

    def testGzipAndZipAttachments(self):
        for attachment, filename, subtype in (
            (gzip.compress(self.xml), "yahoo.xml.gz", "gzip"),
            (zip_bytes("yahoo.xml", self.xml), "yahoo.zip", "zip"),
            (self.xml, "yahoo.xml", "xml"),
        ):
            msg = build_report_email(self.subject, attachment, filename, subtype)
            parsed = netjournal.parse_report_email(msg)
            self.assertEqual(parsed["report_type"], "DMARC")
            self.assertEqual(
                parsed["report"]["report_metadata"]["report_id"], "1665623424.142074"
            )

    def testSmtpTlsAttachment(self):
        data = read_sample("samples/smtp_tls/rfc8460.json")
        msg = build_report_email(
            "Report Domain: company-y.example", gzip.compress(data),
            "report.json.gz", "tlsrpt+gzip",
        )
        parsed = netjournal.parse_report_email(msg)
        self.assertEqual(parsed["report_type"], "SMTP-TLS-RPT")
        self.assertEqual(parsed["report"]["organization_name"], "Company-X")

    def testMailboxProcessing(self):
        """Messages are processed once and archived"""
        broken = read_sample("samples/invalid/dmarc_invalid_record.xml")
        connection = FakeConnection(
            {
                1: build_report_email(
                    self.subject, gzip.compress(self.xml), "yahoo.xml.gz", "gzip"
                ),
                2: build_report_email(
                    self.subject, zip_bytes("yahoo.xml", self.xml), "yahoo.zip", "zip"
                ),
                3: build_report_email(
                    "Report Domain: example.com", gzip.compress(broken),
                    "broken.xml.gz", "gzip",
                ),
                4: MIMEText("Lunch?").as_string(),
            }
        )
        results = netjournal.get_reports_from_mailbox(
            connection, archive_folder="Archive"
        )
        self.assertEqual(connection.folders, ["Archive", "Archive/Invalid"])
        # the second message carries the same report
        self.assertEqual(len(results["reports"]), 1)
        self.assertEqual(len(results["failures"]), 1)
        self.assertEqual(results["failures"][0]["report_type"], "DMARC")
        self.assertEqual(connection.seen, {1, 2, 3})
        self.assertEqual(
            connection.moved, {1: "Archive", 2: "Archive", 3: "Archive/Invalid"}
        )

        results = netjournal.get_reports_from_mailbox(
            connection, archive_folder="Archive"
        )
        self.assertEqual(results, {"reports": [], "failures": []})

    def testTestModeLeavesMessages(self):
        connection = FakeConnection(
            {1: build_report_email(self.subject, self.xml, "yahoo.xml", "xml")}
        )
        results = netjournal.get_reports_from_mailbox(
            connection, archive_folder="Archive", test=True
        )
        self.assertEqual(len(results["reports"]), 1)
        self.assertEqual(connection.seen, set())
        self.assertEqual(connection.moved, {})
        self.assertEqual(connection.folders, [])

    def testBatchSize(self):
        connection = FakeConnection(
            {
                1: build_report_email(self.subject, self.xml, "yahoo.xml", "xml"),
                2: build_report_email(self.subject, self.xml, "yahoo.xml", "xml"),
            }
        )
        netjournal.get_reports_from_mailbox(connection, batch_size=1)
        self.assertEqual(connection.seen, {1})

    def testPoller(self):
        pipeline, stream = make_pipeline()
        connection = FakeConnection(
            {1: build_report_email(self.subject, self.xml, "yahoo.xml", "xml")}
        )
        poller = MailboxPoller(lambda: connection, pipeline)
        results = poller.poll()
        self.assertEqual(len(results["reports"]), 1)
        self.assertTrue(connection.closed)
        self.assertEqual([tag for tag, document in journal_lines(stream)], ["DMARC"])

    def testPollerSkipsWhileRunning(self):
        calls = []
        pipeline, stream = make_pipeline()
        poller = MailboxPoller(lambda: calls.append(1), pipeline)
        poller._lock.acquire()
        try:
            with self.assertLogs("netjournal", level="WARNING"):
                self.assertIsNone(poller.poll())
        finally:
            poller._lock.release()
        self.assertEqual(calls, [])

    def testPollerConnectionFailure(self):
        def connect():
            raise OSError("connection refused")

        pipeline, stream = make_pipeline()
        poller = MailboxPoller(connect, pipeline)
        with self.assertLogs("netjournal", level="ERROR"):
            self.assertIsNone(poller.poll())
        self.assertEqual(stream.getvalue(), "")

    def testMailboxErrorKeepsProcessedReports(self):
        """Reports marked as processed before a mailbox error are logged"""
        pipeline, stream = make_pipeline()
        connection = FailingConnection(
            {
                1: build_report_email(self.subject, self.xml, "yahoo.xml", "xml"),
                2: build_report_email(self.subject, self.xml, "yahoo.xml", "xml"),
                3: build_report_email(self.subject, self.xml, "yahoo.xml", "xml"),
            },
            failing_uid=2,
        )
        poller = MailboxPoller(lambda: connection, pipeline)
        with self.assertLogs("netjournal", level="ERROR") as logs:
            results = poller.poll()
        self.assertIn("Mailbox error", logs.output[0])
        self.assertEqual(len(results["reports"]), 1)
        self.assertEqual(connection.seen, {1})
        self.assertTrue(connection.closed)
        self.assertEqual([tag for tag, document in journal_lines(stream)], ["DMARC"])

    def testCallbackRunsBeforeMessageIsMarked(self):
        connection = FakeConnection(
            {
                1: build_report_email(self.subject, self.xml, "yahoo.xml", "xml"),
                2: MIMEText("Lunch?").as_string(),
                3: build_report_email(
                    "Report Domain: example.com", b"<feedback>", "bad.xml", "xml"
                ),
            }
        )
        calls = []

        def callback(message_results):
            calls.append(
                (
                    len(message_results["reports"]),
                    len(message_results["failures"]),
                    set(connection.seen),
                )
            )

        with self.assertLogs("netjournal", level="WARNING"):
            results = netjournal.get_reports_from_mailbox(
                connection, callback=callback
            )
        self.assertEqual(calls, [(1, 0, set()), (0, 1, {1})])
        self.assertEqual(len(results["reports"]), 1)
        self.assertEqual(len(results["failures"]), 1)

    def testOversizedAttachments(self):
        data = read_sample("samples/smtp_tls/rfc8460.json")
        connection = FakeConnection(
            {
                1: build_report_email(
                    self.subject, gzip.compress(self.xml), "yahoo.xml.gz", "gzip"
                ),
                2: build_report_email(
                    self.subject, zip_bytes("yahoo.xml", self.xml), "yahoo.zip", "zip"
                ),
                3: build_report_email(
                    "Report Domain: company-y.example", gzip.compress(data),
                    "report.json.gz", "tlsrpt+gzip",
                ),
            }
        )
        with self.assertLogs("netjournal", level="WARNING"):
            results = netjournal.get_reports_from_mailbox(
                connection, archive_folder="Archive", max_report_size=100
            )
        self.assertEqual(results["reports"], [])
        self.assertEqual(
            [f["report_type"] for f in results["failures"]],
            ["DMARC", "DMARC", "SMTP-TLS-RPT"],
        )
        self.assertEqual(
            connection.moved,
            {1: "Archive/Invalid", 2: "Archive/Invalid", 3: "Archive/Invalid"},
        )


class TestServer(unittest.TestCase):
    def setUp(self):
        self.pipeline, self.stream = make_pipeline()
        self.client = TestClient(create_app(self.pipeline, max_body_size=64 * 1024))

    def post(self, path, payload, content_type="application/reports+json", **kwargs):
        if not isinstance(payload, bytes):
            payload = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": content_type}
        headers.update(kwargs)
        return self.client.post(path, content=payload, headers=headers)

    def testReportingApi(self):
        response = self.post("/reporting-api", [CRASH_REPORT, NEL_REPORT])
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"")
        self.assertEqual(response.headers["server"], "netjournal/1.0.0")
        self.assertEqual(
            [tag for tag, document in journal_lines(self.stream)], ["Crash", "NEL"]
        )

    def testPartialBatch(self):
        bad_crash = dict(CRASH_REPORT, body={})
        with self.assertLogs("netjournal", level="WARNING"):
            response = self.post(
                "/reporting-api", [CRASH_REPORT, bad_crash, DEPRECATION_REPORT]
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            [tag for tag, document in journal_lines(self.stream)],
            ["Crash", "Deprecation"],
        )

    def testEnvelopeErrors(self):
        response = self.post("/reporting-api", b"{not json")
        self.assertEqual(response.status_code, 400)
        response = self.post("/reporting-api", CRASH_REPORT, content_type="text/plain")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.headers["server"], "netjournal/1.0.0")
        self.assertEqual(self.stream.getvalue(), "")

    def testNonFiniteNumbers(self):
        payload = json.dumps(NEL_REPORT).replace("0.5", "NaN").encode("utf-8")
        response = self.post("/reporting-api", payload)
        self.assertEqual(response.status_code, 400)
        response = self.post("/nel", payload.replace(b"NaN", b"-Infinity"))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.stream.getvalue(), "")
        response = self.post("/reporting-api", NEL_REPORT)
        self.assertEqual(response.status_code, 200)
        self.assertEqual([tag for tag, document in journal_lines(self.stream)], ["NEL"])

    def testDeeplyNestedBody(self):
        client = TestClient(create_app(self.pipeline, max_body_size=1024 * 1024))
        response = client.post(
            "/reporting-api",
            content=b"[" * 200000,
            headers={"Content-Type": "application/reports+json"},
        )
        self.assertEqual(response.status_code, 400)
        response = self.post("/csp", b'{"a":' * 10000, content_type="application/json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.stream.getvalue(), "")

    def testBodyTooLarge(self):
        client = TestClient(create_app(self.pipeline, max_body_size=10))
        response = client.post(
            "/reporting-api",
            content=json.dumps(CRASH_REPORT).encode("utf-8"),
            headers={"Content-Type": "application/reports+json"},
        )
        self.assertEqual(response.status_code, 413)
        self.assertEqual(self.stream.getvalue(), "")

    def testCors(self):
        response = self.client.options(
            "/reporting-api",
            headers={
                "Origin": "https://example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type",
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["access-control-allow-origin"], "*")
        self.assertEqual(response.headers["server"], "netjournal/1.0.0")
        response = self.post(
            "/reporting-api", CRASH_REPORT, Origin="https://example.com"
        )
        self.assertEqual(response.headers["access-control-allow-origin"], "*")

    def testCspLevel3WithLevel2ContentType(self):
        payload = read_sample("samples/reporting_api/csp_level_3.json")
        response = self.post("/csp", payload, content_type="application/csp-report")
        self.assertEqual(response.status_code, 200)
        lines = journal_lines(self.stream)
        self.assertEqual(lines[0][0], "CSP")
        self.assertEqual(
            lines[0][1]["report"]["body"]["documentURL"],
            "https://example.com/csp-report",
        )
        self.assertEqual(lines[0][1]["derived"]["client"]["family"], "Chrome")

    def testCspLevel2(self):
        payload = read_sample("samples/reporting_api/csp_level_2.json")
        response = self.post(
            "/csp", payload, content_type="application/csp-report; charset=utf-8"
        )
        self.assertEqual(response.status_code, 200)
        document = journal_lines(self.stream)[0][1]
        self.assertEqual(document["report"]["url"], "http://example.org/page.html")
        self.assertEqual(document["derived"]["url"]["host"], "example.org")

    def testLegacyEndpoints(self):
        response = self.post("/crash", CRASH_REPORT)
        self.assertEqual(response.status_code, 200)
        with self.assertLogs("netjournal", level="WARNING"):
            response = self.post("/crash", DEPRECATION_REPORT)
        self.assertEqual(response.status_code, 200)
        response = self.post("/nel", NEL_REPORT, content_type="application/json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            [tag for tag, document in journal_lines(self.stream)], ["Crash", "NEL"]
        )

    def testSmtpTls(self):
        data = read_sample("samples/smtp_tls/rfc8460.json")
        response = self.post("/tlsrpt", data, content_type="application/tlsrpt+json")
        self.assertEqual(response.status_code, 200)
        # compressed, without Content-Encoding
        response = self.post(
            "/tlsrpt", gzip.compress(data), content_type="application/tlsrpt+gzip"
        )
        self.assertEqual(response.status_code, 200)
        response = self.post(
            "/tlsrpt", gzip.compress(data), content_type="application/tlsrpt+json"
        )
        self.assertEqual(response.status_code, 200)
        lines = journal_lines(self.stream)
        self.assertEqual([tag for tag, document in lines], ["SMTP-TLS-RPT"] * 3)
        self.assertEqual(lines[0][1]["derived"]["url"]["host"], "company-y.example")

    def testSmtpTlsInvalid(self):
        with self.assertLogs("netjournal", level="WARNING") as logs:
            response = self.post(
                "/tlsrpt", b'{"policies": []}', content_type="application/tlsrpt+json"
            )
        self.assertEqual(response.status_code, 400)
        self.assertIn("payload=", logs.output[-1])
        self.assertEqual(self.stream.getvalue(), "")

    def testDomainFilter(self):
        self.pipeline.reload_filter(["*.example.org"])
        response = self.post("/reporting-api", CRASH_REPORT)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.stream.getvalue(), "")


class TestConfig(unittest.TestCase):
    def args(self, config_file=None):
        return Namespace(
            file_path=[],
            config_file=config_file,
            poll_once=False,
            silent=False,
            warnings=False,
            debug=False,
            verbose=False,
            log_file=None,
        )

    def parse(self, content):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "netjournal.ini")
            with open(path, "w") as config_file:
                config_file.write(content)
            opts = netjournal.cli._default_opts(self.args(path))
            return netjournal.cli._parse_config_file(path, opts)

    def testDefaults(self):
        opts = self.parse("")
        self.assertEqual(opts.server_port, 8080)
        self.assertEqual(opts.server_max_body_size, 1024 * 1024)
        self.assertEqual(opts.filter_domains, [])
        self.assertEqual(opts.mailbox_reports_folder, "INBOX")
        self.assertIsNone(opts.imap_host)

    def testConfigFile(self):
        opts = self.parse(
            "[journal]\n"
            "path = /var/log/netjournal/reports.log\n"
            "[server]\n"
            "port = 8443\n"
            "[filter]\n"
            "domains = example.com, *.example.org,\n"
            "[imap]\n"
            "host = imap.example.com\n"
            "user = dmarc@example.com\n"
            "password = secret\n"
            "ssl = false\n"
            "port = 143\n"
            "[mailbox]\n"
            "archive_folder = Archive\n"
            "check_interval = 60\n"
        )
        self.assertEqual(opts.journal_path, "/var/log/netjournal/reports.log")
        self.assertEqual(opts.server_port, 8443)
        self.assertEqual(opts.filter_domains, ["example.com", "*.example.org"])
        self.assertEqual(opts.imap_host, "imap.example.com")
        self.assertFalse(opts.imap_ssl)
        self.assertEqual(opts.imap_port, 143)
        self.assertEqual(opts.mailbox_archive_folder, "Archive")
        self.assertEqual(opts.mailbox_check_interval, 60)

    def testMissingImapPassword(self):
        with self.assertRaises(SystemExit):
            self.parse("[imap]\nhost = imap.example.com\nuser = dmarc@example.com\n")

    def testMaxReportSize(self):
        self.assertEqual(self.parse("").mailbox_max_report_size, 10 * 1024 * 1024)
        opts = self.parse("[mailbox]\nmax_report_size = 4096\n")
        self.assertEqual(opts.mailbox_max_report_size, 4096)

    def testReloadConfig(self):
        """A broken configuration leaves the running filter in place"""
        pipeline, stream = make_pipeline(["example.com"])
        domain_filter = pipeline.domain_filter
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "netjournal.ini")
            for content in (
                "[filter]\ndomains = example.org\n[imap]\nhost = imap.example.com\n",
                "[filter]\ndomains = example.org\n[server]\nport = https\n",
            ):
                with open(path, "w") as config_file:
                    config_file.write(content)
                with self.assertLogs("netjournal", level="ERROR"):
                    self.assertFalse(
                        netjournal.cli._reload_config(path, self.args(path), pipeline)
                    )
                self.assertIs(pipeline.domain_filter, domain_filter)

            missing = os.path.join(directory, "missing.ini")
            with self.assertLogs("netjournal", level="ERROR"):
                self.assertFalse(
                    netjournal.cli._reload_config(missing, self.args(missing), pipeline)
                )
            self.assertIs(pipeline.domain_filter, domain_filter)

            with open(path, "w") as config_file:
                config_file.write("[filter]\ndomains = example.org\n")
            self.assertTrue(
                netjournal.cli._reload_config(path, self.args(path), pipeline)
            )
        pipeline.process(resolve_reports(json.dumps(CRASH_REPORT)))
        self.assertEqual(stream.getvalue(), "")
        self.assertIsNot(pipeline.domain_filter, domain_filter)


if __name__ == "__main__":
    unittest.main(verbosity=2)
