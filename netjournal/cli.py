#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A CLI for collecting browser and mail server reports"""

from argparse import ArgumentParser, Namespace
from configparser import ConfigParser
from functools import partial
import logging
import os
import signal

import uvicorn

from netjournal import (
    DEFAULT_MAX_REPORT_SIZE,
    ParserError,
    __version__,
    parse_report_file,
)
from netjournal.derivation import MetricsEnricher
from netjournal.domain_filter import DomainFilter
from netjournal.journal import DEFAULT_TAG, ReportJournal
from netjournal.log import logger
from netjournal.mail import IMAPConnection
from netjournal.pipeline import Pipeline
from netjournal.poller import MailboxPoller
from netjournal.reporting import resolve_csp_reports
from netjournal.server import DEFAULT_MAX_BODY_SIZE, create_app

formatter = logging.Formatter(
    fmt="%(levelname)8s:%(filename)s:%(lineno)d:%(message)s",
    datefmt="%Y-%m-%d:%H:%M:%S",
)
handler = logging.StreamHandler()
handler.setFormatter(formatter)
logger.addHandler(handler)


def _str_to_list(s):
    """Converts a comma separated string to a list"""
    _list = s.split(",")
    return [i.strip() for i in _list if i.strip()]


def _default_opts(args):
    return Namespace(
        file_path=args.file_path,
        config_file=args.config_file,
        poll_once=args.poll_once,
        silent=args.silent,
        warnings=args.warnings,
        debug=args.debug,
        verbose=args.verbose,
        log_file=args.log_file,
        journal_path=None,
        journal_tag=DEFAULT_TAG,
        server_listen="127.0.0.1",
        server_port=8080,
        server_tls_cert=None,
        server_tls_key=None,
        server_max_body_size=DEFAULT_MAX_BODY_SIZE,
        filter_domains=[],
        user_agent_regexes=None,
        mailbox_reports_folder="INBOX",
        mailbox_archive_folder=None,
        mailbox_check_interval=300,
        mailbox_batch_size=0,
        mailbox_test=False,
        mailbox_max_report_size=DEFAULT_MAX_REPORT_SIZE,
        imap_host=None,
        imap_skip_certificate_verification=False,
        imap_ssl=True,
        imap_port=993,
        imap_timeout=30,
        imap_max_retries=4,
        imap_user=None,
        imap_password=None,
    )


def _parse_config_file(config_file, opts):
    """Reads an INI configuration file into ``opts``"""
    abs_path = os.path.abspath(config_file)
    if not os.path.exists(abs_path):
        logger.error("A file does not exist at {0}".format(abs_path))
        exit(-1)
    config = ConfigParser()
    config.read(config_file)
    if "general" in config.sections():
        general_config = config["general"]
        if "debug" in general_config:
            opts.debug = general_config.getboolean("debug")
        if "verbose" in general_config:
            opts.verbose = general_config.getboolean("verbose")
        if "silent" in general_config:
            opts.silent = general_config.getboolean("silent")
        if "warnings" in general_config:
            opts.warnings = general_config.getboolean("warnings")
        if "log_file" in general_config:
            opts.log_file = general_config["log_file"]

    if "journal" in config.sections():
        journal_config = config["journal"]
        if "path" in journal_config:
            opts.journal_path = journal_config["path"]
        if "tag" in journal_config:
            opts.journal_tag = journal_config["tag"]

    if "server" in config.sections():
        server_config = config["server"]
        if "listen" in server_config:
            opts.server_listen = server_config["listen"]
        if "port" in server_config:
            opts.server_port = server_config.getint("port")
        if "tls_cert" in server_config:
            opts.server_tls_cert = server_config["tls_cert"]
        if "tls_key" in server_config:
            opts.server_tls_key = server_config["tls_key"]
        if "max_body_size" in server_config:
            opts.server_max_body_size = server_config.getint("max_body_size")
        if bool(opts.server_tls_cert) != bool(opts.server_tls_key):
            logger.critical("tls_cert and tls_key must be set together")
            exit(-1)

    if "filter" in config.sections():
        filter_config = config["filter"]
        if "domains" in filter_config:
            opts.filter_domains = _str_to_list(filter_config["domains"])

    if "enrichment" in config.sections():
        enrichment_config = config["enrichment"]
        if "user_agent_regexes" in enrichment_config:
            opts.user_agent_regexes = enrichment_config["user_agent_regexes"]

    if "mailbox" in config.sections():
        mailbox_config = config["mailbox"]
        if "reports_folder" in mailbox_config:
            opts.mailbox_reports_folder = mailbox_config["reports_folder"]
        if "archive_folder" in mailbox_config:
            opts.mailbox_archive_folder = mailbox_config["archive_folder"]
        if "check_interval" in mailbox_config:
            opts.mailbox_check_interval = mailbox_config.getint("check_interval")
        if "batch_size" in mailbox_config:
            opts.mailbox_batch_size = mailbox_config.getint("batch_size")
        if "test" in mailbox_config:
            opts.mailbox_test = mailbox_config.getboolean("test")
        if "max_report_size" in mailbox_config:
            max_report_size = mailbox_config.getint("max_report_size")
            opts.mailbox_max_report_size = max_report_size

    if "imap" in config.sections():
        imap_config = config["imap"]
        if "host" in imap_config:
            opts.imap_host = imap_config["host"]
        else:
            logger.critical("host setting missing from the imap config section")
            exit(-1)
        if "port" in imap_config:
            opts.imap_port = imap_config.getint("port")
        if "timeout" in imap_config:
            opts.imap_timeout = imap_config.getfloat("timeout")
        if "max_retries" in imap_config:
            opts.imap_max_retries = imap_config.getint("max_retries")
        if "ssl" in imap_config:
            opts.imap_ssl = imap_config.getboolean("ssl")
        if "skip_certificate_verification" in imap_config:
            imap_verify = imap_config.getboolean("skip_certificate_verification")
            opts.imap_skip_certificate_verification = imap_verify
        if "user" in imap_config:
            opts.imap_user = imap_config["user"]
        else:
            logger.critical("user setting missing from the imap config section")
            exit(-1)
        if "password" in imap_config:
            opts.imap_password = imap_config["password"]
        else:
            logger.critical("password setting missing from the imap config section")
            exit(-1)

    return opts


def cli_parse(file_path, pipeline):
    """Parses a report file and feeds it to the pipeline"""
    try:
        record = parse_report_file(file_path)
        results = {"reports": [record], "failures": []}
    except ParserError:
        # Reporting API and CSP deliveries saved to disk
        with open(file_path, "rb") as report_file:
            results = resolve_csp_reports(report_file.read(), expected_types=None)
    return pipeline.process(results)


def _reload_config(config_file, args, pipeline):
    """
    Reloads the domain allow-list and the user agent rules

    A configuration that cannot be read is logged and the running snapshots
    are kept.

    Returns:
        bool: ``True`` when the new configuration is in use
    """
    logger.info("Reloading {0}".format(config_file))
    try:
        new_opts = _parse_config_file(config_file, _default_opts(args))
        pipeline.reload_enricher(new_opts.user_agent_regexes)
        pipeline.reload_filter(new_opts.filter_domains)
    except (SystemExit, Exception) as error:
        logger.error("Unable to reload configuration: {0}".format(error))
        return False
    return True


def _imap_connection_factory(opts):
    verify = True
    if opts.imap_skip_certificate_verification:
        logger.debug("Skipping IMAP certificate verification")
        verify = False
    return partial(
        IMAPConnection,
        host=opts.imap_host,
        port=opts.imap_port,
        ssl=opts.imap_ssl,
        verify=verify,
        timeout=opts.imap_timeout,
        max_retries=opts.imap_max_retries,
        user=opts.imap_user,
        password=opts.imap_password,
    )


def _main():
    """Called when the module is executed"""

    arg_parser = ArgumentParser(description="Collects browser and mail reports")
    arg_parser.add_argument(
        "-c",
        "--config-file",
        help="a path to a configuration file",
    )
    arg_parser.add_argument(
        "file_path",
        nargs="*",
        help="one or more paths to report files or emails to log, "
        "instead of starting the server",
    )
    arg_parser.add_argument(
        "--poll-once",
        action="store_true",
        help="check the mailbox once and exit",
    )
    arg_parser.add_argument(
        "-s", "--silent", action="store_true", help="only print errors"
    )
    arg_parser.add_argument(
        "-w",
        "--warnings",
        action="store_true",
        help="print warnings in addition to errors",
    )
    arg_parser.add_argument(
        "--verbose", action="store_true", help="more verbose output"
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="print debugging information"
    )
    arg_parser.add_argument("--log-file", default=None, help="output logging to a file")
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)

    args = arg_parser.parse_args()

    opts = _default_opts(args)
    if args.config_file:
        _parse_config_file(args.config_file, opts)

    logger.setLevel(logging.WARNING)

    if opts.silent:
        logger.setLevel(logging.ERROR)
    if opts.warnings:
        logger.setLevel(logging.WARNING)
    if opts.verbose:
        logger.setLevel(logging.INFO)
    if opts.debug:
        logger.setLevel(logging.DEBUG)
    if opts.log_file:
        try:
            fh = logging.FileHandler(opts.log_file, "a")
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
            fh.setFormatter(formatter)
            logger.addHandler(fh)
        except Exception as error:
            logger.warning("Unable to write to log file: {}".format(error))

    logger.info("Starting netjournal")

    try:
        pipeline = Pipeline(
            ReportJournal(opts.journal_path, tag=opts.journal_tag),
            DomainFilter(opts.filter_domains),
            MetricsEnricher(opts.user_agent_regexes),
        )
    except Exception:
        logger.exception("Unable to set up the report pipeline")
        exit(1)

    if len(opts.file_path) > 0:
        for file_path in opts.file_path:
            try:
                cli_parse(file_path, pipeline)
            except (OSError, ParserError) as error:
                logger.error("Failed to parse {0}: {1}".format(file_path, error))
        exit(0)

    poller = None
    if opts.imap_host:
        poller = MailboxPoller(
            _imap_connection_factory(opts),
            pipeline,
            reports_folder=opts.mailbox_reports_folder,
            archive_folder=opts.mailbox_archive_folder,
            check_interval=opts.mailbox_check_interval,
            batch_size=opts.mailbox_batch_size,
            test=opts.mailbox_test,
            max_report_size=opts.mailbox_max_report_size,
        )

    if opts.poll_once:
        if poller is None:
            logger.error("--poll-once requires an imap configuration section")
            exit(1)
        if poller.poll() is None:
            exit(1)
        exit(0)

    def reload_config(signum, frame):
        if opts.config_file:
            _reload_config(opts.config_file, args, pipeline)

    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, reload_config)

    app = create_app(
        pipeline, max_body_size=opts.server_max_body_size, poller=poller
    )
    uvicorn.run(
        app,
        host=opts.server_listen,
        port=opts.server_port,
        ssl_certfile=opts.server_tls_cert,
        ssl_keyfile=opts.server_tls_key,
        server_header=False,
        log_level="info" if opts.verbose or opts.debug else "warning",
    )


if __name__ == "__main__":
    _main()
