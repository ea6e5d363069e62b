# -*- coding: utf-8 -*-

"""HTTP endpoints that receive browser and SMTP TLS reports"""

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import partial
from typing import Callable, Optional, Sequence

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from netjournal import InvalidEnvelope
from netjournal.constants import SERVER_HEADER, __version__
from netjournal.log import logger
from netjournal.pipeline import Pipeline
from netjournal.poller import MailboxPoller
from netjournal.reporting import (
    resolve_csp_reports,
    resolve_reports,
    resolve_smtp_tls_report,
)
from netjournal.types import ParsingResults

DEFAULT_MAX_BODY_SIZE = 1024 * 1024

REPORTING_API_CONTENT_TYPES = ("application/reports+json", "application/json")
CSP_CONTENT_TYPES = ("application/csp-report",) + REPORTING_API_CONTENT_TYPES
SMTP_TLS_CONTENT_TYPES = ("application/tlsrpt+json", "application/tlsrpt+gzip")

# Single purpose endpoints kept for older senders
LEGACY_ENDPOINTS = {
    "/crash": ("crash",),
    "/deprecation": ("deprecation",),
    "/integrity": ("integrity-violation",),
    "/intervention": ("intervention",),
    "/nel": ("network-error",),
    "/permissions": ("permissions-policy-violation",),
}


def _media_type(request: Request) -> str:
    content_type = request.headers.get("content-type", "")
    return content_type.split(";")[0].strip().lower()


def create_app(
    pipeline: Pipeline,
    *,
    max_body_size: int = DEFAULT_MAX_BODY_SIZE,
    poller: Optional[MailboxPoller] = None,
) -> FastAPI:
    """
    Builds the ASGI application

    Args:
        pipeline: The pipeline parsed reports are fed to
        max_body_size (int): Largest accepted request body, and largest
            decompressed SMTP TLS report, in bytes
        poller: A mailbox poller started and stopped with the application

    Returns:
        FastAPI: The application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if poller is not None:
            poller.start()
        yield
        if poller is not None:
            poller.stop()

    app = FastAPI(
        title="netjournal",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.pipeline = pipeline
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.middleware("http")
    async def add_server_header(request: Request, call_next):
        response = await call_next(request)
        response.headers["Server"] = SERVER_HEADER
        return response

    async def ingest(
        request: Request,
        content_types: Sequence[str],
        resolve: Callable[[bytes], ParsingResults],
        reject_failures: bool = False,
    ) -> Response:
        media_type = _media_type(request)
        if media_type not in content_types:
            logger.info(
                "Rejected {0} request with content type {1!r}".format(
                    request.url.path, media_type
                )
            )
            return Response(status_code=400)
        content_length = request.headers.get("content-length", "")
        if content_length.isdigit() and int(content_length) > max_body_size:
            return Response(status_code=413)
        body = await request.body()
        if len(body) > max_body_size:
            logger.info(
                "Rejected {0} request of {1} bytes".format(request.url.path, len(body))
            )
            return Response(status_code=413)
        try:
            results = await run_in_threadpool(resolve, body)
        except InvalidEnvelope as e:
            logger.info("Rejected {0} request: {1}".format(request.url.path, e))
            return Response(status_code=400)
        await run_in_threadpool(
            app.state.pipeline.process,
            results,
            request.headers.get("user-agent"),
        )
        if reject_failures and results["failures"]:
            return Response(status_code=400)
        return Response(status_code=200)

    @app.post("/reporting-api")
    async def reporting_api(request: Request):
        return await ingest(request, REPORTING_API_CONTENT_TYPES, resolve_reports)

    @app.post("/csp")
    async def csp(request: Request):
        return await ingest(request, CSP_CONTENT_TYPES, resolve_csp_reports)

    @app.post("/tlsrpt")
    async def tlsrpt(request: Request):
        resolve = partial(resolve_smtp_tls_report, max_size=max_body_size)
        return await ingest(
            request, SMTP_TLS_CONTENT_TYPES, resolve, reject_failures=True
        )

    def legacy_endpoint(expected_types: Sequence[str]):
        resolve = partial(resolve_reports, expected_types=expected_types)

        async def endpoint(request: Request):
            return await ingest(request, REPORTING_API_CONTENT_TYPES, resolve)

        return endpoint

    for path, expected_types in LEGACY_ENDPOINTS.items():
        app.add_api_route(
            path,
            legacy_endpoint(expected_types),
            methods=["POST"],
            name=path.strip("/"),
        )

    return app
