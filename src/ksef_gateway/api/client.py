"""
KSeF API Client.

Async HTTP client for the KSeF v2 API: interactive and batch invoice
submission, session and invoice status, UPO retrieval and bulk invoice
exports.

The client authenticates every request with a bearer token held in a
SessionState, except part uploads to pre-signed URLs. Nothing is retried
here; every failure surfaces as a GatewayError whose ``retryable`` flag
tells the caller what to do.

Requires: httpx>=0.25.0
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Type, TypeVar

import httpx
from pydantic import BaseModel

from ksef_gateway.api.errors import GatewayError, classify, session_error
from ksef_gateway.api.models import (
    BatchSessionStatus,
    CloseSessionResponse,
    ExportInitResponse,
    ExportStatus,
    InvoiceExportRequest,
    InvoiceStatusResponse,
    OpenBatchSessionRequest,
    OpenBatchSessionResponse,
    OpenSessionResponse,
    PartUploadRequest,
    SessionResponse,
    SessionStatusResponse,
    SubmissionRequest,
    SubmissionResult,
)
from ksef_gateway.config import GatewayConfig

logger = logging.getLogger(__name__)

COMMON_HEADERS = {
    "Accept": "application/json",
}

M = TypeVar("M", bound=BaseModel)


class SessionState:
    """Holds the bearer token of one client. Never persisted."""

    def __init__(self) -> None:
        self._token: Optional[str] = None

    def is_active(self) -> bool:
        return self._token is not None

    def get(self) -> str:
        """Return the token or raise a SESSION error."""
        if self._token is None:
            raise session_error()
        return self._token

    def set(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None

    def __repr__(self) -> str:
        return f"SessionState(active={self.is_active()})"


class SubmissionStage(str, Enum):
    """Progress of the open/upload/close sequence on the gateway side."""

    NOT_STARTED = "not_started"
    OPENED = "opened"
    UPLOADED = "uploaded"
    CLOSED = "closed"


class GatewayApiClient:
    """Async client for the KSeF API."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        session: Optional[SessionState] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the KSeF API client.

        Args:
            config: Base URL and timeout; defaults to the test environment
            session: Token holder; a fresh one is created when omitted
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.config = config or GatewayConfig()
        self.session = session or SessionState()
        self._transport = transport

    async def __aenter__(self) -> GatewayApiClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.terminate_session()

    def is_session_active(self) -> bool:
        return self.session.is_active()

    # ─── Session lifecycle ──────────────────────────

    async def init_session(self, token: str) -> SessionResponse:
        """
        Activate the session with a bearer token.

        KSeF v2 authenticates each request with the token, so no request
        is made here.
        """
        if not token:
            raise ValueError("Bearer token is required")
        self.session.set(token)
        logger.info("KSeF session activated (%s)", self.config.environment)
        return SessionResponse(sessionToken=token, timestamp=datetime.now(timezone.utc))

    async def terminate_session(self) -> None:
        """
        Notify the gateway and clear the token.

        Never raises: the token expires on its own, so a failed
        notification is only logged.
        """
        if not self.session.is_active():
            return
        try:
            async with self._http() as http:
                await self._send(
                    http, "DELETE", "/auth/sessions/current",
                    "Failed to terminate session",
                )
        except GatewayError as e:
            logger.warning("Session termination not confirmed by KSeF: %s", e.message)
        finally:
            self.session.clear()
            logger.info("KSeF session cleared")

    # ─── Invoice submission ─────────────────────────

    async def submit_invoice(self, request: SubmissionRequest) -> SubmissionResult:
        """
        Submit one invoice through an interactive session.

        POST /online/session/interactive                 (open)
        POST /online/session/interactive/{ref}/invoice   (upload XML)
        POST /online/session/interactive/{ref}/close     (close, triggers processing)

        The sequence stops at the first failure. A session that was opened
        but not closed stays open on the gateway side and is logged as
        abandoned; it is not cleaned up.

        Args:
            request: Encoded invoice XML

        Returns:
            SubmissionResult; ``upo`` is None when the gateway defers it
        """
        token = self.session.get()
        stage = SubmissionStage.NOT_STARTED
        reference: Optional[str] = None

        try:
            async with self._http() as http:
                response = await self._send(
                    http, "POST", "/online/session/interactive",
                    "Failed to create interactive session",
                    token=token,
                    json={"initiationData": {"initiationType": "Invoice"}},
                )
                opened = self._parse(
                    OpenSessionResponse, response, "Failed to create interactive session"
                )
                reference = opened.sessionReferenceNumber
                stage = SubmissionStage.OPENED
                logger.debug("Interactive session %s opened", reference)

                await self._send(
                    http, "POST", f"/online/session/interactive/{reference}/invoice",
                    "Failed to upload invoice",
                    token=token,
                    content=request.invoice_xml.encode("utf-8"),
                    headers={"Content-Type": "application/xml"},
                )
                stage = SubmissionStage.UPLOADED

                response = await self._send(
                    http, "POST", f"/online/session/interactive/{reference}/close",
                    "Failed to close session",
                    token=token,
                )
                closed = self._parse(
                    CloseSessionResponse, response, "Failed to close session",
                    allow_empty=True,
                )
                stage = SubmissionStage.CLOSED
        finally:
            if reference is not None and stage is not SubmissionStage.CLOSED:
                logger.warning(
                    "Interactive session %s abandoned at stage '%s'; "
                    "check the invoice status before resubmitting",
                    reference,
                    stage.value,
                )

        logger.info("Invoice submitted in session %s", reference)

        upo: Optional[str] = None
        if closed.upo:
            upo = closed.upo if isinstance(closed.upo, str) else json.dumps(closed.upo)

        return SubmissionResult(
            element_reference_number=reference,
            processing_code=closed.status.code if closed.status else 200,
            processing_description=(
                closed.status.description if closed.status and closed.status.description
                else "Success"
            ),
            timestamp=closed.dateUpdated or datetime.now(timezone.utc).isoformat(),
            upo=upo,
        )

    async def get_upo(self, reference_number: str) -> str:
        """
        Fetch the UPO (proof of receipt) of an interactive session.

        GET /online/session/interactive/{ref}/status

        Returns:
            First UPO page serialized as JSON

        Raises:
            GatewayError: request failed or the UPO is not available yet
        """
        token = self.session.get()
        async with self._http() as http:
            response = await self._send(
                http, "GET", f"/online/session/interactive/{reference_number}/status",
                "Failed to retrieve session status",
                token=token,
            )
        status = self._parse(
            SessionStatusResponse, response, "Failed to retrieve session status"
        )
        if status.upo is None or not status.upo.pages:
            raise classify(response.status_code, None, "UPO not available")
        return json.dumps(status.upo.pages[0].model_dump(exclude_none=True))

    async def check_invoice_status(self, reference_number: str) -> InvoiceStatusResponse:
        """
        GET /online/invoice/status/{ref}

        Args:
            reference_number: Element reference number from submission
        """
        token = self.session.get()
        async with self._http() as http:
            response = await self._send(
                http, "GET", f"/online/invoice/status/{reference_number}",
                "Failed to check invoice status",
                token=token,
            )
        return self._parse(InvoiceStatusResponse, response, "Failed to check invoice status")

    # ─── Batch submission ───────────────────────────

    async def open_batch_session(
        self, request: OpenBatchSessionRequest
    ) -> OpenBatchSessionResponse:
        """
        Declare a batch package and get an upload target for each part.

        POST /sessions/batch
        """
        token = self.session.get()
        async with self._http() as http:
            response = await self._send(
                http, "POST", "/sessions/batch",
                "Failed to open batch session",
                token=token,
                json=request.model_dump(mode="json", exclude_none=True),
            )
        return self._parse(OpenBatchSessionResponse, response, "Failed to open batch session")

    async def upload_part(self, upload: PartUploadRequest, data: bytes) -> None:
        """
        Send one encrypted part to its pre-signed URL.

        The URL carries its own authorization, so no bearer token is sent.
        """
        self.session.get()
        async with self._http() as http:
            await self._send(
                http, upload.method, upload.url,
                f"Failed to upload part {upload.ordinalNumber}",
                headers=upload.headers,
                content=data,
                authorize=False,
            )

    async def close_batch_session(self, reference_number: str) -> None:
        """
        Close a batch session; KSeF starts processing the uploaded parts.

        POST /sessions/batch/{ref}/close
        """
        token = self.session.get()
        async with self._http() as http:
            await self._send(
                http, "POST", f"/sessions/batch/{reference_number}/close",
                "Failed to close batch session",
                token=token,
            )

    async def get_batch_session_status(self, reference_number: str) -> BatchSessionStatus:
        """GET /sessions/{ref}"""
        token = self.session.get()
        async with self._http() as http:
            response = await self._send(
                http, "GET", f"/sessions/{reference_number}",
                "Failed to get batch session status",
                token=token,
            )
        return self._parse(BatchSessionStatus, response, "Failed to get batch session status")

    # ─── Bulk export ────────────────────────────────

    async def initiate_export(self, request: InvoiceExportRequest) -> ExportInitResponse:
        """
        Start an asynchronous, encrypted invoice export.

        POST /invoices/exports
        """
        token = self.session.get()
        async with self._http() as http:
            response = await self._send(
                http, "POST", "/invoices/exports",
                "Failed to initiate invoice export",
                token=token,
                json=request.model_dump(mode="json", by_alias=True, exclude_none=True),
            )
        return self._parse(ExportInitResponse, response, "Failed to initiate invoice export")

    async def get_export_status(self, reference_number: str) -> ExportStatus:
        """GET /invoices/exports/{ref}"""
        token = self.session.get()
        async with self._http() as http:
            response = await self._send(
                http, "GET", f"/invoices/exports/{reference_number}",
                "Failed to check export status",
                token=token,
            )
        return self._parse(ExportStatus, response, "Failed to check export status")

    async def download_package_part(self, url: str) -> bytes:
        """Download one encrypted package part as raw bytes."""
        token = self.session.get()
        async with self._http() as http:
            response = await self._send(
                http, "GET", url,
                "Failed to download package part",
                token=token,
                headers={"Accept": "application/octet-stream"},
            )
        return response.content

    # ─── Internals ──────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            transport=self._transport,
        )

    async def _send(
        self,
        http: httpx.AsyncClient,
        method: str,
        url: str,
        default_message: str,
        token: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        authorize: bool = True,
        **kwargs,
    ) -> httpx.Response:
        """Send one request and classify any failure."""
        merged = {**COMMON_HEADERS, **(headers or {})}
        if authorize:
            merged["Authorization"] = f"Bearer {token or self.session.get()}"

        logger.info("KSeF %s %s", method, url)
        try:
            response = await http.request(method, url, headers=merged, **kwargs)
        except httpx.HTTPError as e:
            # No response: the request may or may not have reached KSeF
            raise classify(0, None, f"{default_message}: {e}") from e

        logger.debug("KSeF %s %s -> %s", method, url, response.status_code)
        if not response.is_success:
            raise classify(response.status_code, response.content, default_message)
        return response

    @staticmethod
    def _parse(
        model: Type[M],
        response: httpx.Response,
        default_message: str,
        allow_empty: bool = False,
    ) -> M:
        """Validate a 2xx body against its schema."""
        if allow_empty and not response.content.strip():
            return model()
        try:
            return model.model_validate(response.json())
        except ValueError as e:
            logger.error(
                "Unexpected KSeF response shape for %s: %s", response.request.url, e
            )
            raise classify(
                response.status_code,
                None,
                f"{default_message}: unexpected response",
            ) from e
