"""Tests for batch submission (zip, split, encrypt, open/upload/close/poll)."""

import pytest
import sys
import os
import base64
import hashlib
import io
import json
import logging
import zipfile

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

httpx = pytest.importorskip("httpx", reason="httpx not installed")
cryptography = pytest.importorskip("cryptography", reason="cryptography not installed")

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.padding import MGF1, OAEP

from ksef_gateway.api.client import GatewayApiClient
from ksef_gateway.api.errors import GatewayError, GatewayErrorKind
from ksef_gateway.config import GatewayConfig
from ksef_gateway.services.batch import BatchSubmitter
from ksef_gateway.utils.crypto import decrypt_aes256_cbc

BATCH_REF = "20250115-SB-ABCDEF0123-4567890ABC-12"
OAEP_SHA256 = OAEP(mgf=MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)
INVOICES = {
    "FV-2025-01-001.xml": '<?xml version="1.0"?><Faktura><Fa><P_2>FV/2025/01/001</P_2></Fa></Faktura>',
    "FV-2025-01-002.xml": '<?xml version="1.0"?><Faktura><Fa><P_2>FV/2025/01/002</P_2></Fa></Faktura>',
}


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def public_pem(private_key):
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def _b64_sha256(data):
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


class BatchGateway:
    """Mock KSeF batch endpoints plus a pre-signed upload host."""

    def __init__(self, processing_polls=1, final_code=200, final_description="Processed",
                 upload_status=201, skip_upload_urls=()):
        self.processing_polls = processing_polls
        self.final_code = final_code
        self.final_description = final_description
        self.upload_status = upload_status
        self.skip_upload_urls = set(skip_upload_urls)
        self.calls = []
        self.open_requests = []
        self.uploads = {}
        self.polls = 0

    async def __call__(self, request: httpx.Request):
        self.calls.append(request)
        path = request.url.path

        if request.url.host == "upload.example":
            n = int(path.rsplit("/", 1)[-1])
            self.uploads[n] = request
            return httpx.Response(self.upload_status)

        if request.method == "POST" and path.endswith("/sessions/batch"):
            body = json.loads(request.content)
            self.open_requests.append(body)
            return httpx.Response(201, json={
                "referenceNumber": BATCH_REF,
                "validUntil": "2025-01-15T22:00:00Z",
                "partUploadRequests": [
                    {
                        "ordinalNumber": p["ordinalNumber"],
                        "url": f"https://upload.example/batch/{p['ordinalNumber']}",
                        "method": "PUT",
                        "headers": {"x-ms-blob-type": "BlockBlob"},
                    }
                    for p in body["batchFile"]["fileParts"]
                    if p["ordinalNumber"] not in self.skip_upload_urls
                ],
            })

        if request.method == "POST" and path.endswith(f"/sessions/batch/{BATCH_REF}/close"):
            return httpx.Response(204)

        if request.method == "GET" and path.endswith(f"/sessions/{BATCH_REF}"):
            self.polls += 1
            if self.polls <= self.processing_polls:
                return httpx.Response(200, json={"status": {"code": 150, "description": "Processing"}})
            return httpx.Response(200, json={
                "status": {"code": self.final_code, "description": self.final_description},
                "invoiceCount": 2,
                "successfulInvoiceCount": 2,
                "failedInvoiceCount": 0,
                "upo": {"pages": [{"referenceNumber": "UPO-B1", "downloadUrl": "https://upo.example/1"}]},
            })

        return httpx.Response(404)

    @property
    def steps(self):
        return [
            (r.method, "upload" if r.url.host == "upload.example" else r.url.path.replace("/v2", "", 1))
            for r in self.calls
        ]

    def package(self, private_key):
        """Decrypt the uploaded parts with the key the client sent."""
        encryption = self.open_requests[0]["encryption"]
        key = private_key.decrypt(
            base64.b64decode(encryption["encryptedSymmetricKey"]), OAEP_SHA256
        )
        iv = base64.b64decode(encryption["initializationVector"])
        return b"".join(
            decrypt_aes256_cbc(self.uploads[n].content, key, iv) for n in sorted(self.uploads)
        )


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


async def _submitter(gateway, public_pem, token="bearer-token", **kwargs):
    client = GatewayApiClient(GatewayConfig(), transport=httpx.MockTransport(gateway))
    if token:
        await client.init_session(token)
    sleep = FakeSleep()
    submitter = BatchSubmitter(client, public_pem, sleep=sleep, **kwargs)
    return submitter, sleep


class TestSubmitBatch:
    @pytest.mark.asyncio
    async def test_end_to_end(self, private_key, public_pem):
        gateway = BatchGateway()
        submitter, sleep = await _submitter(gateway, public_pem, max_part_size=100)

        result = await submitter.submit_batch(INVOICES)

        parts = len(gateway.open_requests[0]["batchFile"]["fileParts"])
        assert parts > 1
        assert gateway.steps == (
            [("POST", "/sessions/batch")]
            + [("PUT", "upload")] * parts
            + [("POST", f"/sessions/batch/{BATCH_REF}/close")]
            + [("GET", f"/sessions/{BATCH_REF}")] * 2
        )
        assert sleep.calls == [5.0, 5.0]

        assert result.reference_number == BATCH_REF
        assert result.part_count == parts
        assert result.invoice_count == 2
        assert result.successful_count == 2
        assert result.failed_count == 0
        assert result.upo_pages[0].referenceNumber == "UPO-B1"

    @pytest.mark.asyncio
    async def test_uploaded_parts_rebuild_the_zip(self, private_key, public_pem):
        gateway = BatchGateway()
        submitter, _ = await _submitter(gateway, public_pem, max_part_size=100)
        await submitter.submit_batch(INVOICES)

        with zipfile.ZipFile(io.BytesIO(gateway.package(private_key))) as zf:
            assert zf.namelist() == list(INVOICES)
            for name, xml in INVOICES.items():
                assert zf.read(name).decode("utf-8") == xml

    @pytest.mark.asyncio
    async def test_declared_sizes_and_hashes(self, private_key, public_pem):
        gateway = BatchGateway()
        submitter, _ = await _submitter(gateway, public_pem, max_part_size=100)
        await submitter.submit_batch(INVOICES)

        batch_file = gateway.open_requests[0]["batchFile"]
        package = gateway.package(private_key)
        assert batch_file["fileSize"] == len(package)
        assert batch_file["fileHash"] == _b64_sha256(package)
        for part in batch_file["fileParts"]:
            uploaded = gateway.uploads[part["ordinalNumber"]].content
            assert part["fileSize"] == len(uploaded)
            assert part["fileHash"] == _b64_sha256(uploaded)

    @pytest.mark.asyncio
    async def test_form_code_follows_schema_version(self, public_pem):
        gateway = BatchGateway()
        submitter, _ = await _submitter(gateway, public_pem)
        await submitter.submit_batch(INVOICES)
        assert gateway.open_requests[0]["formCode"] == {
            "systemCode": "FA (3)",
            "schemaVersion": "1-0E",
            "value": "FA",
        }

    @pytest.mark.asyncio
    async def test_single_part_when_package_fits(self, public_pem):
        gateway = BatchGateway()
        submitter, _ = await _submitter(gateway, public_pem)
        result = await submitter.submit_batch(INVOICES)
        assert result.part_count == 1
        assert list(gateway.uploads) == [1]

    @pytest.mark.asyncio
    async def test_upload_goes_without_bearer_token(self, public_pem):
        gateway = BatchGateway()
        submitter, _ = await _submitter(gateway, public_pem)
        await submitter.submit_batch(INVOICES)

        upload = gateway.uploads[1]
        assert upload.method == "PUT"
        assert "Authorization" not in upload.headers
        assert upload.headers["x-ms-blob-type"] == "BlockBlob"
        opened = gateway.calls[0]
        assert opened.headers["Authorization"] == "Bearer bearer-token"

    @pytest.mark.asyncio
    async def test_fresh_key_each_batch(self, private_key, public_pem):
        gateway = BatchGateway(processing_polls=0)
        submitter, _ = await _submitter(gateway, public_pem)
        await submitter.submit_batch(INVOICES)
        gateway.polls = 0
        await submitter.submit_batch(INVOICES)
        first, second = (r["encryption"] for r in gateway.open_requests)
        assert first["initializationVector"] != second["initializationVector"]


class TestSubmitBatchFailure:
    @pytest.mark.asyncio
    async def test_inactive_session(self, public_pem):
        gateway = BatchGateway()
        submitter, _ = await _submitter(gateway, public_pem, token=None)
        with pytest.raises(GatewayError) as exc_info:
            await submitter.submit_batch(INVOICES)
        assert exc_info.value.kind == GatewayErrorKind.SESSION
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_no_invoices(self, public_pem):
        gateway = BatchGateway()
        submitter, _ = await _submitter(gateway, public_pem)
        with pytest.raises(ValueError):
            await submitter.submit_batch({})
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_upload_failure_abandons_session(self, public_pem, caplog):
        gateway = BatchGateway(upload_status=503)
        submitter, _ = await _submitter(gateway, public_pem)

        with caplog.at_level(logging.WARNING, logger="ksef_gateway.services.batch"):
            with pytest.raises(GatewayError) as exc_info:
                await submitter.submit_batch(INVOICES)

        assert exc_info.value.kind == GatewayErrorKind.SERVER
        assert exc_info.value.retryable is True
        assert ("POST", f"/sessions/batch/{BATCH_REF}/close") not in gateway.steps
        assert f"Batch session {BATCH_REF} abandoned at stage 'opened'" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_upload_url(self, public_pem, caplog):
        gateway = BatchGateway(skip_upload_urls=[2])
        submitter, _ = await _submitter(gateway, public_pem, max_part_size=100)

        with caplog.at_level(logging.WARNING, logger="ksef_gateway.services.batch"):
            with pytest.raises(GatewayError) as exc_info:
                await submitter.submit_batch(INVOICES)

        assert "No upload URL for part 2" in exc_info.value.message
        assert list(gateway.uploads) == [1]
        assert ("POST", f"/sessions/batch/{BATCH_REF}/close") not in gateway.steps
        assert "abandoned" in caplog.text

    @pytest.mark.asyncio
    async def test_processing_failed(self, public_pem):
        gateway = BatchGateway(final_code=445, final_description="No valid invoices")
        submitter, _ = await _submitter(gateway, public_pem)
        with pytest.raises(GatewayError) as exc_info:
            await submitter.submit_batch(INVOICES)
        assert exc_info.value.message == "No valid invoices"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_never_processed(self, public_pem):
        gateway = BatchGateway(processing_polls=10)
        submitter, sleep = await _submitter(gateway, public_pem, max_polls=3)
        with pytest.raises(GatewayError) as exc_info:
            await submitter.submit_batch(INVOICES)
        assert "not processed after 3 checks" in exc_info.value.message
        assert len(sleep.calls) == 3
