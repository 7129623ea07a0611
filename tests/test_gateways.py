import hashlib
import hmac
import json

import pytest
import requests
from botocore.exceptions import ClientError

from config.app_config import GATEWAY_BACKOFF_BASE_SECONDS, GATEWAY_BACKOFF_CAP_SECONDS, GATEWAY_MAX_RETRIES
from core.errors import ExternalUnavailable
from core.minio_service import MINIO_BUCKET, upload_attachment
from core.paystack_service import PaystackConfig, PaystackService, PaystackWebhookHandler


def make_response(status_code, body=None):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body or {}).encode("utf-8")
    response.encoding = "utf-8"
    return response


class ScriptedSession:
    """Plays back responses (or raises exceptions) in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs.get("json")))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeS3:
    def __init__(self, has_bucket=True, fail_put=False):
        self.has_bucket = has_bucket
        self.fail_put = fail_put
        self.created = []
        self.objects = {}

    def head_bucket(self, Bucket):
        if not self.has_bucket:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadBucket")

    def create_bucket(self, Bucket):
        self.created.append(Bucket)
        self.has_bucket = True

    def put_object(self, Bucket, Key, Body, ContentType):
        if self.fail_put:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        self.objects[Key] = (Body, ContentType)


# ============================================================================
# PAYSTACK
# ============================================================================

def test_session_retries_transient_failures_with_capped_backoff():
    service = PaystackService()

    retry = service.http.get_adapter(PaystackConfig.BASE_URL).max_retries

    assert retry.total == GATEWAY_MAX_RETRIES
    assert retry.backoff_factor == GATEWAY_BACKOFF_BASE_SECONDS
    assert retry.backoff_max == GATEWAY_BACKOFF_CAP_SECONDS
    assert {429, 500, 502, 503, 504} <= set(retry.status_forcelist)
    assert 400 not in retry.status_forcelist
    assert "POST" in retry.allowed_methods


def test_successful_request_returns_data():
    session = ScriptedSession(
        make_response(200, {"status": True, "data": {"reference": "conv_1", "authorization_url": "https://pay"}}),
    )
    service = PaystackService(session=session)

    data = service.initialize_transaction("brand@example.com", 300000, reference="conv_1")

    assert data["authorization_url"] == "https://pay"
    assert session.calls[0][0] == "POST"
    assert session.calls[0][1].endswith("/transaction/initialize")
    assert session.calls[0][2]["amount"] == 300000
    assert session.calls[0][2]["reference"] == "conv_1"


@pytest.mark.parametrize("failure", [
    requests.exceptions.RetryError("too many 503 error responses"),
    requests.exceptions.ConnectionError("reset"),
    requests.exceptions.Timeout("slow"),
])
def test_exhausted_transport_is_reported_as_unavailable(failure):
    service = PaystackService(session=ScriptedSession(failure))

    with pytest.raises(ExternalUnavailable) as exc:
        service.verify_transaction("conv_1")

    assert exc.value.extra["service"] == "paystack"


def test_client_errors_are_reported_without_retry():
    session = ScriptedSession(make_response(400, {"status": False, "message": "bad recipient"}))
    service = PaystackService(session=session)

    with pytest.raises(ExternalUnavailable) as exc:
        service.initiate_transfer(20000, "RCP_bad", reference="wd-1")
    assert "rejected" in exc.value.detail
    assert len(session.calls) == 1


def test_webhook_signature_verification():
    body = b'{"event": "charge.success"}'
    good = hmac.new(b"secret", body, hashlib.sha512).hexdigest()

    assert PaystackWebhookHandler.verify_webhook(body, good, secret_key="secret")
    assert not PaystackWebhookHandler.verify_webhook(body, good, secret_key="other")
    assert not PaystackWebhookHandler.verify_webhook(body + b" ", good, secret_key="secret")
    assert not PaystackWebhookHandler.verify_webhook(body, None, secret_key="secret")


def test_charge_success_normalisation():
    charge = PaystackWebhookHandler.handle_charge_success({"reference": "dep_1", "id": 42, "amount": 5000})

    assert charge["payment_id"] == "42"
    assert charge["reference"] == "dep_1"
    assert charge["amount"] == 5000


# ============================================================================
# MINIO
# ============================================================================

def test_upload_creates_bucket_and_stores_object():
    client = FakeS3(has_bucket=False)

    stored = upload_attachment(b"video-bytes", "my reel.mp4", "video/mp4", "conv-1", client=client)

    assert client.created == [MINIO_BUCKET]
    assert stored["object_key"].startswith("conversations/conv-1/")
    assert stored["object_key"].endswith("-my_reel.mp4")
    assert client.objects[stored["object_key"]] == (b"video-bytes", "video/mp4")
    assert stored["url"].endswith(f"/{MINIO_BUCKET}/{stored['object_key']}")
    assert stored["file_size"] == len(b"video-bytes")


def test_upload_failure_is_reported_as_unavailable():
    with pytest.raises(ExternalUnavailable) as exc:
        upload_attachment(b"x", "a.png", "image/png", "conv-1", client=FakeS3(fail_put=True))
    assert exc.value.extra["service"] == "minio"
