"""
Paystack adapter against a scripted transport.
"""
import json

import httpx
import pytest

from errors import UpstreamError
from payments import PaystackGateway, compute_signature, to_subunit, verify_signature


def _gateway(handler):
    return PaystackGateway(
        secret_key="sk_test_abc",
        base_url="https://paystack.test",
        callback_url="https://shop.test/payment/verify",
        transport=httpx.MockTransport(handler),
    )


class TestInitialize:

    async def test_sends_amount_in_subunits(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {
                        "reference": "abc123",
                        "authorization_url": "https://checkout.paystack.com/abc123",
                        "access_code": "ac",
                    },
                },
            )

        tx = await _gateway(handler).initialize("ama@example.com", 1234.5, {"order_id": "o1"})

        assert tx.reference == "abc123"
        assert tx.authorization_url == "https://checkout.paystack.com/abc123"
        assert seen["path"] == "/transaction/initialize"
        assert seen["auth"] == "Bearer sk_test_abc"
        assert seen["body"]["amount"] == 123450
        assert seen["body"]["callback_url"] == "https://shop.test/payment/verify"
        assert seen["body"]["metadata"] == {"order_id": "o1"}

    async def test_provider_error_carries_payload(self):
        def handler(request):
            return httpx.Response(401, json={"status": False, "message": "Invalid key"})

        with pytest.raises(UpstreamError) as exc:
            await _gateway(handler).initialize("ama@example.com", 10)
        assert exc.value.message == "Invalid key"
        assert exc.value.details == {"status": False, "message": "Invalid key"}

    async def test_unreachable_provider(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamError, match="unreachable"):
            await _gateway(handler).initialize("ama@example.com", 10)

    async def test_incomplete_transaction(self):
        def handler(request):
            return httpx.Response(200, json={"status": True, "data": {"reference": "abc"}})

        with pytest.raises(UpstreamError):
            await _gateway(handler).initialize("ama@example.com", 10)


class TestVerify:

    @pytest.mark.parametrize(
        "status, succeeded, failed",
        [("success", True, False), ("failed", False, True), ("reversed", False, True), ("abandoned", False, False)],
    )
    async def test_status_mapping(self, status, succeeded, failed):
        def handler(request):
            assert request.url.path == "/transaction/verify/abc123"
            return httpx.Response(200, json={"status": True, "data": {"status": status, "reference": "abc123"}})

        tx = await _gateway(handler).verify("abc123")
        assert tx.succeeded is succeeded
        assert tx.failed is failed
        assert tx.data["reference"] == "abc123"

    async def test_non_json_error_body(self):
        def handler(request):
            return httpx.Response(503, text="upstream down")

        with pytest.raises(UpstreamError) as exc:
            await _gateway(handler).verify("abc123")
        assert exc.value.details == {"message": "upstream down"}


class TestSignatures:

    def test_valid_signature(self):
        raw = b'{"event":"charge.success"}'
        assert verify_signature(raw, compute_signature(raw, "whsec"), "whsec")

    def test_signature_over_other_body(self):
        signature = compute_signature(b'{"event":"charge.success"}', "whsec")
        assert not verify_signature(b'{"event":"charge.failed"}', signature, "whsec")

    def test_missing_signature_or_secret(self):
        assert not verify_signature(b"{}", None, "whsec")
        assert not verify_signature(b"{}", compute_signature(b"{}", ""), "")

    def test_non_ascii_signature_is_a_mismatch(self):
        assert not verify_signature(b"{}", "\u00e9" * 128, "whsec")

    def test_signature_is_sha512_hex(self):
        assert len(compute_signature(b"{}", "whsec")) == 128


def test_to_subunit_rounds():
    assert to_subunit(19.99) == 1999
    assert to_subunit(0.1 + 0.2) == 30
