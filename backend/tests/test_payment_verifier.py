"""
Payment signature verification tests.
"""

import hashlib
import hmac

from token_wallet.payment_verifier import PaymentVerifier, compute_signature


def test_compute_signature_matches_hmac_sha256():
    expected = hmac.new(b"secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert compute_signature("secret", "order_1|pay_1") == expected


class TestCheckoutSignature:

    def test_valid_signature(self, verifier):
        sig = compute_signature("test_key_secret", "order_1|pay_1")
        assert verifier.verify_signature("order_1", "pay_1", sig)

    def test_signature_for_other_payment_rejected(self, verifier):
        sig = compute_signature("test_key_secret", "order_1|pay_2")
        assert not verifier.verify_signature("order_1", "pay_1", sig)

    def test_wrong_secret_rejected(self, verifier):
        sig = compute_signature("another_secret", "order_1|pay_1")
        assert not verifier.verify_signature("order_1", "pay_1", sig)

    def test_empty_signature_rejected(self, verifier):
        assert not verifier.verify_signature("order_1", "pay_1", "")

    def test_missing_secret_never_verifies(self, monkeypatch):
        monkeypatch.delenv("RAZORPAY_KEY_SECRET", raising=False)
        verifier = PaymentVerifier()
        assert not verifier.verify_signature("order_1", "pay_1", compute_signature("", "order_1|pay_1"))

    def test_secret_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("RAZORPAY_KEY_SECRET", "env_secret")
        sig = compute_signature("env_secret", "order_1|pay_1")
        assert PaymentVerifier().verify_signature("order_1", "pay_1", sig)


class TestWebhookSignature:

    def test_valid_body_signature(self, verifier):
        body = b'{"event":"payment.captured"}'
        sig = hmac.new(b"test_webhook_secret", body, hashlib.sha256).hexdigest()
        assert verifier.verify_webhook_signature(body, sig)

    def test_tampered_body_rejected(self, verifier):
        body = b'{"event":"payment.captured"}'
        sig = hmac.new(b"test_webhook_secret", body, hashlib.sha256).hexdigest()
        assert not verifier.verify_webhook_signature(body + b" ", sig)

    def test_checkout_secret_does_not_sign_webhooks(self, verifier):
        body = b"{}"
        sig = hmac.new(b"test_key_secret", body, hashlib.sha256).hexdigest()
        assert not verifier.verify_webhook_signature(body, sig)
