"""Tests for Stripe signature verification and event parsing."""

import json

import pytest

from verify_relay.errors import PayloadInvalid, SignatureInvalid
from verify_relay.services.stripe_service import extract_event_facts, verify_webhook_signature

SECRET = "whsec_test_fake"


class TestVerifyWebhookSignature:

    def test_valid_signature_returns_event(self, signer, checkout_event):
        payload = json.dumps(checkout_event()).encode("utf-8")
        event = verify_webhook_signature(payload, signer(payload.decode()), SECRET)
        assert event["type"] == "checkout.session.completed"
        assert event["data"]["object"]["id"] == "cs_test_001"

    def test_raw_utf8_bytes_verify(self, signer, checkout_event):
        """The signature covers the decoded text, not the bytes repr."""
        text = json.dumps(checkout_event(email="zo\u00eb@example.com"), ensure_ascii=False)
        event = verify_webhook_signature(text.encode("utf-8"), signer(text), SECRET)
        assert event["data"]["object"]["customer_details"]["email"] == "zo\u00eb@example.com"

    def test_non_utf8_body(self, signer):
        with pytest.raises(SignatureInvalid):
            verify_webhook_signature(b"\xff\xfe{bad", signer("{}"), SECRET)

    def test_reserialized_body_fails(self, signer, checkout_event):
        """Signing pretty-printed JSON and sending compact JSON must fail."""
        event = checkout_event()
        signed = json.dumps(event, indent=2)
        sent = json.dumps(event, separators=(",", ":"))
        with pytest.raises(SignatureInvalid):
            verify_webhook_signature(sent.encode(), signer(signed), SECRET)

    def test_missing_header(self):
        with pytest.raises(SignatureInvalid):
            verify_webhook_signature(b"{}", None, SECRET)

    def test_missing_secret(self, signer):
        with pytest.raises(SignatureInvalid):
            verify_webhook_signature(b"{}", signer("{}"), None)

    def test_expired_timestamp(self, signer):
        header = signer("{}", timestamp=1_000_000_000)
        with pytest.raises(SignatureInvalid):
            verify_webhook_signature(b"{}", header, SECRET, tolerance=300)

    def test_signed_garbage_is_payload_invalid(self, signer):
        with pytest.raises(PayloadInvalid):
            verify_webhook_signature(b"not json", signer("not json"), SECRET)

    def test_signed_event_without_object(self, signer):
        payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {}})
        with pytest.raises(PayloadInvalid):
            verify_webhook_signature(payload.encode(), signer(payload), SECRET)


class TestExtractEventFacts:

    def test_checkout_facts(self, checkout_event):
        facts = extract_event_facts(checkout_event(
            promo_code="di_SPRING", verification_session_id="vs_9", product_id="vpn-pass",
        ))
        assert facts.event_id == "evt_checkout_001"
        assert facts.checkout_session_id == "cs_test_001"
        assert facts.verification_session_id == "vs_9"
        assert facts.email == "joe@example.com"
        assert facts.product_id == "vpn-pass"
        assert facts.promo_code == "di_SPRING"
        assert facts.payment_status == "paid"

    def test_checkout_email_fallback(self, checkout_event):
        event = checkout_event(email=None)
        event["data"]["object"]["customer_details"] = None
        event["data"]["object"]["customer_email"] = "fallback@example.com"
        assert extract_event_facts(event).email == "fallback@example.com"

    def test_checkout_without_optional_fields(self):
        facts = extract_event_facts({
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1"}},
        })
        assert facts.checkout_session_id == "cs_1"
        assert facts.email is None
        assert facts.product_id is None
        assert facts.promo_code is None
        assert facts.payment_status is None

    def test_verification_facts(self, verification_event):
        facts = extract_event_facts(verification_event(
            product_id="vpn-pass", checkout_session_id="cs_9",
        ))
        assert facts.verification_session_id == "vs_test_001"
        assert facts.checkout_session_id == "cs_9"
        assert facts.email == "joe@example.com"
        assert facts.product_id == "vpn-pass"

    def test_verification_email_from_verified_outputs(self, verification_event):
        event = verification_event(email=None)
        event["data"]["object"]["verified_outputs"] = {"email": "outputs@example.com"}
        assert extract_event_facts(event).email == "outputs@example.com"

    def test_blank_metadata_is_absent(self, verification_event):
        event = verification_event()
        event["data"]["object"]["metadata"] = {"email": "  ", "product_id": ""}
        facts = extract_event_facts(event)
        assert facts.email is None
        assert facts.product_id is None

    def test_non_mapping_metadata_is_ignored(self, verification_event):
        event = verification_event(event_type="identity.verification_session.requires_input")
        event["data"]["object"]["metadata"] = ["x"]
        facts = extract_event_facts(event)
        assert facts.verification_session_id == "vs_test_001"
        assert facts.email is None
        assert facts.checkout_session_id is None

    def test_other_event_types(self):
        facts = extract_event_facts({
            "id": "evt_2",
            "type": "invoice.paid",
            "data": {"object": {"id": "in_1"}},
        })
        assert facts.event_type == "invoice.paid"
        assert facts.checkout_session_id is None
        assert facts.verification_session_id is None
