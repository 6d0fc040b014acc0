"""Webhook payload signer using HMAC-SHA256."""

import hashlib
import hmac


class WebhookSigner:
    """Signs webhook payloads for verification."""

    SIGNATURE_PREFIX = "sha256="
    USER_AGENT = "TinyFeedback-Webhook/1.0"

    @staticmethod
    def sign(secret: str, body: str) -> str:
        """
        Generate HMAC-SHA256 signature for a webhook body.

        Args:
            secret: The webhook's shared secret key
            body: The exact JSON body string that will be sent

        Returns:
            Lowercase hex digest (without the "sha256=" prefix)
        """
        return hmac.new(
            secret.encode("utf-8"),
            body.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def verify(body: str, secret: str, signature: str) -> bool:
        """
        Verify a webhook signature the way a receiver should.

        Args:
            body: The raw request body
            secret: The shared secret key
            signature: Value of the X-Webhook-Signature header
                ("sha256=<hex>"; a bare hex digest is accepted too)

        Returns:
            True if signature is valid, False otherwise
        """
        if signature.startswith(WebhookSigner.SIGNATURE_PREFIX):
            signature = signature[len(WebhookSigner.SIGNATURE_PREFIX) :]
        expected_signature = WebhookSigner.sign(secret, body)
        return hmac.compare_digest(expected_signature, signature)

    @staticmethod
    def get_headers(signature: str, event_type: str, webhook_id: str) -> dict[str, str]:
        """
        Generate all webhook HTTP headers for an already computed signature.

        Args:
            signature: Hex digest returned by sign()
            event_type: The event type (e.g., "feedback.created")
            webhook_id: The webhook ID

        Returns:
            Dictionary of HTTP headers
        """
        return {
            "Content-Type": "application/json",
            "X-Webhook-Signature": f"{WebhookSigner.SIGNATURE_PREFIX}{signature}",
            "X-Webhook-Event": event_type,
            "X-Webhook-ID": webhook_id,
            "User-Agent": WebhookSigner.USER_AGENT,
        }
