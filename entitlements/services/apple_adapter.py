"""
Apple App Store Adapter
=======================

Translates App Store payloads into ``SubscriptionEvent`` objects.

Handles:
- Legacy receipt validation (``verifyReceipt``), production first with an
  automatic sandbox retry on status 21007
- App Store Server Notifications v2 (signed JWS), verified against the
  configured Apple root certificate

Apple subscriptions cannot be canceled server-side; there is no cancel
call here.
"""

import base64
import json
import logging
from pathlib import Path
from typing import Any, Optional

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from jose import jws
from jose.exceptions import JOSEError

from entitlements.config import settings
from entitlements.core.errors import TransientNetworkError, VerificationError
from entitlements.models.subscription import Plan, Platform
from entitlements.schemas.events import EventKind, SubscriptionEvent
from entitlements.utils.helpers import from_epoch_ms, utc_now

logger = logging.getLogger(__name__)

PRODUCTION_VERIFY_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_VERIFY_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

SANDBOX_RECEIPT_STATUS = 21007

RECEIPT_STATUS_MESSAGES = {
    21000: "The App Store could not read the JSON object you provided.",
    21002: "The receipt data was malformed or missing.",
    21003: "The receipt could not be authenticated.",
    21004: "The shared secret you provided does not match the shared secret on file for your account.",
    21005: "The receipt server is currently not available.",
    21006: "This receipt is valid but the subscription has expired.",
    21007: "This receipt is from the test environment, but sent to the production environment.",
    21008: "This receipt is from the production environment, but sent to the test environment.",
    21010: "This receipt could not be authorized.",
}

APPLE_LEAF_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_INTERMEDIATE_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")

RENEWED_TYPES = frozenset({"SUBSCRIBED", "DID_RENEW"})
EXPIRED_TYPES = frozenset({"EXPIRED", "REFUND", "REVOKE"})


def receipt_status_message(status: int) -> str:
    """Human-readable message for a ``verifyReceipt`` status code."""
    if 21100 <= status <= 21199:
        return "Internal data access error."
    return RECEIPT_STATUS_MESSAGES.get(status, f"Unknown status code: {status}")


def _allows_issuing(cert: x509.Certificate, ca_below: int) -> bool:
    """CA flag set and ``pathLenConstraint`` covers ``ca_below`` intermediates."""
    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False
    if not constraints.ca:
        return False
    return constraints.path_length is None or constraints.path_length >= ca_below


def _has_extension(cert: x509.Certificate, oid: x509.ObjectIdentifier) -> bool:
    try:
        cert.extensions.get_extension_for_oid(oid)
    except x509.ExtensionNotFound:
        return False
    return True


def _b64url_json(segment: str) -> dict:
    padded = segment + "=" * (-len(segment) % 4)
    decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    if not isinstance(decoded, dict):
        raise ValueError("JWS segment is not a JSON object")
    return decoded


class AppleAdapter:
    """App Store receipt and server-notification verifier."""

    def __init__(
        self,
        shared_secret: Optional[str] = None,
        product_plans: Optional[dict[str, str]] = None,
        root_ca_path: Optional[str] = None,
        bundle_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.shared_secret = shared_secret or settings.APPLE_SHARED_SECRET
        self.product_plans = product_plans or settings.APPLE_PRODUCT_PLANS
        self.bundle_id = bundle_id or settings.APPLE_BUNDLE_ID
        self.timeout = timeout or settings.PLATFORM_REQUEST_TIMEOUT_SECONDS
        self.root_certificate = self._load_root(root_ca_path or settings.APPLE_ROOT_CA_PATH)

    @staticmethod
    def _load_root(path: str) -> x509.Certificate:
        data = Path(path).read_bytes()
        if b"-----BEGIN CERTIFICATE-----" in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)

    # -------------------------------------------------------------------------
    # Receipt validation
    # -------------------------------------------------------------------------

    async def verify_receipt(
        self,
        receipt_base64: str,
        user_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> SubscriptionEvent:
        """
        Validate a receipt with Apple and return a ``subscribed`` event.

        Args:
            receipt_base64: Base64 receipt from StoreKit.
            user_id: Authenticated user submitting the receipt.
            product_id: Product the client just bought. Its transaction is
                preferred over others in the receipt.

        Raises:
            VerificationError: Non-zero App Store status, a receipt for
                another bundle, no usable transaction, or an unknown product.
            TransientNetworkError: Apple could not be reached in time.
        """
        result = await self._post_receipt(PRODUCTION_VERIFY_URL, receipt_base64)
        status = result.get("status")
        if status == SANDBOX_RECEIPT_STATUS:
            logger.info("Sandbox receipt sent to production, retrying against sandbox")
            result = await self._post_receipt(SANDBOX_VERIFY_URL, receipt_base64)
            status = result.get("status")

        if status != 0:
            code = int(status) if isinstance(status, int) else -1
            raise VerificationError(str(status), receipt_status_message(code))

        receipt_bundle = (result.get("receipt") or {}).get("bundle_id")
        if self.bundle_id and receipt_bundle and receipt_bundle != self.bundle_id:
            raise VerificationError("BUNDLE_MISMATCH", "Receipt is for another app")

        transaction = self._select_transaction(result, product_id)
        return self._receipt_event(transaction, user_id)

    async def _post_receipt(self, url: str, receipt_base64: str) -> dict:
        body = {
            "receipt-data": receipt_base64,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }
        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(url, json=body, timeout=self.timeout)
            except httpx.TimeoutException as exc:
                logger.error("Apple verifyReceipt timeout (%s)", url)
                raise TransientNetworkError("Apple verifyReceipt timed out") from exc
            except httpx.HTTPError as exc:
                logger.error("Apple verifyReceipt request failed (%s): %s", url, exc)
                raise TransientNetworkError(f"Apple verifyReceipt failed: {exc}") from exc

        if response.status_code >= 500:
            logger.error(
                "Apple verifyReceipt returned HTTP %d: %s",
                response.status_code,
                response.text[:200],
            )
            raise TransientNetworkError(f"Apple verifyReceipt HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as exc:
            raise VerificationError("MALFORMED_RESPONSE", "Apple returned a non-JSON body") from exc

    def _select_transaction(self, result: dict, product_id: Optional[str]) -> dict:
        transactions = result.get("latest_receipt_info") or (
            result.get("receipt", {}).get("in_app") or []
        )
        if not transactions:
            raise VerificationError("NO_TRANSACTIONS", "No subscription information found")

        candidates = transactions
        if product_id:
            matching = [t for t in transactions if t.get("product_id") == product_id]
            if matching:
                candidates = matching

        return max(candidates, key=lambda t: int(t.get("expires_date_ms") or 0))

    def _receipt_event(self, transaction: dict, user_id: Optional[str]) -> SubscriptionEvent:
        plan = self._plan_for(transaction.get("product_id"))
        original_id = transaction.get("original_transaction_id") or transaction.get("transaction_id")
        if not original_id:
            raise VerificationError("MALFORMED_RESPONSE", "Transaction has no identifier")

        occurred_at = from_epoch_ms(transaction.get("purchase_date_ms")) or utc_now()
        return SubscriptionEvent(
            platform=Platform.APPLE,
            external_id=str(original_id),
            event_id=f"apple:receipt:{transaction.get('transaction_id') or original_id}",
            kind=EventKind.SUBSCRIBED,
            occurred_at=occurred_at,
            plan=plan,
            period_end_at=from_epoch_ms(transaction.get("expires_date_ms")),
            raw_payload_ref=f"apple:receipt:{original_id}",
            user_id=user_id,
        )

    # -------------------------------------------------------------------------
    # Server notifications (v2)
    # -------------------------------------------------------------------------

    def parse_server_notification(self, signed_payload: str) -> SubscriptionEvent:
        """
        Verify and translate an App Store Server Notification.

        Raises:
            VerificationError: Bad signature or certificate chain, a bundle
                mismatch, or a payload that cannot be parsed.
        """
        notification = self.verify_jws(signed_payload)
        notification_type = notification.get("notificationType")
        subtype = notification.get("subtype")
        data = notification.get("data") or {}

        if self.bundle_id and data.get("bundleId") and data["bundleId"] != self.bundle_id:
            raise VerificationError("BUNDLE_MISMATCH", "Notification is for another app")

        transaction: dict[str, Any] = {}
        if data.get("signedTransactionInfo"):
            transaction = self.verify_jws(data["signedTransactionInfo"])

        external_id = transaction.get("originalTransactionId") or data.get("originalTransactionId")
        if not external_id:
            raise VerificationError("MALFORMED_PAYLOAD", "Notification has no original transaction id")

        occurred_at = from_epoch_ms(notification.get("signedDate"))
        if occurred_at is None:
            raise VerificationError("MALFORMED_PAYLOAD", "Notification has no signedDate")

        notification_uuid = notification.get("notificationUUID")
        logger.info(
            "Apple notification received: type=%s subtype=%s uuid=%s",
            notification_type,
            subtype,
            notification_uuid,
        )

        base = {
            "platform": Platform.APPLE,
            "external_id": str(external_id),
            "event_id": notification_uuid,
            "occurred_at": occurred_at,
            "raw_payload_ref": f"apple:{notification_type}:{notification_uuid}",
        }

        if notification_type in RENEWED_TYPES or (
            notification_type == "DID_CHANGE_RENEWAL_STATUS"
            and subtype == "AUTO_RENEW_ENABLED"
        ):
            return SubscriptionEvent(
                **base,
                kind=EventKind.RENEWED,
                plan=self._plan_or_none(transaction.get("productId")),
                period_end_at=from_epoch_ms(transaction.get("expiresDate")),
            )
        if notification_type == "DID_FAIL_TO_RENEW":
            return SubscriptionEvent(**base, kind=EventKind.RENEWAL_FAILED)
        if notification_type in EXPIRED_TYPES:
            return SubscriptionEvent(**base, kind=EventKind.EXPIRED)
        if notification_type == "DID_CHANGE_RENEWAL_STATUS" and subtype == "AUTO_RENEW_DISABLED":
            return SubscriptionEvent(**base, kind=EventKind.CANCELED, soft=True)

        return SubscriptionEvent(**base, kind=EventKind.UNHANDLED)

    def verify_jws(self, token: str) -> dict:
        """
        Verify an Apple-signed compact JWS and return its payload.

        The ``x5c`` header must hold the App Store chain (see
        ``_verify_chain``). The ES256 signature is then checked against
        the leaf key.
        """
        parts = (token or "").split(".")
        if len(parts) != 3:
            raise VerificationError("MALFORMED_PAYLOAD", "Signed payload is not a compact JWS")

        try:
            header = _b64url_json(parts[0])
        except (ValueError, UnicodeDecodeError) as exc:
            raise VerificationError("MALFORMED_PAYLOAD", "Invalid JWS header") from exc

        if header.get("alg") != "ES256":
            raise VerificationError("SIGNATURE_MISMATCH", "Unexpected JWS algorithm")

        chain = self._load_chain(header.get("x5c"))
        self._verify_chain(chain)

        leaf_key = chain[0].public_key().public_bytes(
            Encoding.PEM, PublicFormat.SubjectPublicKeyInfo
        )
        try:
            payload = jws.verify(token, leaf_key, algorithms=["ES256"])
        except JOSEError as exc:
            logger.warning("Apple JWS signature verification failed: %s", exc)
            raise VerificationError("SIGNATURE_MISMATCH", "Invalid JWS signature") from exc

        try:
            decoded = json.loads(payload)
        except ValueError as exc:
            raise VerificationError("MALFORMED_PAYLOAD", "JWS payload is not JSON") from exc
        if not isinstance(decoded, dict):
            raise VerificationError("MALFORMED_PAYLOAD", "JWS payload is not an object")
        return decoded

    @staticmethod
    def _load_chain(x5c: Any) -> list[x509.Certificate]:
        if not isinstance(x5c, list) or not x5c:
            raise VerificationError("CERTIFICATE_CHAIN", "Missing x5c certificate chain")
        try:
            return [
                x509.load_der_x509_certificate(base64.b64decode(cert))
                for cert in x5c
            ]
        except ValueError as exc:
            raise VerificationError("CERTIFICATE_CHAIN", "Invalid x5c certificate") from exc

    def _verify_chain(self, chain: list[x509.Certificate]) -> None:
        """
        App Store chains are exactly leaf, intermediate, root. The root must
        be the configured one, the intermediate must be a CA allowed to
        issue the leaf, and both lower certificates carry Apple's marker
        extensions.
        """
        if len(chain) != 3:
            raise VerificationError("CERTIFICATE_CHAIN", "Expected leaf, intermediate and root")
        leaf, intermediate, root = chain
        if root != self.root_certificate:
            raise VerificationError("CERTIFICATE_CHAIN", "Chain is not rooted in the Apple root")

        # (certificate, number of CA certificates below it in the chain)
        for cert, ca_below in ((intermediate, 0), (root, 1)):
            if not _allows_issuing(cert, ca_below):
                raise VerificationError(
                    "CERTIFICATE_CHAIN",
                    "Certificate is not allowed to issue certificates",
                )
        if not _has_extension(intermediate, APPLE_INTERMEDIATE_MARKER_OID):
            raise VerificationError("CERTIFICATE_CHAIN", "Intermediate lacks the Apple WWDR marker")
        if not _has_extension(leaf, APPLE_LEAF_MARKER_OID):
            raise VerificationError("CERTIFICATE_CHAIN", "Leaf lacks the App Store receipt marker")

        try:
            leaf.verify_directly_issued_by(intermediate)
            intermediate.verify_directly_issued_by(root)
        except (ValueError, TypeError, InvalidSignature) as exc:
            logger.warning("Apple certificate chain rejected: %s", exc)
            raise VerificationError("CERTIFICATE_CHAIN", "Untrusted certificate chain") from exc

        now = utc_now()
        for cert in chain:
            if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
                raise VerificationError("CERTIFICATE_CHAIN", "Certificate outside validity period")

    # -------------------------------------------------------------------------
    # Product mapping
    # -------------------------------------------------------------------------

    def _plan_for(self, product_id: Optional[str]) -> Plan:
        plan = self._plan_or_none(product_id)
        if plan is None:
            raise VerificationError("UNKNOWN_PRODUCT", f"Unknown App Store product: {product_id}")
        return plan

    def _plan_or_none(self, product_id: Optional[str]) -> Optional[Plan]:
        plan = self.product_plans.get(product_id or "")
        return Plan(plan) if plan else None
