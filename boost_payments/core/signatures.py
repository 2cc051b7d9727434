"""
HMAC-SHA256 verification of payment gateway callbacks.

Two canonical forms are supported and they are NOT interchangeable:

- Webhook (structured payload): drop ``x_signature``, sort by key, emit
  ``key + value`` per entry, join with ``|``.
- Redirect (encoded query): split the raw query on ``&``, drop
  ``billplz[x_signature]``, percent-decode, emit ``key + value`` per pair,
  sort the emitted strings themselves, join with ``|``.
"""
import hashlib
import hmac
from typing import Any, List, Mapping, Optional, Tuple
from urllib.parse import unquote_plus

import structlog

from boost_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

WEBHOOK_SIGNATURE_FIELD = "x_signature"
REDIRECT_SIGNATURE_FIELD = "billplz[x_signature]"


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def canonicalize_payload(payload: Mapping[str, Any]) -> str:
    """
    Build the webhook canonical string.

    Args:
        payload: Flat key -> value map as received

    Returns:
        str: ``k1v1|k2v2|...`` ordered by key
    """
    elements = [
        f"{key}{_stringify(payload[key])}"
        for key in sorted(payload)
        if key != WEBHOOK_SIGNATURE_FIELD
    ]
    return "|".join(elements)


def parse_redirect_params(raw_query: str) -> List[Tuple[str, str]]:
    """Split a raw query into decoded (key, value) pairs, preserving order."""
    pairs: List[Tuple[str, str]] = []
    for segment in raw_query.lstrip("?").split("&"):
        if not segment:
            continue
        key, _, value = segment.partition("=")
        pairs.append((unquote_plus(key), unquote_plus(value)))
    return pairs


def extract_redirect_signature(raw_query: str) -> Optional[str]:
    """Return the ``billplz[x_signature]`` value carried in a raw query, if any."""
    for key, value in parse_redirect_params(raw_query):
        if key == REDIRECT_SIGNATURE_FIELD:
            return value
    return None


def canonicalize_query(raw_query: str) -> str:
    """
    Build the redirect canonical string.

    Args:
        raw_query: Query string exactly as received (still percent-encoded)

    Returns:
        str: Sorted ``keyvalue`` elements joined with ``|``
    """
    elements = [
        f"{key}{value}"
        for key, value in parse_redirect_params(raw_query)
        if key != REDIRECT_SIGNATURE_FIELD
    ]
    return "|".join(sorted(elements))


class SignatureVerifier:
    """
    Verifies gateway signatures against the shared X-Signature key.

    ``test_mode`` is an explicit switch. When set, every signature is accepted
    and a warning is logged; it is never derived from other configuration.
    Verification methods return False on any failure and never raise.
    """

    def __init__(self, xsign_key: Optional[str], test_mode: bool = False):
        """
        Initialize verifier.

        Args:
            xsign_key: Shared HMAC secret
            test_mode: Accept all signatures (sandbox only)
        """
        self._key = xsign_key or ""
        self.test_mode = test_mode

    def _digest(self, canonical: str) -> str:
        return hmac.new(
            self._key.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def compute_webhook_signature(self, payload: Mapping[str, Any]) -> str:
        return self._digest(canonicalize_payload(payload))

    def compute_redirect_signature(self, raw_query: str) -> str:
        return self._digest(canonicalize_query(raw_query))

    def verify_webhook(self, payload: Mapping[str, Any], signature: Optional[str]) -> bool:
        """
        Verify a webhook body.

        Args:
            payload: Flat body fields (the signature field is ignored if present)
            signature: Claimed hex digest

        Returns:
            bool: True if the signature matches
        """
        return self._verify("webhook", signature, lambda: self.compute_webhook_signature(payload))

    def verify_redirect(self, raw_query: str, signature: Optional[str] = None) -> bool:
        """
        Verify a redirect query string.

        Args:
            raw_query: Raw, still-encoded query string
            signature: Claimed hex digest (extracted from the query when omitted)

        Returns:
            bool: True if the signature matches
        """
        if signature is None:
            signature = extract_redirect_signature(raw_query)
        return self._verify(
            "redirect", signature, lambda: self.compute_redirect_signature(raw_query)
        )

    def _verify(self, form: str, signature: Optional[str], compute) -> bool:
        if self.test_mode:
            metrics.record_signature_verification(form, "bypassed")
            logger.warning("signature_verification_bypassed", form=form)
            return True

        if not self._key:
            metrics.record_signature_verification(form, "rejected")
            logger.error("signature_key_not_configured", form=form)
            return False

        if not signature:
            metrics.record_signature_verification(form, "rejected")
            logger.warning("signature_missing", form=form)
            return False

        try:
            expected = compute()
            valid = hmac.compare_digest(
                expected.encode("utf-8"), signature.encode("utf-8")
            )
        except (TypeError, ValueError, UnicodeError) as e:
            metrics.record_signature_verification(form, "error")
            logger.error("signature_verification_error", form=form, error=str(e))
            return False

        metrics.record_signature_verification(form, "valid" if valid else "rejected")
        if not valid:
            logger.warning(
                "signature_mismatch",
                form=form,
                signature_prefix=signature[:8],
            )
        return valid

