import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import quote, urljoin

import requests

from ..errors import PaymentVerificationError

logger = logging.getLogger(__name__)


def compute_signature(secret: str, payload: bytes) -> str:
    """Return the hex HMAC-SHA-512 of ``payload`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    """Check a webhook signature over the exact raw request body.

    Fails closed: a missing secret or signature is never accepted.
    """
    if not secret or not signature:
        return False
    expected = compute_signature(secret, payload)
    return hmac.compare_digest(
        expected.encode("ascii"), signature.strip().lower().encode("utf-8", "replace")
    )


@dataclass(frozen=True)
class PaymentVerification:
    """Successful charge as reported by the gateway.

    Attributes
    ----------
    reference : str
        Gateway transaction reference.
    amount_minor : int
        Charged amount in minor units (pesewas, kobo, cents).
    currency : str
        ISO currency code of the charge.
    metadata : dict
        Metadata attached when the payment was initialized.
    """

    reference: str
    amount_minor: int
    currency: str
    metadata: dict[str, Any] = field(default_factory=dict)


class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        if not secret_key:
            raise ValueError("A Paystack secret key is required")
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    # -------- headers --------
    @property
    def auth_headers(self) -> Mapping[str, str]:
        return {"Accept": "application/json", "Authorization": f"Bearer {self.secret_key}"}

    # -------- core request --------
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> dict:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        try:
            r = self.session.request(
                method=method.upper(),
                url=url,
                headers=self.auth_headers,
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            logger.warning("Paystack request timed out after %ss: %s %s", self.timeout, method, path)
            raise PaymentVerificationError("Payment provider timed out") from e
        except requests.RequestException as e:
            logger.warning("Paystack request failed: %s", e)
            raise PaymentVerificationError(f"Payment provider unreachable: {e}") from e

        try:
            body = r.json() if r.content else {}
        except ValueError as e:
            raise PaymentVerificationError(
                f"Payment provider returned an unreadable response (HTTP {r.status_code})"
            ) from e
        if not isinstance(body, dict):
            raise PaymentVerificationError("Payment provider returned an unexpected response")

        if r.status_code >= 400:
            message = body.get("message") or f"HTTP {r.status_code}"
            raise PaymentVerificationError(f"Payment provider error: {message}")
        return body

    # -------- API callers --------
    def verify_transaction(self, reference: str) -> PaymentVerification:
        """Confirm that ``reference`` is a successful charge.

        Raises
        ------
        PaymentVerificationError
            If the gateway reports a failure, an unsuccessful charge, times
            out or cannot be reached. The provider message is kept when
            available.
        """
        if not reference or not reference.strip():
            raise PaymentVerificationError("Payment reference is required")

        body = self._request("GET", f"/transaction/verify/{quote(reference.strip(), safe='')}")
        data = body.get("data") or {}
        if body.get("status") is not True or not isinstance(data, dict):
            raise PaymentVerificationError(
                "Payment not successful: " + str(body.get("message") or "Unknown error")
            )
        if data.get("status") != "success":
            raise PaymentVerificationError(
                "Payment not successful: "
                + str(data.get("gateway_response") or data.get("status") or "Unknown error")
            )

        try:
            amount_minor = int(data.get("amount") or 0)
        except (TypeError, ValueError) as e:
            raise PaymentVerificationError("Payment provider returned an invalid amount") from e

        metadata = data.get("metadata")
        return PaymentVerification(
            reference=str(data.get("reference") or reference),
            amount_minor=amount_minor,
            currency=str(data.get("currency") or "").upper(),
            metadata=metadata if isinstance(metadata, dict) else {},
        )
