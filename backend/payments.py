import hashlib
import hmac
import json
import time
from typing import Dict, Optional
from uuid import uuid4

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import ExternalServiceError, ValidationError

STRIPE_API_BASE = "https://api.stripe.com"
SIGNATURE_TOLERANCE_SECONDS = 300
CONFIGURATION_HINT = (
    "Payment provider is not configured. Please check the payment configuration."
)


class StripeClient:
    """Thin client for the payment-intent endpoints we use.

    Every call carries an explicit timeout. Connection failures and 429/5xx
    answers are retried with exponential backoff; POSTs send an
    ``Idempotency-Key`` so a retried create never makes a second intent.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        api_base: str = STRIPE_API_BASE,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        logger=None,
    ):
        self.secret_key = (secret_key or "").strip()
        self.webhook_secret = (webhook_secret or "").strip()
        self.api_base = (api_base or STRIPE_API_BASE).rstrip("/")
        self.timeout = timeout
        self.logger = logger
        retry = Retry(
            total=max_retries,
            connect=max_retries,
            read=max_retries,
            status=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET", "POST"}),
            raise_on_status=False,
        )
        self.session = requests.Session()
        self.session.mount("https://", HTTPAdapter(max_retries=retry))
        self.session.mount("http://", HTTPAdapter(max_retries=retry))

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _request(self, method: str, path: str, data: Optional[Dict] = None) -> Dict:
        if not self.configured:
            raise ExternalServiceError(CONFIGURATION_HINT)

        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if method == "POST":
            headers["Idempotency-Key"] = uuid4().hex

        try:
            response = self.session.request(
                method,
                f"{self.api_base}{path}",
                data=data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self._log("error", "Payment provider unreachable: %s", exc)
            raise ExternalServiceError(
                "Payment provider is temporarily unavailable. Please try again.",
                retryable=True,
            ) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 500 or response.status_code == 429:
            self._log("error", "Payment provider error %s: %s", response.status_code, payload)
            raise ExternalServiceError(
                "Payment provider is temporarily unavailable. Please try again.",
                retryable=True,
            )
        if response.status_code in (401, 403):
            self._log("error", "Payment provider rejected credentials: %s", payload)
            raise ExternalServiceError(CONFIGURATION_HINT)
        if response.status_code >= 400:
            self._log("warning", "Payment provider declined request: %s", payload)
            raise ExternalServiceError("The payment provider declined the request.")

        return payload

    def _log(self, level: str, message: str, *args) -> None:
        if self.logger is not None:
            getattr(self.logger, level)(message, *args)

    def create_payment_intent(
        self, amount: float, currency: str, metadata: Optional[Dict[str, str]] = None
    ) -> Dict:
        form = {
            "amount": str(int(round(float(amount) * 100))),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
            "metadata[integration_check]": "accept_a_payment",
        }
        for key, value in (metadata or {}).items():
            if value is not None:
                form[f"metadata[{key}]"] = str(value)
        return self._request("POST", "/v1/payment_intents", data=form)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict:
        return self._request("GET", f"/v1/payment_intents/{payment_intent_id}")

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict:
        if not self.webhook_secret:
            raise ExternalServiceError(CONFIGURATION_HINT)
        verify_signature(payload, signature_header, self.webhook_secret)
        try:
            event = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise ValidationError("Webhook payload is not valid JSON.")
        if not isinstance(event, dict):
            raise ValidationError("Webhook payload must be a JSON object.")
        return event


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
    if not signature_header:
        raise ValidationError("Webhook Error: missing signature header.")

    timestamp = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise ValidationError("Webhook Error: unable to parse signature header.")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise ValidationError("Webhook Error: signature verification failed.")

    current_time = time.time() if now is None else now
    if tolerance and current_time - timestamp > tolerance:
        raise ValidationError("Webhook Error: timestamp outside the tolerance zone.")
