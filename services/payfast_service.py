"""
PayFast Service - signed checkout intents and ITN verification
"""

import hashlib
import hmac
import logging
import re
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional
from urllib.parse import parse_qsl, quote

import httpx

from config.settings import settings

logger = logging.getLogger(__name__)

PROCESS_URLS = {
    True: "https://sandbox.payfast.co.za/eng/process",
    False: "https://www.payfast.co.za/eng/process",
}
VALIDATE_URLS = {
    True: "https://sandbox.payfast.co.za/eng/query/validate",
    False: "https://www.payfast.co.za/eng/query/validate",
}

# Known ITN keys; everything else is passed through untouched
FIELD_SIGNATURE = "signature"
FIELD_PAYMENT_STATUS = "payment_status"
FIELD_ACCOUNT_ID = "custom_str1"
FIELD_PAYMENT_REFERENCE = "m_payment_id"
FIELD_PROVIDER_PAYMENT_ID = "pf_payment_id"
FIELD_AMOUNT_GROSS = "amount_gross"

STATUS_COMPLETE = "COMPLETE"
CONFIRMATION_VALID = "VALID"

# encodeURIComponent leaves these unescaped
_URI_COMPONENT_SAFE = "-_.!~*'()"
_PERCENT_TRIPLET = re.compile(r"%[0-9a-f]{2}")


def encode_value(value: str) -> str:
    """URI-component encode a value with uppercase percent escapes."""
    encoded = quote(str(value), safe=_URI_COMPONENT_SAFE)
    return _PERCENT_TRIPLET.sub(lambda m: m.group(0).upper(), encoded)


def build_param_string(fields: Mapping[str, Optional[str]], passphrase: Optional[str] = None) -> str:
    """
    Build the string PayFast signs.

    Keys are sorted, the signature field and empty/None values are left out,
    values are URI-component encoded, and a non-blank passphrase is appended
    last.

    Args:
        fields: Field names mapped to values
        passphrase: Shared merchant passphrase (optional)

    Returns:
        The parameter string, e.g. "amount=10.00&item_name=Premium%20Plan"
    """
    pairs = []
    for key in sorted(fields):
        if key == FIELD_SIGNATURE:
            continue
        value = fields[key]
        if value is None or value == "":
            continue
        pairs.append(f"{key}={encode_value(value).strip()}")

    param_string = "&".join(pairs)
    if passphrase and passphrase.strip():
        param_string += f"&passphrase={encode_value(passphrase.strip())}"
    return param_string


def generate_signature(fields: Mapping[str, Optional[str]], passphrase: Optional[str] = None) -> str:
    """Lowercase hex MD5 of the parameter string."""
    return hashlib.md5(build_param_string(fields, passphrase).encode("utf-8")).hexdigest()


def generate_payment_reference(prefix: str = "mineai") -> str:
    """Unique reference per checkout attempt."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def parse_notification(raw_body: str) -> Dict[str, str]:
    """
    Decode a form-encoded ITN body into an ordered str -> str mapping.
    Blank values are kept; a repeated key keeps its last value.
    """
    return dict(parse_qsl(raw_body, keep_blank_values=True))


@dataclass(frozen=True)
class PlanConfig:
    """Premium subscription offered at checkout."""
    amount: str
    item_name: str
    item_description: str
    subscription_type: str = "1"
    frequency: str = "3"
    cycles: str = "0"
    recurring_amount: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "PlanConfig":
        return cls(
            amount=settings.premium_amount,
            item_name=settings.premium_item_name,
            item_description=settings.premium_item_description,
            subscription_type=settings.premium_subscription_type,
            frequency=settings.premium_frequency,
            cycles=settings.premium_cycles,
        )


class NotificationOutcome(str, Enum):
    ACCEPT_AND_UPGRADE = "accept_and_upgrade"
    IGNORE = "ignore"
    REJECT = "reject"


@dataclass(frozen=True)
class NotificationVerdict:
    """
    Terminal state of one ITN delivery.

    token/status_code are what the notify endpoint answers with.
    """
    outcome: NotificationOutcome
    token: str
    status_code: int
    account_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def reject(cls, token: str, reason: str) -> "NotificationVerdict":
        return cls(NotificationOutcome.REJECT, token, 400, reason=reason)


class PayFastService:
    """
    Service class for PayFast checkout and ITN handling.
    Never touches account rows; upgrades are handed to the EntitlementUpdater.
    """

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        merchant_key: Optional[str] = None,
        passphrase: Optional[str] = None,
        sandbox: Optional[bool] = None,
        site_url: Optional[str] = None,
        validate_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the PayFast service. Unset arguments fall back to settings.

        Args:
            transport: Optional httpx transport for the validation round-trip
        """
        self.merchant_id = merchant_id if merchant_id is not None else settings.payfast_merchant_id
        self.merchant_key = merchant_key if merchant_key is not None else settings.payfast_merchant_key
        self.passphrase = passphrase if passphrase is not None else settings.payfast_passphrase
        self.sandbox = settings.payfast_sandbox if sandbox is None else sandbox
        self.site_url = (site_url or settings.site_url).rstrip("/")
        self.validate_timeout = validate_timeout or settings.payfast_validate_timeout
        self.transport = transport

    @property
    def process_url(self) -> str:
        return PROCESS_URLS[bool(self.sandbox)]

    @property
    def validate_url(self) -> str:
        return VALIDATE_URLS[bool(self.sandbox)]

    def build_checkout(self, account_id: str, plan: Optional[PlanConfig] = None) -> dict:
        """
        Build the signed form the browser auto-submits to PayFast.

        Args:
            account_id: Account the subscription is for (sent as custom_str1)
            plan: Plan to charge (defaults to the configured premium plan)

        Returns:
            Normalized response: {"data": {"action_url", "fields"}, "is_error": False}
            or {"error": str, "error_type": "configuration", "is_error": True}
        """
        if not self.merchant_id or not self.merchant_key:
            message = "PAYFAST_MERCHANT_ID / PAYFAST_MERCHANT_KEY are not set. Cannot create checkout."
            logger.error(message)
            return {"error": message, "error_type": "configuration", "is_error": True}

        plan = plan or PlanConfig.from_settings()

        fields = {
            "merchant_id": self.merchant_id,
            "merchant_key": self.merchant_key,
            "return_url": f"{self.site_url}/billing/success",
            "cancel_url": f"{self.site_url}/billing/cancel",
            "notify_url": f"{self.site_url}/billing/notify",
            FIELD_PAYMENT_REFERENCE: generate_payment_reference(settings.payment_reference_prefix),
            "amount": plan.amount,
            "item_name": plan.item_name,
            "item_description": plan.item_description,
            "subscription_type": plan.subscription_type,
            "recurring_amount": plan.recurring_amount or plan.amount,
            "frequency": plan.frequency,
            "cycles": plan.cycles,
            FIELD_ACCOUNT_ID: account_id,
        }
        fields[FIELD_SIGNATURE] = generate_signature(fields, self.passphrase)

        logger.info(
            f"Checkout created for account {account_id} "
            f"(reference {fields[FIELD_PAYMENT_REFERENCE]}, sandbox={self.sandbox})"
        )
        return {
            "data": {"action_url": self.process_url, "fields": fields},
            "is_error": False,
        }

    def signature_matches(self, payload: Mapping[str, str]) -> bool:
        """Recompute the ITN signature and compare it case-sensitively."""
        received = (payload.get(FIELD_SIGNATURE) or "").strip()
        if not received:
            return False
        expected = generate_signature(payload, self.passphrase)
        return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))

    async def confirm_with_provider(self, raw_body: str) -> bool:
        """
        Post the untouched ITN body back to PayFast's validate endpoint.

        Only a 2xx answer whose trimmed body is exactly "VALID" counts.
        Network errors and timeouts count as not confirmed.
        """
        try:
            async with httpx.AsyncClient(timeout=self.validate_timeout, transport=self.transport) as client:
                response = await client.post(
                    self.validate_url,
                    content=raw_body.encode("utf-8"),
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            logger.warning(f"PayFast validation request failed: {e}")
            return False

        if not response.is_success:
            logger.warning(f"PayFast validation returned HTTP {response.status_code}")
            return False

        answer = response.text.strip()
        if answer != CONFIRMATION_VALID:
            logger.warning(f"PayFast validation answered {answer[:40]!r}")
            return False
        return True

    async def verify_notification(self, raw_body: str) -> NotificationVerdict:
        """
        Classify one ITN delivery.

        Order: signature, provider confirmation, payment status, subject account.

        Args:
            raw_body: The form-encoded request body exactly as received

        Returns:
            NotificationVerdict (ACCEPT_AND_UPGRADE, IGNORE or REJECT)
        """
        payload = parse_notification(raw_body)
        reference = payload.get(FIELD_PAYMENT_REFERENCE) or payload.get(FIELD_PROVIDER_PAYMENT_ID) or "?"

        if not self.signature_matches(payload):
            logger.warning(f"ITN {reference}: signature mismatch")
            return NotificationVerdict.reject("INVALID_SIGNATURE", "Signature mismatch")

        if not await self.confirm_with_provider(raw_body):
            logger.warning(f"ITN {reference}: provider did not confirm notification")
            return NotificationVerdict.reject("INVALID", "Provider confirmation failed")

        status = (payload.get(FIELD_PAYMENT_STATUS) or "").strip().upper()
        if status != STATUS_COMPLETE:
            logger.info(f"ITN {reference}: ignoring payment_status={status or 'EMPTY'}")
            return NotificationVerdict(
                NotificationOutcome.IGNORE, "IGNORED", 200,
                reason=f"payment_status={status or 'EMPTY'}"
            )

        account_id = (payload.get(FIELD_ACCOUNT_ID) or "").strip()
        if not account_id:
            logger.warning(f"ITN {reference}: complete payment without {FIELD_ACCOUNT_ID}")
            return NotificationVerdict.reject("MISSING_USER", f"Missing {FIELD_ACCOUNT_ID}")

        logger.info(f"ITN {reference}: verified complete payment for account {account_id}")
        return NotificationVerdict(
            NotificationOutcome.ACCEPT_AND_UPGRADE, "OK", 200, account_id=account_id
        )
