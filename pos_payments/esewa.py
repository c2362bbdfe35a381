import os
import hmac
import json
import base64
import hashlib
import logging
import binascii
from decimal import Decimal, InvalidOperation
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

logger = logging.getLogger(__name__)

# Merchant test secret published in the eSewa developer docs.
TEST_SECRET = "8gBm/:&EnhH.1/q"
TEST_PRODUCT_CODE = "EPAYTEST"
SANDBOX_URL = "https://rc-epay.esewa.com.np/api/epay/main/v2/form"

# Wire contract: the gateway rebuilds the message in exactly this order.
SIGNED_FIELDS = ("total_amount", "transaction_uuid", "product_code")


def format_amount(amount) -> str:
    """Render an amount the way it is sent in the form: ``450``, ``450.5``."""
    value = Decimal(str(amount).replace(",", "")).normalize()
    return f"{value:f}"


def parse_amount(value):
    try:
        return Decimal(str(value).replace(",", ""))
    except (InvalidOperation, ValueError):
        return None


def _field_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_message(fields, values: dict) -> str:
    return ",".join(f"{name}={_field_value(values.get(name))}" for name in fields)


class EsewaGateway:
    """Signs checkout forms for eSewa ePay v2 and verifies its callbacks."""

    def __init__(self, secret: str, product_code: str = TEST_PRODUCT_CODE, gateway_url: str = SANDBOX_URL):
        if not secret:
            raise ValueError("eSewa secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.product_code = product_code
        self.gateway_url = gateway_url

    @classmethod
    def from_env(cls):
        secret = os.getenv("ESEWA_SECRET")
        if not secret:
            if os.getenv("APP_ENV", "development").lower() == "production":
                raise RuntimeError("ESEWA_SECRET is not set. Refusing to use the test secret in production.")
            logger.warning("ESEWA_SECRET not set, falling back to the eSewa test secret")
            secret = TEST_SECRET
        return cls(
            secret,
            product_code=os.getenv("ESEWA_PRODUCT_CODE") or TEST_PRODUCT_CODE,
            gateway_url=os.getenv("ESEWA_GATEWAY_URL") or SANDBOX_URL,
        )

    def sign(self, message: str) -> str:
        digest = hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def generate(self, amount, transaction_uuid: str) -> dict:
        """Signature and form fields for a checkout of ``amount`` under ``transaction_uuid``."""
        message = build_message(SIGNED_FIELDS, {
            "total_amount": format_amount(amount),
            "transaction_uuid": transaction_uuid,
            "product_code": self.product_code,
        })
        return {
            "signature": self.sign(message),
            "product_code": self.product_code,
            "signed_field_names": ",".join(SIGNED_FIELDS),
            "gatewayUrl": self.gateway_url,
        }

    def verify(self, encoded_data):
        """
        Decode a callback's ``data`` parameter and check its signature.

        The message is rebuilt from the payload's own ``signed_field_names``,
        which must still cover every field of the request contract. Returns
        the decoded payload, or None for anything malformed or unsigned.
        Nothing is raised and nothing is persisted.
        """
        try:
            raw = base64.b64decode(encoded_data, validate=True)
            payload = json.loads(raw.decode("utf-8"))
        except (binascii.Error, ValueError, TypeError):
            logger.info("eSewa callback could not be decoded")
            return None

        if not isinstance(payload, dict):
            return None
        claimed = payload.get("signed_field_names")
        signature = payload.get("signature")
        if not isinstance(claimed, str) or not isinstance(signature, str):
            return None

        fields = claimed.split(",")
        if len(set(fields)) != len(fields) or not set(SIGNED_FIELDS).issubset(fields):
            logger.warning("eSewa callback signs an unexpected field list: %s", claimed)
            return None

        expected = self.sign(build_message(fields, payload))
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            logger.warning("eSewa callback signature mismatch for %s", payload.get("transaction_uuid"))
            return None

        return payload
