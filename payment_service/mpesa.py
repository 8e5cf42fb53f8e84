"""
Daraja (Safaricom M-Pesa) client for STK push initiation.
"""
import base64
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import requests

from common.error_handling import CallbackError, ErrorCodes
from common.schemas import StkPushResponse
from common.settings import Settings

logger = logging.getLogger(__name__)

# Daraja validates STK timestamps against Nairobi time
EAT = timezone(timedelta(hours=3), "EAT")
DEFAULT_ACCOUNT_REFERENCE = "Pambo"

class DarajaError(CallbackError):
    """Daraja unreachable or refused the request"""
    status_code = 502

    def __init__(self, message: str):
        super().__init__(ErrorCodes.EXTERNAL_SERVICE_ERROR, message)

@dataclass
class DarajaConfig:
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    base_url: str = "https://sandbox.safaricom.co.ke"
    timeout: float = 30

    @classmethod
    def from_settings(cls, cfg: Settings) -> "DarajaConfig":
        return cls(
            consumer_key=cfg.mpesa_consumer_key,
            consumer_secret=cfg.mpesa_consumer_secret,
            shortcode=cfg.mpesa_shortcode,
            passkey=cfg.mpesa_passkey,
            callback_url=cfg.mpesa_callback_url,
            base_url=cfg.mpesa_base_url,
        )

    @property
    def configured(self) -> bool:
        return all([self.consumer_key, self.consumer_secret, self.shortcode, self.passkey, self.callback_url])

def format_phone_number(phone: str) -> str:
    """07XXXXXXXX, +2547XXXXXXXX, 7XXXXXXXX -> 2547XXXXXXXX"""
    cleaned = re.sub(r"\D", "", phone)
    if cleaned.startswith("0"):
        return "254" + cleaned[1:]
    if not cleaned.startswith("254"):
        return "254" + cleaned
    return cleaned

def generate_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(EAT)
    if now.tzinfo is not None:
        now = now.astimezone(EAT)
    return now.strftime("%Y%m%d%H%M%S")

def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")

class DarajaClient:
    def __init__(self, config: DarajaConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def get_access_token(self) -> str:
        url = f"{self.config.base_url}/oauth/v1/generate?grant_type=client_credentials"
        try:
            response = self.session.get(
                url,
                auth=(self.config.consumer_key, self.config.consumer_secret),
                timeout=self.config.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DarajaError(f"Failed to get Daraja token: {e}")

        if response.status_code != 200:
            raise DarajaError(f"Failed to get Daraja token: HTTP {response.status_code}")
        try:
            token = response.json().get("access_token")
        except ValueError:
            token = None
        if not token:
            raise DarajaError("Daraja token response carried no access_token")
        return token

    def initiate_stk_push(self, phone_number: str, amount: Decimal, tier: str,
                          account_reference: Optional[str] = None) -> StkPushResponse:
        token = self.get_access_token()
        timestamp = generate_timestamp()
        phone = format_phone_number(phone_number)
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": generate_password(self.config.shortcode, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            # M-Pesa only takes whole shillings
            "Amount": math.floor(amount),
            "PartyA": phone,
            "PartyB": self.config.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference or DEFAULT_ACCOUNT_REFERENCE,
            "TransactionDesc": f"{tier} Subscription Payment",
        }

        logger.info(f"Initiating STK push for {phone[:6]}***, amount {payload['Amount']}, tier {tier}")
        try:
            response = self.session.post(
                f"{self.config.base_url}/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.config.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DarajaError(f"STK Push failed: {e}")

        if response.status_code != 200:
            raise DarajaError(f"STK Push failed: HTTP {response.status_code}")

        try:
            result = StkPushResponse.model_validate(response.json())
        except ValueError as e:
            raise DarajaError(f"Unexpected STK Push response: {e}")
        if result.ResponseCode != "0":
            raise DarajaError(f"STK Push rejected: {result.ResponseDescription or result.ResponseCode}")
        return result
