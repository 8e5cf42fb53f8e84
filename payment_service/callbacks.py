"""
Inbound M-Pesa callback pipeline.

gateway -> signature -> replay guard -> decode -> reconcile, with exactly one
CallbackRecord appended per request whatever the outcome. Nothing raised in
here escapes to the HTTP layer; every error resolves to a callback response.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import ValidationError

from common.error_handling import (
    AuthenticationError, CallbackError, ConfigurationError, ErrorCodes, MalformedCallbackError,
)
from common.security import verify_signature
from common.settings import Settings
from common.tracing import Tracer, payments_tracer
from payment_service.models import CallbackRecord
from payment_service.reconciler import PaymentReconciler, idempotency_key
from payment_service.replay import ReplayGuard
from payment_service.store import PaymentStore

logger = logging.getLogger(__name__)

@dataclass
class CallbackConfig:
    secret: Optional[str]
    require_signature: bool = True
    signature_header: str = "X-Mpesa-Signature"
    timestamp_header: str = "X-Mpesa-Timestamp"
    nonce_header: str = "X-Mpesa-Nonce"

    @classmethod
    def from_settings(cls, cfg: Settings) -> "CallbackConfig":
        return cls(
            secret=cfg.callback_secret or None,
            require_signature=cfg.require_signature,
            signature_header=cfg.signature_header,
            timestamp_header=cfg.timestamp_header,
            nonce_header=cfg.nonce_header,
        )

@dataclass
class CallbackOutcome:
    status_code: int
    body: Dict[str, Any]

def _correlation(payload: Any) -> Dict[str, Any]:
    """Best-effort identifiers for the audit row, before the payload is trusted."""
    if not isinstance(payload, dict):
        return {}
    body = payload.get("Body")
    stk = body.get("stkCallback") if isinstance(body, dict) else payload
    if not isinstance(stk, dict):
        return {}
    found = {
        "merchant_request_id": stk.get("MerchantRequestID"),
        "checkout_request_id": stk.get("CheckoutRequestID"),
    }
    found = {k: str(v)[:64] for k, v in found.items() if isinstance(v, (str, int))}
    if isinstance(stk.get("ResultCode"), int):
        found["result_code"] = stk["ResultCode"]
    return found

class CallbackProcessor:
    def __init__(self, store: PaymentStore, replay_guard: ReplayGuard, reconciler: PaymentReconciler,
                 config: CallbackConfig, tracer: Tracer = payments_tracer):
        self.store = store
        self.replay_guard = replay_guard
        self.reconciler = reconciler
        self.config = config
        self.tracer = tracer

    def _new_record(self, endpoint: str, headers: Mapping[str, str], trace_id: Optional[str]) -> CallbackRecord:
        nonce = headers.get(self.config.nonce_header)
        timestamp = headers.get(self.config.timestamp_header)
        return CallbackRecord(
            endpoint=endpoint,
            nonce=(nonce or None) and nonce[:128],
            callback_timestamp=(timestamp or None) and timestamp[:64],
            trace_id=trace_id,
        )

    def reject(self, endpoint: str, raw_body: bytes, headers: Mapping[str, str],
               error: CallbackError, trace_id: Optional[str] = None) -> CallbackOutcome:
        """Audit a callback refused before the pipeline ran (e.g. by the origin guard)."""
        record = self._new_record(endpoint, headers, trace_id)
        record.signature_valid = verify_signature(
            raw_body,
            headers.get(self.config.signature_header),
            headers.get(self.config.timestamp_header),
            self.config.secret,
        )
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            payload = None
        for name, value in _correlation(payload).items():
            setattr(record, name, value)

        outcome = self._failed(record, error, endpoint)
        self._finish(record, payload, raw_body)
        return outcome

    def _failed(self, record: CallbackRecord, exc: CallbackError, endpoint: str) -> CallbackOutcome:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(f"Callback rejected on {endpoint}: {exc.code} - {exc.message}", extra={
            "error_code": exc.code,
            "trace_id": record.trace_id,
            "checkout_request_id": record.checkout_request_id,
        })
        record.processing_status = "failed"
        record.error_code = exc.code
        record.error = exc.message
        return CallbackOutcome(exc.status_code, {
            "ResultCode": 1, "ResultDesc": exc.message, "errorCode": exc.code,
        })

    def _finish(self, record: CallbackRecord, payload: Any, raw_body: bytes) -> None:
        record.raw_payload = payload if payload is not None else {"_unparsed": raw_body.decode("utf-8", "replace")}
        self._audit(record)

    def handle(self, endpoint: str, raw_body: bytes, headers: Mapping[str, str],
               decode: Callable[[Any], Any], trace_id: Optional[str] = None) -> CallbackOutcome:
        nonce = headers.get(self.config.nonce_header)
        timestamp = headers.get(self.config.timestamp_header)
        record = self._new_record(endpoint, headers, trace_id)
        payload: Any = None

        try:
            with self.tracer.start_span("callback.verify_signature", trace_id):
                record.signature_valid = verify_signature(
                    raw_body,
                    headers.get(self.config.signature_header),
                    headers.get(self.config.timestamp_header),
                    self.config.secret,
                )
                self._enforce_signature(record.signature_valid)

            payload = self._parse(raw_body)
            for name, value in _correlation(payload).items():
                setattr(record, name, value)

            with self.tracer.start_span("callback.replay_guard", trace_id):
                self.replay_guard.check(nonce, timestamp)

            try:
                callback = decode(payload)
            except ValidationError as exc:
                raise MalformedCallbackError(f"Malformed callback payload: {exc.error_count()} error(s)")

            record.merchant_request_id = callback.MerchantRequestID
            record.checkout_request_id = callback.CheckoutRequestID
            record.result_code = callback.ResultCode
            record.idempotency_key = idempotency_key(callback)

            with self.tracer.start_span("callback.reconcile", trace_id) as span:
                result = self.reconciler.reconcile(callback)
                span.add_tag("processing_status", result.status)

            record.processing_status = result.status
            outcome = CallbackOutcome(200, {"ResultCode": 0, "ResultDesc": result.result_desc, **result.details})

        except CallbackError as exc:
            outcome = self._failed(record, exc, endpoint)

        except Exception as exc:
            logger.exception(f"Callback processing error on {endpoint}: {exc}", extra={"trace_id": trace_id})
            record.processing_status = "failed"
            record.error_code = ErrorCodes.INTERNAL_SERVER_ERROR
            record.error = str(exc)[:1000]
            outcome = CallbackOutcome(200, {
                "ResultCode": 1, "ResultDesc": "Internal server error",
                "errorCode": ErrorCodes.INTERNAL_SERVER_ERROR,
            })

        self._finish(record, payload, raw_body)
        return outcome

    def _enforce_signature(self, valid: Optional[bool]) -> None:
        """A configured secret is always enforced; require_signature only decides the no-secret case."""
        if valid is None:
            if self.config.require_signature:
                raise ConfigurationError("Callback signature secret is not configured")
            logger.warning("Callback accepted without signature verification (no secret configured)")
        elif not valid:
            raise AuthenticationError()

    @staticmethod
    def _parse(raw_body: bytes) -> Any:
        try:
            return json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise MalformedCallbackError("Callback body is not valid JSON")

    def _audit(self, record: CallbackRecord) -> None:
        try:
            self.store.append_callback_record(record)
        except CallbackError as exc:
            logger.error(f"Audit record lost for {record.checkout_request_id}: {exc.message}", extra={
                "error_code": exc.code,
                "trace_id": record.trace_id,
            })
