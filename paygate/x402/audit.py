# paygate/x402/audit.py
"""
Audit logging for x402 transactions.

This module logs every payment event for:
- Dispute resolution
- Financial reconciliation
- Debugging failures

Log format: JSON lines (one event per line)
Log location: configured via X402_AUDIT_LOG_PATH

Events logged:
- 402 returned (resource, price, network, payTo)
- Payment received (payer, amount, method)
- Payment verified (valid, invalid reason)
- Payment settled / failed (transaction hash, stage, reason)
- Origin forwarded / origin error (status, url)
- Error (type, context)

Writing an event never raises: an audit failure is logged and the
request continues.
"""
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    ORIGIN_FORWARDED = "origin_forwarded"
    ORIGIN_ERROR = "origin_error"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data,
    }


class AuditLog:
    """Append-only JSON lines audit log."""

    def __init__(self, path: str):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def log(
        self,
        event_type: AuditEventType,
        data: Dict[str, Any],
        client_ip: Optional[str] = None,
        wallet_address: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Optional[str]:
        """
        Write one event.

        Returns:
            The request_id used for this event, or None on error
        """
        event = create_audit_event(event_type, data, client_ip, wallet_address, request_id)
        try:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "a") as f:
                    f.write(json.dumps(event) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit event: {e}")
            return None

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    # Convenience methods for specific event types

    def payment_required_sent(self, client_ip: str, resource_id: str, amount: str,
                              network: str, pay_to: str, request_id: Optional[str] = None):
        return self.log(
            AuditEventType.PAYMENT_REQUIRED_SENT,
            {"resource_id": resource_id, "amount": amount, "network": network, "pay_to": pay_to},
            client_ip=client_ip,
            request_id=request_id,
        )

    def payment_received(self, client_ip: str, payer: Optional[str], payment_id: str,
                         method: str, amount: Optional[int] = None, request_id: Optional[str] = None):
        return self.log(
            AuditEventType.PAYMENT_RECEIVED,
            {"payment_id": payment_id, "method": method, "amount": amount},
            client_ip=client_ip,
            wallet_address=payer,
            request_id=request_id,
        )

    def payment_verified(self, client_ip: str, payer: Optional[str], is_valid: bool,
                         invalid_reason: Optional[str] = None, request_id: Optional[str] = None):
        return self.log(
            AuditEventType.PAYMENT_VERIFIED,
            {"is_valid": is_valid, "invalid_reason": invalid_reason},
            client_ip=client_ip,
            wallet_address=payer,
            request_id=request_id,
        )

    def payment_settled(self, payer: str, payment_id: str, transaction_hash: Optional[str],
                        network: Optional[str], request_id: Optional[str] = None):
        return self.log(
            AuditEventType.PAYMENT_SETTLED,
            {"payment_id": payment_id, "transaction_hash": transaction_hash, "network": network},
            wallet_address=payer,
            request_id=request_id,
        )

    def payment_failed(self, reason: str, stage: str, payment_id: Optional[str] = None,
                       client_ip: Optional[str] = None, wallet_address: Optional[str] = None,
                       request_id: Optional[str] = None):
        return self.log(
            AuditEventType.PAYMENT_FAILED,
            {"reason": reason, "stage": stage, "payment_id": payment_id},
            client_ip=client_ip,
            wallet_address=wallet_address,
            request_id=request_id,
        )

    def origin_forwarded(self, client_ip: str, payment_id: Optional[str], origin_url: str,
                         status_code: int, request_id: Optional[str] = None):
        return self.log(
            AuditEventType.ORIGIN_FORWARDED,
            {"payment_id": payment_id, "origin_url": origin_url, "status_code": status_code},
            client_ip=client_ip,
            request_id=request_id,
        )

    def origin_error(self, client_ip: str, payment_id: Optional[str], origin_url: str,
                     detail: str, request_id: Optional[str] = None):
        return self.log(
            AuditEventType.ORIGIN_ERROR,
            {"payment_id": payment_id, "origin_url": origin_url, "detail": detail},
            client_ip=client_ip,
            request_id=request_id,
        )

    def error(self, error_type: str, error_message: str, context: Optional[Dict[str, Any]] = None,
              client_ip: Optional[str] = None, request_id: Optional[str] = None):
        return self.log(
            AuditEventType.ERROR,
            {"error_type": error_type, "error_message": error_message, "context": context or {}},
            client_ip=client_ip,
            request_id=request_id,
        )

    def _events(self):
        if not self._path.exists():
            return
        with open(self._path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    continue

    def read(
        self,
        max_entries: int = 100,
        event_type: Optional[AuditEventType] = None,
        client_ip: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read entries from the audit log.

        Returns:
            List of audit events (most recent first)
        """
        events = []
        for event in self._events():
            if event_type and event.get("event_type") != event_type.value:
                continue
            if client_ip and event.get("client_ip") != client_ip:
                continue
            events.append(event)
        return list(reversed(events))[:max_entries]

    def stats(self) -> Dict[str, Any]:
        """Event counts by type and the time range covered by the log."""
        if not self._path.exists():
            return {
                "total_events": 0,
                "events_by_type": {},
                "log_path": str(self._path),
                "log_exists": False,
            }

        events_by_type: Dict[str, int] = {}
        total = 0
        first_timestamp = None
        last_timestamp = None
        for event in self._events():
            total += 1
            event_type = event.get("event_type", "unknown")
            events_by_type[event_type] = events_by_type.get(event_type, 0) + 1
            timestamp = event.get("timestamp")
            if timestamp:
                if first_timestamp is None:
                    first_timestamp = timestamp
                last_timestamp = timestamp

        return {
            "total_events": total,
            "events_by_type": events_by_type,
            "first_event": first_timestamp,
            "last_event": last_timestamp,
            "log_path": str(self._path),
            "log_exists": True,
        }
