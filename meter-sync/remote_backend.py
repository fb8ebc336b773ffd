"""
Device-side client for the meter backend service.

RemoteBackend is the interface the sync coordinator and the batch pipeline
depend on; HttpBackend implements it against backend_api.py over HTTP.

Transmission failures are split in two:
  BackendUnavailable: network unreachable, timeout, 5xx (retry later)
  BackendRejected:    any other non-2xx answer (carries status + detail)
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import requests

import engine_config as cfg
from models import Customer, Discount, Reading

logger = logging.getLogger("meter-sync.remote")


class TransmissionError(Exception):
    """A request to the backend did not complete successfully."""


class BackendUnavailable(TransmissionError):
    pass


class BackendRejected(TransmissionError):
    def __init__(self, status_code: int, detail: str):
        super().__init__(f"Backend rejected request ({status_code}): {detail}")
        self.status_code = status_code
        self.detail = detail


class RemoteBackend:
    """Operations the engine needs from the remote store."""

    def ping(self) -> bool:
        raise NotImplementedError

    def fetch_customers(self) -> List[Customer]:
        raise NotImplementedError

    def fetch_readings(self, since: Optional[date] = None,
                       customer_ids: Optional[List[str]] = None) -> List[Reading]:
        raise NotImplementedError

    def fetch_discounts(self) -> List[Discount]:
        raise NotImplementedError

    def push_reading(self, reading: Reading) -> str:
        """Insert (or replay) a reading; returns the remote id."""
        raise NotImplementedError

    def push_discount(self, discount: Discount) -> str:
        """Insert or update a discount keyed on its local id; returns the remote id."""
        raise NotImplementedError


def _reading_from_row(row: Dict[str, Any]) -> Reading:
    remote_id = str(row["id"])
    created = row.get("created_at")
    return Reading(
        id=f"remote-{remote_id}",
        customer_id=str(row["customer_id"]),
        value=float(row["value"]),
        date=date.fromisoformat(str(row["date"])[:10]),
        created_at=datetime.fromisoformat(created) if created else None,
        synced=True,
        remote_id=remote_id,
        customer_name=row.get("customer_name") or "",
        customer_group=row.get("customer_group") or "",
    )


def _discount_from_row(row: Dict[str, Any]) -> Discount:
    remote_id = str(row["id"])
    created = row.get("created_at")
    return Discount(
        id=f"remote-{remote_id}",
        customer_id=str(row["customer_id"]),
        percentage=float(row.get("percentage") or 0),
        amount=float(row.get("amount") or 0),
        reason=row.get("reason") or "",
        month=row["month"],
        is_active=bool(row.get("is_active", True)),
        created_by=row.get("created_by") or "",
        created_at=datetime.fromisoformat(created) if created else None,
        synced=True,
        remote_id=remote_id,
    )


class HttpBackend(RemoteBackend):
    """requests-based client for the backend service."""

    def __init__(
        self,
        base_url: str = cfg.BACKEND_URL,
        device_key: str = cfg.DEVICE_KEY,
        timeout: float = cfg.BACKEND_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"X-Device-Key": device_key})

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise BackendUnavailable(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 500:
            raise BackendUnavailable(
                f"{method} {path} returned {resp.status_code}: {resp.text[:200]}"
            )
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail", resp.text[:200])
            except ValueError:
                detail = resp.text[:200]
            raise BackendRejected(resp.status_code, str(detail))
        try:
            return resp.json()
        except ValueError as e:
            raise BackendUnavailable(f"{method} {path} returned invalid JSON: {e}") from e

    def ping(self) -> bool:
        try:
            self._request("GET", "/health")
            return True
        except TransmissionError as e:
            logger.debug("Backend ping failed: %s", e)
            return False

    def fetch_customers(self) -> List[Customer]:
        data = self._request("GET", "/api/customers")
        return [
            Customer(
                id=str(row["id"]),
                name=row.get("name") or "",
                group=row.get("group") or "",
                phone=row.get("phone") or "",
            )
            for row in data.get("customers", [])
        ]

    def fetch_readings(self, since: Optional[date] = None,
                       customer_ids: Optional[List[str]] = None) -> List[Reading]:
        params: Dict[str, Any] = {}
        if since is not None:
            params["since"] = since.isoformat()
        if customer_ids:
            params["customer_id"] = list(customer_ids)
        data = self._request("GET", "/api/readings", params=params)
        return [_reading_from_row(row) for row in data.get("readings", [])]

    def fetch_discounts(self) -> List[Discount]:
        data = self._request("GET", "/api/discounts")
        return [_discount_from_row(row) for row in data.get("discounts", [])]

    def push_reading(self, reading: Reading) -> str:
        ack = self._request("POST", "/api/readings", json={
            "client_ref": reading.id,
            "customer_id": reading.customer_id,
            "value": reading.value,
            "date": reading.date.isoformat(),
        })
        if ack.get("replayed"):
            logger.info("Reading %s already on backend as %s", reading.id, ack["id"])
        return str(ack["id"])

    def push_discount(self, discount: Discount) -> str:
        ack = self._request("POST", "/api/discounts", json={
            "client_ref": discount.id,
            "customer_id": discount.customer_id,
            "percentage": discount.percentage,
            "amount": discount.amount,
            "reason": discount.reason,
            "month": discount.month,
            "is_active": discount.is_active,
            "created_by": discount.created_by or "admin",
            "created_at": discount.created_at.isoformat() if discount.created_at else None,
        })
        return str(ack["id"])
