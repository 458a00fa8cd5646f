# covercart/services/shiprocket_service.py
"""
Shiprocket integration: authentication, shipment creation, courier assignment,
pickup, tracking, cancellation, labels and manifests.

- Token cache owned by the client instance; refresh is single-flight
  (concurrent callers share one /auth/login request) and expires after a
  conservative TTL (provider tokens live 10 days, we keep them 9).
- 401 on an API call: one re-authentication and a single retry, never more.
- Idempotent GETs retry with exponential backoff on network errors and 5xx;
  POSTs are sent once.
- Error mapping:
    network / timeout / 5xx -> CarrierUnavailable (retryable)
    401                     -> AuthExpired
    other 4xx               -> CarrierRejected (provider message verbatim)

Dependencies: covercart.core.config.settings, covercart.core.logging.get_logger
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from covercart.core.config import settings
from covercart.core.exceptions import AuthExpired, CarrierRejected, CarrierUnavailable
from covercart.core.logging import get_logger

logger = get_logger(__name__)

SKU_MAX_LENGTH = 50
SKU_KEEP_TAIL = 40
DEFAULT_HSN = 392690


# ---------------------- small utils ---------------------- #

def truncate_sku(sku: Any) -> str:
    """Carrier SKUs are limited to 50 chars; longer ones keep their last 40."""
    s = str(sku if sku is not None else "").strip()
    if len(s) > SKU_MAX_LENGTH:
        logger.info("shiprocket_sku_truncated", original_length=len(s))
        return s[-SKU_KEEP_TAIL:]
    return s


def split_name(full_name: Optional[str]) -> tuple[str, str]:
    parts = (full_name or "Customer").strip().split(" ", 1)
    first = parts[0] or "Customer"
    last = parts[1].strip() if len(parts) > 1 else ""
    return first, last


def _as_provider_id(value: Any) -> Any:
    s = str(value)
    return int(s) if s.isdigit() else s


def _as_str(v: Any) -> Optional[str]:
    return None if v is None or v == "" else str(v)


def _as_float(v: Any) -> Optional[float]:
    try:
        return None if v is None or v == "" else float(v)
    except (TypeError, ValueError):
        return None


def _eta_days(data: Mapping[str, Any]) -> Optional[float]:
    days = _as_float(data.get("estimated_delivery_days"))
    if days is not None:
        return days
    hours = _as_float(data.get("etd_hours"))
    return None if hours is None else round(hours / 24, 1)


def _provider_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        msg = data.get("message") or data.get("error")
        if msg:
            return str(msg)
    return str(data)


def _provider_errors(resp: httpx.Response) -> Optional[Any]:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data.get("errors") if isinstance(data, dict) else None


# ---------------------- resilient HTTP client ---------------------- #

class _RetryingAsyncClient:
    """
    httpx.AsyncClient wrapper with exponential retries on network errors and 5xx.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        retries: int = 2,
        backoff_base: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._retries = max(0, retries)
        self._base = backoff_base

    async def __aenter__(self) -> "_RetryingAsyncClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        last_exc: Optional[Exception] = None
        for attempt in range(self._retries + 1):
            try:
                resp = await self._client.request(method, url, **kwargs)
                # retry on 5xx
                if 500 <= resp.status_code < 600:
                    raise httpx.HTTPStatusError("Server error", request=resp.request, response=resp)
                return resp
            except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as e:
                last_exc = e
                if attempt >= self._retries:
                    break
                await asyncio.sleep(self._base * (2 ** attempt))
        assert last_exc is not None
        raise last_exc

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------- token cache ---------------------- #

class _TokenCache:
    """
    Single-flight bearer token cache.

    get() returns the cached token while it is fresh; otherwise exactly one
    caller runs `fetch` under the lock and the others reuse its result.
    `stale` names a token the caller saw rejected: it is never handed back,
    but a newer token obtained by someone else is.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def peek(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    async def get(self, fetch: Callable[[], Awaitable[str]], *, stale: Optional[str] = None) -> str:
        token = self.peek()
        if token and token != stale:
            return token
        async with self._lock:
            token = self.peek()
            if token and token != stale:
                return token
            token = await fetch()
            self._token = token
            self._expires_at = self._clock() + self._ttl
            return token


# ---------------------- DTOs ---------------------- #

@dataclass
class CarrierOrderItem:
    name: str
    sku: str
    units: int
    selling_price: float
    discount: float = 0
    tax: float = 0
    hsn: int = DEFAULT_HSN


@dataclass
class CarrierAddress:
    name: str
    phone: str
    address1: str
    city: str
    state: str
    postal_code: str
    address2: str = ""
    country: str = "India"
    email: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, default_country: str = "India") -> "CarrierAddress":
        return cls(
            name=str(data.get("name") or "Customer"),
            phone=str(data.get("phone") or "0000000000"),
            address1=str(data.get("address1") or data.get("street") or ""),
            address2=str(data.get("address2") or ""),
            city=str(data.get("city") or ""),
            state=str(data.get("state") or ""),
            postal_code=str(
                data.get("postal_code") or data.get("postalCode") or data.get("zipCode") or data.get("zip_code") or ""
            ),
            country=str(data.get("country") or default_country),
            email=_as_str(data.get("email")),
        )


@dataclass
class ShipmentRequest:
    order_id: str
    order_date: date
    address: CarrierAddress
    items: List[CarrierOrderItem]
    payment_method: str = "Prepaid"
    sub_total: float = 0.0
    email: Optional[str] = None
    pickup_location: Optional[str] = None
    length: Optional[float] = None
    breadth: Optional[float] = None
    height: Optional[float] = None
    weight: Optional[float] = None

    @property
    def total_units(self) -> int:
        return sum(int(i.units) for i in self.items) or 1


@dataclass
class CreatedShipment:
    shipment_id: str
    carrier_order_id: Optional[str]
    status: Optional[str]
    status_code: Optional[int]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CourierOption:
    courier_id: str
    name: Optional[str]
    freight_charge: Optional[float]
    eta_days: Optional[float]
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_provider(cls, data: Mapping[str, Any]) -> "CourierOption":
        return cls(
            courier_id=str(data.get("courier_company_id") or data.get("courier_id") or data.get("id")),
            name=_as_str(data.get("courier_name") or data.get("name")),
            freight_charge=_as_float(data.get("freight_charge")),
            eta_days=_eta_days(data),
            raw=dict(data),
        )


@dataclass
class AwbAssignment:
    awb_code: str
    courier_id: Optional[str]
    courier_name: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PickupResult:
    pickup_status: Optional[str]
    scheduled_at: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackingSnapshot:
    status: Optional[str]
    events: List[Dict[str, Any]]
    etd: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


def normalize_tracking_events(activities: Any) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for a in activities or []:
        if not isinstance(a, Mapping):
            continue
        out.append(
            {
                "status": _as_str(a.get("status") or a.get("sr-status-label") or a.get("activity")),
                "date": _as_str(a.get("date")),
                "location": _as_str(a.get("location")),
                "activity": _as_str(a.get("activity") or a.get("status")) or "",
            }
        )
    return out


# ---------------------- main service ---------------------- #

class ShiprocketService:
    """
    Async client for the Shiprocket external API.

    One instance is shared by the application; it owns the token cache.
    """

    def __init__(
        self,
        email: Optional[str] = None,
        password: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        token_ttl: Optional[float] = None,
        timeout: Optional[float] = None,
        get_retries: Optional[int] = None,
        backoff: Optional[float] = None,
        pickup_location: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        cfg = settings.shiprocket_settings
        self.email = email if email is not None else (cfg["email"] or "")
        self.password = password if password is not None else (cfg["password"] or "")
        self.base_url = (base_url or cfg["api_url"]).rstrip("/")
        self.timeout = timeout or cfg["timeout"]
        self.get_retries = cfg["get_retries"] if get_retries is None else get_retries
        self.backoff = cfg["backoff"] if backoff is None else backoff
        self.pickup_location = pickup_location or settings.SHIPROCKET_PICKUP_LOCATION
        self._transport = transport
        self._tokens = _TokenCache(token_ttl or cfg["token_ttl"], clock=clock)
        self.login_count = 0

        if not (self.email and self.password):
            logger.warning("shiprocket_credentials_missing")

    # ---------------------- helpers ---------------------- #

    def _client(self, method: str) -> _RetryingAsyncClient:
        retries = self.get_retries if method.upper() == "GET" else 0
        return _RetryingAsyncClient(
            timeout=self.timeout, retries=retries, backoff_base=self.backoff, transport=self._transport
        )

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    async def _send(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with self._client(method) as client:
                resp = await client.request(method, self._url(path), headers=headers, json=json, params=params)
        except httpx.TimeoutException as e:
            logger.error("shiprocket_timeout", method=method, path=path)
            raise CarrierUnavailable("Shipping carrier timed out", "CARRIER_TIMEOUT") from e
        except httpx.HTTPStatusError as e:
            logger.error("shiprocket_server_error", method=method, path=path, status=e.response.status_code)
            raise CarrierUnavailable(
                f"Shipping carrier error (HTTP {e.response.status_code})", "CARRIER_SERVER_ERROR"
            ) from e
        except httpx.TransportError as e:
            logger.error("shiprocket_network_error", method=method, path=path, error=str(e))
            raise CarrierUnavailable("Shipping carrier unreachable", "CARRIER_UNREACHABLE") from e

        if resp.status_code == 401:
            raise AuthExpired("Shipping carrier rejected the access token", "CARRIER_AUTH_EXPIRED")
        if resp.status_code >= 400:
            message = _provider_message(resp)
            logger.warning("shiprocket_rejected", method=method, path=path, status=resp.status_code, message=message)
            extra: Dict[str, Any] = {"status": resp.status_code}
            errors = _provider_errors(resp)
            if errors:
                extra["errors"] = errors
            raise CarrierRejected(message, "CARRIER_REJECTED", extra=extra)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {"data": data}

    async def _login(self) -> str:
        if not (self.email and self.password):
            raise CarrierRejected("Shiprocket credentials are not configured", "CARRIER_NOT_CONFIGURED")
        self.login_count += 1
        try:
            data = await self._send("POST", "/auth/login", json={"email": self.email, "password": self.password})
        except AuthExpired as e:
            raise CarrierRejected("Shiprocket login failed: invalid credentials", "CARRIER_LOGIN_FAILED") from e
        token = data.get("token")
        if not token:
            raise CarrierRejected("Invalid authentication response from Shiprocket", "CARRIER_LOGIN_FAILED")
        logger.info("shiprocket_authenticated")
        return str(token)

    async def authenticate(self, *, stale_token: Optional[str] = None) -> str:
        """Cached token; concurrent refreshes coalesce onto one login."""
        return await self._tokens.get(self._login, stale=stale_token)

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = await self.authenticate()
        try:
            return await self._send(method, path, token=token, json=json, params=params)
        except AuthExpired:
            logger.warning("shiprocket_token_rejected_reauthenticating", path=path)
            token = await self.authenticate(stale_token=token)
            # second AuthExpired propagates
            return await self._send(method, path, token=token, json=json, params=params)

    # ---------------------- payload ---------------------- #

    def build_adhoc_payload(self, req: ShipmentRequest) -> Dict[str, Any]:
        pkg = settings.default_package
        units = req.total_units
        first, last = split_name(req.address.name)
        email = req.email or req.address.email or settings.CUSTOMER_FALLBACK_EMAIL
        order_date = req.order_date.date() if isinstance(req.order_date, datetime) else req.order_date

        return {
            "order_id": req.order_id,
            "order_date": order_date.isoformat(),
            "pickup_location": req.pickup_location or self.pickup_location,
            "billing_customer_name": first,
            "billing_last_name": last,
            "billing_address": req.address.address1,
            "billing_address_2": req.address.address2,
            "billing_city": req.address.city,
            "billing_pincode": req.address.postal_code,
            "billing_state": req.address.state,
            "billing_country": req.address.country,
            "billing_email": email,
            "billing_phone": req.address.phone,
            "shipping_is_billing": True,
            "order_items": [
                {
                    "name": item.name,
                    "sku": truncate_sku(item.sku),
                    "units": int(item.units),
                    "selling_price": float(item.selling_price),
                    "discount": item.discount,
                    "tax": item.tax,
                    "hsn": item.hsn,
                }
                for item in req.items
            ],
            "payment_method": req.payment_method,
            "shipping_charges": 0,
            "giftwrap_charges": 0,
            "transaction_charges": 0,
            "total_discount": 0,
            "sub_total": float(req.sub_total),
            "length": req.length or pkg["length"],
            "breadth": req.breadth or pkg["breadth"],
            "height": req.height or max(pkg["height"], math.ceil(units * 0.5)),
            "weight": req.weight or max(0.1, round(pkg["weight"] * units, 3)),
        }

    # ---------------------- Orders / shipments ---------------------- #

    async def create_shipment(self, req: ShipmentRequest) -> CreatedShipment:
        payload = self.build_adhoc_payload(req)
        data = await self._call("POST", "/orders/create/adhoc", json=payload)
        shipment_id = data.get("shipment_id")
        if not shipment_id:
            raise CarrierRejected(
                str(data.get("message") or "Shipping carrier returned no shipment id"), "CARRIER_NO_SHIPMENT"
            )
        logger.info(
            "shiprocket_shipment_created",
            order_id=req.order_id,
            shipment_id=shipment_id,
            carrier_order_id=data.get("order_id"),
        )
        status_code = data.get("status_code")
        return CreatedShipment(
            shipment_id=str(shipment_id),
            carrier_order_id=_as_str(data.get("order_id")),
            status=_as_str(data.get("status")),
            status_code=int(status_code) if isinstance(status_code, (int, str)) and str(status_code).isdigit() else None,
            raw=data,
        )

    async def get_recommended_couriers(self, shipment_id: str) -> List[CourierOption]:
        data = await self._call("GET", "/courier/serviceability/", params={"shipment_id": shipment_id})
        companies = (data.get("data") or {}).get("available_courier_companies") or []
        logger.info("shiprocket_couriers_fetched", shipment_id=shipment_id, count=len(companies))
        return [CourierOption.from_provider(c) for c in companies if isinstance(c, Mapping)]

    async def check_serviceability(
        self,
        pickup_postcode: str,
        delivery_postcode: str,
        *,
        cod: bool = False,
        weight: float = 0.5,
    ) -> List[CourierOption]:
        params = {
            "pickup_postcode": pickup_postcode,
            "delivery_postcode": delivery_postcode,
            "cod": 1 if cod else 0,
            "weight": weight,
        }
        data = await self._call("GET", "/courier/serviceability/", params=params)
        companies = (data.get("data") or {}).get("available_courier_companies") or []
        return [CourierOption.from_provider(c) for c in companies if isinstance(c, Mapping)]

    async def assign_courier(self, shipment_id: str, courier_id: str) -> AwbAssignment:
        data = await self._call(
            "POST",
            "/courier/assign/awb",
            json={"shipment_id": _as_provider_id(shipment_id), "courier_id": _as_provider_id(courier_id)},
        )
        inner = ((data.get("response") or {}).get("data") or {}) if isinstance(data.get("response"), dict) else {}
        awb = data.get("awb_code") or inner.get("awb_code")
        if not awb:
            raise CarrierRejected(
                str(data.get("message") or inner.get("awb_assign_error") or "Courier assignment returned no waybill"),
                "CARRIER_NO_AWB",
            )
        courier_name = data.get("courier_name") or inner.get("courier_name")
        logger.info("shiprocket_awb_assigned", shipment_id=shipment_id, courier_id=courier_id, awb_code=awb)
        return AwbAssignment(
            awb_code=str(awb),
            courier_id=_as_str(inner.get("courier_company_id") or courier_id),
            courier_name=_as_str(courier_name),
            raw=data,
        )

    async def request_pickup(self, shipment_id: str) -> PickupResult:
        data = await self._call(
            "POST", "/courier/generate/pickup", json={"shipment_id": [_as_provider_id(shipment_id)]}
        )
        response = data.get("response") if isinstance(data.get("response"), dict) else {}
        logger.info("shiprocket_pickup_requested", shipment_id=shipment_id, pickup_status=data.get("pickup_status"))
        return PickupResult(
            pickup_status=_as_str(data.get("pickup_status")),
            scheduled_at=_as_str(response.get("pickup_scheduled_date")),
            raw=data,
        )

    async def track_shipment(self, awb_code: str) -> TrackingSnapshot:
        data = await self._call("GET", f"/courier/track/awb/{awb_code}")
        tracking = data.get("tracking_data")
        if tracking is None and len(data) == 1:
            # some accounts key the payload by AWB
            only = next(iter(data.values()))
            tracking = only.get("tracking_data") if isinstance(only, dict) else None
        tracking = tracking or {}

        status: Optional[str] = None
        tracks = tracking.get("shipment_track") or []
        if tracks and isinstance(tracks[0], Mapping):
            status = _as_str(tracks[0].get("current_status"))
        if status is None:
            status = _as_str(tracking.get("shipment_status"))
        return TrackingSnapshot(
            status=status,
            events=normalize_tracking_events(tracking.get("shipment_track_activities")),
            etd=_as_str(tracking.get("etd")),
            raw=data,
        )

    async def cancel_shipment(self, awb_codes: List[str]) -> Dict[str, Any]:
        data = await self._call("POST", "/orders/cancel", json={"awbs": list(awb_codes)})
        logger.info("shiprocket_shipment_cancelled", awb_codes=awb_codes, message=data.get("message"))
        return data

    async def generate_label(self, shipment_ids: List[str]) -> Optional[str]:
        data = await self._call(
            "POST", "/courier/generate/label", json={"shipment_id": [_as_provider_id(s) for s in shipment_ids]}
        )
        logger.info("shiprocket_label_generated", shipment_ids=shipment_ids)
        return _as_str(data.get("label_url"))

    async def generate_manifest(self, shipment_ids: List[str]) -> Optional[str]:
        data = await self._call(
            "POST", "/manifests/generate", json={"shipment_id": [_as_provider_id(s) for s in shipment_ids]}
        )
        logger.info("shiprocket_manifest_generated", shipment_ids=shipment_ids)
        return _as_str(data.get("manifest_url"))

    async def get_pickup_locations(self) -> List[Dict[str, Any]]:
        data = await self._call("GET", "/settings/company/pickup")
        return list((data.get("data") or {}).get("shipping_address") or [])


__all__ = [
    "ShiprocketService",
    "ShipmentRequest",
    "CarrierAddress",
    "CarrierOrderItem",
    "CreatedShipment",
    "CourierOption",
    "AwbAssignment",
    "PickupResult",
    "TrackingSnapshot",
    "truncate_sku",
    "split_name",
    "normalize_tracking_events",
]
