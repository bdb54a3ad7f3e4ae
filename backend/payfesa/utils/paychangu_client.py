from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import time
from dataclasses import dataclass

import requests
from flask import current_app

# Paychangu bank UUIDs for disbursements (mobile money operators are disbursed as banks)
BANK_UUIDS = {
    "tnm": "5e9946ae-76ed-43f5-ad59-63e09096006a",
    "tnm mpamba": "5e9946ae-76ed-43f5-ad59-63e09096006a",
    "mpamba": "5e9946ae-76ed-43f5-ad59-63e09096006a",
    "airtel": "e8d5fca0-e5ac-4714-a518-484be9011326",
    "airtel money": "e8d5fca0-e5ac-4714-a518-484be9011326",
    "national bank of malawi": "82310dd1-ec9b-4fe7-a32c-2f262ef08681",
    "ecobank malawi limited": "87e62436-0553-4fb5-a76d-f27d28420c5b",
    "fdh bank limited": "b064172a-8a1b-4f7f-aad7-81b036c46c57",
    "standard bank limited": "e7447c2c-c147-4907-b194-e087fe8d8585",
    "centenary bank": "236760c9-3045-4a01-990e-497b28d115bb",
    "first capital limited": "968ac588-3b1f-4d89-81ff-a3d43a599003",
    "cdh investment bank": "c759d7b6-ae5c-4a95-814a-79171271897a",
    "nbs bank limited": "86007bf5-1b04-49ba-84c1-9758bbf5c996",
}

_COMPLETED = {"success", "successful", "completed"}
_FAILED = {"failed", "failure", "declined", "cancelled", "canceled", "reversed"}


@dataclass
class PayoutRequest:
    method: str  # mobile_money | bank_transfer
    amount: int
    charge_id: str
    currency: str = "MWK"
    phone_number: str = ""
    provider: str = ""
    account_number: str = ""
    account_name: str = ""
    bank_name: str = ""
    type: str = "payout"


@dataclass
class DispatchResult:
    success: bool
    charge_id: str
    status: str = "failed"
    ref_id: str = ""
    trace_id: str = ""
    error: str = ""


def generate_charge_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


def normalize_phone_number(phone: str) -> str:
    """Malawi numbers: strip country code, keep the last 9 digits."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("265"):
        digits = digits[3:]
    return digits[-9:]


def map_status(external_status: str | None) -> str:
    """Gateway vocabulary -> completed / failed / processing. Unknown values stay processing."""
    s = (external_status or "").strip().lower()
    if s in _COMPLETED:
        return "completed"
    if s in _FAILED:
        return "failed"
    return "processing"


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str) -> bool:
    if not secret or not signature_header:
        return False
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature_header.strip().lower())


class PaychanguClient:
    """Outbound disbursement API. Never raises for gateway-side problems."""

    def __init__(self, secret_key: str, base_url: str = "https://api.paychangu.com", timeout: int = 20, session=None):
        self.secret_key = (secret_key or "").strip()
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    @classmethod
    def from_app(cls, app=None) -> "PaychanguClient":
        cfg = (app or current_app).config
        return cls(
            secret_key=cfg.get("PAYCHANGU_SECRET_KEY", ""),
            base_url=cfg.get("PAYCHANGU_BASE_URL", "https://api.paychangu.com"),
            timeout=int(cfg.get("GATEWAY_TIMEOUT_SECONDS") or 20),
        )

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def build_payload(self, req: PayoutRequest) -> dict:
        bank_uuid = BANK_UUIDS.get((req.provider or "").strip().lower()) or BANK_UUIDS.get((req.bank_name or "").strip().lower())
        if not bank_uuid:
            raise ValueError(f"Unsupported bank/provider: {req.provider or req.bank_name}")
        if req.method == "mobile_money":
            account_number = normalize_phone_number(req.phone_number)
            if not re.fullmatch(r"\d{9}", account_number):
                raise ValueError("Invalid mobile number for payout")
        else:
            account_number = (req.account_number or "").strip()
        return {
            "amount": str(int(req.amount)),
            "currency": req.currency or "MWK",
            "charge_id": req.charge_id,
            "bank_uuid": bank_uuid,
            "account_number": account_number,
            "account_name": req.account_name or "PayFesa User",
        }

    def dispatch_payout(self, req: PayoutRequest) -> DispatchResult:
        if not self.secret_key:
            return DispatchResult(success=False, charge_id=req.charge_id, error="PAYCHANGU_SECRET_KEY not set")
        try:
            payload = self.build_payload(req)
        except ValueError as e:
            return DispatchResult(success=False, charge_id=req.charge_id, error=str(e))

        url = f"{self.base_url}/direct-charge/payouts/initialize"
        try:
            r = self.http.post(url, headers=self._headers(), json=payload, timeout=self.timeout)
            j = r.json() if r.content else {}
        except requests.Timeout:
            return DispatchResult(success=False, charge_id=req.charge_id, error="gateway timeout")
        except (requests.RequestException, ValueError) as e:
            return DispatchResult(success=False, charge_id=req.charge_id, error=str(e))

        if not (200 <= r.status_code < 300) or (j.get("status") or "") != "success":
            return DispatchResult(success=False, charge_id=req.charge_id, error=j.get("message") or f"HTTP {r.status_code}")

        txn = ((j.get("data") or {}).get("transaction") or {})
        return DispatchResult(
            success=True,
            charge_id=req.charge_id,
            status=(txn.get("status") or "pending"),
            ref_id=txn.get("ref_id") or "",
            trace_id=txn.get("trace_id") or "",
        )

    def verify(self, charge_id: str) -> str | None:
        """Internal status for a charge, or None when the gateway could not be asked."""
        if not self.secret_key:
            return None
        url = f"{self.base_url}/verify-payment/{charge_id}"
        try:
            r = self.http.get(url, headers=self._headers(), timeout=self.timeout)
            j = r.json() if r.content else {}
        except (requests.RequestException, ValueError):
            return None
        if not (200 <= r.status_code < 300):
            return None
        data = j.get("data") or {}
        return map_status(data.get("status") or j.get("status"))
