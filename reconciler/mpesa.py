from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import re
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo

from reconciler.errors import InvalidInput
from reconciler.phones import DEFAULT_COUNTRY_CODE, normalize_phone
from reconciler.types import PaymentEvent

NAIROBI = ZoneInfo("Africa/Nairobi")

_re_trans_time = re.compile(r"^\d{14}$")


def _field(payload: Mapping[str, Any], name: str) -> str:
    value = payload.get(name)
    if value is None or str(value).strip() == "":
        raise InvalidInput(f"C2B payload is missing {name}")
    return str(value).strip()


def _optional(payload: Mapping[str, Any], name: str) -> Optional[str]:
    value = payload.get(name)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def amount_to_minor(raw: str) -> int:
    try:
        amount = Decimal(raw.replace(",", "").replace(" ", ""))
    except InvalidOperation as exc:
        raise InvalidInput(f"bad amount {raw!r}") from exc
    if not amount.is_finite():
        raise InvalidInput(f"bad amount {raw!r}")
    return int((amount * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_trans_time(raw: str, tz: ZoneInfo = NAIROBI) -> datetime:
    """
    Daraja шлёт TransTime как YYYYMMDDHHMMSS в местном времени (EAT).
    """
    if _re_trans_time.match(raw):
        try:
            local = datetime.strptime(raw, "%Y%m%d%H%M%S")
        except ValueError as exc:
            raise InvalidInput(f"bad TransTime {raw!r}") from exc
        return local.replace(tzinfo=tz).astimezone(timezone.utc)

    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidInput(f"bad TransTime {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


def _payer_name(payload: Mapping[str, Any]) -> Optional[str]:
    parts = [_optional(payload, k) for k in ("FirstName", "MiddleName", "LastName")]
    name = " ".join(p for p in parts if p)
    return name or None


def parse_c2b_confirmation(
    payload: Mapping[str, Any],
    *,
    tenant_id: str,
    tz: ZoneInfo = NAIROBI,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
) -> PaymentEvent:
    """
    Build a PaymentEvent from a Daraja C2B confirmation body:

        {"TransactionType": "Pay Bill", "TransID": "RKTQDM7W6S",
         "TransTime": "20241116102115", "TransAmount": "1500.00",
         "BusinessShortCode": "600638", "BillRefNumber": "KDA 123A",
         "MSISDN": "254708374149", "FirstName": "John"}
    """
    if not isinstance(payload, Mapping):
        raise InvalidInput("C2B payload must be a JSON object")

    return PaymentEvent(
        tenant_id=tenant_id,
        external_reference=_field(payload, "TransID"),
        amount_minor=amount_to_minor(_field(payload, "TransAmount")),
        payer_phone=normalize_phone(_field(payload, "MSISDN"), default_country_code),
        occurred_at=parse_trans_time(_field(payload, "TransTime"), tz),
        account_reference=_optional(payload, "BillRefNumber"),
        payer_name=_payer_name(payload),
        source="mpesa",
        transaction_type=_optional(payload, "TransactionType"),
        business_short_code=_optional(payload, "BusinessShortCode"),
        raw_data=dict(payload),
    )
