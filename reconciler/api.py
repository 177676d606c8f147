from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from common.logger import Logger
from reconciler.errors import InvalidInput
from reconciler.mpesa import NAIROBI, parse_c2b_confirmation
from reconciler.phones import DEFAULT_COUNTRY_CODE, normalize_phone
from reconciler.service import ReconciliationService
from reconciler.types import PaymentEvent


class PaymentIn(BaseModel):
    external_reference: str
    amount_minor: int
    payer_phone: str
    occurred_at: datetime
    account_reference: Optional[str] = None
    payer_name: Optional[str] = None


def c2b_reply(code: int, desc: str, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"ResultCode": code, "ResultDesc": desc}, status_code=status_code)


def create_app(
    service: ReconciliationService,
    *,
    mpesa_tz: ZoneInfo = NAIROBI,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
    lifespan=None,
) -> FastAPI:
    app = FastAPI(title="M-Pesa reconciler", lifespan=lifespan)

    @app.post("/mpesa/{tenant_id}/confirmation")
    async def mpesa_confirmation(tenant_id: str, request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError:
            Logger.warning("C2B confirmation for %s: body is not JSON", tenant_id)
            return c2b_reply(1, "Rejected: body is not JSON", status_code=400)

        try:
            event = parse_c2b_confirmation(
                payload,
                tenant_id=tenant_id,
                tz=mpesa_tz,
                default_country_code=default_country_code,
            )
            outcome = await service.process(event)
        except InvalidInput as e:
            Logger.warning("C2B confirmation for %s rejected: %s", tenant_id, e)
            return c2b_reply(1, f"Rejected: {e}", status_code=400)
        except Exception:
            Logger.exception("C2B confirmation for %s failed", tenant_id)
            return c2b_reply(1, "Internal error", status_code=500)

        Logger.debug("C2B %s -> %s", event.external_reference, outcome.status.value)
        return c2b_reply(0, "Accepted")

    @app.post("/tenants/{tenant_id}/payments")
    async def submit_payment(tenant_id: str, body: PaymentIn) -> JSONResponse:
        try:
            event = PaymentEvent(
                tenant_id=tenant_id,
                external_reference=body.external_reference.strip(),
                amount_minor=body.amount_minor,
                payer_phone=normalize_phone(body.payer_phone, default_country_code),
                occurred_at=body.occurred_at,
                account_reference=body.account_reference,
                payer_name=body.payer_name,
                source="api",
            )
            outcome = await service.process(event)
        except InvalidInput as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except Exception as e:
            Logger.exception("Payment %s for %s failed", body.external_reference, tenant_id)
            return JSONResponse({"error": f"internal error: {e}"}, status_code=500)

        return JSONResponse(outcome.as_dict())

    @app.get("/payments/{external_reference}/outcomes")
    async def payment_outcomes(external_reference: str) -> JSONResponse:
        try:
            history = await service.history(external_reference)
        except Exception as e:
            Logger.exception("Audit trail for %s failed", external_reference)
            return JSONResponse({"error": f"internal error: {e}"}, status_code=500)

        if not history:
            return JSONResponse({"error": f"no outcomes for {external_reference}"}, status_code=404)
        return JSONResponse({"outcomes": [o.as_dict() for o in history]})

    return app
