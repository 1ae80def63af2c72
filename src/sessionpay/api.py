"""
HTTP request surface for the billing engine.

Thin FastAPI layer: request validation, a call into the engine, and a
mapping of engine errors to status codes. Never returns delegate
credentials.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .engine import BillingEngine
from .errors import (
    GrantError,
    LedgerError,
    NotFoundError,
    StoreUnavailableError,
)
from .executor import ChargeFailure

logger = logging.getLogger(__name__)


_CHARGE_STATUS = {
    ChargeFailure.NOT_FOUND.value: 404,
    ChargeFailure.NOT_DUE.value: 409,
    ChargeFailure.ALREADY_IN_PROGRESS.value: 409,
    ChargeFailure.TRANSIENT.value: 502,
    ChargeFailure.PERMANENT.value: 502,
    ChargeFailure.VERIFICATION_MISMATCH.value: 502,
    ChargeFailure.PENDING_CONFIRMATION.value: 502,
    ChargeFailure.STORE_UNAVAILABLE.value: 503,
}


class CreateGrantReq(BaseModel):
    owner_account: str
    source_account: str
    periods: int = Field(gt=0)
    period_amount: int = Field(gt=0)


class SubscriptionReq(BaseModel):
    subscription_id: str


class RevokeGrantReq(BaseModel):
    subscription_id: str
    reason: Optional[str] = None


def create_app(engine: Optional[BillingEngine] = None) -> FastAPI:
    engine = engine or BillingEngine.from_settings()
    app = FastAPI(title="SessionPay")
    app.state.engine = engine

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "ledger": engine.settings.ledger_backend}

    @app.post("/create-grant", status_code=201)
    def create_grant(req: CreateGrantReq):
        try:
            receipt = engine.issuer.issue(
                owner_account=req.owner_account,
                source_account=req.source_account,
                period_amount=req.period_amount,
                periods=req.periods,
            )
        except GrantError as e:
            raise HTTPException(400, str(e)) from e
        except StoreUnavailableError as e:
            raise HTTPException(503, str(e)) from e
        return receipt.to_dict()

    @app.post("/activate-grant")
    def activate_grant(req: SubscriptionReq):
        try:
            sub = engine.issuer.activate(req.subscription_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e)) from e
        except GrantError as e:
            raise HTTPException(409, str(e)) from e
        except LedgerError as e:
            raise HTTPException(502, str(e)) from e
        except StoreUnavailableError as e:
            raise HTTPException(503, str(e)) from e
        return {
            "subscription_id": sub.id,
            "status": sub.status,
            "next_charge_at": sub.next_charge_at,
        }

    @app.post("/revoke-grant")
    def revoke_grant(req: RevokeGrantReq):
        try:
            sub = engine.issuer.revoke(req.subscription_id, reason=req.reason or "revoked by owner")
        except NotFoundError as e:
            raise HTTPException(404, str(e)) from e
        except GrantError as e:
            raise HTTPException(409, str(e)) from e
        except StoreUnavailableError as e:
            raise HTTPException(503, str(e)) from e
        return {"subscription_id": sub.id, "status": sub.status}

    @app.post("/charge")
    def charge(req: SubscriptionReq):
        result = engine.executor.charge(req.subscription_id)
        if result.ok:
            return {
                "ok": True,
                "amount_charged": result.amount_charged,
                "periods_remaining": result.periods_remaining,
                "next_charge_at": result.next_charge_at,
                "tx_ref": result.tx_ref,
            }
        return JSONResponse(
            status_code=_CHARGE_STATUS.get(result.error, 502),
            content={"ok": False, "error": result.error, "reason": result.reason, "tx_ref": result.tx_ref},
        )

    @app.get("/subscription/{subscription_id}")
    def get_subscription(subscription_id: str):
        try:
            sub = engine.store.get(subscription_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e)) from e
        except StoreUnavailableError as e:
            raise HTTPException(503, str(e)) from e
        return sub.to_public_dict()

    return app
