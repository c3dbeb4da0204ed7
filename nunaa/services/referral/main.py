"""Referral service API + consumer lifecycle."""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field

from nunaa.common.db import SessionLocal
from nunaa.common.service_app import bootstrap_service, create_service_app, require_account_id
from nunaa.services.referral.service import ReferralService

bootstrap_service(["REFERRAL_REWARD_CREDITS"])
service = ReferralService(SessionLocal)


class RegisterReferralRequest(BaseModel):
    """Sent once by the signup flow when the new user entered a code."""

    referral_code: str = Field(min_length=1, max_length=32)


def get_referrals() -> ReferralService:
    return service


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the access-granted consumer with application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()
    with suppress(asyncio.CancelledError):
        await consumer_task


app = create_service_app("Nunaa Referral Service", lifespan=lifespan)


@app.get("/referral/code")
def referral_code(account_id: str = Depends(require_account_id), referrals: ReferralService = Depends(get_referrals)):
    return {"referral_code": referrals.get_or_create_code(account_id)}


@app.post("/referral/register")
def register_referral(
    req: RegisterReferralRequest,
    account_id: str = Depends(require_account_id),
    referrals: ReferralService = Depends(get_referrals),
):
    referral, created = referrals.register(req.referral_code, account_id)
    return {
        "referral_id": referral.referral_id,
        "referrer_id": referral.referrer_id,
        "status": referral.status,
        "created": created,
    }


@app.get("/referral/referrals")
def list_referrals(account_id: str = Depends(require_account_id), referrals: ReferralService = Depends(get_referrals)):
    return referrals.list_referrals(account_id)


@app.get("/referral/stats")
def referral_stats(account_id: str = Depends(require_account_id), referrals: ReferralService = Depends(get_referrals)):
    return referrals.stats(account_id)
