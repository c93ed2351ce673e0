from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field as PydField

from ..models.coupon import Coupon
from ..models.facility_config import FacilityConfig
from ..models.seed_recruitment import SeedRecruitment
from ..services import RecruitmentController, build_controller
from ..services.coupon_ledger import CouponCheck, PaymentCheck
from ..services.exceptions import (
    CaptureAttemptsExhaustedError,
    GenerationExhaustedError,
    RecruitmentAlreadySentError,
    RecruitmentNotFoundError,
    SubjectNotFoundError,
)
from ..services.recruitment_controller import coupon_rejection_reason

router = APIRouter(tags=["recruitment"])


@lru_cache(maxsize=1)
def get_controller() -> RecruitmentController:
    """
    Process-wide controller: the coupon reservations and the capture budget
    live on it, so every request must share one instance.
    """
    return build_controller()


# -------------------------
# Schemas (tablet UI friendly)
# -------------------------

class CouponValidateRequest(BaseModel):
    code: str = PydField(..., min_length=1)


class CouponOut(BaseModel):
    code: str
    status: str
    issued_to_entity_id: str
    issued_at: datetime
    used_by_entity_id: Optional[str] = None
    used_at: Optional[datetime] = None
    paid: bool = False
    recruitment_payment_at: Optional[datetime] = None


class CouponCheckOut(BaseModel):
    code: str
    outcome: str
    ok: bool
    message: str = ""
    coupon: Optional[CouponOut] = None


class PaymentRequest(BaseModel):
    signature: Optional[str] = None


class PaymentOut(BaseModel):
    code: str
    outcome: str
    ok: bool
    coupon: Optional[CouponOut] = None


class ReferralPaymentOut(BaseModel):
    subject_id: str
    count: int
    coupons: List[CouponOut] = PydField(default_factory=list)


class AdmitRequest(BaseModel):
    coupon_code: Optional[str] = None


class AdmitResponse(BaseModel):
    subject_id: str
    status: str
    admitted: bool
    coupon: Optional[CouponCheckOut] = None


class ScreenResponse(BaseModel):
    subject_id: str
    status: str
    allowed: bool
    attempts_remaining: int
    days_remaining: int = 0
    reason: Optional[str] = None


class CompleteResponse(BaseModel):
    subject_id: str
    coupons: List[CouponOut] = PydField(default_factory=list)


class ConsentRequest(BaseModel):
    consent: bool
    phone: Optional[str] = None
    email: Optional[str] = None


class ConsentResponse(BaseModel):
    subject_id: str
    contact_consent: bool
    has_contact_info: bool
    contactable: bool


class SeedRecruitmentOut(BaseModel):
    id: int
    facility_id: int
    selected_subject_id: str
    selected_at: datetime
    contact_channel: str
    coupon_code: str
    sent: bool
    sent_at: Optional[datetime] = None


class SeedAllowedResponse(BaseModel):
    facility_id: int
    allowed: bool


class SeedMessageResponse(BaseModel):
    recruitment_id: int
    channel: str
    contact_info: str
    message: str


# -------------------------
# Helpers
# -------------------------

def _coupon_out(c: Coupon) -> CouponOut:
    return CouponOut(
        code=c.code,
        status=c.status.value,
        issued_to_entity_id=c.issued_to_entity_id,
        issued_at=c.issued_at,
        used_by_entity_id=c.used_by_entity_id,
        used_at=c.used_at,
        paid=c.is_paid(),
        recruitment_payment_at=c.recruitment_payment_at,
    )


def _check_out(check: CouponCheck) -> CouponCheckOut:
    return CouponCheckOut(
        code=check.code,
        outcome=check.outcome.value,
        ok=check.ok,
        message=coupon_rejection_reason(check),
        coupon=_coupon_out(check.coupon) if check.coupon is not None else None,
    )


def _recruitment_out(r: SeedRecruitment) -> SeedRecruitmentOut:
    # contact_info stays off this payload; only the message endpoint needs it
    return SeedRecruitmentOut(
        id=int(r.id),
        facility_id=r.facility_id,
        selected_subject_id=r.selected_subject_id,
        selected_at=r.selected_at,
        contact_channel=r.contact_channel.value,
        coupon_code=r.coupon_code,
        sent=r.sent,
        sent_at=r.sent_at,
    )


async def _config(controller: RecruitmentController, facility_id: Optional[int]) -> FacilityConfig:
    return await controller.facility_config(facility_id)


# -------------------------
# Coupons
# -------------------------

@router.post("/coupons/validate", response_model=CouponCheckOut)
async def validate_coupon(
    payload: CouponValidateRequest,
    controller: RecruitmentController = Depends(get_controller),
) -> CouponCheckOut:
    check = await controller.validate_coupon(payload.code)
    return _check_out(check)


@router.get("/coupons/issued/{entity_id}", response_model=List[CouponOut])
async def coupons_issued_to(
    entity_id: str,
    controller: RecruitmentController = Depends(get_controller),
) -> List[CouponOut]:
    coupons = await controller.coupons_issued_to(entity_id)
    return [_coupon_out(c) for c in coupons]


@router.post("/coupons/{code}/payment", response_model=PaymentOut)
async def record_coupon_payment(
    code: str,
    payload: PaymentRequest,
    controller: RecruitmentController = Depends(get_controller),
) -> PaymentOut:
    check: PaymentCheck = await controller.record_coupon_payment(code, payload.signature)
    return PaymentOut(
        code=check.code,
        outcome=check.outcome.value,
        ok=check.ok,
        coupon=_coupon_out(check.coupon) if check.coupon is not None else None,
    )


# -------------------------
# Participants
# -------------------------

@router.post("/participants/{subject_id}/admit", response_model=AdmitResponse)
async def admit_participant(
    subject_id: str,
    payload: AdmitRequest,
    facility_id: Optional[int] = Query(default=None),
    controller: RecruitmentController = Depends(get_controller),
) -> AdmitResponse:
    config = await _config(controller, facility_id)
    decision = await controller.admit_participant(subject_id, payload.coupon_code, config)
    return AdmitResponse(
        subject_id=decision.subject_id,
        status=decision.status.value,
        admitted=decision.admitted,
        coupon=_check_out(decision.coupon) if decision.coupon is not None else None,
    )


@router.post("/participants/{subject_id}/screen", response_model=ScreenResponse)
async def screen_participant(
    subject_id: str,
    facility_id: Optional[int] = Query(default=None),
    controller: RecruitmentController = Depends(get_controller),
) -> ScreenResponse:
    config = await _config(controller, facility_id)
    try:
        decision = await controller.screen_participant(subject_id, config)
    except CaptureAttemptsExhaustedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ScreenResponse(
        subject_id=decision.subject_id,
        status=decision.status.value,
        allowed=decision.allowed,
        attempts_remaining=decision.attempts_remaining,
        days_remaining=decision.days_remaining,
        reason=decision.reason,
    )


@router.post("/participants/screening/reset")
def reset_screening(controller: RecruitmentController = Depends(get_controller)) -> dict:
    controller.reset_screening()
    return {"ok": True, "attempts_remaining": controller.dedup.attempts_remaining}


@router.post("/participants/{subject_id}/complete", response_model=CompleteResponse)
async def complete_survey(
    subject_id: str,
    facility_id: Optional[int] = Query(default=None),
    controller: RecruitmentController = Depends(get_controller),
) -> CompleteResponse:
    config = await _config(controller, facility_id)
    try:
        result = await controller.complete_survey(subject_id, config)
    except SubjectNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GenerationExhaustedError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return CompleteResponse(subject_id=result.subject_id, coupons=[_coupon_out(c) for c in result.coupons])


@router.post("/participants/{subject_id}/consent", response_model=ConsentResponse)
async def record_contact_consent(
    subject_id: str,
    payload: ConsentRequest,
    controller: RecruitmentController = Depends(get_controller),
) -> ConsentResponse:
    if payload.consent and not ((payload.phone or "").strip() or (payload.email or "").strip()):
        raise HTTPException(status_code=400, detail="Consent requires a phone number or email address")

    try:
        subject = await controller.record_contact_consent(
            subject_id,
            payload.consent,
            phone=payload.phone,
            email=payload.email,
        )
    except SubjectNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return ConsentResponse(
        subject_id=subject.id,
        contact_consent=subject.contact_consent,
        has_contact_info=subject.has_contact_info(),
        contactable=subject.is_contactable(),
    )


@router.post("/participants/{subject_id}/referral-payment", response_model=ReferralPaymentOut)
async def pay_referrals(
    subject_id: str,
    payload: PaymentRequest,
    controller: RecruitmentController = Depends(get_controller),
) -> ReferralPaymentOut:
    try:
        payment = await controller.pay_referrals(subject_id, payload.signature)
    except SubjectNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return ReferralPaymentOut(
        subject_id=payment.subject_id,
        count=payment.count,
        coupons=[_coupon_out(c) for c in payment.coupons],
    )


# -------------------------
# Seed recruitment
# -------------------------

@router.get("/seed/allowed", response_model=SeedAllowedResponse)
async def seed_allowed(
    facility_id: Optional[int] = Query(default=None),
    controller: RecruitmentController = Depends(get_controller),
) -> SeedAllowedResponse:
    config = await _config(controller, facility_id)
    allowed = await controller.should_seed_recruit(config)
    return SeedAllowedResponse(facility_id=config.facility_id, allowed=allowed)


@router.post("/seed/select", response_model=SeedRecruitmentOut)
async def seed_select(
    facility_id: Optional[int] = Query(default=None),
    controller: RecruitmentController = Depends(get_controller),
) -> SeedRecruitmentOut:
    config = await _config(controller, facility_id)
    if not config.seed_recruitment_active:
        raise HTTPException(status_code=409, detail="Seed recruitment is not active for this facility")

    try:
        recruitment = await controller.get_or_select_seed(config)
    except GenerationExhaustedError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if recruitment is None:
        raise HTTPException(status_code=404, detail="No eligible subjects for seed recruitment")
    return _recruitment_out(recruitment)


@router.post("/seed/{recruitment_id}/sent", response_model=SeedRecruitmentOut)
async def seed_sent(
    recruitment_id: int,
    controller: RecruitmentController = Depends(get_controller),
) -> SeedRecruitmentOut:
    try:
        recruitment = await controller.confirm_seed_message_sent(recruitment_id)
    except RecruitmentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RecruitmentAlreadySentError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _recruitment_out(recruitment)


@router.get("/seed/{recruitment_id}/message", response_model=SeedMessageResponse)
async def seed_message(
    recruitment_id: int,
    controller: RecruitmentController = Depends(get_controller),
) -> SeedMessageResponse:
    recruitment = await controller.get_seed(recruitment_id)
    if recruitment is None:
        raise HTTPException(status_code=404, detail="Seed recruitment not found")

    config = await _config(controller, recruitment.facility_id)
    return SeedMessageResponse(
        recruitment_id=int(recruitment.id),
        channel=recruitment.contact_channel.value,
        contact_info=recruitment.contact_info,
        message=controller.seed_message(recruitment, config),
    )
