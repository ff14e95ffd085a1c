"""
결제사 웹훅 라우터

- POST /webhooks/stripe: 서명 검증 -> BillingEvent 변환 -> 이벤트 정합성 서비스

지원하지 않는 이벤트 유형은 200 (ignored) 으로 응답하여 재전송을 막습니다.
매칭 실패 이벤트는 보류(parked) 후 200 으로 응답합니다. 결제사 재전송 없이도
이후 매칭 시점에 재처리됩니다.
"""

import json
import logging

import stripe
from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Header, Request

from creditsync.config import settings
from creditsync.containers import Container
from creditsync.core.exceptions import AuthenticationError, ValidationError
from creditsync.providers.processor import parse_stripe_event
from creditsync.schemas.events import ReconcileOutcome, ReconcileStatus
from creditsync.services.event_reconciler_service import EventReconcilerService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def read_raw_body(request: Request) -> bytes:
    """서명 검증은 원문 바이트 기준"""
    return await request.body()


def verify_stripe_payload(payload: bytes, signature: str) -> dict:
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise AuthenticationError("Webhook secret is not configured")
    try:
        stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook signature verification failed: {str(e)}")
        raise AuthenticationError("Invalid webhook signature") from e
    except ValueError as e:
        raise ValidationError("Invalid webhook payload") from e
    return json.loads(payload)


@router.post("/stripe", response_model=ReconcileOutcome)
@inject
def stripe_webhook(
    payload: bytes = Depends(read_raw_body),
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    reconciler: EventReconcilerService = Depends(
        Provide[Container.services.event_reconciler_service]
    ),
) -> ReconcileOutcome:
    raw = verify_stripe_payload(payload, stripe_signature)
    event = parse_stripe_event(raw)
    if event is None:
        logger.info(f"Ignoring Stripe event {raw.get('id')} ({raw.get('type')})")
        return ReconcileOutcome(
            idempotency_key=str(raw.get("id") or ""),
            kind=str(raw.get("type") or "unknown"),
            status=ReconcileStatus.IGNORED,
            reason="unsupported_event",
        )
    return reconciler.handle_event(event)
