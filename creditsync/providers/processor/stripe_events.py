"""
검증된 Stripe 웹훅 페이로드 -> BillingEvent 변환

서명 검증은 웹훅 라우터가 수행하며, 이 모듈은 순수 매핑만 담당합니다.
API 버전에 따라 구독 기간/가격 정보의 위치가 다르므로 두 형태를 모두 읽습니다.
"""

import logging
from typing import Any, Dict, Optional

from creditsync.schemas.events import BillingEvent, BillingEventKind
from creditsync.utils.timezone_utils import from_unix

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trialing"}


def _ref(value: Any) -> Optional[str]:
    """확장(expand)된 객체 또는 ID 문자열에서 ID 추출"""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(container: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    data = (container or {}).get("data") or []
    return data[0] if data else {}


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _subscription_fields(subscription: Dict[str, Any]) -> Dict[str, Any]:
    item = _first_item(subscription.get("items"))
    price = item.get("price") or {}
    recurring = price.get("recurring") or {}
    return {
        "subscription_ref": subscription.get("id"),
        "subscription_status": subscription.get("status"),
        "period_start": from_unix(
            subscription.get("current_period_start") or item.get("current_period_start")
        ),
        "period_end": from_unix(
            subscription.get("current_period_end") or item.get("current_period_end")
        ),
        "interval": recurring.get("interval"),
        "unit_amount": _int_or_none(price.get("unit_amount")),
        "metadata": dict(subscription.get("metadata") or {}),
    }


def _invoice_fields(invoice: Dict[str, Any]) -> Dict[str, Any]:
    line = _first_item(invoice.get("lines"))
    period = line.get("period") or {}
    price = line.get("price") or {}
    recurring = price.get("recurring") or {}
    parent = invoice.get("parent") or {}
    subscription_details = (
        invoice.get("subscription_details")
        or parent.get("subscription_details")
        or {}
    )
    subscription_ref = _ref(invoice.get("subscription")) or _ref(
        subscription_details.get("subscription")
    )
    metadata = dict(subscription_details.get("metadata") or {})
    metadata.update(invoice.get("metadata") or {})
    return {
        "subscription_ref": subscription_ref,
        "invoice_ref": invoice.get("id"),
        "period_start": from_unix(period.get("start")),
        "period_end": from_unix(period.get("end")),
        "interval": recurring.get("interval"),
        "unit_amount": _int_or_none(price.get("unit_amount")),
        "credits": _int_or_none((invoice.get("metadata") or {}).get("credits")),
        "email_hint": invoice.get("customer_email"),
        "name_hint": invoice.get("customer_name"),
        "metadata": metadata,
    }


def parse_stripe_event(payload: Dict[str, Any]) -> Optional[BillingEvent]:
    """
    Stripe 이벤트를 BillingEvent 로 변환

    Returns:
        지원하지 않는 이벤트 타입이거나 고객 참조가 없으면 None
    """
    event_type = payload.get("type", "")
    obj = (payload.get("data") or {}).get("object") or {}
    customer_ref = _ref(obj.get("customer"))

    if event_type.startswith("customer.subscription."):
        fields = _subscription_fields(obj)
        if event_type == "customer.subscription.deleted":
            kind = BillingEventKind.SUBSCRIPTION_CANCELED
        elif (
            event_type == "customer.subscription.created"
            and fields["subscription_status"] in ACTIVE_SUBSCRIPTION_STATUSES
        ):
            kind = BillingEventKind.SUBSCRIPTION_ACTIVATED
        elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
            kind = BillingEventKind.SUBSCRIPTION_UPDATED
        else:
            logger.info(f"Ignoring unsupported Stripe event type {event_type}")
            return None
    elif event_type in ("invoice.paid", "invoice.payment_succeeded"):
        kind = BillingEventKind.INVOICE_PAID
        fields = _invoice_fields(obj)
    else:
        logger.info(f"Ignoring unsupported Stripe event type {event_type}")
        return None

    if not customer_ref:
        logger.warning(f"Stripe event {payload.get('id')} ({event_type}) has no customer")
        return None

    return BillingEvent(
        idempotency_key=payload["id"],
        kind=kind,
        external_ref=customer_ref,
        occurred_at=from_unix(payload.get("created")),
        **fields,
    )
