"""
결제사(Stripe) 고객 조회/태깅 클라이언트

- fetch_customer: 고객 레코드 조회 (존재하지 않으면 None)
- tag_customer: 로컬 사용자 ID 를 고객 메타데이터에 기록 (자가 치유, best effort)
- clear_invalid_user: 더 이상 존재하지 않는 로컬 사용자 ID 를 메타데이터에서 제거

일시적 장애(연결, 레이트 리밋, 5xx)는 상한이 있는 지수 백오프로 재시도하고,
재시도 소진 시 UpstreamUnavailable 을 발생시킵니다.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

import stripe

from creditsync.config import Settings
from creditsync.core.exceptions import UpstreamUnavailable
from creditsync.schemas.identity import ProcessorCustomerInfo
from creditsync.utils.timezone_utils import from_unix, to_iso, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class CustomerDirectory(Protocol):
    """매칭 서비스가 의존하는 결제사 고객 디렉터리 인터페이스"""

    def fetch_customer(self, external_ref: str) -> Optional[ProcessorCustomerInfo]: ...

    def tag_customer(
        self, external_ref: str, user_id: str, linked_by: str, note: Optional[str] = None
    ) -> None: ...

    def clear_invalid_user(self, external_ref: str, stale_user_id: str) -> None: ...


def as_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject -> dict (SDK 버전별 표현 차이 흡수)"""
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def configure_stripe(settings: Settings) -> None:
    """SDK 전역 설정 (재시도는 이 모듈에서 직접 수행)"""
    stripe.api_key = settings.STRIPE_SECRET_KEY or None
    stripe.max_network_retries = 0
    stripe.default_http_client = stripe.RequestsClient(
        timeout=settings.STRIPE_API_TIMEOUT_SECONDS
    )


class StripeCustomerDirectory:
    def __init__(
        self,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = settings.STRIPE_SECRET_KEY
        self.metadata_user_key = settings.PROCESSOR_METADATA_USER_KEY
        self.max_attempts = max(1, settings.UPSTREAM_RETRY_ATTEMPTS)
        self.base_delay = settings.UPSTREAM_RETRY_BASE_DELAY_SECONDS
        self.max_delay = settings.UPSTREAM_RETRY_MAX_DELAY_SECONDS
        self._sleep = sleep

    def _backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    def _call(self, operation: str, external_ref: str, func: Callable[[], T]) -> T:
        for attempt in range(self.max_attempts):
            try:
                return func()
            except TRANSIENT_ERRORS as e:
                if attempt == self.max_attempts - 1:
                    logger.error(
                        f"Stripe {operation} failed for {external_ref} after "
                        f"{self.max_attempts} attempts: {e}"
                    )
                    raise UpstreamUnavailable(
                        f"Payment processor {operation} failed",
                        details={
                            "external_ref": external_ref,
                            "attempts": self.max_attempts,
                            "error": str(e),
                        },
                    ) from e
                delay = self._backoff(attempt)
                logger.warning(
                    f"Stripe {operation} transient error for {external_ref} "
                    f"(attempt {attempt + 1}/{self.max_attempts}), retrying in {delay:.2f}s: {e}"
                )
                self._sleep(delay)
        raise UpstreamUnavailable(details={"external_ref": external_ref})

    def fetch_customer(self, external_ref: str) -> Optional[ProcessorCustomerInfo]:
        def retrieve():
            return stripe.Customer.retrieve(external_ref, api_key=self.api_key)

        try:
            customer = self._call("customer lookup", external_ref, retrieve)
        except stripe.InvalidRequestError as e:
            if getattr(e, "http_status", None) == 404 or getattr(e, "code", None) == "resource_missing":
                logger.info(f"Stripe customer {external_ref} does not exist")
                return None
            raise UpstreamUnavailable(
                "Payment processor rejected customer lookup",
                details={"external_ref": external_ref, "error": str(e)},
            ) from e
        except stripe.StripeError as e:
            raise UpstreamUnavailable(
                "Payment processor customer lookup failed",
                details={"external_ref": external_ref, "error": str(e)},
            ) from e
        return self._to_customer_info(external_ref, customer)

    def _to_customer_info(self, external_ref: str, customer: Any) -> ProcessorCustomerInfo:
        customer = as_dict(customer)
        if customer.get("deleted"):
            return ProcessorCustomerInfo(id=external_ref, deleted=True)
        metadata = as_dict(customer.get("metadata") or {})
        return ProcessorCustomerInfo(
            id=customer.get("id") or external_ref,
            email=customer.get("email"),
            name=customer.get("name"),
            metadata=dict(metadata),
            created=from_unix(customer.get("created")),
            deleted=False,
        )

    def _modify_metadata(self, operation: str, external_ref: str, metadata: Dict[str, str]) -> None:
        def modify():
            return stripe.Customer.modify(
                external_ref, metadata=metadata, api_key=self.api_key
            )

        try:
            self._call(operation, external_ref, modify)
        except stripe.StripeError as e:
            raise UpstreamUnavailable(
                f"Payment processor {operation} failed",
                details={"external_ref": external_ref, "error": str(e)},
            ) from e

    def tag_customer(
        self, external_ref: str, user_id: str, linked_by: str, note: Optional[str] = None
    ) -> None:
        metadata = {
            self.metadata_user_key: user_id,
            "linkedBy": linked_by,
            "linkedAt": to_iso(utc_now()) or "",
        }
        if note:
            metadata["linkNote"] = note[:500]
        self._modify_metadata("metadata tag", external_ref, metadata)
        logger.info(f"Tagged Stripe customer {external_ref} with user {user_id} ({linked_by})")

    def clear_invalid_user(self, external_ref: str, stale_user_id: str) -> None:
        # Stripe 는 빈 문자열 값을 키 삭제로 처리
        self._modify_metadata(
            "metadata cleanup",
            external_ref,
            {self.metadata_user_key: "", "invalidUserId": stale_user_id},
        )
        logger.info(
            f"Cleared stale user {stale_user_id} from Stripe customer {external_ref} metadata"
        )


def build_customer_directory(settings: Settings) -> Optional[StripeCustomerDirectory]:
    """STRIPE_SECRET_KEY 가 없으면 원격 조회 없이 로컬 전략만 사용"""
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY is not set; processor lookups are disabled")
        return None
    return StripeCustomerDirectory(settings)
