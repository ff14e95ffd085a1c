"""
Identity match strategies.

Each strategy is a plain function over a MatchContext that returns a tagged
StrategyOutcome. Strategies never write; side effects implied by an outcome
(stale link deactivation, processor metadata cleanup) are carried back to the
matcher as data. The matcher walks MATCH_STRATEGIES in order and stops at the
first outcome that is not NO_MATCH.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from creditsync.repositories.identity_repository import IdentityRepository
from creditsync.repositories.user_repository import UserRepository
from creditsync.schemas.identity import ContextHints, MatchConfidence, ProcessorCustomerInfo

MATCHED = "matched"
NO_MATCH = "no_match"
AMBIGUOUS = "ambiguous"

_WHITESPACE = re.compile(r"\s+")


@dataclass
class StrategyOutcome:
    status: str
    strategy: str
    user_id: Optional[str] = None
    confidence: Optional[MatchConfidence] = None
    candidates: List[str] = field(default_factory=list)
    stale_link_id: Optional[int] = None
    stale_metadata_user_id: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.status == MATCHED


class MatchContext:
    """Read-only view shared by the strategies for one resolution attempt.

    The processor customer record is fetched lazily and at most once, so the
    direct-link strategy never pays for a remote lookup.
    """

    def __init__(
        self,
        external_ref: str,
        hints: ContextHints,
        users: UserRepository,
        links: IdentityRepository,
        fetch_customer: Optional[Callable[[str], Optional[ProcessorCustomerInfo]]],
        metadata_user_key: str = "userId",
        min_name_length: int = 3,
    ):
        self.external_ref = external_ref
        self.hints = hints
        self.users = users
        self.links = links
        self.metadata_user_key = metadata_user_key
        self.min_name_length = min_name_length
        self._fetch_customer = fetch_customer
        self._customer: Optional[ProcessorCustomerInfo] = None
        self._fetched = False

    def customer(self) -> Optional[ProcessorCustomerInfo]:
        if not self._fetched:
            self._fetched = True
            if self._fetch_customer is not None:
                customer = self._fetch_customer(self.external_ref)
                self._customer = None if customer is None or customer.deleted else customer
        return self._customer

    def fetched_customer(self) -> Optional[ProcessorCustomerInfo]:
        """The customer record if an earlier strategy already fetched it."""
        return self._customer


def normalize_name(value: Optional[str]) -> str:
    if not value:
        return ""
    value = unicodedata.normalize("NFKC", value)
    return _WHITESPACE.sub(" ", value).strip().casefold()


def direct_link(ctx: MatchContext) -> StrategyOutcome:
    link = ctx.links.get_active_link_by_ref(ctx.external_ref)
    if link is None:
        return StrategyOutcome(NO_MATCH, "direct")
    if not ctx.users.exists(link.user_id):
        return StrategyOutcome(NO_MATCH, "direct", stale_link_id=link.id)
    return StrategyOutcome(
        MATCHED, "direct", user_id=link.user_id, confidence=MatchConfidence.EXACT
    )


def processor_metadata(ctx: MatchContext) -> StrategyOutcome:
    # event-level hint first: it costs no remote call
    hinted = ctx.hints.metadata_user_id
    if hinted and ctx.users.exists(hinted):
        return StrategyOutcome(
            MATCHED, "metadata", user_id=hinted, confidence=MatchConfidence.HIGH
        )

    customer = ctx.customer()
    if customer is None:
        return StrategyOutcome(NO_MATCH, "metadata")
    embedded = customer.metadata.get(ctx.metadata_user_key)
    if not embedded:
        return StrategyOutcome(NO_MATCH, "metadata")
    if ctx.users.exists(embedded):
        return StrategyOutcome(
            MATCHED, "metadata", user_id=embedded, confidence=MatchConfidence.HIGH
        )
    return StrategyOutcome(NO_MATCH, "metadata", stale_metadata_user_id=embedded)


def email_match(ctx: MatchContext) -> StrategyOutcome:
    email = ctx.hints.email
    if not email:
        customer = ctx.customer()
        email = customer.email if customer else None
    if not email:
        return StrategyOutcome(NO_MATCH, "email")

    users = ctx.users.find_by_email(email)
    if not users:
        return StrategyOutcome(NO_MATCH, "email")
    if len(users) > 1:
        return StrategyOutcome(AMBIGUOUS, "email", candidates=[user.id for user in users])
    return StrategyOutcome(
        MATCHED, "email", user_id=users[0].id, confidence=MatchConfidence.MEDIUM
    )


def fuzzy_name(ctx: MatchContext) -> StrategyOutcome:
    customer = ctx.customer()
    name = normalize_name((customer.name if customer else None) or ctx.hints.name)
    if len(name) < ctx.min_name_length:
        return StrategyOutcome(NO_MATCH, "fuzzy_name")

    qualified = []
    for user in ctx.users.find_name_candidates(name):
        candidate = normalize_name(user.display_name)
        if len(candidate) < ctx.min_name_length:
            continue
        if candidate == name or candidate in name or name in candidate:
            qualified.append(user.id)

    if not qualified:
        return StrategyOutcome(NO_MATCH, "fuzzy_name")
    if len(qualified) > 1:
        return StrategyOutcome(AMBIGUOUS, "fuzzy_name", candidates=qualified)
    return StrategyOutcome(
        MATCHED, "fuzzy_name", user_id=qualified[0], confidence=MatchConfidence.LOW
    )


MATCH_STRATEGIES: List[Callable[[MatchContext], StrategyOutcome]] = [
    direct_link,
    processor_metadata,
    email_match,
    fuzzy_name,
]
