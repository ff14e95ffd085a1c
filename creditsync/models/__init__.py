from creditsync.models.base import Base, BaseModel
from creditsync.models.user import User
from creditsync.models.identity import CustomerLink, UnresolvedReference
from creditsync.models.credits import CreditBalance, CreditTransaction, SubscriptionGrant
from creditsync.models.events import AppliedEventKey, ParkedEvent
from creditsync.models.internal import ReconciliationWarning

__all__ = [
    "Base",
    "BaseModel",
    "User",
    "CustomerLink",
    "UnresolvedReference",
    "CreditBalance",
    "CreditTransaction",
    "SubscriptionGrant",
    "AppliedEventKey",
    "ParkedEvent",
    "ReconciliationWarning",
]
