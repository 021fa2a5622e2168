"""SQLAlchemy models package."""

# Import all models
from .account import Account, AccountPlan, Store, StoreBlacklistEntry  # noqa: F401
from .checkin import CheckInSession, CheckInSessionStatus, LocationSample  # noqa: F401
from .gift_card import (  # noqa: F401
    GiftCard,
    GiftCardStatus,
    GiftCardTransaction,
    GiftCardTransactionType,
    GiftCardType,
)
from .ledger import LedgerChangeType, LoopsLedgerEntry, PurchaseTransaction  # noqa: F401
from .settlement import (  # noqa: F401
    PendingGrant,
    PendingGrantStatus,
    SettlementSweepRun,
    SettlementTriggerRecord,
    SettlementTriggerType,
)
