"""
Document store used by every engine.

Records are independently addressable documents carrying a `version`.
Writers read a document, build the new state and call `compare_and_set`,
which only succeeds if nobody wrote the document in between. The in-memory
implementation below is thread-safe so the engines can be exercised with
real concurrent callers; a database-backed store only has to honour the
same contract (e.g. `UPDATE ... WHERE id = ? AND version = ?`).
"""

import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID

from .models import Document, PackageConfig, PackageRecord, UserAccount


D = TypeVar("D", bound=Document)

USERS = "users"
PURCHASES = "purchases"
SCHEDULES = "schedules"
COMMISSIONS = "commissions"
SETTLEMENTS = "settlements"
WITHDRAWALS = "withdrawals"
BALANCES = "balances"
LEDGER_ENTRIES = "ledger_entries"
OTP_CHALLENGES = "otp_challenges"
PACKAGES = "packages"
INVESTMENTS = "investments"

COLLECTIONS = (
    USERS, PURCHASES, SCHEDULES, COMMISSIONS, SETTLEMENTS,
    WITHDRAWALS, BALANCES, LEDGER_ENTRIES, OTP_CHALLENGES, PACKAGES, INVESTMENTS,
)


class StorageError(Exception):
    pass


class ConcurrencyConflict(StorageError):
    """The document changed since it was read."""


class DuplicateKeyError(StorageError):
    pass


class InMemoryStorage:
    def __init__(self, seed: bool = False):
        self._lock = threading.Lock()
        self._collections: dict[str, dict] = {name: {} for name in COLLECTIONS}
        if seed:
            self._seed_data()

    def _seed_data(self):
        referrer_id = UUID("550e8400-e29b-41d4-a716-446655440000")
        buyer_id = UUID("660e8400-e29b-41d4-a716-446655440001")

        self.insert(USERS, UserAccount(id=referrer_id, username="referrer"))
        self.insert(USERS, UserAccount(
            id=buyer_id, username="buyer", referred_by=referrer_id,
        ))
        self.insert(PACKAGES, PackageRecord(
            id="PKG_STANDARD",
            config=PackageConfig(
                package_id="PKG_STANDARD", name="Standard License",
                daily_rate=Decimal("0.125"), benefit_days=8, pause_days=1,
                total_cycles=5, cap_percent=Decimal("100"),
            ),
            created_at=datetime.now(timezone.utc),
        ))

    def get(self, collection: str, doc_id) -> Optional[Document]:
        with self._lock:
            doc = self._collections[collection].get(doc_id)
            return doc.model_copy(deep=True) if doc is not None else None

    def find(
        self,
        collection: str,
        predicate: Optional[Callable[[Document], bool]] = None,
    ) -> list:
        with self._lock:
            docs = list(self._collections[collection].values())
        return [
            d.model_copy(deep=True) for d in docs
            if predicate is None or predicate(d)
        ]

    def insert(self, collection: str, doc: D) -> D:
        with self._lock:
            docs = self._collections[collection]
            if doc.id in docs:
                raise DuplicateKeyError(f"{collection}: {doc.id} already exists")
            stored = doc.model_copy(deep=True, update={"version": 1})
            docs[doc.id] = stored
            return stored.model_copy(deep=True)

    def compare_and_set(self, collection: str, doc: D) -> D:
        """Write `doc` only if the stored version still equals `doc.version`."""
        with self._lock:
            docs = self._collections[collection]
            current = docs.get(doc.id)
            if current is None:
                raise StorageError(f"{collection}: {doc.id} does not exist")
            if current.version != doc.version:
                raise ConcurrencyConflict(
                    f"{collection}: {doc.id} version {doc.version} is stale "
                    f"(stored {current.version})"
                )
            stored = doc.model_copy(deep=True, update={"version": doc.version + 1})
            docs[doc.id] = stored
            return stored.model_copy(deep=True)

    def delete(self, collection: str, doc_id) -> bool:
        with self._lock:
            return self._collections[collection].pop(doc_id, None) is not None

