"""Row store backing the cash ledger.

Rows are plain dicts keyed by id, the same shape a relational driver hands
back.  Every public method runs under one re-entrant lock, which gives the
per-statement write serialization the services rely on; ``unit_of_work``
widens that to several statements and restores the tables if the unit fails.
Unique indexes (transaction reference, live pending per sender, QR hash,
posting key) are checked and written inside the same critical section as the
insert they guard.
"""

import copy
import itertools
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)

RowPredicate = Callable[[dict], bool]

_TABLES = (
    "users", "organizations", "wallets", "transactions", "documents",
    "qr_codes", "settlement_requests", "notifications", "postings", "aml_alerts",
)
_INDEXES = ("transaction_refs", "pending_by_sender", "qr_hashes", "posting_keys")


class UniqueViolation(Exception):
    """Raised when an insert would break one of the store's unique indexes."""

    def __init__(self, index: str, key):
        super().__init__(f"duplicate key {key!r} violates unique index {index}")
        self.index = index
        self.key = key


class InMemoryStorage:
    def __init__(self, seed: bool = False):
        self._lock = threading.RLock()
        self._depth = 0
        self.users: dict[str, dict] = {}
        self.organizations: dict[int, dict] = {}
        self.wallets: dict[str, dict] = {}
        self.transactions: dict[int, dict] = {}
        self.documents: dict[int, dict] = {}
        self.qr_codes: dict[int, dict] = {}
        self.settlement_requests: dict[int, dict] = {}
        self.notifications: dict[int, dict] = {}
        self.postings: dict = {}
        self.aml_alerts: dict[int, list[dict]] = {}
        self.transaction_refs: dict[str, int] = {}
        self.pending_by_sender: dict[str, int] = {}
        self.qr_hashes: dict[str, int] = {}
        self.posting_keys: set[tuple] = set()
        self._sequences = {name: itertools.count(1) for name in _TABLES}
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.add_organization(
            id=1, name="Lusaka Central Traders", status="approved", is_active=True,
            kyc_status="verified", aml_risk_rating="medium",
        )
        self.add_user(id="merchant-001", role="merchant", organization_id=1, name="Mary Merchant")
        self.add_user(id="cashier-001", role="cashier", organization_id=1, name="Chanda Cashier")
        self.add_user(id="finance-001", role="finance", organization_id=1, name="Felix Finance")
        self.add_user(id="admin-001", role="admin", organization_id=None, name="Ada Admin")

    def next_id(self, table: str) -> int:
        with self._lock:
            return next(self._sequences[table])

    @contextmanager
    def unit_of_work(self) -> Iterator["InMemoryStorage"]:
        """Hold the store lock across several statements; undo them all on error."""
        with self._lock:
            snapshot = self._snapshot() if self._depth == 0 else None
            self._depth += 1
            try:
                yield self
            except Exception:
                if snapshot is not None:
                    logger.debug("Rolling back unit of work")
                    self._restore(snapshot)
                raise
            finally:
                self._depth -= 1

    def _snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in _TABLES + _INDEXES}

    def _restore(self, snapshot: dict) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    # Users and organizations

    def add_user(self, **row) -> dict:
        with self._lock:
            row.setdefault("organization_id", None)
            self.users[row["id"]] = row
            return row

    def get_user(self, user_id: str) -> Optional[dict]:
        return self.users.get(user_id)

    def list_users(self, organization_id: Optional[int] = None, role: Optional[str] = None) -> list[dict]:
        with self._lock:
            return [
                u for u in self.users.values()
                if (organization_id is None or u.get("organization_id") == organization_id)
                and (role is None or u["role"] == role)
            ]

    def add_organization(self, **row) -> dict:
        with self._lock:
            if "id" not in row:
                row["id"] = self.next_id("organizations")
            self.organizations[row["id"]] = row
            return row

    def get_organization(self, organization_id: int) -> Optional[dict]:
        return self.organizations.get(organization_id)

    def update_organization(self, organization_id: int, **changes) -> dict:
        with self._lock:
            row = self.organizations[organization_id]
            row.update(changes)
            return row

    # Wallets

    def get_wallet(self, user_id: str) -> Optional[dict]:
        with self._lock:
            row = self.wallets.get(user_id)
            return dict(row) if row else None

    def insert_wallet(self, row: dict) -> dict:
        with self._lock:
            existing = self.wallets.get(row["user_id"])
            if existing:
                return dict(existing)
            self.wallets[row["user_id"]] = dict(row)
            return dict(row)

    def update_wallet(self, user_id: str, **changes) -> dict:
        with self._lock:
            row = self.wallets[user_id]
            row.update(changes)
            return dict(row)

    def list_wallets(self) -> list[dict]:
        with self._lock:
            return [dict(w) for w in self.wallets.values()]

    # Transactions

    def insert_transaction(self, row: dict, now: datetime) -> dict:
        with self._lock:
            if row["reference"] in self.transaction_refs:
                raise UniqueViolation("transaction_refs", row["reference"])
            sender = row["from_user_id"]
            current_id = self.pending_by_sender.get(sender)
            if current_id is not None and self._is_live_pending(self.transactions.get(current_id), now):
                raise UniqueViolation("pending_by_sender", sender)
            if "id" not in row:
                row["id"] = self.next_id("transactions")
            self.transactions[row["id"]] = dict(row)
            self.transaction_refs[row["reference"]] = row["id"]
            if row["status"] == "pending":
                self.pending_by_sender[sender] = row["id"]
            return dict(row)

    @staticmethod
    def _is_live_pending(row: Optional[dict], now: datetime) -> bool:
        if not row or row["status"] != "pending":
            return False
        return row.get("expires_at") is None or row["expires_at"] > now

    def live_pending_for_sender(self, user_id: str, now: datetime) -> Optional[dict]:
        with self._lock:
            row = self.transactions.get(self.pending_by_sender.get(user_id, -1))
            return dict(row) if self._is_live_pending(row, now) else None

    def reference_exists(self, reference: str) -> bool:
        return reference in self.transaction_refs

    def get_transaction(self, transaction_id: int) -> Optional[dict]:
        with self._lock:
            row = self.transactions.get(transaction_id)
            return dict(row) if row else None

    def get_transaction_by_reference(self, reference: str) -> Optional[dict]:
        with self._lock:
            transaction_id = self.transaction_refs.get(reference)
            return self.get_transaction(transaction_id) if transaction_id is not None else None

    def update_transaction(self, transaction_id: int, **changes) -> dict:
        with self._lock:
            row = self.transactions[transaction_id]
            row.update(changes)
            if row["status"] != "pending" and self.pending_by_sender.get(row["from_user_id"]) == transaction_id:
                del self.pending_by_sender[row["from_user_id"]]
            return dict(row)

    def list_transactions(self, predicate: Optional[RowPredicate] = None) -> list[dict]:
        with self._lock:
            return [dict(t) for t in self.transactions.values() if predicate is None or predicate(t)]

    def sum_transaction_amounts(self, predicate: RowPredicate) -> Decimal:
        with self._lock:
            return sum((t["amount"] for t in self.transactions.values() if predicate(t)), Decimal("0"))

    # Documents

    def add_document(self, **row) -> dict:
        with self._lock:
            row["id"] = self.next_id("documents")
            self.documents[row["id"]] = row
            return dict(row)

    def count_documents(self, transaction_id: int) -> int:
        with self._lock:
            return sum(1 for d in self.documents.values() if d["transaction_id"] == transaction_id)

    # QR codes

    def insert_qr_code(self, row: dict) -> dict:
        with self._lock:
            if row["qr_code_hash"] in self.qr_hashes:
                raise UniqueViolation("qr_hashes", row["qr_code_hash"])
            row["id"] = self.next_id("qr_codes")
            self.qr_codes[row["id"]] = dict(row)
            self.qr_hashes[row["qr_code_hash"]] = row["id"]
            return dict(row)

    def get_qr_code_by_hash(self, qr_code_hash: str) -> Optional[dict]:
        with self._lock:
            qr_id = self.qr_hashes.get(qr_code_hash)
            row = self.qr_codes.get(qr_id) if qr_id is not None else None
            return dict(row) if row else None

    def find_active_qr_code(self, transaction_id: int, now: datetime) -> Optional[dict]:
        with self._lock:
            for row in self.qr_codes.values():
                if row["transaction_id"] == transaction_id and not row["is_used"] and row["expires_at"] > now:
                    return dict(row)
            return None

    def mark_qr_code_used(self, qr_id: int, now: datetime) -> bool:
        """Compare-and-set ``is_used``; False means another verifier won."""
        with self._lock:
            row = self.qr_codes.get(qr_id)
            if row is None or row["is_used"]:
                return False
            row["is_used"] = True
            row["used_at"] = now
            return True

    def delete_qr_codes(self, predicate: RowPredicate) -> int:
        with self._lock:
            doomed = [row for row in self.qr_codes.values() if predicate(row)]
            for row in doomed:
                del self.qr_codes[row["id"]]
                self.qr_hashes.pop(row["qr_code_hash"], None)
            return len(doomed)

    # Settlement requests

    def insert_settlement_request(self, row: dict) -> dict:
        with self._lock:
            row["id"] = self.next_id("settlement_requests")
            self.settlement_requests[row["id"]] = dict(row)
            return dict(row)

    def get_settlement_request(self, request_id: int) -> Optional[dict]:
        with self._lock:
            row = self.settlement_requests.get(request_id)
            return dict(row) if row else None

    def update_settlement_request(self, request_id: int, **changes) -> dict:
        with self._lock:
            row = self.settlement_requests[request_id]
            row.update(changes)
            return dict(row)

    def list_settlement_requests(self, predicate: Optional[RowPredicate] = None) -> list[dict]:
        with self._lock:
            return [dict(r) for r in self.settlement_requests.values() if predicate is None or predicate(r)]

    # Notifications

    def add_notification(self, **row) -> dict:
        with self._lock:
            row["id"] = self.next_id("notifications")
            row.setdefault("is_read", False)
            self.notifications[row["id"]] = row
            return dict(row)

    def list_notifications(self, user_id: str) -> list[dict]:
        with self._lock:
            return [dict(n) for n in self.notifications.values() if n["user_id"] == user_id]

    def get_notification(self, notification_id: int) -> Optional[dict]:
        with self._lock:
            row = self.notifications.get(notification_id)
            return dict(row) if row else None

    def update_notification(self, notification_id: int, **changes) -> Optional[dict]:
        with self._lock:
            row = self.notifications.get(notification_id)
            if row is None:
                return None
            row.update(changes)
            return dict(row)

    # Ledger postings

    def add_posting(self, row: dict, key: tuple) -> dict:
        with self._lock:
            if key in self.posting_keys:
                raise UniqueViolation("posting_keys", key)
            self.posting_keys.add(key)
            self.postings[row["id"]] = dict(row)
            return dict(row)

    def has_posting(self, key: tuple) -> bool:
        return key in self.posting_keys

    def list_postings(self, predicate: Optional[RowPredicate] = None) -> list[dict]:
        with self._lock:
            return [dict(p) for p in self.postings.values() if predicate is None or predicate(p)]

    # AML alerts

    def add_aml_alerts(self, transaction_id: int, alerts: list[dict]) -> None:
        with self._lock:
            self.aml_alerts.setdefault(transaction_id, []).extend(alerts)

    def get_aml_alerts(self, transaction_id: int) -> list[dict]:
        with self._lock:
            return list(self.aml_alerts.get(transaction_id, []))
