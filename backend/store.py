"""Per-user session state: the transaction store, claim percentages and load state."""
import json
import logging
import threading
import traceback
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import ValidationError

import database
from gst import QuarterFilter, filter_transactions, summarize
from models import BusinessPercentages, GSTSummary, Transaction, TransactionCandidate, User

logger = logging.getLogger(__name__)


class SessionNotLoaded(Exception):
    """Raised when session data is read or written before a load completed."""


class ExtractionInProgress(Exception):
    """Raised when a second extraction is started while one is in flight."""


class TransactionStore:
    """Most-recent-first list of transactions. Append, remove and bulk replace only."""

    def __init__(self, transactions: Iterable[Transaction] = ()):
        self._items: List[Transaction] = list(transactions)

    def append(self, transaction: Transaction) -> None:
        self._items.insert(0, transaction)

    def remove(self, transaction_id: str) -> bool:
        before = len(self._items)
        self._items = [tx for tx in self._items if tx.id != transaction_id]
        return len(self._items) != before

    def replace_all(self, transactions: Iterable[Transaction]) -> None:
        self._items = list(transactions)

    def get(self, transaction_id: str) -> Optional[Transaction]:
        for tx in self._items:
            if tx.id == transaction_id:
                return tx
        return None

    def __iter__(self) -> Iterator[Transaction]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)


class NotLoaded:
    def __repr__(self):
        return "NotLoaded()"


@dataclass(frozen=True)
class Loaded:
    transactions: Tuple[Transaction, ...] = ()
    percentages: BusinessPercentages = field(default_factory=BusinessPercentages)


def decode_payload(payload: Optional[str]) -> Loaded:
    """Decode a persisted payload. Absent or corrupt data loads as empty with default percentages."""
    if payload is None:
        return Loaded()
    try:
        data = json.loads(payload)
        # older payloads used short key names
        raw_txs = data.get("transactions", data.get("txs")) or []
        raw_percs = data.get("percentages", data.get("percs"))
        transactions = tuple(Transaction.model_validate(tx) for tx in raw_txs)
        percentages = BusinessPercentages.model_validate(raw_percs) if raw_percs else BusinessPercentages()
        return Loaded(transactions=transactions, percentages=percentages)
    except (ValueError, TypeError, AttributeError, ValidationError) as e:
        logger.error(f"Data load failed, starting empty: {str(e)}")
        return Loaded()


def encode_payload(transactions: Iterable[Transaction], percentages: BusinessPercentages) -> str:
    return json.dumps({
        "transactions": [tx.model_dump(mode="json", by_alias=True) for tx in transactions],
        "percentages": percentages.model_dump(mode="json", by_alias=True),
    })


class ExtractionTask:
    """Handle for the one extraction a session may have in flight."""

    def __init__(self, session: "Session", filename: str):
        self.id = str(uuid.uuid4())
        self.filename = filename
        self._session = session
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def complete(self, candidates: List[TransactionCandidate]) -> Optional[List[Transaction]]:
        """Apply the result to the session and release the slot. Returns None if the task was cancelled."""
        try:
            if self.cancelled:
                logger.info(f"Extraction {self.id} was cancelled, discarding {len(candidates)} transactions")
                return None
            return self._session.add_batch(candidates, source_file=self.filename)
        finally:
            self._session._finish_extraction(self)

    def fail(self) -> None:
        self._session._finish_extraction(self)


class Session:
    """Everything the signed-in user works on: one store and one set of percentages."""

    def __init__(self, user: User):
        self.user = user
        self.store = TransactionStore()
        self.percentages = BusinessPercentages()
        self.state = NotLoaded()
        self._extraction: Optional[ExtractionTask] = None
        self._extraction_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return isinstance(self.state, Loaded)

    def load(self) -> None:
        self.state = NotLoaded()
        loaded = decode_payload(database.load_user_data(self.user.id))
        self.store.replace_all(loaded.transactions)
        self.percentages = loaded.percentages
        self.state = loaded
        logger.info(f"Loaded {len(self.store)} transactions for user {self.user.id}")

    def _require_loaded(self) -> None:
        if not self.loaded:
            raise SessionNotLoaded(f"Data for user {self.user.id} has not been loaded")

    def transactions(self, quarter_filter: QuarterFilter) -> List[Transaction]:
        self._require_loaded()
        return filter_transactions(self.store, quarter_filter)

    def business_percentages(self) -> BusinessPercentages:
        self._require_loaded()
        return self.percentages

    def summary(self, quarter_filter: QuarterFilter) -> GSTSummary:
        self._require_loaded()
        return summarize(self.store, quarter_filter, self.percentages)

    def persist(self) -> None:
        """Best-effort write of the session data; failures are logged only."""
        self._require_loaded()
        self.state = Loaded(transactions=tuple(self.store), percentages=self.percentages)
        try:
            database.save_user_data(self.user.id, encode_payload(self.store, self.percentages))
        except Exception as e:
            logger.error(f"Error saving data for user {self.user.id}: {str(e)}")
            logger.error(traceback.format_exc())

    def add_transaction(self, transaction: Transaction) -> Transaction:
        self._require_loaded()
        self.store.append(transaction)
        self.persist()
        return transaction

    def add_batch(self, candidates: List[TransactionCandidate], source_file: Optional[str] = None) -> List[Transaction]:
        """Give each candidate an id and put the batch, in its own order, ahead of existing records."""
        self._require_loaded()
        batch = [
            Transaction(
                id=str(uuid.uuid4()),
                date=c.date,
                description=c.description,
                type=c.type,
                category=c.category,
                gross_amount=c.gross_amount,
                gst_amount=c.gst_amount,
                net_amount=c.net_amount if c.net_amount is not None else c.gross_amount - c.gst_amount,
                platform=c.platform,
                confidence=c.confidence,
                source_file=source_file or c.source_file,
            )
            for c in candidates
        ]
        for tx in reversed(batch):
            self.store.append(tx)
        self.persist()
        return batch

    def remove_transaction(self, transaction_id: str) -> bool:
        self._require_loaded()
        removed = self.store.remove(transaction_id)
        if removed:
            self.persist()
        return removed

    def update_percentages(self, percentages: BusinessPercentages) -> BusinessPercentages:
        self._require_loaded()
        self.percentages = percentages
        self.persist()
        return percentages

    @property
    def extraction(self) -> Optional[ExtractionTask]:
        return self._extraction

    def begin_extraction(self, filename: str) -> ExtractionTask:
        with self._extraction_lock:
            if self._extraction is not None:
                raise ExtractionInProgress(f"Extraction of {self._extraction.filename} is still running")
            self._extraction = ExtractionTask(self, filename)
            return self._extraction

    def cancel_extraction(self) -> bool:
        with self._extraction_lock:
            if self._extraction is None:
                return False
            self._extraction.cancel()
            return True

    def _finish_extraction(self, task: ExtractionTask) -> None:
        with self._extraction_lock:
            if self._extraction is task:
                self._extraction = None

    def close(self) -> None:
        self.cancel_extraction()
        self.store.replace_all([])
        self.percentages = BusinessPercentages()
        self.state = NotLoaded()


class SessionManager:
    """Live sessions keyed by user id."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._user_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._lock:
            return self._user_locks.setdefault(user_id, threading.Lock())

    def _open(self, user: User) -> Session:
        # Caller holds the user's lock.
        session = Session(user)
        session.load()
        with self._lock:
            previous = self._sessions.get(user.id)
            self._sessions[user.id] = session
        if previous is not None:
            previous.close()
        return session

    def open(self, user: User) -> Session:
        with self._user_lock(user.id):
            return self._open(user)

    def get(self, user: User) -> Session:
        """Return the user's live session, loading one if needed. Concurrent first requests share it."""
        with self._user_lock(user.id):
            with self._lock:
                session = self._sessions.get(user.id)
            if session is None:
                return self._open(user)
            session.user = user
            return session

    def close(self, user_id: str) -> bool:
        with self._user_lock(user_id), self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        session.close()
        return True

    def clear(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()


sessions = SessionManager()
