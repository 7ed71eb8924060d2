import json
import threading
import time
from datetime import date
from decimal import Decimal

import pytest

import database
from models import BusinessPercentages, Platform, Transaction, TransactionCandidate, TransactionType, User
from store import (
    ExtractionInProgress,
    Loaded,
    NotLoaded,
    Session,
    SessionManager,
    SessionNotLoaded,
    TransactionStore,
    decode_payload,
    encode_payload,
)


def _tx(tx_id, gst="10", category="Car Expenses - Fuel", tx_type=TransactionType.EXPENSE, day=date(2025, 2, 1)):
    gst = Decimal(gst)
    return Transaction(
        id=tx_id,
        date=day,
        type=tx_type,
        category=category,
        gross_amount=gst * 11,
        gst_amount=gst,
        net_amount=gst * 10,
        platform=Platform.UBER,
    )


def _user(user_id="u-abc123"):
    database.create_user(user_id=user_id, email=f"{user_id}@example.com", name="Test", password="pw")
    return User(**database.get_user_by_id(user_id))


def _candidate(description, gst="5"):
    return TransactionCandidate(
        date=date(2025, 1, 5),
        description=description,
        type=TransactionType.EXPENSE,
        category="Parking",
        gross_amount=Decimal(gst) * 11,
        gst_amount=Decimal(gst),
        platform=Platform.OTHER,
        confidence=0.9,
    )


# ---- store -------------------------------------------------------------------


def test_append_puts_newest_first():
    store = TransactionStore()
    store.append(_tx("a"))
    store.append(_tx("b"))
    assert [tx.id for tx in store] == ["b", "a"]
    assert len(store) == 2


def test_remove_missing_id_is_a_noop():
    store = TransactionStore([_tx("a"), _tx("b")])
    assert store.remove("zzz") is False
    assert [tx.id for tx in store] == ["a", "b"]


def test_remove_and_replace_all():
    store = TransactionStore([_tx("a"), _tx("b")])
    assert store.remove("a") is True
    assert store.get("a") is None
    store.replace_all([_tx("c")])
    assert [tx.id for tx in store] == ["c"]


def test_transactions_are_immutable():
    tx = _tx("a")
    with pytest.raises(Exception):
        tx.gst_amount = Decimal(1)


# ---- payloads ----------------------------------------------------------------


def test_absent_payload_loads_empty_with_defaults():
    loaded = decode_payload(None)
    assert loaded.transactions == ()
    assert loaded.percentages == BusinessPercentages()


@pytest.mark.parametrize("payload", ["{not json", "[]", '{"transactions": [{"id": 1}]}', '"text"'])
def test_corrupt_payload_loads_empty_with_defaults(payload):
    loaded = decode_payload(payload)
    assert loaded == Loaded()


def test_payload_round_trip_keeps_decimals_and_percentages():
    percs = BusinessPercentages(motor_vehicle=75, mobile_phone=50)
    payload = encode_payload([_tx("a", gst="1.23")], percs)
    data = json.loads(payload)
    assert data["transactions"][0]["gstAmount"] == "1.23"
    assert data["percentages"]["motorVehicle"] == 75

    loaded = decode_payload(payload)
    assert loaded.transactions[0].gst_amount == Decimal("1.23")
    assert loaded.percentages == percs


def test_legacy_key_names_are_read():
    payload = json.dumps({
        "txs": [{
            "id": "t1", "date": "2024-08-02", "description": "Fuel", "type": "EXPENSE",
            "category": "Car Expenses - Fuel", "grossAmount": 55, "gstAmount": 5, "netAmount": 50,
            "platform": "Other", "confidence": 1,
        }],
        "percs": {"motorVehicle": 80, "mobilePhone": 30, "internet": 0, "musicSubscriptions": 0},
    })
    loaded = decode_payload(payload)
    assert loaded.transactions[0].id == "t1"
    assert loaded.percentages.motor_vehicle == 80


# ---- session -----------------------------------------------------------------


def test_session_refuses_work_before_load():
    session = Session(User(id="u-x", name="X", email="x@example.com"))
    assert isinstance(session.state, NotLoaded)
    with pytest.raises(SessionNotLoaded):
        session.summary(1)
    with pytest.raises(SessionNotLoaded):
        session.add_transaction(_tx("a"))


def test_new_user_loads_empty_and_persists_changes():
    user = _user()
    session = Session(user)
    session.load()
    assert session.loaded
    assert len(session.store) == 0

    session.add_transaction(_tx("a"))
    session.update_percentages(BusinessPercentages(motor_vehicle=100))

    reloaded = Session(user)
    reloaded.load()
    assert [tx.id for tx in reloaded.store] == ["a"]
    assert reloaded.percentages.motor_vehicle == 100
    assert reloaded.summary(3).total_paid == Decimal(10)


def test_corrupt_stored_data_falls_back_to_empty():
    user = _user()
    database.save_user_data(user.id, "{broken")
    session = Session(user)
    session.load()
    assert session.loaded
    assert len(session.store) == 0
    assert session.percentages == BusinessPercentages()


def test_failed_write_is_logged_not_raised(monkeypatch):
    user = _user()
    session = Session(user)
    session.load()

    def _boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(database, "save_user_data", _boom)
    session.add_transaction(_tx("a"))
    assert [tx.id for tx in session.store] == ["a"]


def test_remove_unknown_transaction_leaves_session_unchanged():
    user = _user()
    session = Session(user)
    session.load()
    session.add_transaction(_tx("a"))
    assert session.remove_transaction("missing") is False
    assert [tx.id for tx in session.store] == ["a"]


def test_batch_goes_ahead_of_existing_records_in_its_own_order():
    user = _user()
    session = Session(user)
    session.load()
    session.add_transaction(_tx("old"))

    added = session.add_batch([_candidate("first"), _candidate("second")], source_file="receipt.pdf")

    descriptions = [tx.description for tx in session.store]
    assert descriptions == ["first", "second", ""]
    assert all(tx.source_file == "receipt.pdf" for tx in added)
    assert len({tx.id for tx in added}) == 2
    assert added[0].net_amount == Decimal(50)


# ---- extraction slot ---------------------------------------------------------


def test_only_one_extraction_at_a_time():
    user = _user()
    session = Session(user)
    session.load()

    task = session.begin_extraction("a.png")
    with pytest.raises(ExtractionInProgress):
        session.begin_extraction("b.png")

    task.complete([_candidate("x")])
    assert session.extraction is None
    assert len(session.store) == 1
    session.begin_extraction("b.png").fail()
    assert session.extraction is None


def test_cancelled_extraction_is_discarded():
    user = _user()
    session = Session(user)
    session.load()

    task = session.begin_extraction("a.png")
    assert session.cancel_extraction() is True
    assert task.complete([_candidate("x")]) is None
    assert len(session.store) == 0
    assert session.cancel_extraction() is False


# ---- manager -----------------------------------------------------------------


def test_manager_scopes_sessions_per_user_and_tears_down():
    alice = _user("u-alice")
    bob = _user("u-bob")
    manager = SessionManager()

    a = manager.open(alice)
    a.add_transaction(_tx("alice-1"))
    b = manager.get(bob)
    assert len(b.store) == 0
    assert manager.get(alice) is a

    assert manager.close(alice.id) is True
    assert isinstance(a.state, NotLoaded)
    assert manager.close(alice.id) is False

    reopened = manager.get(alice)
    assert reopened is not a
    assert [tx.id for tx in reopened.store] == ["alice-1"]


def test_reopening_replaces_previous_session():
    alice = _user("u-alice")
    manager = SessionManager()
    first = manager.open(alice)
    second = manager.open(alice)
    assert first is not second
    assert not first.loaded
    assert manager.get(alice) is second


def test_concurrent_first_requests_share_one_session(monkeypatch):
    alice = _user("u-alice")
    manager = SessionManager()
    real_load = database.load_user_data

    def _slow(user_id):
        time.sleep(0.2)
        return real_load(user_id)

    monkeypatch.setattr(database, "load_user_data", _slow)

    got = []
    threads = [threading.Thread(target=lambda: got.append(manager.get(alice))) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(got) == 2
    assert got[0] is got[1]
    assert got[0].loaded
