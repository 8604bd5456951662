import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from membership_service.database import Base
from membership_service.errors import DuplicateError, IdentityError, StorageError
from membership_service.identity import IdentityResolver, IdentityStore
from membership_service.models import Identity, Payment, RateLimitWindow
from membership_service.payments import PaymentLedger, PaymentRecorder
from membership_service.profiles import ProfileStore
from membership_service.rate_limit import RateLimiter

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_stores.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def identities():
    return IdentityStore(TestingSessionLocal)


@pytest.fixture
def profiles():
    return ProfileStore(TestingSessionLocal)


@pytest.fixture
def resolver(identities, profiles):
    return IdentityResolver(identities, profiles)


def record(recorder, order_id="order_1", cf_payment_id="pay_1", **kwargs):
    return recorder.record(
        order_id=order_id,
        cf_payment_id=cf_payment_id,
        email=kwargs.get("email", "alice@example.com"),
        name="Alice",
        phone="9876543210",
        amount=1.0,
        method=kwargs.get("method"),
        status=kwargs.get("status", "SUCCESS"),
    )


# ── ledger / recorder ───────────────────────────────────────────────


def test_ledger_not_found_is_false():
    ledger = PaymentLedger(TestingSessionLocal)

    assert ledger.has_been_processed(cf_payment_id="pay_x") is False
    assert ledger.has_been_processed(order_id="order_x") is False
    assert ledger.has_been_processed() is False


def test_ledger_finds_by_either_key():
    payment_id = record(PaymentRecorder(TestingSessionLocal))
    ledger = PaymentLedger(TestingSessionLocal)

    assert ledger.find(cf_payment_id="pay_1").id == payment_id
    assert ledger.find(order_id="order_1").id == payment_id
    assert ledger.has_been_processed(cf_payment_id="pay_other", order_id="order_1") is True


def test_ledger_storage_failure_raises(mocker):
    broken = mocker.Mock()
    broken.return_value.query.side_effect = OperationalError("SELECT 1", {}, Exception("db down"))
    ledger = PaymentLedger(broken)

    with pytest.raises(StorageError):
        ledger.has_been_processed(order_id="order_1")


def test_recorder_rejects_duplicate_payment_id():
    recorder = PaymentRecorder(TestingSessionLocal)
    record(recorder)

    with pytest.raises(DuplicateError):
        record(recorder, order_id="order_2", cf_payment_id="pay_1")


def test_recorder_rejects_duplicate_order_id():
    recorder = PaymentRecorder(TestingSessionLocal)
    record(recorder)

    with pytest.raises(DuplicateError):
        record(recorder, order_id="order_1", cf_payment_id="pay_2")


def test_duplicate_is_a_storage_error():
    assert issubclass(DuplicateError, StorageError)


def test_recorder_uppercases_status_and_defaults_method():
    record(PaymentRecorder(TestingSessionLocal), status="success")

    db = TestingSessionLocal()
    payment = db.query(Payment).one()
    assert payment.status == "SUCCESS"
    assert payment.payment_method == "online"
    assert payment.payment_timestamp is not None
    db.close()


def test_recorder_rejects_unknown_status():
    with pytest.raises(StorageError):
        record(PaymentRecorder(TestingSessionLocal), status="captured")


# ── profiles ────────────────────────────────────────────────────────


def test_profile_upsert_inserts_then_updates(profiles):
    profiles.upsert("ident-1", "alice@example.com", "Alice", "9876543210", "payment-1")
    created_at = profiles.get("ident-1").created_at

    profiles.upsert("ident-1", "alice@example.com", "Alice B", "9876543210", "payment-2")

    profile = profiles.get("ident-1")
    assert profile.name == "Alice B"
    assert profile.payment_id == "payment-2"
    assert profile.membership_status == "active"
    assert profile.created_at == created_at
    assert profiles.find_by_payment("payment-2").id == "ident-1"
    assert profiles.find_by_payment("payment-1") is None


def test_profile_email_conflict_is_storage_error(profiles):
    profiles.upsert("ident-1", "alice@example.com", "Alice", "1", "payment-1")

    with pytest.raises(StorageError):
        profiles.upsert("ident-2", "alice@example.com", "Alice", "1", "payment-2")


# ── identity resolver ───────────────────────────────────────────────


def test_resolver_prefers_profile(resolver, profiles, identities, mocker):
    profiles.upsert("ident-p", "alice@example.com", "Alice", "1", "payment-1")
    scan = mocker.spy(identities, "list_identities")

    assert resolver.resolve_or_create("Alice@Example.com", "Alice", "1") == ("ident-p", False)
    scan.assert_not_called()


def test_resolver_scans_every_identity_page(resolver, identities):
    for n in range(5):
        identities.create_identity(f"user{n}@example.com")

    identity_id, is_new = resolver.resolve_or_create("user4@example.com", "U", "1")

    assert is_new is False
    assert identities.find_by_email("user4@example.com", per_page=2).id == identity_id


def test_resolver_creates_confirmed_identity(resolver, identities):
    identity_id, is_new = resolver.resolve_or_create("new@example.com", "New", "9999999999")

    assert is_new is True
    identity = identities.get_identity(identity_id)
    assert identity.confirmed
    assert identity.user_metadata == {"name": "New", "phone": "9999999999"}


def test_resolver_fails_closed_when_refetch_misses(resolver, identities, mocker):
    mocker.patch.object(identities, "get_identity", return_value=None)

    with pytest.raises(IdentityError):
        resolver.resolve_or_create("ghost@example.com", "Ghost", "1")

    db = TestingSessionLocal()
    assert db.query(Identity).count() == 0
    db.close()


def test_resolver_concurrent_create_returns_winner(resolver, identities, mocker):
    winner_id = identities.create_identity("race@example.com", email_confirm=True)
    # Our scan ran before the winner committed.
    mocker.patch.object(identities, "find_by_email", side_effect=[None, identities.get_identity(winner_id)])

    assert resolver.resolve_or_create("race@example.com", "R", "1") == (winner_id, False)


def test_resolver_wraps_lookup_failures(resolver, profiles, mocker):
    mocker.patch.object(profiles, "find_by_email", side_effect=StorageError("db down"))

    with pytest.raises(IdentityError):
        resolver.resolve_or_create("alice@example.com", "Alice", "1")


def test_delete_identity(identities):
    identity_id = identities.create_identity("bye@example.com")

    identities.delete_identity(identity_id)
    identities.delete_identity(identity_id)

    assert identities.get_identity(identity_id) is None


def test_create_identity_normalises_email(identities):
    identity_id = identities.create_identity("  Mixed@Example.COM ")

    assert identities.get_identity(identity_id).email == "mixed@example.com"


def test_payment_history_ignores_email_case():
    record(PaymentRecorder(TestingSessionLocal))

    history = PaymentLedger(TestingSessionLocal).history_for("Alice@Example.com")

    assert [p.cf_payment_id for p in history] == ["pay_1"]


# ── rate limiter ────────────────────────────────────────────────────


def test_rate_limiter_counts_per_window():
    now = {"t": 1_000_020}
    limiter = RateLimiter(TestingSessionLocal, max_requests=2, window_seconds=60, clock=lambda: now["t"])

    assert [limiter.is_limited("1.2.3.4") for _ in range(3)] == [False, False, True]
    assert limiter.is_limited("5.6.7.8") is False

    now["t"] += 60
    assert limiter.is_limited("1.2.3.4") is False


def test_rate_limiter_is_shared_between_instances():
    clock = lambda: 1_000_020  # noqa: E731
    first = RateLimiter(TestingSessionLocal, max_requests=2, window_seconds=60, clock=clock)
    second = RateLimiter(TestingSessionLocal, max_requests=2, window_seconds=60, clock=clock)

    assert first.is_limited("client") is False
    assert second.is_limited("client") is False
    assert first.is_limited("client") is True
    assert second.is_limited("client") is True


def test_rate_limiter_prunes_expired_windows_of_other_clients():
    now = {"t": 1_000_020}
    limiter = RateLimiter(TestingSessionLocal, max_requests=2, window_seconds=60, clock=lambda: now["t"])
    limiter.is_limited("one-off")

    now["t"] += 120
    assert limiter.is_limited("regular") is False

    db = TestingSessionLocal()
    assert [w.client_key for w in db.query(RateLimitWindow).all()] == ["regular"]
    db.close()
