import os
import sys
from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import SQLAlchemyError

os.environ["FLASK_ENV"] = "production"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import app as flask_app
from app import (
    ACCEPT,
    REJECT,
    Listing,
    Offer,
    User,
    db,
    complete_payment,
    find_competing_offers,
    reconcile_offers,
    resolve_offer,
    ticket_filename,
    transition_listing_status,
    transition_offer_status,
)
from errors import Conflict, Forbidden, MarketplaceError, NotFound, Unauthenticated, ValidationFailed
from schemas import CreateListingPayload, RespondToOfferPayload, validate_payload


@pytest.fixture
def app_context():
    flask_app.app.config["TESTING"] = True

    with flask_app.app.app_context():
        db.drop_all()
        flask_app.app.db_initialized = False
        db.create_all()
        yield
        db.session.remove()
        db.drop_all()
        flask_app.app.db_initialized = False


def create_user(email, username=None, password_hash="hashed"):
    user = User(
        email=email,
        username=username or email.split("@")[0],
        password_hash=password_hash,
    )
    db.session.add(user)
    db.session.commit()
    return SimpleNamespace(user_id=user.user_id, email=user.email, username=user.username)


def create_listing(owner, quantity=1, status="ACTIVE", price=5000, event_name="Spring Formal"):
    listing = Listing(
        user_id=owner.user_id,
        title=f"{event_name} tickets",
        event_name=event_name,
        event_date=datetime(2026, 12, 1, 20, 0),
        venue="Student Union",
        price_in_cents=price,
        quantity=quantity,
        status=status,
    )
    db.session.add(listing)
    db.session.commit()
    return listing.listing_id


def create_offer(listing_id, buyer, quantity=1, status="PENDING", price=4500):
    offer = Offer(
        listing_id=listing_id,
        buyer_id=buyer.user_id,
        offer_price_in_cents=price,
        quantity=quantity,
        message_template="make_offer",
        status=status,
    )
    db.session.add(offer)
    db.session.commit()
    return offer.offer_id


def offer_status(offer_id):
    return db.session.get(Offer, offer_id).status


def listing_status(listing_id):
    return db.session.get(Listing, listing_id).status


@pytest.fixture
def market(app_context):
    seller = create_user("seller@campus.edu")
    alice = create_user("alice@campus.edu")
    bob = create_user("bob@campus.edu")
    return SimpleNamespace(seller=seller, alice=alice, bob=bob)


def test_accept_rejects_competing_offers_and_sells_listing(market):
    listing_id = create_listing(market.seller, quantity=1)
    o1 = create_offer(listing_id, market.alice)
    o2 = create_offer(listing_id, market.bob)

    payload, message = resolve_offer(market.seller, o1, ACCEPT)

    assert message == "Offer accepted successfully"
    assert payload["status"] == "ACCEPTED"
    assert payload["listing"]["id"] == listing_id
    assert payload["listing"]["eventName"] == "Spring Formal"
    assert payload["buyer"] == {"id": market.alice.user_id, "username": "alice"}

    assert offer_status(o1) == "ACCEPTED"
    assert offer_status(o2) == "REJECTED"
    assert listing_status(listing_id) == "SOLD"

    with pytest.raises(Conflict) as excinfo:
        resolve_offer(market.seller, o2, ACCEPT)
    assert excinfo.value.message == "Offer is no longer pending"


def test_resolving_twice_is_a_conflict_and_changes_nothing(market):
    listing_id = create_listing(market.seller, quantity=3)
    offer_id = create_offer(listing_id, market.alice, quantity=1)

    resolve_offer(market.seller, offer_id, ACCEPT)
    updated_at = db.session.get(Offer, offer_id).updated_at

    with pytest.raises(Conflict):
        resolve_offer(market.seller, offer_id, ACCEPT)
    with pytest.raises(Conflict):
        resolve_offer(market.seller, offer_id, REJECT)

    offer = db.session.get(Offer, offer_id)
    assert offer.status == "ACCEPTED"
    assert offer.updated_at == updated_at
    assert listing_status(listing_id) == "ACTIVE"


def test_only_listing_owner_can_resolve(market):
    listing_id = create_listing(market.seller)
    o1 = create_offer(listing_id, market.alice)
    o2 = create_offer(listing_id, market.bob)

    with pytest.raises(Forbidden):
        resolve_offer(market.bob, o1, ACCEPT)
    with pytest.raises(Forbidden):
        resolve_offer(market.alice, o1, REJECT)

    assert offer_status(o1) == "PENDING"
    assert offer_status(o2) == "PENDING"
    assert listing_status(listing_id) == "ACTIVE"


def test_listing_sold_only_when_accepted_quantity_covers_it(market):
    partial_listing = create_listing(market.seller, quantity=2)
    partial_offer = create_offer(partial_listing, market.alice, quantity=1)
    resolve_offer(market.seller, partial_offer, ACCEPT)
    assert listing_status(partial_listing) == "ACTIVE"

    full_listing = create_listing(market.seller, quantity=2)
    full_offer = create_offer(full_listing, market.bob, quantity=2)
    resolve_offer(market.seller, full_offer, ACCEPT)
    assert listing_status(full_listing) == "SOLD"


def test_reject_leaves_siblings_and_listing_alone(market):
    listing_id = create_listing(market.seller)
    o1 = create_offer(listing_id, market.alice)
    o2 = create_offer(listing_id, market.bob)

    payload, message = resolve_offer(market.seller, o1, REJECT)

    assert message == "Offer rejected successfully"
    assert payload["status"] == "REJECTED"
    assert offer_status(o2) == "PENDING"
    assert listing_status(listing_id) == "ACTIVE"


def test_accept_requires_active_listing_but_reject_does_not(market):
    listing_id = create_listing(market.seller, status="INACTIVE")
    o1 = create_offer(listing_id, market.alice)
    o2 = create_offer(listing_id, market.bob)

    with pytest.raises(Conflict) as excinfo:
        resolve_offer(market.seller, o1, ACCEPT)
    assert excinfo.value.message == "Listing is no longer active"
    assert offer_status(o1) == "PENDING"

    payload, _ = resolve_offer(market.seller, o2, REJECT)
    assert payload["status"] == "REJECTED"


def test_missing_records_and_anonymous_actor(market):
    listing_id = create_listing(market.seller)
    offer_id = create_offer(listing_id, market.alice)
    orphan_id = create_offer(9999, market.alice)

    with pytest.raises(Unauthenticated):
        resolve_offer(None, offer_id, ACCEPT)

    with pytest.raises(NotFound) as missing_offer:
        resolve_offer(market.seller, 424242, ACCEPT)
    assert missing_offer.value.message == "Offer not found"

    with pytest.raises(NotFound) as missing_listing:
        resolve_offer(market.seller, orphan_id, ACCEPT)
    assert missing_listing.value.message == "Associated listing not found"

    with pytest.raises(ValidationFailed):
        resolve_offer(market.seller, offer_id, "maybe")
    assert offer_status(offer_id) == "PENDING"


def test_transition_offer_status_is_compare_and_set(market):
    listing_id = create_listing(market.seller)
    offer_id = create_offer(listing_id, market.alice)

    assert transition_offer_status(offer_id, "PENDING", "ACCEPTED") is True
    assert transition_offer_status(offer_id, "PENDING", "ACCEPTED") is False
    assert transition_offer_status(offer_id, "PENDING", "REJECTED") is False
    assert offer_status(offer_id) == "ACCEPTED"

    assert transition_listing_status(listing_id, "ACTIVE", "SOLD") is True
    assert transition_listing_status(listing_id, "ACTIVE", "SOLD") is False


def test_concurrent_accept_loses_at_write_time(market, monkeypatch):
    listing_id = create_listing(market.seller)
    offer_id = create_offer(listing_id, market.alice)
    real_transition = flask_app.transition_offer_status

    def racing_transition(target_id, expected, new_status):
        # Another request accepts the same offer between our read and our write.
        real_transition(target_id, "PENDING", "ACCEPTED")
        return real_transition(target_id, expected, new_status)

    monkeypatch.setattr(flask_app, "transition_offer_status", racing_transition)

    with pytest.raises(Conflict) as excinfo:
        resolve_offer(market.seller, offer_id, ACCEPT)
    assert excinfo.value.message == "Offer is no longer pending"


def test_find_competing_offers_excludes_target_and_terminal_offers(market):
    carol = create_user("carol@campus.edu")
    listing_id = create_listing(market.seller)
    target = create_offer(listing_id, market.alice)
    pending = create_offer(listing_id, market.bob)
    create_offer(listing_id, carol, status="REJECTED")

    other_listing = create_listing(market.seller)
    create_offer(other_listing, carol)

    competing = [o.offer_id for o in find_competing_offers(listing_id, target)]
    assert competing == [pending]


def test_failed_cascade_write_does_not_undo_acceptance(market, monkeypatch):
    carol = create_user("carol@campus.edu")
    listing_id = create_listing(market.seller)
    accepted = create_offer(listing_id, market.alice)
    stuck = create_offer(listing_id, market.bob)
    other = create_offer(listing_id, carol)
    real_transition = flask_app.transition_offer_status

    def flaky_transition(offer_id, expected, new_status):
        if offer_id == stuck:
            raise SQLAlchemyError("write failed")
        return real_transition(offer_id, expected, new_status)

    monkeypatch.setattr(flask_app, "transition_offer_status", flaky_transition)

    payload, _ = resolve_offer(market.seller, accepted, ACCEPT)

    assert payload["status"] == "ACCEPTED"
    assert offer_status(accepted) == "ACCEPTED"
    assert offer_status(stuck) == "PENDING"
    assert offer_status(other) == "REJECTED"
    assert listing_status(listing_id) == "SOLD"

    monkeypatch.undo()
    summary = reconcile_offers()
    assert summary["rejected_offers"] == 1
    assert offer_status(stuck) == "REJECTED"


def test_failed_listing_closure_is_suppressed(market, monkeypatch):
    listing_id = create_listing(market.seller)
    offer_id = create_offer(listing_id, market.alice)

    def broken_listing_write(*args, **kwargs):
        raise SQLAlchemyError("listing write failed")

    monkeypatch.setattr(flask_app, "transition_listing_status", broken_listing_write)

    payload, message = resolve_offer(market.seller, offer_id, ACCEPT)

    assert message == "Offer accepted successfully"
    assert payload["status"] == "ACCEPTED"
    assert listing_status(listing_id) == "ACTIVE"

    monkeypatch.undo()
    summary = reconcile_offers()
    assert summary["closed_listings"] == 1
    assert listing_status(listing_id) == "SOLD"


def test_buyer_lookup_failure_yields_null_buyer(market, monkeypatch):
    listing_id = create_listing(market.seller)
    offer_id = create_offer(listing_id, market.alice)

    def broken_lookup(user_id):
        raise SQLAlchemyError("users table unavailable")

    monkeypatch.setattr(flask_app, "get_public_user", broken_lookup)

    payload, _ = resolve_offer(market.seller, offer_id, ACCEPT)
    assert payload["buyer"] is None
    assert payload["status"] == "ACCEPTED"


def test_any_buyer_lookup_error_is_non_fatal(market, monkeypatch):
    listing_id = create_listing(market.seller)
    offer_id = create_offer(listing_id, market.alice)

    def broken_lookup(user_id):
        raise RuntimeError("identity service timed out")

    monkeypatch.setattr(flask_app, "get_public_user", broken_lookup)

    payload, message = resolve_offer(market.seller, offer_id, ACCEPT)
    assert message == "Offer accepted successfully"
    assert payload["buyer"] is None
    assert offer_status(offer_id) == "ACCEPTED"


def test_reconcile_offers_is_idempotent(market):
    listing_id = create_listing(market.seller, quantity=1)
    create_offer(listing_id, market.alice, status="ACCEPTED")
    leftover = create_offer(listing_id, market.bob)

    first = reconcile_offers()
    assert first["rejected_offers"] == 1
    assert first["closed_listings"] == 1
    assert offer_status(leftover) == "REJECTED"
    assert listing_status(listing_id) == "SOLD"

    second = reconcile_offers()
    assert second["rejected_offers"] == 0
    assert second["closed_listings"] == 0


def test_reconcile_reports_double_accepted_listing(market):
    listing_id = create_listing(market.seller, quantity=5)
    create_offer(listing_id, market.alice, status="ACCEPTED")
    create_offer(listing_id, market.bob, status="ACCEPTED")

    summary = reconcile_offers()
    assert summary["conflicting_listings"] == [listing_id]
    assert listing_status(listing_id) == "ACTIVE"


def test_respond_payload_validation_details():
    assert validate_payload(RespondToOfferPayload, {"response": "accept"}).response == "accept"

    with pytest.raises(ValidationFailed) as excinfo:
        validate_payload(RespondToOfferPayload, {"response": "maybe"})
    assert excinfo.value.message == "Invalid request data"
    assert "response" in excinfo.value.details["fieldErrors"]

    with pytest.raises(ValidationFailed) as not_an_object:
        validate_payload(RespondToOfferPayload, None)
    assert not_an_object.value.details["formErrors"] == ["Expected a JSON object"]


def test_listing_payload_uses_wire_names_and_bounds():
    payload = validate_payload(
        CreateListingPayload,
        {
            "title": "Two tickets",
            "eventName": "Homecoming Game",
            "eventDate": "2026-11-07T18:00:00Z",
            "priceInCents": 2500,
            "quantity": 2,
        },
    )
    assert payload.event_name == "Homecoming Game"
    assert payload.price_in_cents == 2500

    with pytest.raises(ValidationFailed) as excinfo:
        validate_payload(
            CreateListingPayload,
            {
                "title": "ok title",
                "eventName": "Homecoming Game",
                "eventDate": "2026-11-07T18:00:00Z",
                "priceInCents": 50,
                "quantity": 11,
            },
        )
    field_errors = excinfo.value.details["fieldErrors"]
    assert set(field_errors) == {"priceInCents", "quantity"}


def test_payment_completes_accepted_offer_and_closes_listing(market):
    listing_id = create_listing(market.seller, quantity=2)
    offer_id = create_offer(listing_id, market.alice, quantity=2, status="ACCEPTED", price=9000)

    payload, payment = complete_payment(market.alice, offer_id)

    assert payload["status"] == "COMPLETED"
    assert payment["status"] == "succeeded"
    assert payment["amount"] == 9000
    assert payment["id"].startswith("pi_mock_")
    assert offer_status(offer_id) == "COMPLETED"
    assert listing_status(listing_id) == "SOLD"


def test_partial_payment_leaves_listing_active(market):
    listing_id = create_listing(market.seller, quantity=3)
    offer_id = create_offer(listing_id, market.alice, quantity=1, status="ACCEPTED")

    complete_payment(market.alice, offer_id)
    assert offer_status(offer_id) == "COMPLETED"
    assert listing_status(listing_id) == "ACTIVE"


def test_payment_requires_buyer_and_accepted_offer(market):
    listing_id = create_listing(market.seller, quantity=5)
    pending = create_offer(listing_id, market.alice)
    accepted = create_offer(listing_id, market.bob, status="ACCEPTED")

    with pytest.raises(NotFound):
        complete_payment(market.alice, 9999)
    with pytest.raises(Forbidden) as not_buyer:
        complete_payment(market.seller, accepted)
    assert not_buyer.value.message == "Not authorized to pay for this offer"
    with pytest.raises(Conflict) as not_accepted:
        complete_payment(market.alice, pending)
    assert not_accepted.value.message == "Offer must be accepted before payment"

    complete_payment(market.bob, accepted)
    with pytest.raises(Conflict):
        complete_payment(market.bob, accepted)
    assert offer_status(pending) == "PENDING"


def test_failed_payment_keeps_offer_accepted(market, monkeypatch):
    listing_id = create_listing(market.seller)
    offer_id = create_offer(listing_id, market.alice, status="ACCEPTED")

    def declined_card(offer, listing):
        return {"id": "pi_mock_declined", "amount": offer.offer_price_in_cents, "status": "failed"}

    monkeypatch.setattr(flask_app, "simulate_payment", declined_card)

    with pytest.raises(MarketplaceError) as excinfo:
        complete_payment(market.alice, offer_id)
    assert excinfo.value.message == "Payment failed"
    assert excinfo.value.details["status"] == "failed"
    assert offer_status(offer_id) == "ACCEPTED"
    assert listing_status(listing_id) == "ACTIVE"


def test_reconcile_treats_paid_offer_like_accepted(market):
    listing_id = create_listing(market.seller, quantity=1)
    create_offer(listing_id, market.alice, status="COMPLETED")
    leftover = create_offer(listing_id, market.bob)

    summary = reconcile_offers()
    assert summary["rejected_offers"] == 1
    assert summary["closed_listings"] == 1
    assert offer_status(leftover) == "REJECTED"
    assert listing_status(listing_id) == "SOLD"


def test_sold_and_inactive_listings_do_not_transition(market):
    sold_id = create_listing(market.seller, status="SOLD")
    inactive_id = create_listing(market.seller, status="INACTIVE")

    assert transition_listing_status(sold_id, "ACTIVE", "INACTIVE") is False
    assert transition_listing_status(inactive_id, "ACTIVE", "SOLD") is False
    assert listing_status(sold_id) == "SOLD"
    assert listing_status(inactive_id) == "INACTIVE"


def test_ticket_filename_replaces_non_alphanumerics():
    assert ticket_filename("Aurora Nights: Tour '26", 7) == "ticket-Aurora-Nights--Tour--26-7.txt"
