import logging
import math
import re
from datetime import datetime, timezone
from functools import wraps
from uuid import uuid4

import click
from flask import Flask, Response, g, jsonify, request, session
from flask_bcrypt import Bcrypt
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func, or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

from config import (
    CASCADE_BATCH_LIMIT,
    LISTINGS_MAX_PAGE_SIZE,
    LISTINGS_PAGE_SIZE,
    LOG_LEVEL,
    REJECT_REQUIRES_ACTIVE_LISTING,
    SECRET_KEY,
    SQLALCHEMY_DATABASE_URI,
    SQLALCHEMY_TRACK_MODIFICATIONS,
)
from errors import (
    Conflict,
    Forbidden,
    MarketplaceError,
    NotFound,
    Unauthenticated,
    ValidationFailed,
)
from schemas import (
    CreateListingPayload,
    CreateOfferPayload,
    LoginPayload,
    MockPayPayload,
    RegisterPayload,
    RespondToOfferPayload,
    UpdateListingPayload,
    validate_payload,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

app.config["SQLALCHEMY_DATABASE_URI"] = SQLALCHEMY_DATABASE_URI
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = SQLALCHEMY_TRACK_MODIFICATIONS
app.config["SECRET_KEY"] = SECRET_KEY
app.secret_key = SECRET_KEY

db = SQLAlchemy(app)
bcrypt = Bcrypt(app)


@app.before_request
def initialize_database():
    if not getattr(app, "db_initialized", False):
        with app.app_context():
            db.create_all()
        app.db_initialized = True


# ---------- STATUSES ----------

LISTING_ACTIVE = "ACTIVE"
LISTING_INACTIVE = "INACTIVE"
LISTING_SOLD = "SOLD"

OFFER_PENDING = "PENDING"
OFFER_ACCEPTED = "ACCEPTED"
OFFER_REJECTED = "REJECTED"
OFFER_COMPLETED = "COMPLETED"

ACCEPT = "accept"
REJECT = "reject"


# ---------- DATABASE MODEL ----------

class User(db.Model):
    user_id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    username = db.Column(db.String(20), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    listings = db.relationship("Listing", backref="seller", lazy=True)
    offers = db.relationship("Offer", backref="buyer", lazy=True)


class Listing(db.Model):
    listing_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.user_id"), nullable=False, index=True)
    title = db.Column(db.String(100), nullable=False)
    event_name = db.Column(db.String(200), nullable=False)
    event_date = db.Column(db.DateTime, nullable=False)
    venue = db.Column(db.String(200), nullable=True)
    price_in_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    description = db.Column(db.Text, nullable=True)
    ticket_type = db.Column(db.String(50), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=LISTING_ACTIVE, index=True)
    # ACTIVE → SOLD (offer accepted or paid) | INACTIVE (deleted by owner); both final
    views = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    offers = db.relationship("Offer", backref="listing", lazy=True)


class Offer(db.Model):
    offer_id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listing.listing_id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("user.user_id"), nullable=False, index=True)
    offer_price_in_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    message_template = db.Column(db.String(30), nullable=False, default="asking_price")
    custom_message = db.Column(db.String(200), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=OFFER_PENDING, index=True)
    # PENDING → ACCEPTED | REJECTED, ACCEPTED → COMPLETED (paid), never back
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


# ---------- HELPERS ----------

def require_auth():
    """Return the signed-in user or raise ``Unauthenticated``."""
    user_id = session.get("user_id")
    if not user_id:
        raise Unauthenticated()

    user = db.session.get(User, user_id)
    if user is None:
        session.pop("user_id", None)
        raise Unauthenticated()
    return user


def current_user_or_none():
    user_id = session.get("user_id")
    if not user_id:
        return None
    return db.session.get(User, user_id)


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        g.current_user = require_auth()
        return f(*args, **kwargs)
    return decorated


def get_json_body():
    return request.get_json(silent=True)


def to_naive_utc(value):
    """Store datetimes as naive UTC so SQLite and PostgreSQL agree."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() if value else None


def parse_date_param(value):
    """Parse an ISO date/datetime query parameter; ``None`` when absent."""
    if not value:
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise ValidationFailed(
            details={"formErrors": [], "fieldErrors": {"eventDate": ["Invalid date format"]}}
        )


def build_listing_filter(search):
    like_pattern = f"%{search.strip().lower()}%"
    return or_(
        Listing.title.ilike(like_pattern),
        Listing.event_name.ilike(like_pattern),
        Listing.venue.ilike(like_pattern),
    )


# ---------- SERIALIZATION ----------

def serialize_listing(listing):
    return {
        "id": listing.listing_id,
        "userId": listing.user_id,
        "title": listing.title,
        "eventName": listing.event_name,
        "eventDate": isoformat(listing.event_date),
        "venue": listing.venue,
        "priceInCents": listing.price_in_cents,
        "quantity": listing.quantity,
        "description": listing.description,
        "ticketType": listing.ticket_type,
        "status": listing.status,
        "views": listing.views,
        "createdAt": isoformat(listing.created_at),
        "updatedAt": isoformat(listing.updated_at),
    }


def listing_snapshot(listing):
    return {
        "id": listing.listing_id,
        "title": listing.title,
        "eventName": listing.event_name,
        "eventDate": isoformat(listing.event_date),
        "priceInCents": listing.price_in_cents,
    }


def serialize_offer(offer):
    return {
        "id": offer.offer_id,
        "listingId": offer.listing_id,
        "buyerId": offer.buyer_id,
        "offerPriceInCents": offer.offer_price_in_cents,
        "quantity": offer.quantity,
        "messageTemplate": offer.message_template,
        "customMessage": offer.custom_message,
        "status": offer.status,
        "createdAt": isoformat(offer.created_at),
        "updatedAt": isoformat(offer.updated_at),
    }


def get_public_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return None
    return {"id": user.user_id, "username": user.username}


def lookup_public_user(user_id, fields=("id", "username")):
    """Best-effort user lookup for response enrichment; ``None`` on failure."""
    if not user_id:
        return None
    try:
        info = get_public_user(user_id)
    except Exception:
        db.session.rollback()
        logger.warning("Could not fetch user info for user %s", user_id, exc_info=True)
        return None
    if info is None:
        return None
    return {key: info[key] for key in fields}


# ---------- STORE PRIMITIVES ----------

def transition_offer_status(offer_id, expected, new_status):
    """Set ``new_status`` only if the offer still has ``expected`` status.

    Returns False when the row was not in the expected state at write time.
    """
    updated = (
        Offer.query.filter_by(offer_id=offer_id, status=expected)
        .update(
            {"status": new_status, "updated_at": datetime.utcnow()},
            synchronize_session=False,
        )
    )
    db.session.commit()
    return updated == 1


def transition_listing_status(listing_id, expected, new_status):
    updated = (
        Listing.query.filter_by(listing_id=listing_id, status=expected)
        .update(
            {"status": new_status, "updated_at": datetime.utcnow()},
            synchronize_session=False,
        )
    )
    db.session.commit()
    return updated == 1


def find_competing_offers(listing_id, exclude_offer_id, limit=CASCADE_BATCH_LIMIT):
    return (
        Offer.query.filter(
            Offer.listing_id == listing_id,
            Offer.status == OFFER_PENDING,
            Offer.offer_id != exclude_offer_id,
        )
        .order_by(Offer.created_at, Offer.offer_id)
        .limit(limit)
        .all()
    )


# ---------- OFFER RESOLUTION ----------

def reject_competing_offers(listing_id, accepted_offer_id):
    """Reject the other pending offers on a listing, one write per offer.

    A failed write is logged and skipped; it never undoes the acceptance.
    Returns ``(rejected_ids, failed_ids)``.
    """
    rejected, failed = [], []
    try:
        competing_ids = [o.offer_id for o in find_competing_offers(listing_id, accepted_offer_id)]
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Could not load competing offers for listing %s", listing_id, exc_info=True)
        return rejected, failed

    for other_id in competing_ids:
        try:
            if transition_offer_status(other_id, OFFER_PENDING, OFFER_REJECTED):
                rejected.append(other_id)
        except SQLAlchemyError:
            db.session.rollback()
            failed.append(other_id)
            logger.warning(
                "Could not reject competing offer %s on listing %s", other_id, listing_id, exc_info=True
            )
    return rejected, failed


def close_listing_if_filled(listing_id, offer_quantity, listing_quantity):
    """Mark the listing SOLD when the accepted quantity covers it."""
    if offer_quantity < listing_quantity:
        return False
    try:
        closed = transition_listing_status(listing_id, LISTING_ACTIVE, LISTING_SOLD)
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Could not mark listing %s as sold", listing_id, exc_info=True)
        return False
    if closed:
        logger.info("Listing %s marked %s", listing_id, LISTING_SOLD)
    return closed


def resolve_offer(actor, offer_id, decision):
    """Accept or reject a pending offer on one of ``actor``'s listings.

    The offer's own status change is the commit point. Rejecting competing
    offers and closing the listing happen afterwards and only log on failure.
    Returns ``(offer_payload, message)``.
    """
    if actor is None:
        raise Unauthenticated()
    if decision not in (ACCEPT, REJECT):
        raise ValidationFailed(
            details={"formErrors": [], "fieldErrors": {"response": ["Response must be accept or reject"]}}
        )

    offer = db.session.get(Offer, offer_id)
    if offer is None:
        raise NotFound("Offer not found")

    listing = db.session.get(Listing, offer.listing_id)
    if listing is None:
        raise NotFound("Associated listing not found")

    if listing.user_id != actor.user_id:
        raise Forbidden("Not authorized to respond to this offer")

    if offer.status != OFFER_PENDING:
        raise Conflict("Offer is no longer pending")

    if listing.status != LISTING_ACTIVE and (decision == ACCEPT or REJECT_REQUIRES_ACTIVE_LISTING):
        raise Conflict("Listing is no longer active")

    listing_id = listing.listing_id
    buyer_id = offer.buyer_id
    offer_quantity = offer.quantity
    listing_quantity = listing.quantity

    new_status = OFFER_ACCEPTED if decision == ACCEPT else OFFER_REJECTED
    if not transition_offer_status(offer_id, OFFER_PENDING, new_status):
        raise Conflict("Offer is no longer pending")
    logger.info("Offer %s %s by user %s", offer_id, new_status, actor.user_id)

    if decision == ACCEPT:
        rejected, failed = reject_competing_offers(listing_id, offer_id)
        if rejected:
            logger.info("Rejected %d competing offers on listing %s", len(rejected), listing_id)
        if failed:
            logger.warning("Competing offers %s on listing %s are still pending", failed, listing_id)
        close_listing_if_filled(listing_id, offer_quantity, listing_quantity)

    db.session.refresh(offer)
    db.session.refresh(listing)

    payload = serialize_offer(offer)
    payload["listing"] = listing_snapshot(listing)
    payload["buyer"] = lookup_public_user(buyer_id)
    return payload, f"Offer {new_status.lower()} successfully"


def reconcile_offers():
    """Repair listings left inconsistent by an interrupted acceptance.

    Rejects pending offers next to an accepted or paid one and closes ACTIVE
    listings whose accepted offer covers their quantity.
    """
    summary = {"rejected_offers": 0, "closed_listings": 0, "conflicting_listings": []}

    accepted = (
        db.session.query(Offer.offer_id, Offer.listing_id, Offer.quantity)
        .filter(Offer.status.in_((OFFER_ACCEPTED, OFFER_COMPLETED)))
        .order_by(Offer.updated_at, Offer.offer_id)
        .all()
    )

    seen = set()
    for offer_id, listing_id, quantity in accepted:
        if listing_id in seen:
            logger.warning("Listing %s has more than one accepted offer", listing_id)
            if listing_id not in summary["conflicting_listings"]:
                summary["conflicting_listings"].append(listing_id)
            continue
        seen.add(listing_id)

        rejected, _ = reject_competing_offers(listing_id, offer_id)
        summary["rejected_offers"] += len(rejected)

        listing = db.session.get(Listing, listing_id)
        if listing is not None and listing.status == LISTING_ACTIVE:
            if close_listing_if_filled(listing_id, quantity, listing.quantity):
                summary["closed_listings"] += 1

    if summary["rejected_offers"] or summary["closed_listings"]:
        logger.info(
            "Reconciliation rejected %d offers and closed %d listings",
            summary["rejected_offers"],
            summary["closed_listings"],
        )
    return summary


@app.cli.command("reconcile-offers")
def reconcile_offers_command():
    """Reject stale pending offers and close fully accepted listings."""
    summary = reconcile_offers()
    click.echo(
        f"Rejected {summary['rejected_offers']} offers, "
        f"closed {summary['closed_listings']} listings."
    )
    for listing_id in summary["conflicting_listings"]:
        click.echo(f"Listing {listing_id} has more than one accepted offer; needs manual review.")


# ---------- ERROR HANDLING ----------

@app.errorhandler(MarketplaceError)
def handle_marketplace_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


@app.errorhandler(HTTPException)
def handle_http_error(exc):
    if exc.code is None or exc.code < 400:
        return exc
    return jsonify({"error": exc.description}), exc.code


@app.errorhandler(Exception)
def handle_unexpected_error(exc):
    db.session.rollback()
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error", "details": str(exc)}), 500


# ---------- AUTH ----------

@app.route("/api/auth/register", methods=["POST"])
def register():
    payload = validate_payload(RegisterPayload, get_json_body())
    email = payload.email.lower()

    if User.query.filter_by(email=email).first():
        raise MarketplaceError("Email is already registered")
    if User.query.filter_by(username=payload.username).first():
        raise MarketplaceError("Username is already taken")

    user = User(
        email=email,
        username=payload.username,
        password_hash=bcrypt.generate_password_hash(payload.password).decode("utf-8"),
    )
    try:
        db.session.add(user)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise MarketplaceError("Email or username is already registered")

    session["user_id"] = user.user_id
    logger.info("Registered user %s", user.user_id)
    return jsonify({"user": {"id": user.user_id, "email": user.email, "username": user.username}}), 201


@app.route("/api/auth/login", methods=["POST"])
def login():
    payload = validate_payload(LoginPayload, get_json_body())
    user = User.query.filter_by(email=payload.email.lower()).first()

    if not user or not bcrypt.check_password_hash(user.password_hash, payload.password):
        raise Unauthenticated("Incorrect email or password")

    session["user_id"] = user.user_id
    return jsonify({"user": {"id": user.user_id, "email": user.email, "username": user.username}})


@app.route("/api/auth/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"message": "Logged out"})


@app.route("/api/auth/me")
@login_required
def me():
    user = g.current_user
    return jsonify({
        "user": {
            "id": user.user_id,
            "email": user.email,
            "username": user.username,
            "createdAt": isoformat(user.created_at),
        }
    })


# ---------- LISTINGS ----------

REQUIRED_LISTING_FIELDS = {"title", "event_name", "event_date", "price_in_cents", "quantity"}


def offer_counts(listing_ids, status=None):
    if not listing_ids:
        return {}
    query = db.session.query(Offer.listing_id, func.count(Offer.offer_id)).filter(
        Offer.listing_id.in_(listing_ids)
    )
    if status:
        query = query.filter(Offer.status == status)
    return dict(query.group_by(Offer.listing_id).all())


def get_owned_listing(listing_id, user, action):
    listing = db.session.get(Listing, listing_id)
    if listing is None:
        raise NotFound("Listing not found")
    if listing.user_id != user.user_id:
        raise Forbidden(f"Not authorized to {action} this listing")
    return listing


@app.route("/api/listings")
def list_listings():
    page = max(request.args.get("page", 1, type=int), 1)
    limit = request.args.get("limit", LISTINGS_PAGE_SIZE, type=int)
    limit = min(max(limit, 1), LISTINGS_MAX_PAGE_SIZE)
    search = request.args.get("search", "").strip()
    event_date = parse_date_param(request.args.get("eventDate"))

    query = Listing.query.filter_by(status=LISTING_ACTIVE)
    if search:
        query = query.filter(build_listing_filter(search))
    if event_date:
        query = query.filter(Listing.event_date >= event_date)

    total = query.count()
    listings = (
        query.order_by(Listing.created_at.desc(), Listing.listing_id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    counts = offer_counts([l.listing_id for l in listings])

    items = []
    for listing in listings:
        item = serialize_listing(listing)
        item["user"] = {"id": listing.seller.user_id, "username": listing.seller.username}
        item["offerCount"] = counts.get(listing.listing_id, 0)
        items.append(item)

    return jsonify({
        "listings": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit),
        },
    })


@app.route("/api/listings/popular-events")
def popular_events():
    rows = (
        db.session.query(
            Listing.event_name,
            func.sum(Listing.quantity),
            func.sum(Listing.price_in_cents * Listing.quantity),
            func.count(Listing.listing_id),
        )
        .filter(Listing.status == LISTING_ACTIVE)
        .group_by(Listing.event_name)
        .all()
    )

    events = []
    for event_name, count, total_price, listing_count in rows:
        count = int(count or 0)
        if count <= 0:
            continue
        events.append({
            "eventName": event_name,
            "count": count,
            "averagePrice": math.floor(int(total_price) / count + 0.5),
            "listingCount": listing_count,
        })

    events.sort(key=lambda e: (-e["count"], e["eventName"]))
    return jsonify(events[:10])


@app.route("/api/listings/<int:listing_id>")
def listing_detail(listing_id):
    viewer = current_user_or_none()
    listing = db.session.get(Listing, listing_id)
    is_owner = bool(viewer and listing and listing.user_id == viewer.user_id)

    if listing is None or (listing.status != LISTING_ACTIVE and not is_owner):
        raise NotFound("Listing not found")

    if not is_owner:
        listing.views = (listing.views or 0) + 1
        db.session.commit()

    pending = (
        Offer.query.filter_by(listing_id=listing_id, status=OFFER_PENDING)
        .order_by(Offer.created_at.desc(), Offer.offer_id.desc())
        .all()
    )

    data = serialize_listing(listing)
    data["user"] = {
        "id": listing.seller.user_id,
        "username": listing.seller.username,
        "createdAt": isoformat(listing.seller.created_at),
    }
    data["offers"] = [
        {
            "id": o.offer_id,
            "offerPriceInCents": o.offer_price_in_cents,
            "quantity": o.quantity,
            "createdAt": isoformat(o.created_at),
            "buyer": {"username": o.buyer.username},
        }
        for o in pending
    ]
    return jsonify(data)


@app.route("/api/listings", methods=["POST"])
@login_required
def create_listing():
    user = g.current_user
    payload = validate_payload(CreateListingPayload, get_json_body())

    listing = Listing(
        user_id=user.user_id,
        title=payload.title,
        event_name=payload.event_name,
        event_date=to_naive_utc(payload.event_date),
        venue=payload.venue,
        price_in_cents=payload.price_in_cents,
        quantity=payload.quantity,
        description=payload.description,
        ticket_type=payload.ticket_type,
        status=LISTING_ACTIVE,
    )
    db.session.add(listing)
    db.session.commit()
    logger.info("Listing %s created by user %s", listing.listing_id, user.user_id)

    data = serialize_listing(listing)
    data["user"] = {"id": user.user_id, "username": user.username}
    return jsonify(data), 201


@app.route("/api/listings/<int:listing_id>", methods=["PUT"])
@login_required
def update_listing(listing_id):
    listing = get_owned_listing(listing_id, g.current_user, "update")
    if listing.status != LISTING_ACTIVE:
        raise Conflict("Listing is no longer active")
    payload = validate_payload(UpdateListingPayload, get_json_body())

    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field in REQUIRED_LISTING_FIELDS:
            continue
        if field == "event_date":
            value = to_naive_utc(value)
        setattr(listing, field, value)
    listing.updated_at = datetime.utcnow()
    db.session.commit()
    logger.info("Listing %s updated", listing_id)

    data = serialize_listing(listing)
    data["user"] = {"id": listing.seller.user_id, "username": listing.seller.username}
    return jsonify(data)


@app.route("/api/listings/<int:listing_id>", methods=["DELETE"])
@login_required
def delete_listing(listing_id):
    get_owned_listing(listing_id, g.current_user, "delete")
    if not transition_listing_status(listing_id, LISTING_ACTIVE, LISTING_INACTIVE):
        raise Conflict("Listing is no longer active")
    logger.info("Listing %s delisted by owner", listing_id)
    return jsonify({"message": "Listing deleted successfully"})


@app.route("/api/dashboard/listings")
@login_required
def my_listings():
    user = g.current_user
    listings = (
        Listing.query.filter_by(user_id=user.user_id)
        .order_by(Listing.created_at.desc(), Listing.listing_id.desc())
        .all()
    )
    pending_counts = offer_counts([l.listing_id for l in listings], status=OFFER_PENDING)

    items = []
    for listing in listings:
        item = serialize_listing(listing)
        item["pendingOfferCount"] = pending_counts.get(listing.listing_id, 0)
        items.append(item)
    return jsonify(items)


# ---------- OFFERS ----------

def sent_offers(user):
    offers = (
        Offer.query.filter_by(buyer_id=user.user_id)
        .order_by(Offer.created_at.desc(), Offer.offer_id.desc())
        .all()
    )
    items = []
    for offer in offers:
        item = serialize_offer(offer)
        listing = offer.listing
        if listing is not None:
            snapshot = listing_snapshot(listing)
            snapshot["user"] = lookup_public_user(listing.user_id, fields=("username",))
            item["listing"] = snapshot
        else:
            item["listing"] = None
        items.append(item)
    return items


def received_offers(user):
    offers = (
        Offer.query.join(Listing, Offer.listing_id == Listing.listing_id)
        .filter(Listing.user_id == user.user_id)
        .order_by(Offer.created_at.desc(), Offer.offer_id.desc())
        .all()
    )
    items = []
    for offer in offers:
        item = serialize_offer(offer)
        item["listing"] = listing_snapshot(offer.listing)
        item["buyer"] = lookup_public_user(offer.buyer_id, fields=("username",))
        items.append(item)
    return items


@app.route("/api/offers")
@login_required
def list_offers():
    user = g.current_user
    offer_type = request.args.get("type")

    if offer_type == "sent":
        return jsonify(sent_offers(user))
    if offer_type == "received":
        return jsonify(received_offers(user))
    return jsonify({"sent": sent_offers(user), "received": received_offers(user)})


@app.route("/api/offers", methods=["POST"])
@login_required
def create_offer():
    user = g.current_user
    payload = validate_payload(CreateOfferPayload, get_json_body())

    listing = db.session.get(Listing, payload.listing_id)
    if listing is None:
        raise NotFound("Listing not found")
    if listing.status != LISTING_ACTIVE:
        raise Conflict("Listing is no longer active")
    if listing.user_id == user.user_id:
        raise MarketplaceError("Cannot make offer on your own listing")
    if payload.quantity > listing.quantity:
        raise MarketplaceError("Requested quantity not available")

    existing = Offer.query.filter_by(
        buyer_id=user.user_id, listing_id=listing.listing_id, status=OFFER_PENDING
    ).first()
    if existing:
        raise MarketplaceError("You already have a pending offer on this listing")

    offer = Offer(
        listing_id=listing.listing_id,
        buyer_id=user.user_id,
        offer_price_in_cents=payload.offer_price_in_cents,
        quantity=payload.quantity,
        message_template=payload.message_template,
        custom_message=payload.custom_message if payload.message_template == "make_offer" else None,
        status=OFFER_PENDING,
    )
    db.session.add(offer)
    db.session.commit()
    logger.info("Offer %s created on listing %s by user %s", offer.offer_id, listing.listing_id, user.user_id)

    data = serialize_offer(offer)
    snapshot = listing_snapshot(listing)
    snapshot["user"] = lookup_public_user(listing.user_id, fields=("username",))
    data["listing"] = snapshot
    data["buyer"] = {"username": user.username}
    return jsonify(data), 201


@app.route("/api/offers/<int:offer_id>")
@login_required
def offer_detail(offer_id):
    user = g.current_user
    offer = db.session.get(Offer, offer_id)
    if offer is None:
        raise NotFound("Offer not found")

    listing = db.session.get(Listing, offer.listing_id)
    is_buyer = offer.buyer_id == user.user_id
    is_seller = listing is not None and listing.user_id == user.user_id
    if not is_buyer and not is_seller:
        raise Forbidden("Not authorized to view this offer")

    data = serialize_offer(offer)
    if listing is not None:
        listing_data = serialize_listing(listing)
        listing_data["user"] = lookup_public_user(listing.user_id)
        data["listing"] = listing_data
    else:
        data["listing"] = None
    data["buyer"] = lookup_public_user(offer.buyer_id)
    return jsonify(data)


@app.route("/api/offers/<int:offer_id>/respond", methods=["POST"])
@login_required
def respond_to_offer(offer_id):
    payload = validate_payload(RespondToOfferPayload, get_json_body())
    offer, message = resolve_offer(g.current_user, offer_id, payload.response)
    return jsonify({"offer": offer, "message": message})


@app.route("/api/offers/<int:offer_id>/accept", methods=["POST"])
@login_required
def accept_offer(offer_id):
    offer, message = resolve_offer(g.current_user, offer_id, ACCEPT)
    return jsonify({"offer": offer, "message": message})


@app.route("/api/offers/<int:offer_id>/decline", methods=["POST"])
@login_required
def decline_offer(offer_id):
    offer, message = resolve_offer(g.current_user, offer_id, REJECT)
    return jsonify({"offer": offer, "message": message})


# ---------- PAYMENTS ----------

def simulate_payment(offer, listing):
    """Stand-in payment processor; every charge succeeds."""
    return {
        "id": f"pi_mock_{uuid4().hex[:24]}",
        "amount": offer.offer_price_in_cents,
        "currency": "usd",
        "status": "succeeded",
        "offerId": offer.offer_id,
        "listingId": listing.listing_id,
        "sellerId": listing.user_id,
        "buyerId": offer.buyer_id,
    }


def complete_payment(actor, offer_id):
    """Charge the buyer for an accepted offer and mark it COMPLETED.

    Returns ``(offer_payload, payment)``.
    """
    offer = db.session.get(Offer, offer_id)
    if offer is None:
        raise NotFound("Offer not found")
    if offer.buyer_id != actor.user_id:
        raise Forbidden("Not authorized to pay for this offer")
    if offer.status != OFFER_ACCEPTED:
        raise Conflict("Offer must be accepted before payment")

    listing = db.session.get(Listing, offer.listing_id)
    if listing is None:
        raise NotFound("Associated listing not found")

    payment = simulate_payment(offer, listing)
    if payment["status"] != "succeeded":
        logger.warning("Payment %s for offer %s failed", payment["id"], offer_id)
        raise MarketplaceError("Payment failed", details=payment)

    listing_id = listing.listing_id
    offer_quantity = offer.quantity
    listing_quantity = listing.quantity

    if not transition_offer_status(offer_id, OFFER_ACCEPTED, OFFER_COMPLETED):
        raise Conflict("Offer must be accepted before payment")
    logger.info("Offer %s paid by user %s (%s)", offer_id, actor.user_id, payment["id"])

    close_listing_if_filled(listing_id, offer_quantity, listing_quantity)

    db.session.refresh(offer)
    return serialize_offer(offer), payment


def ticket_filename(event_name, offer_id):
    return f"ticket-{re.sub(r'[^a-zA-Z0-9]', '-', event_name)}-{offer_id}.txt"


def render_ticket(offer, listing, seller_name, buyer_name):
    lines = [
        "TICKET CONFIRMATION",
        "",
        f"Event: {listing.event_name}",
        f"Title: {listing.title}",
        f"Date: {listing.event_date.strftime('%Y-%m-%d')}",
    ]
    if listing.venue:
        lines.append(f"Venue: {listing.venue}")
    lines += [
        "",
        f"Quantity: {offer.quantity} ticket(s)",
        f"Total Paid: ${offer.offer_price_in_cents / 100:.2f}",
        "",
        f"Confirmation Number: {offer.offer_id}",
        f"Purchase Date: {datetime.utcnow().strftime('%Y-%m-%d')}",
        "",
        f"Sold by: {seller_name}",
        f"Purchased by: {buyer_name}",
        "",
        "This is a mock ticket for demonstration purposes.",
    ]
    return "\n".join(lines)


@app.route("/api/payments/mock-pay", methods=["POST"])
@login_required
def mock_pay():
    payload = validate_payload(MockPayPayload, get_json_body())
    offer, payment = complete_payment(g.current_user, payload.offer_id)
    return jsonify({
        "offer": offer,
        "payment": payment,
        "message": "Payment successful! You can now download your tickets.",
        "downloadAvailable": True,
    })


@app.route("/api/offers/<int:offer_id>/download")
@login_required
def download_ticket(offer_id):
    user = g.current_user
    offer = db.session.get(Offer, offer_id)
    if offer is None:
        raise NotFound("Offer not found")
    if offer.buyer_id != user.user_id:
        raise Forbidden("You can only download tickets for your own paid offers")
    if offer.status != OFFER_COMPLETED:
        raise Conflict("You can only download tickets for completed offers")

    listing = db.session.get(Listing, offer.listing_id)
    if listing is None:
        raise NotFound("Listing not found")

    seller = lookup_public_user(listing.user_id, fields=("username",))
    seller_name = seller["username"] if seller else "Unknown Seller"

    filename = ticket_filename(listing.event_name, offer.offer_id)
    return Response(
        render_ticket(offer, listing, seller_name, user.username),
        mimetype="text/plain",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------- HEALTH ----------

@app.route("/api/health")
def health():
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Health check could not reach the database", exc_info=True)
        return jsonify({"status": "ok", "database": "error"}), 503
    return jsonify({"status": "ok", "database": "ok"})


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5001, debug=True)
