import os

# Environment (default: development)
ENV = os.getenv("FLASK_ENV", "development")

# DATABASE ----------------------------------------------------

if ENV == "development":
    # Local runs use SQLite
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///local.db")
else:
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "postgresql://postgres:postgres@db:5432/ticketswap"
    )

SQLALCHEMY_TRACK_MODIFICATIONS = False

# SECRET KEY --------------------------------------------------
SECRET_KEY = os.getenv("SECRET_KEY", "super-secret-key")

# LOGGING -----------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# LISTINGS ----------------------------------------------------
LISTINGS_PAGE_SIZE = int(os.getenv("LISTINGS_PAGE_SIZE", "10"))
LISTINGS_MAX_PAGE_SIZE = int(os.getenv("LISTINGS_MAX_PAGE_SIZE", "100"))

# OFFERS ------------------------------------------------------
# Upper bound on sibling offers rejected when one offer is accepted.
CASCADE_BATCH_LIMIT = int(os.getenv("CASCADE_BATCH_LIMIT", "100"))

# Rejecting an offer on a listing that is no longer ACTIVE is allowed,
# so sellers can clear stale offers after a listing closes.
REJECT_REQUIRES_ACTIVE_LISTING = False
