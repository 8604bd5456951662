from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String

from membership_service.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True)                            # generated uuid4
    order_id = Column(String, unique=True, index=True, nullable=False)
    cf_payment_id = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, index=True, nullable=False)
    name = Column(String)
    phone = Column(String)
    amount = Column(Float, nullable=False)
    status = Column(String, nullable=False)                          # SUCCESS | FAILED | PENDING
    payment_method = Column(String)
    payment_timestamp = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Identity(Base):
    __tablename__ = "auth_identities"

    id = Column(String, primary_key=True)                            # durable uuid4
    email = Column(String, unique=True, index=True, nullable=False)
    email_confirmed_at = Column(DateTime(timezone=True))
    user_metadata = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    @property
    def confirmed(self):
        return self.email_confirmed_at is not None


class Profile(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)                            # == Identity.id
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    phone = Column(String)
    membership_status = Column(String, default="inactive", nullable=False)  # active | inactive
    payment_id = Column(String, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"

    client_key = Column(String, primary_key=True)
    window_start = Column(Integer, primary_key=True)                 # epoch seconds
    count = Column(Integer, default=0, nullable=False)
