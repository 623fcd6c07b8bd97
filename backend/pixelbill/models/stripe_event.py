"""StripeEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, JSON, DateTime
from datetime import datetime, timezone
from pixelbill.models.base import Base


class StripeEvent(Base):
    """Stripe webhook delivery log for duplicate detection and debugging"""
    __tablename__ = "stripe_events"

    id = Column(Integer, primary_key=True, index=True)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    processed = Column(Boolean, default=False, nullable=False)
    outcome = Column(String(50), nullable=True)  # Handler result, e.g. 'updated', 'user_not_found'
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
