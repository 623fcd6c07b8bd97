"""User model"""
from sqlalchemy import Column, Integer, String, DateTime, Enum
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from pixelbill.models.base import Base
from pixelbill.models.enums import EntitlementTier


class User(Base):
    """Application user, keyed by the identity provider's user id"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    clerk_id = Column(String(255), unique=True, nullable=False, index=True)  # Identity-provider user id
    email = Column(String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)  # Bound on first purchase
    tier = Column(Enum(EntitlementTier, name="entitlement_tier"), default=EntitlementTier.FREE, nullable=False)
    credits = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscription = relationship("Subscription", back_populates="user", uselist=False, cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, clerk_id={self.clerk_id}, tier={self.tier}, credits={self.credits})>"
