# civicboard/models.py
"""SQLAlchemy ORM models for the primary store.

`Listing` is the system of record for everything the search index holds.
Accounts are managed elsewhere; `User` only carries what listing cards need.
"""
from sqlalchemy import (
    Column, Integer, Text, String, TIMESTAMP, ForeignKey, UniqueConstraint, func, Index,
)
from sqlalchemy.orm import relationship
from .db import Base

LISTING_ACTIVE = "ACTIVE"
LISTING_HIDDEN = "HIDDEN"

# participation types held at a physical place keep their region/district
OFFLINE_PARTICIPATION_TYPES = ("RALLY", "EVENT")


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    user_type = Column(String(32), nullable=False, default="INDIVIDUAL")


class Topic(Base):
    __tablename__ = "topics"
    id = Column(Integer, primary_key=True)
    name = Column(String(64), nullable=False, unique=True)


class Listing(Base):
    __tablename__ = "listings"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    participation_type = Column(String(32), nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text)
    region = Column(String(64))
    district = Column(String(64))
    link = Column(Text)
    status = Column(String(16), nullable=False, default=LISTING_ACTIVE, server_default=LISTING_ACTIVE)
    start_date = Column(TIMESTAMP(timezone=True))
    end_date = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    topics = relationship("Topic", secondary="listing_topics", order_by="Topic.id")
    images = relationship(
        "ListingImage", order_by="ListingImage.id", cascade="all, delete-orphan", passive_deletes=True
    )


class ListingTopic(Base):
    __tablename__ = "listing_topics"
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), primary_key=True)


class ListingImage(Base):
    __tablename__ = "listing_images"
    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True)
    image_url = Column(Text, nullable=False)


class Cheer(Base):
    __tablename__ = "cheers"
    __table_args__ = (UniqueConstraint("listing_id", "user_id", name="uq_cheers_listing_user"),)
    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

Index("idx_listings_end_date", Listing.end_date)
Index("idx_listings_created_at", Listing.created_at)
