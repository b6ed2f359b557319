from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Float, Text, UniqueConstraint, Index
from sqlalchemy.sql import func as sqlfunc

from .db import Base


class EventRow(Base):
    __tablename__ = 'events'
    __table_args__ = (
        UniqueConstraint('type', 'external_id', name='uq_events_type_external_id'),
        Index('idx_events_type_time', 'type', 'time'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(512), nullable=False)
    type = Column(String(32), nullable=False)
    title = Column(String(1024), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(1024), nullable=True)

    # Numeric severity; severity_kind says whether it is a Richter magnitude,
    # a 1-3 threat/alert level, a fire intensity or a flood severity.
    magnitude = Column(Float, nullable=True)
    severity_kind = Column(String(32), nullable=True)
    depth = Column(Float, nullable=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    # epoch milliseconds
    time = Column(BigInteger, nullable=False)
    url = Column(String(1024), nullable=True)
    affected_radius_km = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=sqlfunc.now())


class AdminUser(Base):
    __tablename__ = 'admin_users'
    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(64), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=sqlfunc.now())
