import datetime
from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

# The Base for all our models
Base = declarative_base()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class GeocodeEntry(Base):
    __tablename__ = "geocodes"

    id = Column(Integer, primary_key=True, index=True)
    address = Column(String, unique=True, index=True, nullable=False)
    latitude = Column(Float, nullable=True)  # NULL for a known-absent address
    longitude = Column(Float, nullable=True)
    found = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc_id"),)

    id = Column(Integer, primary_key=True, index=True)
    collection = Column(String, index=True, nullable=False)  # e.g. CHR, HACCP, Kezia, Tabac, envois
    doc_id = Column(String, index=True, nullable=False)
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
