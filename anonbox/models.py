"""
SQLAlchemy ORM models for the document-collection store.

Records are kept as whole JSON documents; the extra columns only exist
to filter and order them. For Pydantic request/response schemas, see
schemas.py.
"""

from sqlalchemy import JSON, BigInteger, Column, Integer, String

from anonbox.storage import Base


class Document(Base):
    """
    One stored record (message or abandoned draft).

    Table: documents
    Primary Key: pk (record ids are not guaranteed unique)
    """
    __tablename__ = "documents"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(String, nullable=False, index=True)  # messages, abandonedMessages
    record_id = Column(BigInteger, nullable=False, index=True)
    timestamp = Column(String, nullable=False)  # ISO-8601 UTC string
    body = Column(JSON, nullable=False)
