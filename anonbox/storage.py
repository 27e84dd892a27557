import json
import logging
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base

from anonbox.config import Settings

logger = logging.getLogger(__name__)

# Collection names, also the keys of the JSON document
MESSAGES = "messages"
ABANDONED = "abandonedMessages"
COLLECTIONS = (MESSAGES, ABANDONED)

# Base class for SQLAlchemy models
Base = declarative_base()


class StorageError(Exception):
    """Raised when the backing store cannot be read or written."""


class MessageStore:
    """
    Ordered collections of record dicts.

    Records are never updated in place: the only mutations are append and
    delete-by-id. Callers own ordering for display; list_all returns
    storage order.
    """

    def init(self) -> None:
        """Prepare the store (create tables etc.). Called on startup."""

    def close(self) -> None:
        """Release resources. Called on shutdown."""

    def ping(self) -> bool:
        raise NotImplementedError

    def append(self, collection: str, record: dict) -> None:
        raise NotImplementedError

    def list_all(self, collection: str) -> list[dict]:
        raise NotImplementedError

    def delete_by_id(self, collection: str, record_id: int) -> int:
        """Remove every record with this id. Returns how many were removed."""
        raise NotImplementedError


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")


# =============================================================================
# JSON File Store
# =============================================================================

class JsonFileStore(MessageStore):
    """
    Single JSON document on disk:

        {"messages": [...], "abandonedMessages": [...]}

    Every mutation is a read-modify-write of the whole file without any
    locking, so concurrent writers can lose updates (last write wins).
    A file holding a bare list is read as the messages collection.
    """

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> dict:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"Store file {self.path} does not exist yet, treating as empty")
            return {name: [] for name in COLLECTIONS}
        except OSError as e:
            logger.error(f"Failed to read store file {self.path}: {e}")
            raise StorageError(f"Failed to read {self.path}") from e

        if not raw.strip():
            return {name: [] for name in COLLECTIONS}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Store file {self.path} is not valid JSON: {e}")
            raise StorageError(f"Corrupt store file {self.path}") from e

        if isinstance(data, list):
            return self._checked({MESSAGES: data, ABANDONED: []})
        if not isinstance(data, dict):
            logger.error(f"Store file {self.path} holds {type(data).__name__}, expected an object")
            raise StorageError(f"Corrupt store file {self.path}")

        return self._checked({name: data.get(name) or [] for name in COLLECTIONS})

    def _checked(self, document: dict) -> dict:
        """Each collection must be a list of JSON objects."""
        for name, records in document.items():
            if not isinstance(records, list) or not all(isinstance(record, dict) for record in records):
                logger.error(f"Store file {self.path}: {name} holds a record that is not an object")
                raise StorageError(f"Corrupt store file {self.path}")
        return document

    def _write(self, document: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(document, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write store file {self.path}: {e}")
            raise StorageError(f"Failed to write {self.path}") from e

    def ping(self) -> bool:
        try:
            self._read()
        except StorageError:
            return False
        return True

    def append(self, collection: str, record: dict) -> None:
        _check_collection(collection)
        document = self._read()
        document[collection].append(record)
        self._write(document)
        logger.info(f"Appended record {record.get('id')} to {collection}")

    def list_all(self, collection: str) -> list[dict]:
        _check_collection(collection)
        return self._read()[collection]

    def delete_by_id(self, collection: str, record_id: int) -> int:
        _check_collection(collection)
        document = self._read()
        records = document[collection]
        kept = [record for record in records if record.get("id") != record_id]
        removed = len(records) - len(kept)
        if not removed:
            logger.info(f"No record {record_id} in {collection}, nothing to delete")
            return 0
        document[collection] = kept
        self._write(document)
        logger.info(f"Deleted {removed} record(s) with id {record_id} from {collection}")
        return removed


# =============================================================================
# Document Collection Store
# =============================================================================

class DocumentStore(MessageStore):
    """
    Records stored as JSON documents in a SQL table via SQLAlchemy.

    Each append and delete is its own transaction, so concurrent writers
    do not overwrite each other.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, connect_args=connect_args, echo=False)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init(self) -> None:
        """Create the documents table if it does not exist."""
        logger.debug(f"Initializing document store with URL: {self.database_url}")
        try:
            # Import models to register them with Base.metadata
            from anonbox.models import Document  # noqa: F401

            Base.metadata.create_all(bind=self.engine)
            logger.info("Document store initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize document store: {e}")
            raise StorageError("Failed to initialize document store") from e

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> bool:
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Document store health check failed: {e}")
            return False
        return True

    def append(self, collection: str, record: dict) -> None:
        from anonbox.models import Document

        _check_collection(collection)
        with self.SessionLocal() as db:
            try:
                db.add(Document(
                    collection=collection,
                    record_id=record["id"],
                    timestamp=record["timestamp"],
                    body=record,
                ))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to insert record {record.get('id')} into {collection}: {e}")
                raise StorageError("Failed to insert record") from e
        logger.info(f"Inserted record {record['id']} into {collection}")

    def list_all(self, collection: str) -> list[dict]:
        from anonbox.models import Document

        _check_collection(collection)
        try:
            with self.SessionLocal() as db:
                documents = (
                    db.query(Document)
                    .filter(Document.collection == collection)
                    .order_by(Document.pk.asc())
                    .all()
                )
                return [document.body for document in documents]
        except SQLAlchemyError as e:
            logger.error(f"Failed to list {collection}: {e}")
            raise StorageError(f"Failed to list {collection}") from e

    def delete_by_id(self, collection: str, record_id: int) -> int:
        from anonbox.models import Document

        _check_collection(collection)
        with self.SessionLocal() as db:
            try:
                removed = (
                    db.query(Document)
                    .filter(Document.collection == collection, Document.record_id == record_id)
                    .delete(synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to delete record {record_id} from {collection}: {e}")
                raise StorageError("Failed to delete record") from e
        if not removed:
            logger.info(f"No record {record_id} in {collection}, nothing to delete")
        else:
            logger.info(f"Deleted {removed} record(s) with id {record_id} from {collection}")
        return removed


def build_store(settings: Settings) -> MessageStore:
    """Pick the document store when a database URL is configured, the JSON file otherwise."""
    if settings.DATABASE_URL:
        logger.info("Using document store")
        return DocumentStore(settings.DATABASE_URL)
    logger.info(f"Using JSON file store at {settings.MESSAGES_FILE}")
    return JsonFileStore(settings.MESSAGES_FILE)
