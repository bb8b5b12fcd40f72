"""PERFCACHE — Generic Key-Addressable Store.

Thin layer over SQLModel sessions implementing the durable-store contract
the engine relies on: ``get``, ``upsert``, ``query``, ``delete``, ``count``.
Each call opens its own short-lived session. Any SQLAlchemy failure is
surfaced as ``StoreUnavailable`` so callers can downgrade or log it.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from perfcache.core.errors import StoreUnavailable
from perfcache.core.logging import get_logger

logger = get_logger("store")

ModelT = TypeVar("ModelT", bound=SQLModel)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SQLStore:
    """Durable store backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"{type(e).__name__}: {e}") from e

    def get(self, model: Type[ModelT], **key: Any) -> Optional[ModelT]:
        """Fetch the single row matching the natural key, if any."""
        with self._session() as session:
            return session.exec(select(model).filter_by(**key)).first()

    def query(
        self, model: Type[ModelT], *conditions: Any, order_by: Any = None
    ) -> List[ModelT]:
        """Fetch all rows matching ``conditions``."""
        with self._session() as session:
            statement = select(model).where(*conditions)
            if order_by is not None:
                statement = statement.order_by(order_by)
            return list(session.exec(statement).all())

    def upsert(
        self, model: Type[ModelT], key: Dict[str, Any], values: Dict[str, Any]
    ) -> ModelT:
        """Insert or update the row identified by ``key``.

        A concurrent insert of the same key trips the unique constraint;
        the second attempt then finds the row and updates it.
        """
        for attempt in (1, 2):
            try:
                with self._session() as session:
                    record = session.exec(select(model).filter_by(**key)).first()
                    if record is None:
                        record = model(**key, **values)
                    else:
                        for field, value in values.items():
                            setattr(record, field, value)
                    session.add(record)
                    session.commit()
                    session.refresh(record)
                    return record
            except StoreUnavailable as e:
                if attempt == 1 and isinstance(e.__cause__, IntegrityError):
                    logger.warning(f"Upsert race on {model.__name__} {key}, retrying")
                    continue
                raise
        raise StoreUnavailable(f"Upsert of {model.__name__} {key} did not converge")

    def delete(self, model: Type[ModelT], **key: Any) -> int:
        """Delete rows matching the natural key. Returns the number removed."""
        with self._session() as session:
            rows = session.exec(select(model).filter_by(**key)).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)

    def delete_where(self, model: Type[ModelT], *conditions: Any) -> int:
        with self._session() as session:
            rows = session.exec(select(model).where(*conditions)).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)

    def count(self, model: Type[ModelT], *conditions: Any) -> int:
        with self._session() as session:
            statement = select(func.count()).select_from(model).where(*conditions)
            return int(session.exec(statement).one())
