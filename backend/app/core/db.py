from typing import Any, Iterable

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from .config import get_settings

settings = get_settings()

_connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # Celery threads and FastAPI's threadpool share the engine
    _connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def upsert(
    db: Session,
    model: Any,
    values: dict[str, Any],
    *,
    index_elements: Iterable[str],
    update_fields: Iterable[str],
) -> None:
    """
    Single-statement INSERT ... ON CONFLICT DO UPDATE on the model's unique key.

    Concurrent writers on the same key serialize inside the database, so the
    row always holds exactly one writer's values (last write wins).
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Atomic upsert is not supported on dialect '{dialect}'")

    stmt = insert(model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements),
        set_={field: stmt.excluded[field] for field in update_fields},
    )
    db.execute(stmt)
