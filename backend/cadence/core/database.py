from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any
from uuid import UUID

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from cadence.core.config import settings

engine = create_engine(
    settings.APP_DATABASE_DSN,
    connect_args=({"check_same_thread": False} if "sqlite" in settings.APP_DATABASE_DSN else {}),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base: Any = declarative_base()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def new_session() -> Session:
    """Open a session from the current ``SessionLocal`` factory.

    Looked up at call time so test fixtures that swap ``SessionLocal`` are honoured.
    """
    return SessionLocal()


@contextmanager
def tenant_transaction(db: Session, tenant_id: UUID) -> Iterator[Session]:
    """Run a unit of work for one tenant: commit everything or nothing.

    On PostgreSQL the tenant id is published as ``app.current_tenant`` for the
    duration of the transaction so row-level security policies apply.
    """
    try:
        if db.get_bind().dialect.name == "postgresql":
            db.execute(
                text("SELECT set_config('app.current_tenant', :tenant_id, true)"),
                {"tenant_id": str(tenant_id)},
            )
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def init_db() -> None:
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)
