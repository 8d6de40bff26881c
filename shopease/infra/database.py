"""
Accès à la base relationnelle (SQLAlchemy).
- get_engine / get_sessionmaker: instances paresseuses, réinitialisables via configure().
- get_db: dépendance FastAPI (une session par requête).
- transaction(): unité de travail commit/rollback, traduit les attentes de verrou en TransactionConflict.
Verrous de lignes:
- PostgreSQL/MySQL: SELECT ... FOR UPDATE + lock_timeout borné (DB_LOCK_TIMEOUT_MS).
- SQLite (pas de verrou de ligne): chaque transaction démarre en BEGIN IMMEDIATE, ce qui sérialise les écrivains.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from shopease import config
from shopease.errors import TransactionConflict

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


_engine: Optional[Engine] = None
_sessionmaker: Optional[sessionmaker] = None


def utcnow() -> datetime:
    """Horodatage UTC naïf (format stocké en base, identique pour SQLite et PostgreSQL)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _install_lock_discipline(engine: Engine, lock_timeout_ms: int) -> None:
    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            # Laisse SQLAlchemy piloter BEGIN (le driver pysqlite émettrait un BEGIN différé)
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={int(lock_timeout_ms)}")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    elif engine.dialect.name == "postgresql":
        @event.listens_for(engine, "begin")
        def _pg_lock_timeout(conn):
            conn.exec_driver_sql(f"SET LOCAL lock_timeout = '{int(lock_timeout_ms)}ms'")


def configure(url: Optional[str] = None, **engine_kwargs) -> Engine:
    """
    (Re)crée l'engine et la fabrique de sessions.
    - url: DATABASE_URL par défaut
    - Utilisé au démarrage (lifespan) et par les tests (base SQLite temporaire).
    """
    global _engine, _sessionmaker
    url = url or config.DATABASE_URL
    if url.startswith("sqlite"):
        connect_args = engine_kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", config.DB_LOCK_TIMEOUT_MS / 1000)
        engine_kwargs["connect_args"] = connect_args
    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, future=True, **engine_kwargs)
    _install_lock_discipline(_engine, config.DB_LOCK_TIMEOUT_MS)
    _sessionmaker = sessionmaker(bind=_engine, expire_on_commit=False)
    logger.info("Database configured dialect=%s", _engine.dialect.name)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        configure()
    return _engine


def get_sessionmaker() -> sessionmaker:
    if _sessionmaker is None:
        configure()
    return _sessionmaker


def create_all() -> None:
    # Importe les modèles pour peupler Base.metadata
    import shopease.inventory.models  # noqa: F401
    import shopease.orders.models  # noqa: F401
    import shopease.payments.models  # noqa: F401
    Base.metadata.create_all(get_engine())


def get_db() -> Iterator[Session]:
    """Dépendance FastAPI: une session par requête, fermée en fin de traitement."""
    db = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()


def is_lock_timeout(exc: BaseException) -> bool:
    """Vrai si l'erreur SQL correspond à une attente de verrou dépassée (SQLite locked, PG 55P03, MySQL 1205)."""
    if not isinstance(exc, (OperationalError, DBAPIError)):
        return False
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in ("55P03", "40P01"):
        return True
    msg = str(orig or exc).lower()
    return (
        "database is locked" in msg
        or "lock timeout" in msg
        or "lock wait timeout" in msg
        or "deadlock" in msg
    )


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Unité de travail tout-ou-rien.
    - Commit si le bloc se termine normalement, rollback sur toute exception.
    - Une attente de verrou dépassée devient TransactionConflict (réessayable, rien de partiel).
    """
    try:
        with db.begin():
            yield db
    except (OperationalError, DBAPIError) as e:
        if is_lock_timeout(e):
            logger.warning("Transaction conflict (lock wait timeout): %s", e)
            raise TransactionConflict() from e
        raise
