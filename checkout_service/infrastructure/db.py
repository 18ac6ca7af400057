from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from checkout_service.core_settings import get_settings
from checkout_service.domain.models import Base


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine; SQLite gets ``BEGIN IMMEDIATE`` write transactions.

    pysqlite defers BEGIN until the first DML statement, so two sessions can
    both hold a shared lock and then deadlock upgrading it. Taking the write
    lock up front makes concurrent units of work queue behind each other
    instead.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, future=True, pool_pre_ping=True, **kwargs)

    connect_args = kwargs.pop("connect_args", {})
    connect_args.setdefault("check_same_thread", False)
    connect_args.setdefault("timeout", 30)
    engine = create_engine(url, echo=False, future=True, connect_args=connect_args, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


settings = get_settings()
engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)

def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_models(bind: Engine = None):
    Base.metadata.create_all(bind or engine)
