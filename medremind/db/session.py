from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def create_session_factory(database_url: str, **engine_kwargs) -> sessionmaker:
    """Build the engine and session factory for the given database URL.

    PostgreSQL URLs get the pooled engine settings used by the worker
    processes; anything else (SQLite in tests) uses SQLAlchemy defaults.
    """
    if database_url.startswith("postgresql"):
        engine_kwargs.setdefault("pool_size", 10)
        engine_kwargs.setdefault("max_overflow", 20)
        engine_kwargs.setdefault("pool_recycle", 300)   # Recycle connections every 5 minutes
        engine_kwargs.setdefault("pool_pre_ping", True)  # Validate connections before use
        engine_kwargs.setdefault("pool_timeout", 30)
    engine = create_engine(database_url, echo=False, **engine_kwargs)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
