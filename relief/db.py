from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from .settings import settings

def _backend_name(database_url: str) -> str:
    try:
        return make_url(database_url).get_backend_name()
    except Exception:
        return database_url.split(":", 1)[0]


connect_args: dict[str, object] = {}
_backend = _backend_name(settings.DATABASE_URL)
if settings.DB_STATEMENT_TIMEOUT_SECONDS > 0 and _backend == "postgresql":
    timeout_ms = int(settings.DB_STATEMENT_TIMEOUT_SECONDS * 1000)
    connect_args["options"] = f"-c statement_timeout={timeout_ms}"
elif _backend == "sqlite":
    # the API and the in-process saga share sqlite connections across threads
    connect_args["check_same_thread"] = False

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

class Base(DeclarativeBase):
    pass

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
