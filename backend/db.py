import logging
from pydantic_settings import BaseSettings
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase

class Settings(BaseSettings):
    MYSQL_HOST: str = "127.0.0.1"
    MYSQL_PORT: int = 3306
    MYSQL_USER: str = "root"
    MYSQL_PASSWORD: str = ""
    MYSQL_DB: str = "library_db"
    # set to e.g. sqlite:///./circulation.db to skip MySQL entirely
    DATABASE_URL: str = ""

    JWT_SECRET: str = "please_change_me"
    JWT_EXPIRE_MINUTES: int = 720

    LOAN_PERIOD_DAYS: int = 14
    FINE_DUE_DAYS: int = 30
    PENALTY_RATE: float = 1.0

    LOG_LEVEL: str = "INFO"

    ALGOLIA_APP_ID: str = ""
    ALGOLIA_ADMIN_KEY: str = ""
    ALGOLIA_INDEX: str = "books_index"

    class Config:
        env_file = ".env"

settings = Settings()

MYSQL_DSN = (
    f"mysql+pymysql://{settings.MYSQL_USER}:{settings.MYSQL_PASSWORD}"
    f"@{settings.MYSQL_HOST}:{settings.MYSQL_PORT}/{settings.MYSQL_DB}"
    "?charset=utf8mb4"
)

def configure_logging():
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def _sqlite_transactions(eng):
    # pysqlite defers BEGIN and breaks SAVEPOINT; take over transaction control.
    # IMMEDIATE serialises writers instead of failing them with "database is locked".
    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

def make_engine(url: str | None = None):
    url = url or settings.DATABASE_URL or MYSQL_DSN
    if url.startswith("sqlite"):
        # sessions hop threads under FastAPI's threadpool
        eng = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30}, echo=False)
        _sqlite_transactions(eng)
        return eng
    return create_engine(url, pool_pre_ping=True, echo=False)

engine = make_engine()
# committed results stay readable without reopening a transaction
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

class Base(DeclarativeBase):
    pass

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
