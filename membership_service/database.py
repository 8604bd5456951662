from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from membership_service import config

DATABASE_URL = config.database_url()

if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False, "timeout": config.db_pool_timeout()}
else:
    connect_args = {"connect_timeout": int(config.db_pool_timeout())}

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
Base = declarative_base()
