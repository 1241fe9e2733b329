from pathlib import Path
from typing import Any

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base

from core.config import Settings, get_settings

settings = get_settings()
ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


def engine_options(config: Settings) -> dict[str, Any]:
    if config.database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": config.db_pool_size,
        "max_overflow": config.db_max_overflow,
        "pool_timeout": config.db_pool_timeout,
        "pool_recycle": config.db_pool_recycle,
    }


engine = create_engine(settings.database_url, **engine_options(settings))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def current_migration_heads() -> str:
    """Comma-joined Alembic head revisions shipped with this build."""
    script = ScriptDirectory.from_config(AlembicConfig(str(ALEMBIC_INI)))
    return ",".join(sorted(script.get_heads()))


def database_reachable() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return False
    return True
