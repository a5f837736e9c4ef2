from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker

from kol360.models import Base, DiseaseArea

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"

DEFAULT_DISEASE_AREAS = (
    ("RETINA", "Retina", "Ophthalmology"),
    ("DRY_EYE", "Dry Eye", "Ophthalmology"),
    ("GLAUCOMA", "Glaucoma", "Ophthalmology"),
    ("CORNEA", "Cornea", "Ophthalmology"),
)


def _configure_sqlite(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # SQLAlchemy emits BEGIN itself so SAVEPOINTs nest inside the transaction
    dbapi_conn.isolation_level = None


def _emit_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


def make_engine(url: str, **kwargs):
    engine = create_engine(url, connect_args={"check_same_thread": False}, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _configure_sqlite)
        event.listen(engine, "begin", _emit_begin)
    return engine


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = os.environ.get("KOL360_DB_PATH") or DATA_DIR / "kol360.db"
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = make_engine(f"sqlite:///{db_path}")
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        log.info("Database ready at %s", db_path)
    with _SessionLocal() as session:
        seed_disease_areas(session)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


def seed_disease_areas(session: Session) -> None:
    """Insert the default disease areas if the table is empty."""
    if session.execute(select(DiseaseArea.id).limit(1)).first() is not None:
        return
    for code, name, therapeutic_area in DEFAULT_DISEASE_AREAS:
        session.add(DiseaseArea(code=code, name=name, therapeutic_area=therapeutic_area))
    session.commit()
