from __future__ import annotations

import os
import threading
from pathlib import Path

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from exitready.models import Base, Question

_lock = threading.Lock()
_engine = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"


def init_db(db_path: str | Path | None = None, seed_templates: bool = True) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = os.environ.get("EXITREADY_DB_PATH") or DATA_DIR / "exitready.db"
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    if seed_templates:
        _seed_template_questions(_SessionLocal)


def _seed_template_questions(factory: sessionmaker) -> None:
    """Seed the template question set if no template questions exist yet."""
    from exitready.seed import seed_template_questions
    with factory() as session:
        existing = session.execute(
            select(Question.id).where(Question.company_id.is_(None)).limit(1)
        ).first()
        if existing:
            return
        seed_template_questions(session)
        session.commit()


def get_session_factory() -> sessionmaker:
    """Return the configured session factory used by the pipeline services."""
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal

