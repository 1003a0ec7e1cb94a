"""Database configuration and utilities."""
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from sqlmodel import Session, create_engine, select

from models import Setting, SQLModel, Submission

# Configuration
DB_PATH = Path("./memes.db")


def _make_engine(db_path: Path):
    return create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
    )


# Database engine
engine = _make_engine(DB_PATH)


def configure_engine(db_path: Path) -> None:
    """Point the module engine at another SQLite file."""
    global engine
    engine.dispose()
    engine = _make_engine(db_path)


@contextmanager
def get_session():
    """Get a database session context manager."""
    with Session(engine) as session:
        yield session


def init_db() -> None:
    """Initialize database tables."""
    SQLModel.metadata.create_all(engine)


def get_setting(key: str) -> Optional[str]:
    """Get a setting value by key."""
    with get_session() as s:
        row = s.get(Setting, key)
        return row.value if row else None


def set_setting(key: str, value: str) -> None:
    """Set a setting value."""
    with get_session() as s:
        row = s.get(Setting, key)
        if row:
            row.value = value
        else:
            s.add(Setting(key=key, value=value))
        s.commit()


def add_submission(submission: Submission) -> Submission:
    """Store a new submission and return it with its id."""
    with get_session() as s:
        s.add(submission)
        s.commit()
        s.refresh(submission)
        return submission


def list_submissions(approved_only: bool = False) -> list[Submission]:
    """Submissions, newest first."""
    with get_session() as s:
        query = select(Submission)
        if approved_only:
            query = query.where(Submission.approved == True)  # noqa: E712
        query = query.order_by(Submission.created_at.desc(), Submission.id.desc())
        return list(s.exec(query).all())


def set_submission_approval(submission_id: int, approved: bool) -> Optional[Submission]:
    """Flip the approval flag; returns None for an unknown id."""
    with get_session() as s:
        row = s.get(Submission, submission_id)
        if not row:
            return None
        row.approved = approved
        s.add(row)
        s.commit()
        s.refresh(row)
        return row
