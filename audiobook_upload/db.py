from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from audiobook_upload.config import settings


class Base(DeclarativeBase):
    pass


engine_kwargs: dict = {"future": True}
if settings.database_url.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}

engine = create_engine(settings.database_url, **engine_kwargs)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)


def create_schema() -> None:
    import audiobook_upload.models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=engine)
