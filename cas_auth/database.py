from sqlmodel import Session, SQLModel, create_engine

from .settings import DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)


def create_db_and_tables(bind=None):
    # register the tables on SQLModel.metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_session():
    with Session(engine) as session:
        yield session
