# backend/autocrop/db.py
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

# in-memory sqlite: job state is ephemeral and dies with the process.
# StaticPool keeps the single connection (and therefore the data) alive.
DATABASE_URL = "sqlite://"


def make_engine(url: str = DATABASE_URL):
    return create_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


engine = make_engine()


def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)
