from sqlmodel import SQLModel, create_engine, Session
from .settings import settings


def make_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        # the websocket loop and the threadpool share sqlite connections
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, **kwargs)

engine = make_engine(settings.database_url)

def init_db(bind=None):
    SQLModel.metadata.create_all(bind or engine)

def get_session(bind=None):
    # rows are serialized after commit, so keep their loaded attributes
    return Session(bind or engine, expire_on_commit=False)
