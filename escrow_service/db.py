from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from common.settings import settings

def make_engine(url: str = None) -> Engine:
    url = url or settings.sqlalchemy_url
    if url.startswith("sqlite"):
        # Requests are served from a thread pool
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")
