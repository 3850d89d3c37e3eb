import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E
import core.models  # noqa: F401  registers tables on Base.metadata
from core.models.base import Base

logger = get_logger(__name__)

DEFAULT_DB_URL = "sqlite:///data/reconcile.db"


class Db:
    def __init__(self, url: Optional[str] = None):
        self.url = url or cfg.get("db", DEFAULT_DB_URL)
        self.engine = self._create_engine(self.url)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @staticmethod
    def _create_engine(url: str):
        if url.startswith("sqlite"):
            if url in ("sqlite://", "sqlite:///:memory:"):
                # 内存库共用一个连接，所有会话看到同一份数据
                return create_engine(
                    url,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            return create_engine(url, connect_args={"check_same_thread": False})
        return create_engine(url, pool_pre_ping=True, pool_recycle=3600)

    def create_tables(self) -> None:
        if self.url.startswith("sqlite:///") and not self.url.endswith(":memory:"):
            path = self.url[len("sqlite:///"):]
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        Base.metadata.create_all(self.engine)
        log_event(logger, E.SYSTEM_DB_INIT, url=self.engine.url.render_as_string(hide_password=True))

    def get_session(self) -> Session:
        return self.Session()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """成功提交，异常回滚，最后总是关闭会话。"""
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
