from __future__ import annotations

from typing import Iterator, Optional

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

from .config import get_settings


class Store:
    """Owns the engine for one database.

    Opened once at startup and disposed at shutdown; route handlers get
    sessions through ``get_session`` instead of a module-level engine.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or get_settings().database_url
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("store is not open")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self) -> None:
        if self._engine is not None:
            return
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        self._engine = create_engine(self.database_url, echo=False, connect_args=connect_args)
        SQLModel.metadata.create_all(self._engine)

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def session(self) -> Session:
        return Session(self.engine)

    def get_session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session
