"""
Database layer for the mcpchat server using SQLAlchemy.
Supports SQLite (default) and PostgreSQL.

Holds the tool-server records and a small expiring key/value table that
backs the token cache when no external cache service is configured.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..exceptions import NotFoundError
from ..models import AuthType, ServerMetadata, TransportType

Base = declarative_base()

SERVER_FIELDS = (
    "name",
    "url",
    "transport_type",
    "auth_type",
    "is_connected",
    "logo_url",
    "allowed_tools",
    "oauth_client_info",
    "oauth_metadata",
)


class MCPServerModel(Base):
    __tablename__ = "mcp_servers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name = Column(String(255), nullable=False)
    url = Column(Text, nullable=False)
    transport_type = Column(String(50), default=TransportType.STREAMABLE_HTTP.value)
    auth_type = Column(String(50), default=AuthType.OAUTH.value)
    is_connected = Column(Boolean, default=False)
    logo_url = Column(Text, nullable=True)
    allowed_tools = Column(JSON, nullable=True)
    oauth_client_info = Column(JSON, nullable=True)
    oauth_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_metadata(self) -> ServerMetadata:
        return ServerMetadata(
            id=self.id,
            name=self.name,
            url=self.url,
            transport_type=self.transport_type or TransportType.STREAMABLE_HTTP.value,
            auth_type=self.auth_type or AuthType.OAUTH.value,
            is_connected=bool(self.is_connected),
            logo_url=self.logo_url,
            allowed_tools=self.allowed_tools,
            oauth_client_info=self.oauth_client_info,
            oauth_metadata=self.oauth_metadata,
        )


class KeyValueModel(Base):
    __tablename__ = "kv_store"

    key = Column(String(512), primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(Float, nullable=True)


class Database:
    """Database interface for the mcpchat server."""

    def __init__(self, database_url: str):
        self.database_url = database_url

        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False

        self.engine = create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool if database_url.startswith("sqlite") else None,
        )
        self.SessionLocal = sessionmaker(bind=self.engine)

    def create_tables(self):
        """Create all tables."""
        Base.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # ==================== Tool servers ====================

    def list_servers(self) -> List[ServerMetadata]:
        with self.get_session() as session:
            rows = session.query(MCPServerModel).order_by(MCPServerModel.created_at).all()
            return [row.to_metadata() for row in rows]

    def get_server(self, server_id: str) -> ServerMetadata:
        with self.get_session() as session:
            row = session.get(MCPServerModel, server_id)
            if row is None:
                raise NotFoundError(f"MCP server not found: {server_id}", status_code=404)
            return row.to_metadata()

    def upsert_server(self, data: Dict[str, Any]) -> ServerMetadata:
        """Create a server record, or update the given fields of an existing one."""
        values = {k: data[k] for k in SERVER_FIELDS if k in data}
        server_id = data.get("id")
        with self.get_session() as session:
            row = session.get(MCPServerModel, server_id) if server_id else None
            if row is None:
                row = MCPServerModel(**values)
                if server_id:
                    row.id = server_id
                session.add(row)
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return row.to_metadata()

    def delete_server(self, server_id: str) -> bool:
        with self.get_session() as session:
            row = session.get(MCPServerModel, server_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def _update_server(self, server_id: str, **values: Any) -> None:
        with self.get_session() as session:
            row = session.get(MCPServerModel, server_id)
            if row is None:
                raise NotFoundError(f"MCP server not found: {server_id}", status_code=404)
            for key, value in values.items():
                setattr(row, key, value)
            session.commit()

    def set_is_connected(self, server_id: str, is_connected: bool) -> None:
        self._update_server(server_id, is_connected=is_connected)

    def save_client_info(self, server_id: str, client_info: Optional[Dict[str, Any]]) -> None:
        self._update_server(server_id, oauth_client_info=client_info)

    # ==================== Key/value ====================

    def kv_get(self, key: str) -> Optional[str]:
        with self.get_session() as session:
            row = session.get(KeyValueModel, key)
            if row is None:
                return None
            if row.expires_at is not None and row.expires_at <= time.time():
                session.delete(row)
                session.commit()
                return None
            return row.value

    def kv_put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        with self.get_session() as session:
            session.merge(KeyValueModel(key=key, value=value, expires_at=expires_at))
            session.commit()

    def kv_delete(self, key: str) -> None:
        with self.get_session() as session:
            session.query(KeyValueModel).filter(KeyValueModel.key == key).delete()
            session.commit()


class DatabaseKeyValueStore:
    """Token cache store backed by the ``kv_store`` table.

    Queries run in a worker thread so other flows keep the event loop.
    """

    def __init__(self, db: Database):
        self._db = db

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._db.kv_get, key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await asyncio.to_thread(self._db.kv_put, key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._db.kv_delete, key)


_databases: Dict[str, Database] = {}


def get_database(database_url: str = "sqlite:///./mcpchat.db") -> Database:
    """Get or create the database instance for ``database_url``."""
    database = _databases.get(database_url)
    if database is None:
        database = Database(database_url)
        database.create_tables()
        _databases[database_url] = database
    return database
