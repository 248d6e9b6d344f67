from __future__ import annotations

from typing import Any

from sqlalchemy.engine import URL

from stageflow.schemas import ConnectionConfig, SourceType


class UnsupportedConnectionError(ValueError):
    """Raised when a connection config cannot be converted into an SQLAlchemy URL."""


_SUPPORTED_DIALECTS: dict[SourceType, str] = {
    SourceType.DATABASE_POSTGRESQL: "postgresql+psycopg",
    SourceType.DATABASE_MYSQL: "mysql+pymysql",
    SourceType.DATABASE_SQLITE: "sqlite",
}

_DEFAULT_PORTS: dict[SourceType, int] = {
    SourceType.DATABASE_POSTGRESQL: 5432,
    SourceType.DATABASE_MYSQL: 3306,
}


def resolve_sqlalchemy_url(config: ConnectionConfig) -> URL:
    drivername = _SUPPORTED_DIALECTS.get(config.source_type)
    if drivername is None:
        raise UnsupportedConnectionError(
            f"Unsupported database source '{config.source_type.value}'. "
            f"Supported sources: {', '.join(sorted(item.value for item in _SUPPORTED_DIALECTS))}."
        )

    if config.source_type == SourceType.DATABASE_SQLITE:
        return _build_sqlite_url(config)

    host = (config.host or "").strip()
    if not host:
        raise UnsupportedConnectionError("Database connection must include a hostname.")

    database = (config.database or "").strip()
    if not database:
        raise UnsupportedConnectionError("Database connection must include a database name.")

    # MySQL TLS is configured through connect_args, see build_connect_args.
    query: dict[str, str] | None = None
    if config.ssl and config.source_type == SourceType.DATABASE_POSTGRESQL:
        query = {"sslmode": "require"}

    return URL.create(
        drivername=drivername,
        username=config.username or None,
        password=config.password or None,
        host=host,
        port=config.port or _DEFAULT_PORTS.get(config.source_type),
        database=database,
        query=query or {},
    )


def _build_sqlite_url(config: ConnectionConfig) -> URL:
    database = (config.database or config.file_path or "").strip()
    if not database:
        raise UnsupportedConnectionError("SQLite connection must include a database file path.")
    if database == ":memory:":
        raise UnsupportedConnectionError("In-memory SQLite databases cannot be used as import sources.")
    return URL.create(drivername="sqlite", database=database)


def build_connect_args(url: URL, timeout_seconds: int, ssl: bool = False) -> dict[str, Any]:
    connect_args: dict[str, Any] = {}
    drivername = url.drivername or ""
    if drivername.startswith("postgresql") or drivername.startswith("mysql"):
        connect_args["connect_timeout"] = timeout_seconds
    if ssl and drivername.startswith("mysql"):
        # PyMySQL only enables TLS for a non-empty ssl mapping.
        connect_args["ssl"] = {"check_hostname": True}
    elif drivername.startswith("sqlite"):
        connect_args["timeout"] = timeout_seconds
    return connect_args
