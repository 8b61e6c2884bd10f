"""Relational Storage - single-file SQLite via SQLAlchemy Core

Self-Explanatory: Generic insert/get/all/update over the portal tables.
Why: Route handlers and repositories should not write SQL by hand.
How: Table metadata + SQLAlchemy Core statements. Oblivious to encryption:
it only ever sees records the field codec has already transformed.
"""

import os
from typing import Dict, List, Optional

import structlog
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger()

metadata = MetaData()

citizens = Table(
    "citizens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("citizenId", String, unique=True, nullable=False),
    # Encrypted PII (envelope JSON text)
    Column("firstName_encrypted", Text),
    Column("lastName_encrypted", Text),
    Column("email_encrypted", Text),
    Column("phone_encrypted", Text),
    Column("address_encrypted", Text),
    Column("zipCode_encrypted", Text),
    Column("dateOfBirth_encrypted", Text),
    # Cleartext, used by analytics and filters
    Column("city", String, nullable=False),
    Column("state", String, nullable=False),
    Column("status", String, server_default="active"),
    Column("createdAt", DateTime, server_default=func.current_timestamp()),
    Column("updatedAt", DateTime, server_default=func.current_timestamp()),
)

service_requests = Table(
    "service_requests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("requestNumber", String, unique=True, nullable=False),
    Column("citizenId", Integer, nullable=False),
    Column("serviceTypeId", Integer, nullable=False),
    Column("status", String, server_default="submitted"),
    Column("priority", String, server_default="normal"),
    Column("submittedDate", DateTime, server_default=func.current_timestamp()),
    Column("assignedAgent", String),
    Column("notes_encrypted", Text),
    Column("applicationData_encrypted", Text),
)

TABLES: Dict[str, Table] = {t.name: t for t in (citizens, service_requests)}


def _row_to_dict(row) -> Dict:
    data = dict(row._mapping)
    for key, value in data.items():
        # ISO text so analytics can slice YYYY-MM
        if hasattr(value, "isoformat"):
            data[key] = value.isoformat()
    return data


class Database:
    """Thin CRUD helper bound to one SQLite file"""

    def __init__(self, db_path: str = ":memory:", engine: Optional[Engine] = None):
        self.db_path = db_path
        if engine is None:
            if db_path == ":memory:":
                # One shared connection, otherwise every checkout sees an empty DB
                engine = create_engine(
                    "sqlite://",
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                )
            else:
                os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
                engine = create_engine(
                    f"sqlite:///{db_path}",
                    connect_args={"check_same_thread": False},
                )
        self.engine = engine

    def create_tables(self) -> None:
        metadata.create_all(self.engine)
        logger.info("Database initialized", db_path=self.db_path, tables=sorted(TABLES))

    def _table(self, name: str) -> Table:
        try:
            return TABLES[name]
        except KeyError:
            raise ValueError(f"Unknown table {name!r}") from None

    def _filtered(self, table: Table, stmt, filters: Optional[Dict]):
        for column, value in (filters or {}).items():
            if column not in table.c:
                raise ValueError(f"Unknown column {column!r} for table {table.name}")
            stmt = stmt.where(table.c[column] == value)
        return stmt

    def _known_columns(self, table: Table, columns: Dict) -> Dict:
        unknown = set(columns) - set(table.c.keys())
        if unknown:
            raise ValueError(f"Unknown columns for table {table.name}: {sorted(unknown)}")
        return columns

    def insert(self, table: str, columns: Dict) -> int:
        """Insert one row, returning its primary key"""
        t = self._table(table)
        with self.engine.begin() as conn:
            result = conn.execute(t.insert().values(**self._known_columns(t, columns)))
            return result.inserted_primary_key[0]

    def update(self, table: str, row_id: int, columns: Dict) -> int:
        """Update one row by id, returning the number of rows touched"""
        t = self._table(table)
        values = dict(self._known_columns(t, columns))
        if "updatedAt" in t.c:
            values["updatedAt"] = func.current_timestamp()
        with self.engine.begin() as conn:
            result = conn.execute(t.update().where(t.c.id == row_id).values(**values))
            return result.rowcount

    def get(self, table: str, filters: Optional[Dict] = None) -> Optional[Dict]:
        t = self._table(table)
        stmt = self._filtered(t, select(t), filters).limit(1)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _row_to_dict(row) if row is not None else None

    def all(self, table: str, filters: Optional[Dict] = None,
            order_by: Optional[str] = None, descending: bool = False) -> List[Dict]:
        t = self._table(table)
        stmt = self._filtered(t, select(t), filters)
        if order_by:
            columns = (t.c[order_by], t.c.id)
            stmt = stmt.order_by(*(c.desc() if descending else c for c in columns))
        with self.engine.connect() as conn:
            return [_row_to_dict(row) for row in conn.execute(stmt)]

    def count(self, table: str) -> int:
        t = self._table(table)
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(t)).scalar_one()
