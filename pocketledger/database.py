from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from pocketledger.config import get_settings

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("name", String(100), nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("base_currency", String(3), nullable=False),
    Column("secondary_currencies", JSON, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("institution", String(255)),
    Column("currency", String(3), nullable=False),
    Column("opening_balance", Numeric(14, 2), nullable=False, default=0),
    Column("current_balance", Numeric(14, 2), nullable=False, default=0),
    Column("interest_rate", Numeric(6, 3)),
    Column("credit_limit", Numeric(14, 2)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(10), nullable=False),
    Column("parent_id", Integer, ForeignKey("categories.id")),
    Column("icon", String(50)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("type", String(10), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("from_account_id", Integer, ForeignKey("accounts.id")),
    Column("to_account_id", Integer, ForeignKey("accounts.id")),
    Column("payee", String(255)),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("memo", String(500)),
    Column("is_reconciled", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("month", String(7), nullable=False),
    Column("budgeted", Numeric(14, 2), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("target_amount", Numeric(14, 2), nullable=False),
    Column("current_amount", Numeric(14, 2), nullable=False, default=0),
    Column("target_date", Date),
    Column("linked_account_id", Integer, ForeignKey("accounts.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
)

recurring_transactions = Table(
    "recurring_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("type", String(10), nullable=False),
    Column("payee", String(255)),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("frequency", String(10), nullable=False),
    Column("interval", Integer, nullable=False, default=1),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("last_processed", Date),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
    Column("deleted_at", DateTime),
)

exchange_rate_snapshots = Table(
    "exchange_rate_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("month", Date, nullable=False),
    Column("version", Integer, nullable=False),
    Column("base_currency", String(3), nullable=False),
    Column("rates", JSON, nullable=False),
    Column("source", String(50), nullable=False, server_default="manual"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "month", "version", name="uq_rate_snapshots_user_month_version"),
)


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **engine_kwargs)


def init_db(target: Engine) -> None:
    metadata.create_all(target)


engine = create_db_engine(get_settings().database_url)
