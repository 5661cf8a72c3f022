from decimal import Decimal

from sqlalchemy import insert, select

from pocketledger.database import accounts, categories, create_db_engine, init_db, users


def make_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    return engine


def insert_user(conn, email="owner@example.com", base_currency="EUR", secondary_currencies=None) -> int:
    return conn.execute(
        insert(users)
        .values(
            email=email,
            name=email.split("@")[0],
            hashed_password="not-a-real-hash",
            base_currency=base_currency,
            secondary_currencies=list(secondary_currencies or []),
        )
        .returning(users.c.id)
    ).scalar_one()


def insert_account(conn, user_id, name="Checking", type="checking", currency="EUR", opening_balance="0") -> int:
    opening = Decimal(opening_balance)
    return conn.execute(
        insert(accounts)
        .values(
            user_id=user_id,
            name=name,
            type=type,
            currency=currency,
            opening_balance=opening,
            current_balance=opening,
        )
        .returning(accounts.c.id)
    ).scalar_one()


def insert_category(conn, user_id, name, type="expense", parent_id=None) -> int:
    return conn.execute(
        insert(categories)
        .values(user_id=user_id, name=name, type=type, parent_id=parent_id)
        .returning(categories.c.id)
    ).scalar_one()


def balance_of(conn, account_id) -> Decimal:
    value = conn.execute(
        select(accounts.c.current_balance).where(accounts.c.id == account_id)
    ).scalar_one()
    return Decimal(value)
