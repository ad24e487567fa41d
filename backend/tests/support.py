from sqlalchemy import insert
from sqlalchemy.pool import StaticPool

from backend.database import create_db_engine, init_db, users


def make_engine():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    return engine


def add_user(conn, email: str) -> int:
    result = conn.execute(insert(users).values(email=email, name=email.split("@")[0]))
    return result.inserted_primary_key[0]
