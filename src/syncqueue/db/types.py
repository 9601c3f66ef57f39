"""Column types shared by the ORM models."""

from sqlalchemy import BigInteger, Integer

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
IdType = BigInteger().with_variant(Integer(), "sqlite")
