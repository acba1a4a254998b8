"""Declarative base shared by the credential store models."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base for accounts, profiles, sessions and MFA configuration."""

    pass
