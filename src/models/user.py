"""Portal user model (customers and administrators), read-only here."""

from sqlalchemy import Column, String

from .base import BaseModel


class User(BaseModel):
    """Portal user; customers own subscriptions, admins perform actions."""

    __tablename__ = "users"

    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(30), default="CUSTOMER", nullable=False)
