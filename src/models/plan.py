"""Plan model, read-only here."""

from sqlalchemy import Column, String

from .base import BaseModel


class Plan(BaseModel):
    """Commercial plan a subscription is for."""

    __tablename__ = "plans"

    name = Column(String(255), nullable=False)
