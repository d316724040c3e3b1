from datetime import datetime

from pydantic import computed_field
from sqlmodel import Field, SQLModel

from app.utils.time import utcnow


class UserBase(SQLModel):
    """Base user fields."""

    email: str = Field(unique=True, index=True)
    first_name: str = Field(max_length=50)
    last_name: str = Field(max_length=50)
    is_active: bool = True

    @computed_field
    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class User(UserBase, table=True):
    """Account owner; created and authenticated by the auth service."""

    id: int | None = Field(default=None, primary_key=True)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class UserRead(UserBase):
    """User read schema."""

    id: int
