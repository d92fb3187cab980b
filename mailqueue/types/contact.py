"""
Recipient type definitions.
"""

from pydantic import BaseModel, ConfigDict


class ContactRecord(BaseModel):
    """
    A contact as handed out by the recipient resolver.

    Built from ORM rows at the store boundary so callers never see
    partially loaded entities.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    first_name: str
    last_name: str
    email: str | None
    is_active: bool
