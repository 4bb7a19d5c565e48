import uuid
from typing import Optional

from pydantic import BaseModel


class Sender(BaseModel):
    """The authenticated envelope owner, as asserted by the identity module's bearer token."""

    id: uuid.UUID
    email: str
    name: Optional[str] = None
