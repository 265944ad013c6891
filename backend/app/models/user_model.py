from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from datetime import datetime, timezone


class User(BaseModel):
    """Buyer or admin, as far as fulfillment needs to know. Profiles live elsewhere."""
    id: str
    email: EmailStr
    full_name: str = ""
    phone_number: Optional[str] = None
    is_admin: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
