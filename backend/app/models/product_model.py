from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class Product(BaseModel):
    """The slice of a catalog product that stock reservation reads and writes."""
    id: str
    name: str
    price: int = Field(..., ge=0)          # kobo
    count_in_stock: int = Field(default=0, ge=0)
    updated_at: Optional[datetime] = None
