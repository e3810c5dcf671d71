# settlement/schemas/common.py
from typing import Generic, List, TypeVar

from pydantic import BaseModel

DataType = TypeVar("DataType")


class PaginatedResponse(BaseModel, Generic[DataType]):
    total_items: int
    total_pages: int
    current_page: int
    size: int
    items: List[DataType]
