"""
List query options, filters, pagination and the response envelope.

Every list endpoint takes page/limit/sortBy/sortOrder. The filter used to fetch
a page is the same dict used to count the filtered set, so ``totalCount``
always describes the rows being paged over.
"""
import math
import re
from typing import Any, Dict, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pymongo import ASCENDING, DESCENDING

from errors import ValidationError, Violation, from_pydantic
from schemas import UtcDatetime

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100

SORT_ORDER_NAMES = {
    "asc": ASCENDING,
    "ascending": ASCENDING,
    "desc": DESCENDING,
    "descending": DESCENDING,
}


class QueryOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def parse(cls, params: Optional[Dict[str, Any]] = None):
        """Build options from request parameters; unset (None) values take defaults."""
        given = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            return cls.model_validate(given)
        except PydanticValidationError as exc:
            raise from_pydantic(exc) from exc


class ListOptions(QueryOptions):
    page: int = Field(DEFAULT_PAGE, ge=1)
    limit: int = Field(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT)
    sort_by: str = Field("timestamp", alias="sortBy")
    sort_order: Literal[1, -1] = Field(DESCENDING, alias="sortOrder")

    @field_validator("sort_order", mode="before")
    @classmethod
    def parse_sort_order(cls, value):
        if isinstance(value, str):
            key = value.strip().lower()
            if key in SORT_ORDER_NAMES:
                return SORT_ORDER_NAMES[key]
            try:
                return int(key)
            except ValueError:
                return value
        return value

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


class CustomerListOptions(ListOptions):
    sort_by: Literal["timestamp", "createdDate", "contact"] = Field("timestamp", alias="sortBy")


class SupplierListOptions(ListOptions):
    sort_by: Literal["timestamp", "createdDate", "name"] = Field("timestamp", alias="sortBy")


class ProductListOptions(ListOptions):
    sort_by: Literal["createdDate", "name", "salePrice"] = Field("createdDate", alias="sortBy")


class QuantityListOptions(ListOptions):
    sort_by: Literal["createdDate", "updatedDate", "quantitySize"] = Field("createdDate", alias="sortBy")


class AnalyticsOptions(QueryOptions):
    start_date: Optional[UtcDatetime] = Field(None, alias="startDate")
    end_date: Optional[UtcDatetime] = Field(None, alias="endDate")

    def to_filter(self) -> Dict[str, Any]:
        return date_range_filter(self.start_date, self.end_date)


class SaleListOptions(ListOptions):
    sort_by: Literal["timestamp", "saleDate", "totalAmount"] = Field("timestamp", alias="sortBy")
    start_date: Optional[UtcDatetime] = Field(None, alias="startDate")
    end_date: Optional[UtcDatetime] = Field(None, alias="endDate")
    customer_id: Optional[int] = Field(None, gt=0, alias="customerId")

    def to_filter(self) -> Dict[str, Any]:
        flt = date_range_filter(self.start_date, self.end_date)
        if self.customer_id is not None:
            flt["customerId"] = self.customer_id
        return flt


def date_range_filter(start=None, end=None, field: str = "saleDate") -> Dict[str, Any]:
    """Inclusive bounds on ``field``; either side may be open."""
    bounds = {}
    if start is not None:
        bounds["$gte"] = start
    if end is not None:
        bounds["$lte"] = end
    return {field: bounds} if bounds else {}


def search_filter(query: str, fields: Iterable[str]) -> Dict[str, Any]:
    """Case-insensitive substring match of ``query`` on any of ``fields``."""
    if query is None or not query.strip():
        raise ValidationError([Violation("query_required", "Search query is required")])
    pattern = re.escape(query.strip())
    return {"$or": [{name: {"$regex": pattern, "$options": "i"}} for name in fields]}


def build_pagination(page: int, limit: int, total_count: int) -> Dict[str, Any]:
    total_pages = math.ceil(total_count / limit)
    return {
        "page": page,
        "limit": limit,
        "totalCount": total_count,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def envelope(data: Any = None, message: Optional[str] = None,
             pagination: Optional[Dict[str, Any]] = None, count: Optional[int] = None) -> Dict[str, Any]:
    response: Dict[str, Any] = {"success": True}
    if data is not None:
        response["data"] = data
    if message:
        response["message"] = message
    if pagination is not None:
        response["pagination"] = pagination
    if count is not None:
        response["count"] = count
    return response


def error_envelope(error: str) -> Dict[str, Any]:
    return {"success": False, "error": error}
