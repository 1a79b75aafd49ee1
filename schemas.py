"""
Database Schemas for the POS Records API

Each Pydantic model represents a document in one MongoDB collection:
Customer -> "customers", Supplier -> "suppliers", Sale -> "sales",
Product -> "products", Quantity -> "quantities". SaleItem is embedded in Sale.

Documents are stored with camelCase keys; Python attributes are snake_case and
mapped through aliases. Field constraints reject malformed input when a model is
built, while each model's validate() checks the business rules and reports every
violation at once.
"""
import re
import time
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional, Set, Tuple

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from errors import Invalid, Ok, ValidationResult, Violation

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{0,15}$")
PHONE_SEPARATORS_RE = re.compile(r"[\s\-()]")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are read as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_RE.match(PHONE_SEPARATORS_RE.sub("", phone)))


def blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


def _result(entity, violations: List[Violation]) -> ValidationResult:
    if violations:
        return Invalid(violations)
    return Ok(entity)


def _legacy(canonical: str, *spellings: str) -> Dict[str, Any]:
    """Field aliases accepting historical key spellings, always written as ``canonical``."""
    return {
        "validation_alias": AliasChoices(canonical, *spellings),
        "serialization_alias": canonical,
    }


class Document(BaseModel):
    """Base for models persisted as MongoDB documents."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, description="Store-assigned _id")

    @classmethod
    def create(cls, data: Dict[str, Any]):
        """Build a new, not yet persisted instance from caller input.

        Store identity and the creation timestamp are never taken from input.
        """
        fields = {k: v for k, v in data.items() if k not in ("_id", "id", "timestamp")}
        return cls.model_validate(fields)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]):
        fields = {k: v for k, v in doc.items() if k != "_id"}
        fields["id"] = str(doc["_id"]) if doc.get("_id") is not None else None
        return cls.model_validate(fields)

    @classmethod
    def partial(cls, data: Dict[str, Any], exc: PydanticValidationError) -> Tuple[Optional["Document"], Set[str]]:
        """Rebuild from the input keys that passed field validation.

        Returns the instance, or None when a required field is unusable, and
        the names of the fields that failed so rules reading them can be skipped.
        """
        failed_keys = {err["loc"][0] for err in exc.errors() if err.get("loc")}
        failed = {cls.field_name(key) for key in failed_keys}
        kept = {k: v for k, v in data.items() if k not in failed_keys}
        try:
            return cls.create(kept), failed
        except PydanticValidationError:
            return None, failed

    @classmethod
    def field_name(cls, key) -> str:
        """Model field an input key populates, through any of its aliases."""
        for name, info in cls.model_fields.items():
            keys = {name, info.alias, info.serialization_alias}
            if isinstance(info.validation_alias, AliasChoices):
                keys.update(choice for choice in info.validation_alias.choices if isinstance(choice, str))
            elif isinstance(info.validation_alias, str):
                keys.add(info.validation_alias)
            if key in keys:
                return name
        return str(key)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"})

    def validate(self) -> ValidationResult:
        return Ok(self)


class LegacyDocument(Document):
    """Catalog documents predate validation; null fields read as their default."""

    @field_validator("*", mode="before")
    @classmethod
    def null_as_default(cls, value, info):
        if value is None:
            field = cls.model_fields[info.field_name]
            if not field.is_required():
                return field.get_default(call_default_factory=True)
        return value


# Contacts

class Customer(Document):
    mysql_id: Optional[int] = Field(None, alias="mysqlId", description="Legacy relational id")
    sale_id: Optional[str] = Field(None, alias="saleId")
    contact: str = Field("", description="Customer name or contact line")
    email: Optional[str] = ""
    created_date: UtcDatetime = Field(default_factory=utcnow, alias="createdDate")
    timestamp: int = Field(default_factory=now_ms, description="Creation time in epoch ms")

    def validate(self) -> ValidationResult:
        violations = []
        if blank(self.contact):
            violations.append(Violation("contact_required", "Contact is required", ("contact",)))
        if self.email and not is_valid_email(self.email):
            violations.append(Violation("email_invalid", "Invalid email format", ("email",)))
        return _result(self, violations)


class Supplier(Document):
    mysql_id: Optional[int] = Field(None, alias="mysqlId", description="Legacy relational id")
    name: str = ""
    contact: str = ""
    contact_person: Optional[str] = Field("", alias="contactPerson")
    phone: Optional[str] = ""
    email: Optional[str] = ""
    address: Optional[str] = ""
    created_date: UtcDatetime = Field(default_factory=utcnow, alias="createdDate")
    timestamp: int = Field(default_factory=now_ms, description="Creation time in epoch ms")

    def validate(self) -> ValidationResult:
        violations = []
        if blank(self.name):
            violations.append(Violation("name_required", "Supplier name is required", ("name",)))
        if blank(self.contact):
            violations.append(Violation("contact_required", "Contact information is required", ("contact",)))
        if self.email and not is_valid_email(self.email):
            violations.append(Violation("email_invalid", "Invalid email format", ("email",)))
        if self.phone and not is_valid_phone(self.phone):
            violations.append(Violation("phone_invalid", "Invalid phone number format", ("phone",)))
        return _result(self, violations)


# Legacy catalog

class Quantity(LegacyDocument):
    product_mysql_id: Optional[int] = Field(
        None, description="Legacy id of the product",
        **_legacy("productMysqlId", "product_mysql_id", "productId", "product_id"),
    )
    quantity_size: float = Field(0, **_legacy("quantitySize", "quantity_size"))
    created_date: UtcDatetime = Field(default_factory=utcnow, **_legacy("createdDate", "created_date"))
    updated_date: UtcDatetime = Field(default_factory=utcnow, **_legacy("updatedDate", "updated_date"))

    def validate(self) -> ValidationResult:
        violations = []
        if not self.product_mysql_id:
            violations.append(Violation("product_required", "Product ID is required", ("product_mysql_id",)))
        if self.quantity_size < 0:
            violations.append(Violation("quantity_negative", "Quantity size must be non-negative", ("quantity_size",)))
        return _result(self, violations)


class Product(LegacyDocument):
    mysql_id: Optional[int] = Field(None, description="Legacy id, the product's address", **_legacy("mysqlId", "mysql_id"))
    name: str = ""
    barcode: str = ""
    discount: float = 0
    tax: float = 0
    sale_price: float = Field(0, **_legacy("salePrice", "sale_price"))
    category: Optional[str] = ""
    expire_date: Optional[UtcDatetime] = Field(None, **_legacy("expireDate", "expire_date"))
    supplier_id: Optional[int] = Field(None, **_legacy("supplierId", "supplier_id"))
    supplier_name: Optional[str] = Field("", **_legacy("supplierName", "supplier_name"))
    created_date: UtcDatetime = Field(default_factory=utcnow, **_legacy("createdDate", "created_date"))

    def validate(self) -> ValidationResult:
        violations = []
        if blank(self.name):
            violations.append(Violation("name_required", "Product name is required", ("name",)))
        if blank(self.barcode):
            violations.append(Violation("barcode_required", "Barcode is required", ("barcode",)))
        if self.sale_price < 0:
            violations.append(Violation("price_negative", "Sale price must be non-negative", ("sale_price",)))
        return _result(self, violations)

    def format_with_quantity(self, quantity: Optional[Quantity]) -> Dict[str, Any]:
        """Legacy response shape: snake_case keys with the stock row embedded."""
        product_id = self.mysql_id if self.mysql_id is not None else self.id
        return {
            "id": product_id,
            "name": self.name,
            "barcode": self.barcode,
            "discount": self.discount,
            "tax": self.tax,
            "sale_price": self.sale_price,
            "category": self.category,
            "expire_date": self.expire_date,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier_name,
            "created_date": self.created_date,
            "quantities": {
                "id": quantity.id,
                "product_id": product_id,
                "quantity_size": quantity.quantity_size,
                "created_date": quantity.created_date,
                "updated_date": quantity.updated_date,
            } if quantity is not None else None,
        }


# Sales

class SaleItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mysql_id: Optional[int] = Field(None, alias="mysqlId")
    product_id: int = Field(..., gt=0, alias="productId")
    product_name: Optional[str] = Field("", alias="productName")
    category: Optional[str] = ""
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0, alias="unitPrice")
    sub_total: Optional[float] = Field(None, ge=0, alias="subTotal", description="quantity x unitPrice unless supplied")

    @model_validator(mode="after")
    def derive_sub_total(self):
        if self.sub_total is None:
            self.calculate_sub_total()
        return self

    def calculate_sub_total(self) -> float:
        self.sub_total = round(self.quantity * self.unit_price, 2)
        return self.sub_total

    def line_total(self) -> float:
        if self.sub_total is None:
            return round(self.quantity * self.unit_price, 2)
        return self.sub_total

    def validate(self, index: int = 0) -> List[Violation]:
        """Line rules not covered by the field constraints, reported against ``saleItems[index]``."""
        if blank(self.product_name):
            return [Violation(
                "product_name_required", f"saleItems[{index}]: Product name is required", ("sale_items",)
            )]
        return []


# Sale fields the derived totals are computed from
TOTAL_INPUTS = ("sale_items", "tax_amount", "discount_amount")


class Sale(Document):
    mysql_id: Optional[int] = Field(None, alias="mysqlId", description="Legacy relational id")
    sale_id: str = Field("", alias="saleId", description="Caller-supplied business id")
    customer_id: Optional[int] = Field(None, gt=0, alias="customerId")
    customer_contact: Optional[str] = Field("", alias="customerContact")
    sale_items: List[SaleItem] = Field(default_factory=list, alias="saleItems")
    sub_total: float = Field(0, ge=0, alias="subTotal")
    tax_amount: float = Field(0, ge=0, alias="taxAmount")
    discount_amount: float = Field(0, ge=0, alias="discountAmount")
    total_amount: float = Field(0, ge=0, alias="totalAmount")
    paid_amount: float = Field(..., ge=0, alias="paidAmount")
    change_amount: float = Field(0, alias="changeAmount")
    payment_method: Optional[str] = Field("", alias="paymentMethod")
    sale_date: UtcDatetime = Field(default_factory=utcnow, alias="saleDate")
    timestamp: int = Field(default_factory=now_ms, description="Creation time in epoch ms")

    def calculate_totals(self) -> "Sale":
        """Recompute the derived amounts from the line items.

        Must run after any change to items, tax or discount and before the sale
        is validated or stored; caller-supplied aggregate totals are discarded.
        """
        self.sub_total = round(sum(item.line_total() for item in self.sale_items), 2)
        self.total_amount = round(self.sub_total + self.tax_amount - self.discount_amount, 2)
        self.change_amount = round(self.paid_amount - self.total_amount, 2)
        return self

    def add_item(self, item_data: Dict[str, Any]) -> SaleItem:
        fields = {k: v for k, v in item_data.items() if k not in ("subTotal", "sub_total")}
        item = SaleItem.model_validate(fields)
        self.sale_items.append(item)
        self.calculate_totals()
        return item

    def validate(self) -> ValidationResult:
        violations = []
        if blank(self.sale_id):
            violations.append(Violation("sale_id_required", "Sale ID is required", ("sale_id",)))
        if not self.sale_items:
            violations.append(Violation("items_required", "Sale must have at least one item", ("sale_items",)))
        for index, item in enumerate(self.sale_items):
            violations.extend(item.validate(index))
        if self.total_amount < 0:
            violations.append(Violation("total_negative", "Total amount cannot be negative", TOTAL_INPUTS))
        if self.paid_amount < self.total_amount:
            violations.append(Violation(
                "payment_insufficient", "Paid amount must be greater than or equal to total amount",
                TOTAL_INPUTS + ("paid_amount",),
            ))
        return _result(self, violations)
