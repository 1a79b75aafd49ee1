"""
Entity services for the POS Records API.

Each service validates input through its model, talks to one collection of the
injected Database and shapes the response envelope. Errors propagate to the
caller as ValidationError, NotFoundError or InfrastructureError.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Type

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import PyMongoError

from errors import InfrastructureError, Invalid, NotFoundError, ValidationError, Violation, from_pydantic
from query import (
    AnalyticsOptions,
    CustomerListOptions,
    ListOptions,
    ProductListOptions,
    QuantityListOptions,
    SaleListOptions,
    SupplierListOptions,
    build_pagination,
    envelope,
    search_filter,
)
from schemas import Customer, Document, Product, Quantity, Sale, Supplier, utcnow

logger = logging.getLogger(__name__)

EMPTY_ANALYTICS = {
    "totalSales": 0,
    "totalRevenue": 0,
    "totalItemsSold": 0,
    "averageSaleAmount": 0,
}


@asynccontextmanager
async def store_errors(action: str):
    """Re-raise driver failures as InfrastructureError."""
    try:
        yield
    except PyMongoError as exc:
        logger.error("Error %s: %s", action, exc)
        raise InfrastructureError(f"Error {action}: {exc}") from exc


def load(model: Type[Document], doc: Dict[str, Any]) -> Document:
    """Parse a stored document; unreadable records are a store fault, not a client one."""
    try:
        return model.from_document(doc)
    except PydanticValidationError as exc:
        logger.error("Unreadable %s document %s: %s", model.__name__.lower(), doc.get("_id"), exc)
        raise InfrastructureError(f"Stored {model.__name__.lower()} {doc.get('_id')} is malformed") from exc


def object_id(value: str) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    return ObjectId(value) if ObjectId.is_valid(value) else None


class EntityService:
    collection_name = ""
    entity_name = ""
    model: Type[Document] = Document
    list_options: Type[ListOptions] = ListOptions
    search_fields: tuple = ()

    def __init__(self, database):
        self.database = database

    async def collection(self):
        return await self.database.get_collection(self.collection_name)

    # Hooks

    def prepare(self, entity: Document) -> None:
        """Runs between construction and validation."""

    def identity(self, id: str) -> Dict[str, Any]:
        oid = object_id(id)
        if oid is None:
            raise NotFoundError(self.entity_name)
        return {"_id": oid}

    def replacement(self, entity: Document, id: str) -> Dict[str, Any]:
        return entity.to_document()

    def base_filter(self, options: ListOptions) -> Dict[str, Any]:
        return {}

    async def present(self, docs: List[Dict[str, Any]]) -> List[Any]:
        return [load(self.model, doc) for doc in docs]

    # Helpers

    def build(self, data: Dict[str, Any]) -> Document:
        """Construct, prepare and validate ``data``, reporting every violation at once.

        Field constraint failures are merged with the business rules that do not
        read a failed field.
        """
        violations: List[Violation] = []
        failed = set()
        try:
            entity = self.model.create(data)
        except PydanticValidationError as exc:
            violations.extend(from_pydantic(exc).violations)
            entity, failed = self.model.partial(data, exc)
        if entity is not None:
            self.prepare(entity)
            result = entity.validate()
            if isinstance(result, Invalid):
                violations.extend(v for v in result.violations if not failed.intersection(v.fields))
        if violations:
            logger.info("Rejected %s: %s", self.entity_name.lower(), ", ".join(v.message for v in violations))
            raise ValidationError(violations)
        return entity

    async def _find_one(self, flt: Dict[str, Any], action: str) -> Dict[str, Any]:
        async with store_errors(action):
            collection = await self.collection()
            doc = await collection.find_one(flt)
        if doc is None:
            raise NotFoundError(self.entity_name)
        return doc

    async def _paginate(self, flt: Dict[str, Any], options: ListOptions, action: str) -> Dict[str, Any]:
        async with store_errors(action):
            collection = await self.collection()
            cursor = (
                collection.find(flt)
                .sort(options.sort_by, options.sort_order)
                .skip(options.skip)
                .limit(options.limit)
            )
            docs = await cursor.to_list(length=None)
            total_count = await collection.count_documents(flt)
            data = await self.present(docs)
        return envelope(
            data,
            pagination=build_pagination(options.page, options.limit, total_count),
            count=len(data),
        )

    # Operations

    async def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        entity = self.build(data)
        doc = entity.to_document()
        async with store_errors(f"creating {self.entity_name.lower()}"):
            collection = await self.collection()
            result = await collection.insert_one(doc)
        created = load(self.model, {**doc, "_id": result.inserted_id})
        logger.info("Created %s %s", self.entity_name.lower(), created.id)
        return envelope(created, message=f"{self.entity_name} created successfully")

    async def get_all(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = self.list_options.parse(params)
        return await self._paginate(self.base_filter(options), options, f"fetching {self.collection_name}")

    async def get_by_id(self, id: str) -> Dict[str, Any]:
        doc = await self._find_one(self.identity(id), f"fetching {self.entity_name.lower()}")
        data = await self.present([doc])
        return envelope(data[0])

    async def get_by_legacy_id(self, mysql_id: int) -> Dict[str, Any]:
        doc = await self._find_one({"mysqlId": mysql_id}, f"fetching {self.entity_name.lower()} by legacy id")
        data = await self.present([doc])
        return envelope(data[0])

    async def update(self, id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        entity = self.build(data)
        flt = self.identity(id)
        async with store_errors(f"updating {self.entity_name.lower()}"):
            collection = await self.collection()
            result = await collection.update_one(flt, {"$set": self.replacement(entity, id)})
        if result.matched_count == 0:
            raise NotFoundError(self.entity_name)
        updated = await self.get_by_id(id)
        return envelope(updated["data"], message=f"{self.entity_name} updated successfully")

    async def delete(self, id: str) -> Dict[str, Any]:
        flt = self.identity(id)
        async with store_errors(f"deleting {self.entity_name.lower()}"):
            collection = await self.collection()
            result = await collection.delete_one(flt)
        if result.deleted_count == 0:
            raise NotFoundError(self.entity_name)
        logger.info("Deleted %s %s", self.entity_name.lower(), id)
        return envelope(message=f"{self.entity_name} deleted successfully")

    async def search(self, query: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.search_fields:
            raise ValidationError([Violation("search_unsupported", f"{self.entity_name} records cannot be searched")])
        options = self.list_options.parse(params)
        return await self._paginate(search_filter(query, self.search_fields), options, f"searching {self.collection_name}")


class CustomerService(EntityService):
    collection_name = "customers"
    entity_name = "Customer"
    model = Customer
    list_options = CustomerListOptions
    search_fields = ("contact", "email", "saleId")


class SupplierService(EntityService):
    collection_name = "suppliers"
    entity_name = "Supplier"
    model = Supplier
    list_options = SupplierListOptions
    search_fields = ("name", "contact", "contactPerson", "phone", "email")


class SaleService(EntityService):
    collection_name = "sales"
    entity_name = "Sale"
    model = Sale
    list_options = SaleListOptions

    def prepare(self, sale: Sale) -> None:
        sale.calculate_totals()

    def base_filter(self, options: SaleListOptions) -> Dict[str, Any]:
        return options.to_filter()

    async def get_by_customer_id(self, customer_id: int, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = SaleListOptions.parse({**(params or {}), "customerId": customer_id})
        return await self._paginate(options.to_filter(), options, "fetching sales by customer")

    async def get_sales_analytics(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = AnalyticsOptions.parse(params)
        pipeline = [
            {"$match": options.to_filter()},
            {
                "$group": {
                    "_id": None,
                    "totalSales": {"$sum": 1},
                    "totalRevenue": {"$sum": "$totalAmount"},
                    "totalItemsSold": {"$sum": {"$size": "$saleItems"}},
                    "averageSaleAmount": {"$avg": "$totalAmount"},
                }
            },
        ]
        async with store_errors("fetching sales analytics"):
            collection = await self.collection()
            cursor = await collection.aggregate(pipeline)
            rows = await cursor.to_list(length=None)
        # $group emits no row for an empty match
        if not rows:
            return envelope(dict(EMPTY_ANALYTICS))
        row = rows[0]
        return envelope({
            "totalSales": row["totalSales"],
            "totalRevenue": round(row["totalRevenue"], 2),
            "totalItemsSold": row["totalItemsSold"],
            "averageSaleAmount": round(row["averageSaleAmount"] or 0, 2),
        })


class ProductService(EntityService):
    """Legacy catalog. Products are addressed by their legacy id."""

    collection_name = "products"
    entity_name = "Product"
    model = Product
    list_options = ProductListOptions
    search_fields = ("name", "barcode")

    def identity(self, id) -> Dict[str, Any]:
        try:
            return {"mysqlId": int(id)}
        except (TypeError, ValueError):
            raise NotFoundError(self.entity_name)

    def replacement(self, product: Product, id) -> Dict[str, Any]:
        if product.mysql_id is not None and product.mysql_id != int(id):
            raise ValidationError([Violation(
                "id_mismatch", f"Product id {product.mysql_id} does not match path id {id}", ("mysql_id",)
            )])
        product.mysql_id = int(id)
        return product.to_document()

    async def _quantity_for(self, product: Product) -> Optional[Quantity]:
        if product.mysql_id is None:
            return None
        quantities = await self.database.get_collection("quantities")
        doc = await quantities.find_one({"productMysqlId": product.mysql_id})
        return load(Quantity, doc) if doc else None

    async def present(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        products = [load(Product, doc) for doc in docs]
        quantities = await asyncio.gather(*(self._quantity_for(p) for p in products))
        return [p.format_with_quantity(q) for p, q in zip(products, quantities)]

    async def get_by_category(self, category: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        options = self.list_options.parse(params)
        return await self._paginate({"category": category}, options, "fetching products by category")


class QuantityService(EntityService):
    collection_name = "quantities"
    entity_name = "Quantity"
    model = Quantity
    list_options = QuantityListOptions

    def replacement(self, quantity: Quantity, id: str) -> Dict[str, Any]:
        quantity.updated_date = utcnow()
        return quantity.to_document()

    async def get_by_product_id(self, product_id: int) -> Dict[str, Any]:
        async with store_errors("fetching quantities by product"):
            collection = await self.collection()
            docs = await collection.find({"productMysqlId": product_id}).to_list(length=None)
        data = [load(Quantity, doc) for doc in docs]
        return envelope(data, count=len(data))

    async def get_by_legacy_id(self, mysql_id: int) -> Dict[str, Any]:
        return await self.get_by_product_id(mysql_id)

    async def get_product_with_quantities(self, product_id: int) -> Dict[str, Any]:
        async with store_errors("fetching product with quantities"):
            products = await self.database.get_collection("products")
            doc = await products.find_one({"mysqlId": product_id})
            if doc is None:
                raise NotFoundError("Product")
            collection = await self.collection()
            rows = await collection.find({"productMysqlId": product_id}).to_list(length=None)
        product = load(Product, doc).model_dump(by_alias=True)
        product["quantities"] = [load(Quantity, row) for row in rows]
        return envelope(product)
