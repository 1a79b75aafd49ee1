import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import Database
from errors import InfrastructureError, NotFoundError, ValidationError
from query import error_envelope
from services import CustomerService, ProductService, QuantityService, SaleService, SupplierService

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = Database.from_env()
    database.init()
    app.state.database = database
    yield
    await database.shutdown()


app = FastAPI(title="POS Records API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping

@app.exception_handler(ValidationError)
async def validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content=error_envelope(str(exc)))


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"{loc}: {err['msg']}")
    return JSONResponse(status_code=400, content=error_envelope("Validation failed: " + ", ".join(messages)))


@app.exception_handler(NotFoundError)
async def not_found_error(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content=error_envelope(str(exc)))


@app.exception_handler(InfrastructureError)
async def infrastructure_error(request: Request, exc: InfrastructureError):
    logger.error("Request %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content=error_envelope(str(exc)))


# Dependencies

def get_database(request: Request) -> Database:
    return request.app.state.database


def customer_service(database: Database = Depends(get_database)) -> CustomerService:
    return CustomerService(database)


def supplier_service(database: Database = Depends(get_database)) -> SupplierService:
    return SupplierService(database)


def sale_service(database: Database = Depends(get_database)) -> SaleService:
    return SaleService(database)


def product_service(database: Database = Depends(get_database)) -> ProductService:
    return ProductService(database)


def quantity_service(database: Database = Depends(get_database)) -> QuantityService:
    return QuantityService(database)


def list_params(page: int = 1, limit: int = 10, sortBy: Optional[str] = None,
                sortOrder: Optional[str] = None) -> Dict[str, Any]:
    return {"page": page, "limit": limit, "sortBy": sortBy, "sortOrder": sortOrder}


def sale_list_params(params: Dict[str, Any] = Depends(list_params), startDate: Optional[str] = None,
                     endDate: Optional[str] = None, customerId: Optional[int] = None) -> Dict[str, Any]:
    return {**params, "startDate": startDate, "endDate": endDate, "customerId": customerId}


@app.get("/")
def read_root():
    return {"name": "POS Records API", "status": "ok"}


@app.get("/api/health")
async def health(database: Database = Depends(get_database)):
    return {
        "status": "ok",
        "message": "POS Records API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": await database.get_health_status(),
    }


# Customers

@app.post("/api/customers", status_code=201)
async def create_customer(payload: Dict[str, Any] = Body(...), service: CustomerService = Depends(customer_service)):
    return await service.create(payload)


@app.get("/api/customers")
async def list_customers(params: Dict[str, Any] = Depends(list_params),
                         service: CustomerService = Depends(customer_service)):
    return await service.get_all(params)


@app.get("/api/customers/search/{query}")
async def search_customers(query: str, params: Dict[str, Any] = Depends(list_params),
                           service: CustomerService = Depends(customer_service)):
    return await service.search(query, params)


@app.get("/api/customers/mysql/{mysql_id}")
async def get_customer_by_mysql_id(mysql_id: int, service: CustomerService = Depends(customer_service)):
    return await service.get_by_legacy_id(mysql_id)


@app.get("/api/customers/{id}")
async def get_customer(id: str, service: CustomerService = Depends(customer_service)):
    return await service.get_by_id(id)


@app.put("/api/customers/{id}")
async def update_customer(id: str, payload: Dict[str, Any] = Body(...),
                          service: CustomerService = Depends(customer_service)):
    return await service.update(id, payload)


@app.delete("/api/customers/{id}")
async def delete_customer(id: str, service: CustomerService = Depends(customer_service)):
    return await service.delete(id)


# Suppliers

@app.post("/api/suppliers", status_code=201)
async def create_supplier(payload: Dict[str, Any] = Body(...), service: SupplierService = Depends(supplier_service)):
    return await service.create(payload)


@app.get("/api/suppliers")
async def list_suppliers(params: Dict[str, Any] = Depends(list_params),
                         service: SupplierService = Depends(supplier_service)):
    return await service.get_all(params)


@app.get("/api/suppliers/search/{query}")
async def search_suppliers(query: str, params: Dict[str, Any] = Depends(list_params),
                           service: SupplierService = Depends(supplier_service)):
    return await service.search(query, params)


@app.get("/api/suppliers/mysql/{mysql_id}")
async def get_supplier_by_mysql_id(mysql_id: int, service: SupplierService = Depends(supplier_service)):
    return await service.get_by_legacy_id(mysql_id)


@app.get("/api/suppliers/{id}")
async def get_supplier(id: str, service: SupplierService = Depends(supplier_service)):
    return await service.get_by_id(id)


@app.put("/api/suppliers/{id}")
async def update_supplier(id: str, payload: Dict[str, Any] = Body(...),
                          service: SupplierService = Depends(supplier_service)):
    return await service.update(id, payload)


@app.delete("/api/suppliers/{id}")
async def delete_supplier(id: str, service: SupplierService = Depends(supplier_service)):
    return await service.delete(id)


# Sales

@app.post("/api/sales", status_code=201)
async def create_sale(payload: Dict[str, Any] = Body(...), service: SaleService = Depends(sale_service)):
    return await service.create(payload)


@app.get("/api/sales")
async def list_sales(params: Dict[str, Any] = Depends(sale_list_params),
                     service: SaleService = Depends(sale_service)):
    return await service.get_all(params)


@app.get("/api/sales/analytics")
async def sales_analytics(startDate: Optional[str] = None, endDate: Optional[str] = None,
                          service: SaleService = Depends(sale_service)):
    return await service.get_sales_analytics({"startDate": startDate, "endDate": endDate})


@app.get("/api/sales/customer/{customer_id}")
async def list_sales_by_customer(customer_id: int, params: Dict[str, Any] = Depends(list_params),
                                 service: SaleService = Depends(sale_service)):
    return await service.get_by_customer_id(customer_id, params)


@app.get("/api/sales/mysql/{mysql_id}")
async def get_sale_by_mysql_id(mysql_id: int, service: SaleService = Depends(sale_service)):
    return await service.get_by_legacy_id(mysql_id)


@app.get("/api/sales/{id}")
async def get_sale(id: str, service: SaleService = Depends(sale_service)):
    return await service.get_by_id(id)


@app.put("/api/sales/{id}")
async def update_sale(id: str, payload: Dict[str, Any] = Body(...), service: SaleService = Depends(sale_service)):
    return await service.update(id, payload)


@app.delete("/api/sales/{id}")
async def delete_sale(id: str, service: SaleService = Depends(sale_service)):
    return await service.delete(id)


# Products (legacy catalog, addressed by legacy id)

@app.get("/api/products")
async def list_products(params: Dict[str, Any] = Depends(list_params),
                        service: ProductService = Depends(product_service)):
    return await service.get_all(params)


@app.get("/api/products/search/{query}")
async def search_products(query: str, params: Dict[str, Any] = Depends(list_params),
                          service: ProductService = Depends(product_service)):
    return await service.search(query, params)


@app.get("/api/products/category/{category}")
async def list_products_by_category(category: str, params: Dict[str, Any] = Depends(list_params),
                                    service: ProductService = Depends(product_service)):
    return await service.get_by_category(category, params)


@app.get("/api/products/{product_id}")
async def get_product(product_id: int, service: ProductService = Depends(product_service)):
    return await service.get_by_id(product_id)


@app.post("/api/products", status_code=201)
async def create_product(payload: Dict[str, Any] = Body(...), service: ProductService = Depends(product_service)):
    return await service.create(payload)


@app.put("/api/products/{product_id}")
async def update_product(product_id: int, payload: Dict[str, Any] = Body(...),
                         service: ProductService = Depends(product_service)):
    return await service.update(product_id, payload)


@app.delete("/api/products/{product_id}")
async def delete_product(product_id: int, service: ProductService = Depends(product_service)):
    return await service.delete(product_id)


# Quantities

@app.get("/api/quantities")
async def list_quantities(params: Dict[str, Any] = Depends(list_params),
                          service: QuantityService = Depends(quantity_service)):
    return await service.get_all(params)


@app.get("/api/quantities/product/{product_id}")
async def get_quantities_by_product(product_id: int, service: QuantityService = Depends(quantity_service)):
    return await service.get_by_product_id(product_id)


@app.get("/api/quantities/product/{product_id}/with-quantities")
async def get_product_with_quantities(product_id: int, service: QuantityService = Depends(quantity_service)):
    return await service.get_product_with_quantities(product_id)


@app.post("/api/quantities", status_code=201)
async def create_quantity(payload: Dict[str, Any] = Body(...), service: QuantityService = Depends(quantity_service)):
    return await service.create(payload)


@app.put("/api/quantities/{id}")
async def update_quantity(id: str, payload: Dict[str, Any] = Body(...),
                          service: QuantityService = Depends(quantity_service)):
    return await service.update(id, payload)


@app.delete("/api/quantities/{id}")
async def delete_quantity(id: str, service: QuantityService = Depends(quantity_service)):
    return await service.delete(id)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
