import json
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth import (
    Actor,
    authenticate,
    bootstrap_admin,
    change_user_role,
    create_access_token,
    create_admin_user,
    get_current_actor,
    list_users,
    public_user,
    register_user,
    require_roles,
)
from catalog import Catalog, public_product
from config import ADMIN_EMAIL, ADMIN_NAME, ADMIN_PASSWORD, CORS_ORIGINS, PAYSTACK_WEBHOOK_SECRET
from database import USERS, close_client, ensure_indexes, get_db, parse_id, serialize
from errors import AppError, NotFound
from logging_config import configure_logging
from orders import OrderLedger, public_order
from payments import SIGNATURE_HEADER, get_gateway, verify_signature
from schemas import (
    AdminUserBody,
    Category,
    LoginBody,
    OrderCreate,
    OrderStatus,
    OutletBody,
    OutletUpdate,
    PricingChange,
    ProductBody,
    ProductUpdate,
    RegisterBody,
    RestockDecision,
    RestockRequestBody,
    RestockStatus,
    ReviewBody,
    Role,
    RoleChange,
    StatusChange,
)

configure_logging()
log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = get_db()
    await ensure_indexes(db)
    if ADMIN_EMAIL and ADMIN_PASSWORD:
        await bootstrap_admin(db, ADMIN_NAME, ADMIN_EMAIL, ADMIN_PASSWORD)
    log.info("app.started")
    yield
    await close_client()


app = FastAPI(title="Outlet Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        log.error("request.failed", path=request.url.path, kind=exc.kind.value, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=serialize(exc.to_body()))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e["loc"][1:]), "msg": e["msg"]}
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "errors": errors})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("request.crashed", path=request.url.path, method=request.method)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server error"})


# Dependencies

def get_catalog(db=Depends(get_db)) -> Catalog:
    return Catalog(db)


def get_ledger(db=Depends(get_db), gateway=Depends(get_gateway)) -> OrderLedger:
    return OrderLedger(db, gateway=gateway)


customer_only = require_roles(Role.customer)
outlet_only = require_roles(Role.outlet)
admin_only = require_roles(Role.admin)
outlet_or_admin = require_roles(Role.outlet, Role.admin)


@app.get("/")
def root():
    return {"message": "Outlet Marketplace Backend Running"}


# Simple health and db test
@app.get("/test")
async def test_database(db=Depends(get_db)):
    try:
        collections = await db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception:
        log.exception("health.db_unreachable")
        return {"backend": "ok", "db": "unavailable"}


# Auth endpoints

def _session(user: dict) -> dict:
    return {
        "success": True,
        "token": create_access_token(str(user["_id"]), Role(user["role"])),
        "user": public_user(user),
    }


@app.post("/auth/register", status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterBody, db=Depends(get_db)):
    user = await register_user(db, payload.name, payload.email, payload.password, payload.role)
    log.info("user.registered", user_id=str(user["_id"]), role=user["role"])
    return _session(user)


@app.post("/auth/login")
async def login(payload: LoginBody, db=Depends(get_db)):
    user = await authenticate(db, payload.email, payload.password)
    return _session(user)


@app.get("/auth/logout")
def logout():
    # Tokens are stateless; the client drops its copy
    return {"success": True, "message": "User logged out successfully"}


@app.get("/auth/me")
async def me(actor: Actor = Depends(get_current_actor), db=Depends(get_db)):
    user = await db[USERS].find_one({"_id": parse_id(actor.id, "User")})
    if not user:
        raise NotFound("User not found")
    return {"success": True, "user": dict(public_user(user), createdAt=serialize(user.get("createdAt")))}


# Admin

@app.post("/admin/users", status_code=status.HTTP_201_CREATED)
async def admin_create_user(payload: AdminUserBody, actor: Actor = Depends(admin_only), db=Depends(get_db)):
    user = await create_admin_user(db, actor, payload.name, payload.email, payload.password)
    return {"success": True, "data": public_user(user)}


@app.get("/admin/stats")
async def admin_stats(actor: Actor = Depends(admin_only), catalog: Catalog = Depends(get_catalog)):
    return {"success": True, "data": serialize(await catalog.dashboard_stats())}


@app.get("/admin/users")
async def admin_list_users(
    role: Optional[Role] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(admin_only),
    db=Depends(get_db),
):
    result = await list_users(db, role=role, page=page, limit=limit)
    return {"success": True, **result}


@app.put("/admin/users/{user_id}/role")
async def admin_change_role(user_id: str, payload: RoleChange, actor: Actor = Depends(admin_only), db=Depends(get_db)):
    user = await change_user_role(db, actor, user_id, payload.role)
    return {"success": True, "data": public_user(user)}


@app.get("/admin/outlets/pending")
async def admin_pending_outlets(actor: Actor = Depends(admin_only), catalog: Catalog = Depends(get_catalog)):
    outlets = await catalog.pending_outlets()
    return {"success": True, "count": len(outlets), "data": serialize(outlets)}


@app.get("/admin/outlets")
async def admin_list_outlets(
    verified: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(admin_only),
    catalog: Catalog = Depends(get_catalog),
):
    result = await catalog.list_outlets(verified=verified, page=page, limit=limit)
    return {"success": True, **serialize(result)}


@app.put("/admin/outlets/{outlet_id}/verify")
async def admin_verify_outlet(outlet_id: str, actor: Actor = Depends(admin_only), catalog: Catalog = Depends(get_catalog)):
    outlet = await catalog.verify_outlet(outlet_id)
    return {"success": True, "data": serialize(outlet)}


@app.get("/admin/orders")
async def admin_list_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    actor: Actor = Depends(admin_only),
    ledger: OrderLedger = Depends(get_ledger),
):
    result = await ledger.list_orders(status=status, page=page, limit=limit)
    return {"success": True, **serialize(result)}


@app.put("/admin/orders/{order_id}/pricing")
async def admin_change_pricing(
    order_id: str,
    payload: PricingChange,
    actor: Actor = Depends(admin_only),
    ledger: OrderLedger = Depends(get_ledger),
):
    order = await ledger.update_pricing(actor, order_id, payload.shippingPrice)
    return {"success": True, "order": public_order(order)}


# Outlets

@app.get("/outlets")
async def list_outlets(
    verified: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    catalog: Catalog = Depends(get_catalog),
):
    result = await catalog.list_outlets(verified=verified, page=page, limit=limit)
    return {"success": True, **serialize(result)}


@app.post("/outlets", status_code=status.HTTP_201_CREATED)
async def create_outlet(payload: OutletBody, actor: Actor = Depends(outlet_only), catalog: Catalog = Depends(get_catalog)):
    outlet = await catalog.create_outlet(actor, payload)
    return {"success": True, "data": serialize(outlet)}


@app.get("/outlets/my/outlet")
async def my_outlet(actor: Actor = Depends(outlet_only), catalog: Catalog = Depends(get_catalog)):
    return {"success": True, "data": serialize(await catalog.get_my_outlet(actor))}


@app.get("/outlets/{outlet_id}")
async def get_outlet(outlet_id: str, catalog: Catalog = Depends(get_catalog)):
    return {"success": True, "data": serialize(await catalog.get_outlet(outlet_id))}


@app.get("/outlets/{outlet_id}/products")
async def get_outlet_products(outlet_id: str, catalog: Catalog = Depends(get_catalog)):
    products = await catalog.outlet_products(outlet_id)
    return {"success": True, "count": len(products), "data": [public_product(p) for p in products]}


@app.put("/outlets/{outlet_id}")
async def update_outlet(
    outlet_id: str,
    payload: OutletUpdate,
    actor: Actor = Depends(outlet_or_admin),
    catalog: Catalog = Depends(get_catalog),
):
    outlet = await catalog.update_outlet(actor, outlet_id, payload)
    return {"success": True, "data": serialize(outlet)}


@app.delete("/outlets/{outlet_id}")
async def delete_outlet(outlet_id: str, actor: Actor = Depends(outlet_or_admin), catalog: Catalog = Depends(get_catalog)):
    removed = await catalog.delete_outlet(actor, outlet_id)
    return {"success": True, "message": "Outlet deleted successfully", "productsRemoved": removed}


# Products

@app.get("/products")
async def list_products(
    category: Optional[Category] = None,
    q: Optional[str] = None,
    featured: Optional[bool] = None,
    outlet: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    catalog: Catalog = Depends(get_catalog),
):
    result = await catalog.list_products(
        category=category.value if category else None, q=q, featured=featured, outlet=outlet, page=page, limit=limit
    )
    return {"success": True, **result}


@app.get("/products/outlet")
async def my_products(actor: Actor = Depends(outlet_only), catalog: Catalog = Depends(get_catalog)):
    products = await catalog.my_products(actor)
    return {"success": True, "count": len(products), "data": [public_product(p) for p in products]}


@app.post("/products/outlet", status_code=status.HTTP_201_CREATED)
async def create_product(payload: ProductBody, actor: Actor = Depends(outlet_only), catalog: Catalog = Depends(get_catalog)):
    product = await catalog.create_product(actor, payload)
    return {"success": True, "data": public_product(product)}


@app.put("/products/outlet/{product_id}")
async def update_product(
    product_id: str,
    payload: ProductUpdate,
    actor: Actor = Depends(outlet_or_admin),
    catalog: Catalog = Depends(get_catalog),
):
    product = await catalog.update_product(actor, product_id, payload)
    return {"success": True, "data": public_product(product)}


@app.delete("/products/outlet/{product_id}")
async def delete_product(product_id: str, actor: Actor = Depends(outlet_or_admin), catalog: Catalog = Depends(get_catalog)):
    await catalog.delete_product(actor, product_id)
    return {"success": True, "message": "Product deleted successfully"}


@app.get("/products/{product_id}")
async def get_product(product_id: str, catalog: Catalog = Depends(get_catalog)):
    return {"success": True, "data": public_product(await catalog.get_product(product_id))}


@app.post("/products/{product_id}/reviews", status_code=status.HTTP_201_CREATED)
async def add_review(
    product_id: str,
    payload: ReviewBody,
    actor: Actor = Depends(customer_only),
    catalog: Catalog = Depends(get_catalog),
):
    product = await catalog.add_review(actor, product_id, payload)
    return {"success": True, "message": "Review added successfully", "data": public_product(product)}


# Restocking

@app.post("/restock/request", status_code=status.HTTP_201_CREATED)
async def request_restock(
    payload: RestockRequestBody,
    actor: Actor = Depends(outlet_only),
    catalog: Catalog = Depends(get_catalog),
):
    request = await catalog.request_restock(actor, payload)
    return {"success": True, "message": "Restock request created successfully", "request": serialize(request)}


@app.get("/restock/outlet-requests")
async def outlet_restock_requests(actor: Actor = Depends(outlet_only), catalog: Catalog = Depends(get_catalog)):
    requests = await catalog.my_restock_requests(actor)
    return {"success": True, "count": len(requests), "requests": serialize(requests)}


@app.get("/restock/all")
async def all_restock_requests(
    status: Optional[RestockStatus] = None,
    actor: Actor = Depends(admin_only),
    catalog: Catalog = Depends(get_catalog),
):
    requests = await catalog.list_restock_requests(status)
    return {"success": True, "count": len(requests), "requests": serialize(requests)}


@app.put("/restock/process/{request_id}")
async def process_restock(
    request_id: str,
    payload: RestockDecision,
    actor: Actor = Depends(admin_only),
    catalog: Catalog = Depends(get_catalog),
):
    request = await catalog.process_restock(actor, request_id, payload)
    return {"success": True, "message": f"Restock request {request['status']}", "request": serialize(request)}


# Orders

@app.post("/orders", status_code=status.HTTP_201_CREATED)
async def create_order(payload: OrderCreate, actor: Actor = Depends(customer_only), ledger: OrderLedger = Depends(get_ledger)):
    order, payment_url = await ledger.create_order(actor, payload)
    body = {"success": True, "order": public_order(order)}
    if payment_url:
        body["paymentUrl"] = payment_url
    return body


@app.get("/orders")
async def my_orders(actor: Actor = Depends(customer_only), ledger: OrderLedger = Depends(get_ledger)):
    orders = await ledger.get_my_orders(actor)
    return {"success": True, "count": len(orders), "orders": [public_order(o) for o in orders]}


@app.get("/orders/outlet")
async def outlet_orders(actor: Actor = Depends(outlet_only), ledger: OrderLedger = Depends(get_ledger)):
    orders = await ledger.get_outlet_orders(actor)
    return {"success": True, "count": len(orders), "orders": [public_order(o) for o in orders]}


@app.get("/orders/verify-payment/{reference}")
async def verify_payment(reference: str, ledger: OrderLedger = Depends(get_ledger)):
    order = await ledger.verify_payment(reference)
    return {"success": True, "message": "Payment verified successfully", "order": public_order(order)}


@app.post("/orders/paystack-webhook")
async def paystack_webhook(request: Request, ledger: OrderLedger = Depends(get_ledger)):
    raw = await request.body()
    if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), PAYSTACK_WEBHOOK_SECRET):
        log.warning("webhook.rejected", reason="invalid signature")
        return JSONResponse(status_code=401, content={"success": False, "message": "Invalid signature"})

    # Past this point the provider always gets a 200, or it will keep redelivering
    try:
        event = json.loads(raw)
        await ledger.handle_webhook_event(event)
    except AppError as e:
        log.warning("webhook.not_applied", kind=e.kind.value, message=e.message)
    except Exception:
        log.exception("webhook.crashed")
    return {"received": True}


@app.get("/orders/{order_id}")
async def get_order(order_id: str, actor: Actor = Depends(get_current_actor), ledger: OrderLedger = Depends(get_ledger)):
    order = await ledger.get_order_by_id(actor, order_id)
    return {"success": True, "order": public_order(order)}


@app.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: StatusChange,
    actor: Actor = Depends(outlet_or_admin),
    ledger: OrderLedger = Depends(get_ledger),
):
    order = await ledger.update_order_status(order_id, payload.status, actor)
    return {"success": True, "order": public_order(order)}


if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
