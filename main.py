import logging
import math
import os
import re
from contextlib import asynccontextmanager
from datetime import timedelta, timezone
from typing import Optional

from fastapi import FastAPI, APIRouter, Depends, Query, Request, Response, Header
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaError
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    Permission, Principal, create_access_token, create_reset_token, decode_token,
    get_current_user, make_password_context, public_user, require, RESET_PURPOSE,
)
from cart import CartManager
from config import Settings, configure_logging
from database import Store, connect, to_object_id, utcnow
from errors import StoreError, ValidationError, NotFound, Conflict, Unauthenticated
from mailer import Mailer
from orders import OrderBuilder, get_visible_order, list_orders, list_user_orders, set_order_status
from payments import PaymentInitiator, PaymentReconciler, PesapalGateway, SIGNATURE_HEADER, payment_history
from schemas import (
    User, Category, Product, Shipping,
    RegisterRequest, LoginRequest, ForgotPasswordRequest, ResetPasswordRequest, UserCreate, RoleUpdate,
    CategoryCreate, CategoryUpdate, ProductCreate, ProductUpdate,
    AddToCartRequest, UpdateCartItemRequest, CreateOrderRequest, UpdateOrderStatusRequest,
    CreatePaymentRequest, PaymentCallback, ShippingCreate, ShippingUpdate,
)

logger = logging.getLogger(__name__)


# ===================== Dependencies =====================

def get_store(request: Request) -> Store:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def raw_body(request: Request) -> bytes:
    return await request.body()


def _iname(name: str) -> dict:
    """Case-insensitive exact match."""
    return {"$regex": f"^{re.escape(name)}$", "$options": "i"}


# ===================== Public Endpoints =====================
service = APIRouter()


@service.get("/")
def root():
    return {"message": "Welcome to the Storefront API"}


@service.get("/test")
def test_database(store: Store = Depends(get_store), settings: Settings = Depends(get_settings)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if store.db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["collections"] = store.db.list_collection_names()
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    response["database_url"] = "✅ Set" if settings.database_url else "❌ Not Set"
    response["database_name"] = "✅ Set" if settings.database_name else "❌ Not Set"
    return response


# ===================== Auth =====================
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/register", status_code=201)
def register(payload: RegisterRequest, request: Request, store: Store = Depends(get_store),
             settings: Settings = Depends(get_settings)):
    if store.find_one("user", {"email": payload.email}):
        raise ValidationError("Email already registered")
    password_hash = request.app.state.pwd_context.hash(payload.password)
    user = User(name=payload.name, email=payload.email, password_hash=password_hash, role="customer")
    try:
        user_id = store.create_document("user", user)
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    logger.info(f"User {user_id} registered")
    return {"message": "User registered successfully", "token": create_access_token(user_id, settings)}


@auth_router.post("/login")
def login(payload: LoginRequest, request: Request, store: Store = Depends(get_store),
          settings: Settings = Depends(get_settings)):
    user = store.find_one("user", {"email": payload.email})
    if not user or not request.app.state.pwd_context.verify(payload.password, user["password_hash"]):
        logger.warning(f"Failed login for {payload.email}")
        raise Unauthenticated("Invalid credentials")
    return {
        "message": "Login successful",
        "token": create_access_token(user["_id"], settings),
        "user": public_user(user),
    }


@auth_router.post("/logout")
def logout():
    # Tokens are stateless; the client discards its copy
    return {"message": "Logged out successfully"}


@auth_router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, request: Request, store: Store = Depends(get_store),
                    settings: Settings = Depends(get_settings)):
    user = store.find_one("user", {"email": payload.email})
    if not user:
        raise NotFound("User not found")
    token = create_reset_token(user["_id"], settings)
    store.update_document("user", user["_id"], {
        "reset_token": token,
        "reset_token_expiry": utcnow() + timedelta(minutes=settings.reset_token_expires_minutes),
    })
    request.app.state.mailer.send_password_reset(user["email"], token)
    return {"message": "Password reset email sent"}


@auth_router.post("/reset-password")
def reset_password(payload: ResetPasswordRequest, request: Request, store: Store = Depends(get_store),
                   settings: Settings = Depends(get_settings)):
    invalid = ValidationError("Invalid or expired reset token")
    user_id = decode_token(payload.token, settings, purpose=RESET_PURPOSE)
    oid = to_object_id(user_id) if user_id else None
    if oid is None:
        raise invalid
    user = store.find_one("user", {"_id": oid, "reset_token": payload.token})
    expiry = user.get("reset_token_expiry") if user else None
    if expiry is None:
        raise invalid
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    if expiry <= utcnow():
        raise invalid

    store.update_document("user", user["_id"], {
        "password_hash": request.app.state.pwd_context.hash(payload.new_password),
        "reset_token": None,
        "reset_token_expiry": None,
    })
    logger.info(f"Password reset for user {user['_id']}")
    return {"message": "Password reset successful"}


# ===================== Users =====================
users_router = APIRouter(prefix="/api/users", tags=["users"])


@users_router.get("/me")
def me(principal: Principal = Depends(get_current_user)):
    return public_user(principal.user)


@users_router.get("")
def list_users(store: Store = Depends(get_store), _: Principal = Depends(require(Permission.MANAGE_USERS))):
    return [public_user(u) for u in store.get_documents("user", sort=[("created_at", 1)])]


@users_router.post("", status_code=201)
def create_user(payload: UserCreate, request: Request, store: Store = Depends(get_store),
                _: Principal = Depends(require(Permission.MANAGE_USERS))):
    if store.find_one("user", {"email": payload.email}):
        raise ValidationError("Email already registered")
    user = User(
        name=payload.name,
        email=payload.email,
        password_hash=request.app.state.pwd_context.hash(payload.password),
        role=payload.role,
    )
    try:
        user_id = store.create_document("user", user)
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    return public_user(store.get_document_by_id("user", user_id))


# ===================== Categories =====================
categories_router = APIRouter(prefix="/api/categories", tags=["categories"])


@categories_router.get("")
def list_categories(store: Store = Depends(get_store)):
    categories = store.get_documents("category", sort=[("name", 1)])
    for c in categories:
        c["product_count"] = store.count_documents("product", {"category_id": c["_id"]})
    return categories


@categories_router.get("/{category_id}/products")
def category_products(category_id: str, store: Store = Depends(get_store)):
    category = store.get_document_by_id("category", category_id)
    if not category:
        raise NotFound("Category not found")
    category["products"] = store.get_documents(
        "product", {"category_id": category["_id"], "stock": {"$gt": 0}}, sort=[("name", 1)])
    return category


@categories_router.post("", status_code=201)
def create_category(payload: CategoryCreate, store: Store = Depends(get_store),
                    _: Principal = Depends(require(Permission.MANAGE_CATALOG))):
    if store.find_one("category", {"name": _iname(payload.name)}):
        raise Conflict("Category already exists")
    cat_id = store.create_document("category", Category(**payload.model_dump()))
    return store.get_document_by_id("category", cat_id)


@categories_router.patch("/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate, store: Store = Depends(get_store),
                    _: Principal = Depends(require(Permission.MANAGE_CATALOG))):
    updates = payload.model_dump(exclude_unset=True)
    if updates.get("name"):
        clash = store.find_one("category", {"name": _iname(updates["name"]), "_id": {"$ne": to_object_id(category_id)}})
        if clash:
            raise Conflict("Category name already exists")
    category = store.update_and_get("category", category_id, updates)
    if not category:
        raise NotFound("Category not found")
    return category


@categories_router.delete("/{category_id}", status_code=204)
def delete_category(category_id: str, store: Store = Depends(get_store),
                    _: Principal = Depends(require(Permission.MANAGE_CATALOG))):
    category = store.get_document_by_id("category", category_id)
    if not category:
        raise NotFound("Category not found")
    product_count = store.count_documents("product", {"category_id": category["_id"]})
    if product_count > 0:
        raise ValidationError("Cannot delete category with existing products", productCount=product_count)
    store.delete_document("category", category_id)
    return Response(status_code=204)


# ===================== Products =====================
products_router = APIRouter(prefix="/api/products", tags=["products"])


def _check_category(store: Store, category_id: Optional[str]):
    if category_id and not store.get_document_by_id("category", category_id):
        raise ValidationError("Category not found")


@products_router.get("")
def list_products(store: Store = Depends(get_store)):
    return store.get_documents("product", sort=[("name", 1)])


@products_router.get("/{product_id}")
def get_product(product_id: str, store: Store = Depends(get_store)):
    product = store.get_document_by_id("product", product_id)
    if not product:
        raise NotFound("Product not found")
    return product


@products_router.post("", status_code=201)
def create_product(payload: ProductCreate, store: Store = Depends(get_store),
                   _: Principal = Depends(require(Permission.MANAGE_CATALOG))):
    _check_category(store, payload.category_id)
    product_id = store.create_document("product", Product(**payload.model_dump()))
    return store.get_document_by_id("product", product_id)


@products_router.put("/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, store: Store = Depends(get_store),
                   _: Principal = Depends(require(Permission.MANAGE_CATALOG))):
    updates = payload.model_dump(exclude_unset=True)
    _check_category(store, updates.get("category_id"))
    product = store.update_and_get("product", product_id, updates)
    if not product:
        raise NotFound("Product not found")
    return product


@products_router.delete("/{product_id}", status_code=204)
def delete_product(product_id: str, store: Store = Depends(get_store),
                   _: Principal = Depends(require(Permission.MANAGE_CATALOG))):
    if not store.delete_document("product", product_id):
        raise NotFound("Product not found")
    return Response(status_code=204)


# ===================== Search =====================
search_router = APIRouter(prefix="/api/search", tags=["search"])

SORT_FIELDS = {"price": "price", "name": "name", "newest": "created_at"}


@search_router.get("")
def search_products(
    q: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    category: Optional[str] = None,
    in_stock: Optional[bool] = Query(None, alias="inStock"),
    sort_by: str = Query("name", alias="sortBy", pattern="^(price|name|newest)$"),
    sort_order: str = Query("asc", alias="sortOrder", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    store: Store = Depends(get_store),
):
    where = {}
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        where["$or"] = [{"name": pattern}, {"description": pattern}]
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        where["price"] = price_filter
    if category:
        if to_object_id(category) is not None:
            where["category_id"] = category
        else:
            match = store.find_one("category", {"name": _iname(category)})
            where["category_id"] = match["_id"] if match else {"$in": []}
    if in_stock:
        where["stock"] = {"$gt": 0}

    direction = 1 if sort_order == "asc" else -1
    products = store.get_documents("product", where, sort=[(SORT_FIELDS[sort_by], direction)],
                                   skip=(page - 1) * limit, limit=limit)
    total = store.count_documents("product", where)
    for p in products:
        p["category"] = store.get_document_by_id("category", p["category_id"]) if p.get("category_id") else None

    total_pages = math.ceil(total / limit)
    return {
        "products": products,
        "metadata": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": total_pages,
            "hasNextPage": page < total_pages,
            "hasPreviousPage": page > 1,
        },
    }


@search_router.get("/filters")
def search_filters(store: Store = Depends(get_store)):
    cheapest = store.get_documents("product", sort=[("price", 1)], limit=1)
    dearest = store.get_documents("product", sort=[("price", -1)], limit=1)
    return {
        "categories": store.get_documents("category", sort=[("name", 1)]),
        "priceRange": {
            "min": cheapest[0]["price"] if cheapest else None,
            "max": dearest[0]["price"] if dearest else None,
        },
    }


# ===================== Cart =====================
cart_router = APIRouter(prefix="/api/cart", tags=["cart"])


def get_cart_manager(request: Request) -> CartManager:
    return request.app.state.cart


@cart_router.post("", status_code=201)
def add_to_cart(payload: AddToCartRequest, principal: Principal = Depends(get_current_user),
                cart: CartManager = Depends(get_cart_manager)):
    return cart.add_item(principal.id, payload.product_id, payload.quantity)


@cart_router.get("")
def get_cart(principal: Principal = Depends(get_current_user), cart: CartManager = Depends(get_cart_manager)):
    return cart.get_cart(principal.id)


@cart_router.patch("/items/{item_id}")
def update_cart_item(item_id: str, payload: UpdateCartItemRequest, principal: Principal = Depends(get_current_user),
                     cart: CartManager = Depends(get_cart_manager)):
    return cart.update_quantity(principal.id, item_id, payload.quantity)


@cart_router.delete("/items/{item_id}", status_code=204)
def remove_cart_item(item_id: str, principal: Principal = Depends(get_current_user),
                     cart: CartManager = Depends(get_cart_manager)):
    cart.remove_item(principal.id, item_id)
    return Response(status_code=204)


@cart_router.delete("", status_code=204)
def clear_cart(principal: Principal = Depends(get_current_user), cart: CartManager = Depends(get_cart_manager)):
    cart.clear(principal.id)
    return Response(status_code=204)


# ===================== Orders =====================
orders_router = APIRouter(prefix="/api/orders", tags=["orders"])


@orders_router.post("", status_code=201)
def create_order(payload: CreateOrderRequest, request: Request, principal: Principal = Depends(get_current_user)):
    builder: OrderBuilder = request.app.state.orders
    return builder.create_order(principal.id, payload.items)


@orders_router.get("/my-orders")
def my_orders(principal: Principal = Depends(get_current_user), store: Store = Depends(get_store)):
    return list_user_orders(store, principal.id)


@orders_router.get("/all")
def all_orders(store: Store = Depends(get_store), _: Principal = Depends(require(Permission.VIEW_ALL_ORDERS))):
    return list_orders(store, page=1, limit=0)["orders"]


@orders_router.get("/{order_id}")
def get_order(order_id: str, principal: Principal = Depends(get_current_user), store: Store = Depends(get_store)):
    return get_visible_order(store, principal, order_id)


@orders_router.patch("/{order_id}/status")
def update_order_status(order_id: str, payload: UpdateOrderStatusRequest, store: Store = Depends(get_store),
                        _: Principal = Depends(require(Permission.MANAGE_ORDERS))):
    return set_order_status(store, order_id, payload.status)


@orders_router.delete("/{order_id}", status_code=204)
def delete_order(order_id: str, store: Store = Depends(get_store),
                 _: Principal = Depends(require(Permission.MANAGE_ORDERS))):
    if not store.delete_document("order", order_id):
        raise NotFound("Order not found")
    return Response(status_code=204)


# ===================== Payments =====================
payments_router = APIRouter(prefix="/api/payments", tags=["payments"])


@payments_router.post("/create-intent")
def create_payment_intent(payload: CreatePaymentRequest, request: Request,
                          principal: Principal = Depends(get_current_user)):
    initiator: PaymentInitiator = request.app.state.payments
    return initiator.create_intent(principal, payload.order_id, payload.phone_number)


@payments_router.post("/callback")
def payment_callback(request: Request, body: bytes = Depends(raw_body),
                     signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER)):
    reconciler: PaymentReconciler = request.app.state.reconciler
    reconciler.verify(body, signature)
    try:
        payload = PaymentCallback.model_validate_json(body)
    except SchemaError as e:
        raise ValidationError(_first_error(e.errors()))
    return reconciler.reconcile(payload.order_tracking_id, payload.status)


@payments_router.get("/history")
def history(principal: Principal = Depends(get_current_user), store: Store = Depends(get_store)):
    return payment_history(store, principal.id)


# ===================== Shipping =====================
shipping_router = APIRouter(prefix="/api/shipping", tags=["shipping"])


def _shipping_for(store: Store, order_id: str) -> dict:
    shipping = store.find_one("shipping", {"order_id": order_id})
    if not shipping:
        raise NotFound("Shipping details not found")
    return shipping


@shipping_router.post("", status_code=201)
def create_shipping(payload: ShippingCreate, principal: Principal = Depends(get_current_user),
                    store: Store = Depends(get_store)):
    order = store.get_document_by_id("order", payload.order_id)
    if not order or not (principal.owns(order) or principal.can(Permission.MANAGE_SHIPPING)):
        raise NotFound("Order not found")
    shipping_id = store.create_document("shipping", Shipping(**payload.model_dump()))
    return store.get_document_by_id("shipping", shipping_id)


@shipping_router.get("/{order_id}")
def get_shipping(order_id: str, principal: Principal = Depends(get_current_user), store: Store = Depends(get_store)):
    order = store.get_document_by_id("order", order_id)
    if not order or not (principal.owns(order) or principal.can(Permission.MANAGE_SHIPPING)):
        raise NotFound("Shipping details not found")
    shipping = _shipping_for(store, order["_id"])
    shipping["order"] = {k: order.get(k) for k in ("_id", "total", "status", "created_at")}
    return shipping


@shipping_router.patch("/{order_id}")
def update_shipping(order_id: str, payload: ShippingUpdate, store: Store = Depends(get_store),
                    _: Principal = Depends(require(Permission.MANAGE_SHIPPING))):
    shipping = _shipping_for(store, order_id)
    return store.update_and_get("shipping", shipping["_id"], payload.model_dump(exclude_unset=True))


@shipping_router.delete("/{order_id}", status_code=204)
def delete_shipping(order_id: str, store: Store = Depends(get_store),
                    _: Principal = Depends(require(Permission.MANAGE_SHIPPING))):
    shipping = _shipping_for(store, order_id)
    store.delete_document("shipping", shipping["_id"])
    return Response(status_code=204)


# ===================== Admin =====================
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


@admin_router.get("/users")
def admin_list_users(store: Store = Depends(get_store), _: Principal = Depends(require(Permission.MANAGE_USERS))):
    users = []
    for u in store.get_documents("user", sort=[("created_at", 1)]):
        users.append({**public_user(u), "order_count": store.count_documents("order", {"user_id": u["_id"]})})
    return users


@admin_router.patch("/users/{user_id}/role")
def admin_update_role(user_id: str, payload: RoleUpdate, store: Store = Depends(get_store),
                      principal: Principal = Depends(require(Permission.MANAGE_USERS))):
    user = store.update_and_get("user", user_id, {"role": payload.role})
    if not user:
        raise NotFound("User not found")
    logger.info(f"User {principal.id} changed role of {user_id} to {payload.role}")
    return public_user(user)


@admin_router.delete("/users/{user_id}", status_code=204)
def admin_delete_user(user_id: str, store: Store = Depends(get_store),
                      _: Principal = Depends(require(Permission.MANAGE_USERS))):
    user = store.get_document_by_id("user", user_id)
    if not user:
        raise NotFound("User not found")
    order_count = store.count_documents("order", {"user_id": user["_id"]})
    if order_count > 0:
        raise ValidationError("Cannot delete user with existing orders", orderCount=order_count)
    cart = store.find_one("cart", {"user_id": user["_id"]})
    if cart:
        store.delete_documents("cartitem", {"cart_id": cart["_id"]})
        store.delete_document("cart", cart["_id"])
    store.delete_document("user", user_id)
    return Response(status_code=204)


@admin_router.get("/orders")
def admin_list_orders(status: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                      store: Store = Depends(get_store),
                      _: Principal = Depends(require(Permission.VIEW_ALL_ORDERS))):
    return list_orders(store, status=status, page=page, limit=limit)


@admin_router.patch("/orders/{order_id}")
def admin_update_order(order_id: str, payload: UpdateOrderStatusRequest, store: Store = Depends(get_store),
                       _: Principal = Depends(require(Permission.MANAGE_ORDERS))):
    return set_order_status(store, order_id, payload.status)


# ===================== Errors =====================

def _first_error(errors) -> str:
    if not errors:
        return "Invalid request"
    err = errors[0]
    field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
    return f"{field}: {err.get('msg')}" if field else err.get("msg", "Invalid request")


def register_error_handlers(app: FastAPI):
    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _first_error(exc.errors())})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "Something went wrong!"})


# ===================== Application =====================

def create_app(settings: Optional[Settings] = None, db=None, gateway: Optional[PesapalGateway] = None,
               mailer: Optional[Mailer] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    store = Store(db if db is not None else connect(settings))
    gateway = gateway or PesapalGateway(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.ensure_indexes()
        yield
        gateway.client.close()

    app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.pwd_context = make_password_context(settings.bcrypt_rounds)
    app.state.mailer = mailer or Mailer(settings)
    app.state.cart = CartManager(store)
    app.state.orders = OrderBuilder(store, reserve_stock=settings.reserve_stock)
    app.state.payments = PaymentInitiator(store, gateway)
    app.state.reconciler = PaymentReconciler(store, settings.pesapal_webhook_secret)

    for router in (service, auth_router, users_router, categories_router, products_router, search_router,
                   cart_router, orders_router, payments_router, shipping_router, admin_router):
        app.include_router(router)
    register_error_handlers(app)
    return app


configure_logging(os.getenv("LOG_LEVEL", "INFO"))
app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
