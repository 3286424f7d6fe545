import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import PyMongoError

import database
from auth import (
    SESSION_COOKIE_NAME,
    enforce,
    get_session_token,
    hash_password,
    login as login_user,
    logout as logout_user,
    register as register_user,
    require_admin,
    require_authenticated,
    self_or_admin,
)
from errors import AppError, NotFound, ValidationError
from sessions import SESSION_TTL_SECONDS, SessionStore, get_sessions, session_store
from storage import MongoStorage, get_storage

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    on_startup()
    yield
    on_shutdown()


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handlers

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    body: Dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(PydanticValidationError)
async def schema_error_handler(request: Request, exc: PydanticValidationError):
    errors = [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": errors})


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service unavailable"})


# Response models

class UserOut(BaseModel):
    id: str
    username: str
    email: str
    role: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class CategoryOut(BaseModel):
    id: str
    name: str
    description: str


class ProductOut(BaseModel):
    id: str
    name: str
    description: str
    price: int
    image: str
    category: str


class CartItemOut(BaseModel):
    id: str
    user_id: str = Field(serialization_alias="userId")
    product_id: str = Field(serialization_alias="productId")
    quantity: int


# Auth models

class RegisterInput(BaseModel):
    username: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginInput(BaseModel):
    identifier: str = Field(..., min_length=1, description="Username or email")
    password: str = Field(..., min_length=1)


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME, token, max_age=SESSION_TTL_SECONDS, httponly=True, samesite="lax"
    )


# Routes
@app.get("/")
def read_root():
    return {"message": "Storefront API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if database.DATABASE_URL else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["database_name"] = database.db.name
            response["collections"] = database.db.list_collection_names()
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Auth
@app.post("/api/register", response_model=TokenResponse, status_code=201)
def register(
    payload: RegisterInput,
    response: Response,
    storage: MongoStorage = Depends(get_storage),
    sessions: SessionStore = Depends(get_sessions),
):
    user, token = register_user(storage, sessions, payload.username, payload.email, payload.password)
    set_session_cookie(response, token)
    return TokenResponse(access_token=token, user=UserOut(**user))


@app.post("/api/login", response_model=TokenResponse)
def login(
    payload: LoginInput,
    response: Response,
    storage: MongoStorage = Depends(get_storage),
    sessions: SessionStore = Depends(get_sessions),
):
    user, token = login_user(storage, sessions, payload.identifier, payload.password)
    set_session_cookie(response, token)
    return TokenResponse(access_token=token, user=UserOut(**user))


@app.post("/api/logout")
def logout(
    response: Response,
    token: Optional[str] = Depends(get_session_token),
    sessions: SessionStore = Depends(get_sessions),
):
    logout_user(sessions, token)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return {"ok": True}


@app.get("/api/user", response_model=UserOut)
def me(current_user: dict = Depends(require_authenticated)):
    return current_user


@app.delete("/api/user")
def close_account(
    current_user: dict = Depends(require_authenticated),
    token: Optional[str] = Depends(get_session_token),
    storage: MongoStorage = Depends(get_storage),
    sessions: SessionStore = Depends(get_sessions),
):
    storage.delete_user(current_user["id"])
    logout_user(sessions, token)
    logger.info("User %s closed their account", current_user["id"])
    response = Response(status_code=200)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


# Users
class RoleUpdate(BaseModel):
    role: Literal["user", "admin"]


class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)


@app.get("/api/users", response_model=List[UserOut])
def list_users(current_user: dict = Depends(require_admin), storage: MongoStorage = Depends(get_storage)):
    return storage.list_users()


@app.patch("/api/users/{user_id}", response_model=UserOut)
def update_profile(
    user_id: str,
    data: ProfileUpdate,
    current_user: dict = Depends(require_authenticated),
    storage: MongoStorage = Depends(get_storage),
):
    enforce(current_user, self_or_admin(user_id))
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if "password" in changes:
        changes["password_hash"] = hash_password(changes.pop("password"))
    return storage.update_user(user_id, changes)


@app.patch("/api/users/{user_id}/role", response_model=UserOut)
def update_role(
    user_id: str,
    data: RoleUpdate,
    current_user: dict = Depends(require_admin),
    storage: MongoStorage = Depends(get_storage),
):
    user = storage.update_user_role(user_id, data.role)
    logger.info("Admin %s set role of user %s to %s", current_user["id"], user_id, data.role)
    return user


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, current_user: dict = Depends(require_admin), storage: MongoStorage = Depends(get_storage)):
    storage.delete_user(user_id)
    logger.info("Admin %s deleted user %s", current_user["id"], user_id)
    return Response(status_code=200)


# Categories
class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)


@app.get("/api/categories", response_model=List[CategoryOut])
def list_categories(storage: MongoStorage = Depends(get_storage)):
    return storage.list_categories()


@app.get("/api/categories/{category_id}", response_model=CategoryOut)
def get_category(category_id: str, storage: MongoStorage = Depends(get_storage)):
    category = storage.get_category(category_id)
    if not category:
        raise NotFound("Category not found")
    return category


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(data: CategoryIn, current_user: dict = Depends(require_admin),
                    storage: MongoStorage = Depends(get_storage)):
    return storage.create_category(data.model_dump())


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(category_id: str, data: CategoryUpdate, current_user: dict = Depends(require_admin),
                    storage: MongoStorage = Depends(get_storage)):
    return storage.update_category(category_id, data.model_dump(exclude_unset=True, exclude_none=True))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, current_user: dict = Depends(require_admin),
                    storage: MongoStorage = Depends(get_storage)):
    storage.delete_category(category_id)
    logger.info("Admin %s deleted category %s", current_user["id"], category_id)
    return Response(status_code=200)


# Products
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: int = Field(..., gt=0, description="Price in minor currency units")
    image: HttpUrl
    category: str = Field(..., min_length=1)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[int] = Field(None, gt=0)
    image: Optional[HttpUrl] = None
    category: Optional[str] = Field(None, min_length=1)


@app.get("/api/products", response_model=List[ProductOut])
def list_products(storage: MongoStorage = Depends(get_storage)):
    return storage.list_products()


@app.get("/api/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, storage: MongoStorage = Depends(get_storage)):
    product = storage.get_product(product_id)
    if not product:
        raise NotFound("Product not found")
    return product


@app.post("/api/products", response_model=ProductOut, status_code=201)
def create_product(data: ProductIn, current_user: dict = Depends(require_admin),
                   storage: MongoStorage = Depends(get_storage)):
    return storage.create_product(data.model_dump(mode="json"))


@app.patch("/api/products/{product_id}", response_model=ProductOut)
def update_product(product_id: str, data: ProductUpdate, current_user: dict = Depends(require_admin),
                   storage: MongoStorage = Depends(get_storage)):
    return storage.update_product(product_id, data.model_dump(mode="json", exclude_unset=True, exclude_none=True))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_admin),
                   storage: MongoStorage = Depends(get_storage)):
    storage.delete_product(product_id)
    logger.info("Admin %s deleted product %s", current_user["id"], product_id)
    return Response(status_code=200)


# Cart
class CartItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    quantity: int = Field(1, gt=0)


@app.get("/api/cart", response_model=List[CartItemOut])
def get_cart(current_user: dict = Depends(require_authenticated), storage: MongoStorage = Depends(get_storage)):
    return storage.list_cart_items(current_user["id"])


@app.post("/api/cart", response_model=CartItemOut, status_code=201)
def add_to_cart(item: CartItemIn, current_user: dict = Depends(require_authenticated),
                storage: MongoStorage = Depends(get_storage)):
    return storage.add_to_cart(current_user["id"], item.product_id, item.quantity)


@app.delete("/api/cart/{item_id}")
def remove_from_cart(item_id: str, current_user: dict = Depends(require_authenticated),
                     storage: MongoStorage = Depends(get_storage)):
    storage.remove_from_cart(item_id, user_id=current_user["id"])
    return Response(status_code=200)


# Startup / shutdown
def seed_admin(storage: MongoStorage) -> Optional[dict]:
    """Create the bootstrap admin from ADMIN_USERNAME / ADMIN_EMAIL / ADMIN_PASSWORD if missing."""
    username = os.getenv("ADMIN_USERNAME")
    email = os.getenv("ADMIN_EMAIL")
    password = os.getenv("ADMIN_PASSWORD")
    if not (username and email and password):
        return None
    if storage.get_user_by_username(username) or storage.get_user_by_email(email):
        return None
    user = storage.create_user({
        "username": username,
        "email": email,
        "password_hash": hash_password(password),
        "role": "admin",
    })
    logger.info("Created bootstrap admin %s", username)
    return user


def on_startup():
    db = database.connect()
    if db is None:
        return
    try:
        database.ensure_indexes(db)
        seed_admin(MongoStorage(db))
    except PyMongoError:
        logger.exception("Database initialisation failed")


def on_shutdown():
    session_store.clear()
    database.disconnect()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
