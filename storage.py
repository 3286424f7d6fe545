"""
Storage adapter

MongoStorage turns the raw MongoDB documents of the user, category, product
and cart_item collections into plain records keyed by string ``id``.
Reference fields (a product's category, a cart item's user and product) are
stored as ObjectId and handed back as strings; callers needing the related
record look it up separately.

Lookups by id never raise for an unknown or malformed id, they return None.
update/delete raise NotFound instead. Deletes cascade to dependent records
one document set at a time; a failing cascade step is logged and the
remaining steps still run.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_db
from errors import Conflict, NotFound, ValidationError
from schemas import CartItem as CartItemSchema
from schemas import Category as CategorySchema
from schemas import Product as ProductSchema
from schemas import User as UserSchema

logger = logging.getLogger(__name__)

USER_FIELDS = ("username", "email", "password_hash", "role")
CATEGORY_FIELDS = ("name", "description")
PRODUCT_FIELDS = ("name", "description", "price", "image", "category")
CART_ITEM_FIELDS = ("user_id", "product_id", "quantity")


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize_doc(doc: Optional[Dict[str, Any]], fields) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    record: Dict[str, Any] = {"id": str(doc["_id"])}
    for key in fields:
        value = doc.get(key)
        record[key] = str(value) if isinstance(value, ObjectId) else value
    return record


class MongoStorage:
    def __init__(self, database: Database):
        self.db = database

    # Generic helpers

    def _find(self, collection: str, record_id: str, fields) -> Optional[Dict[str, Any]]:
        oid = to_object_id(record_id)
        if oid is None:
            return None
        return serialize_doc(self.db[collection].find_one({"_id": oid}), fields)

    def _list(self, collection: str, fields, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return [serialize_doc(d, fields) for d in self.db[collection].find(query or {})]

    def _insert(self, collection: str, document: Dict[str, Any], fields, conflict_message: str) -> Dict[str, Any]:
        try:
            created = create_document(self.db, collection, document)
        except DuplicateKeyError:
            raise Conflict(conflict_message)
        return serialize_doc(created, fields)

    def _update(self, collection: str, record_id: str, changes: Dict[str, Any], fields,
                not_found: str, conflict_message: str) -> Dict[str, Any]:
        oid = to_object_id(record_id)
        if oid is None:
            raise NotFound(not_found)
        if not changes:
            current = self.db[collection].find_one({"_id": oid})
            if not current:
                raise NotFound(not_found)
            return serialize_doc(current, fields)
        changes = dict(changes, updated_at=datetime.now(timezone.utc))
        try:
            updated = self.db[collection].find_one_and_update(
                {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            raise Conflict(conflict_message)
        if not updated:
            raise NotFound(not_found)
        return serialize_doc(updated, fields)

    def _delete(self, collection: str, record_id: str, not_found: str) -> ObjectId:
        oid = to_object_id(record_id)
        if oid is None:
            raise NotFound(not_found)
        res = self.db[collection].delete_one({"_id": oid})
        if res.deleted_count == 0:
            raise NotFound(not_found)
        return oid

    def _is_taken(self, collection: str, field: str, value: Any, exclude_id: Optional[ObjectId] = None) -> bool:
        query: Dict[str, Any] = {field: value}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        return self.db[collection].find_one(query, {"_id": 1}) is not None

    def _cascade(self, step: str, func: Callable[..., Any], *args) -> None:
        try:
            func(*args)
        except PyMongoError:
            logger.exception("Cascade step failed: %s", step)

    # Users

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._find("user", user_id, USER_FIELDS)

    def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        return serialize_doc(self.db["user"].find_one({"username": username}), USER_FIELDS)

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return serialize_doc(self.db["user"].find_one({"email": email.lower()}), USER_FIELDS)

    def get_user_by_identifier(self, identifier: str) -> Optional[Dict[str, Any]]:
        """Match on email first, then on username."""
        return self.get_user_by_email(identifier) or self.get_user_by_username(identifier)

    def create_user(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        user = UserSchema(**fields)
        user.email = user.email.lower()
        self._check_user_unique(user.username, user.email)
        return self._insert("user", user.model_dump(), USER_FIELDS, "Username or email already exists")

    def list_users(self) -> List[Dict[str, Any]]:
        return self._list("user", USER_FIELDS)

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if self.get_user(user_id) is None:
            raise NotFound("User not found")
        changes = {k: v for k, v in changes.items() if k in USER_FIELDS}
        if "email" in changes:
            changes["email"] = changes["email"].lower()
        self._check_user_unique(changes.get("username"), changes.get("email"), exclude_id=to_object_id(user_id))
        return self._update("user", user_id, changes, USER_FIELDS, "User not found",
                            "Username or email already exists")

    def update_user_role(self, user_id: str, role: str) -> Dict[str, Any]:
        if role not in ("user", "admin"):
            raise ValidationError("Role must be 'user' or 'admin'", field="role")
        return self.update_user(user_id, {"role": role})

    def delete_user(self, user_id: str) -> None:
        oid = self._delete("user", user_id, "User not found")
        self._cascade(f"cart items of user {user_id}",
                      self.db["cart_item"].delete_many, {"user_id": oid})

    def _check_user_unique(self, username: Optional[str], email: Optional[str],
                           exclude_id: Optional[ObjectId] = None) -> None:
        if username is not None and self._is_taken("user", "username", username, exclude_id):
            raise Conflict("Username already exists")
        if email is not None and self._is_taken("user", "email", email, exclude_id):
            raise Conflict("Email already registered")

    # Categories

    def create_category(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        category = CategorySchema(**fields)
        if self._is_taken("category", "name", category.name):
            raise Conflict("Category name already exists")
        return self._insert("category", category.model_dump(), CATEGORY_FIELDS, "Category name already exists")

    def list_categories(self) -> List[Dict[str, Any]]:
        return self._list("category", CATEGORY_FIELDS)

    def get_category(self, category_id: str) -> Optional[Dict[str, Any]]:
        return self._find("category", category_id, CATEGORY_FIELDS)

    def update_category(self, category_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if self.get_category(category_id) is None:
            raise NotFound("Category not found")
        changes = {k: v for k, v in changes.items() if k in CATEGORY_FIELDS}
        if "name" in changes and self._is_taken("category", "name", changes["name"], to_object_id(category_id)):
            raise Conflict("Category name already exists")
        return self._update("category", category_id, changes, CATEGORY_FIELDS, "Category not found",
                            "Category name already exists")

    def delete_category(self, category_id: str) -> None:
        oid = self._delete("category", category_id, "Category not found")
        self._cascade(f"products of category {category_id}", self._delete_category_products, oid)

    def _delete_category_products(self, category_oid: ObjectId) -> None:
        products = list(self.db["product"].find({"category": category_oid}, {"_id": 1}))
        for product in products:
            self._cascade(f"product {product['_id']} of category {category_oid}",
                          self._delete_product_documents, product["_id"])

    # Products

    def _require_category(self, category_id: str) -> ObjectId:
        oid = to_object_id(category_id)
        if oid is None or self.db["category"].find_one({"_id": oid}, {"_id": 1}) is None:
            raise ValidationError("Category not found", field="category")
        return oid

    def create_product(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        product = ProductSchema(**fields)
        document = product.model_dump()
        document["category"] = self._require_category(product.category)
        return self._insert("product", document, PRODUCT_FIELDS, "Product already exists")

    def list_products(self) -> List[Dict[str, Any]]:
        return self._list("product", PRODUCT_FIELDS)

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        return self._find("product", product_id, PRODUCT_FIELDS)

    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if self.get_product(product_id) is None:
            raise NotFound("Product not found")
        changes = {k: v for k, v in changes.items() if k in PRODUCT_FIELDS}
        if "category" in changes:
            changes["category"] = self._require_category(changes["category"])
        return self._update("product", product_id, changes, PRODUCT_FIELDS, "Product not found",
                            "Product already exists")

    def delete_product(self, product_id: str) -> None:
        oid = self._delete("product", product_id, "Product not found")
        self._cascade(f"cart items of product {product_id}",
                      self.db["cart_item"].delete_many, {"product_id": oid})

    def _delete_product_documents(self, product_oid: ObjectId) -> None:
        self.db["product"].delete_one({"_id": product_oid})
        self.db["cart_item"].delete_many({"product_id": product_oid})

    # Cart

    def list_cart_items(self, user_id: str) -> List[Dict[str, Any]]:
        oid = to_object_id(user_id)
        if oid is None:
            return []
        return self._list("cart_item", CART_ITEM_FIELDS, {"user_id": oid})

    def get_cart_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        return self._find("cart_item", item_id, CART_ITEM_FIELDS)

    def add_to_cart(self, user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
        item = CartItemSchema(user_id=user_id, product_id=product_id, quantity=quantity)
        product_oid = to_object_id(item.product_id)
        if product_oid is None or self.db["product"].find_one({"_id": product_oid}, {"_id": 1}) is None:
            raise NotFound("Product not found")
        user_oid = to_object_id(item.user_id)
        if user_oid is None:
            raise NotFound("User not found")
        document = {"user_id": user_oid, "product_id": product_oid, "quantity": item.quantity}
        return self._insert("cart_item", document, CART_ITEM_FIELDS, "Cart item already exists")

    def remove_from_cart(self, item_id: str, user_id: Optional[str] = None) -> None:
        """Delete a cart item; with user_id, only when that user owns it."""
        oid = to_object_id(item_id)
        query: Dict[str, Any] = {"_id": oid}
        if user_id is not None:
            query["user_id"] = to_object_id(user_id)
        if oid is None or self.db["cart_item"].delete_one(query).deleted_count == 0:
            raise NotFound("Cart item not found")


def get_storage() -> MongoStorage:
    return MongoStorage(get_db())
