"""
Database connection

The MongoDB client is created once per process from DATABASE_URL /
DATABASE_NAME. Route handlers reach the database through get_db(), which
fails with StoreUnavailable when no connection was configured.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from errors import StoreUnavailable

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect(url: Optional[str] = None, name: Optional[str] = None) -> Optional[Database]:
    global client, db
    url = url or DATABASE_URL
    if not url:
        logger.warning("DATABASE_URL not set, running without a database")
        return None
    client = MongoClient(url)
    db = client[name or DATABASE_NAME]
    logger.info("Connected to MongoDB database %s", db.name)
    return db


def disconnect() -> None:
    global client, db
    if client is not None:
        client.close()
        logger.info("MongoDB connection closed")
    client = None
    db = None


def get_db() -> Database:
    if db is None:
        raise StoreUnavailable("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    """Unique indexes backing the username, email and category name invariants."""
    database["user"].create_index([("username", ASCENDING)], unique=True)
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["category"].create_index([("name", ASCENDING)], unique=True)
    database["product"].create_index([("category", ASCENDING)])
    database["cart_item"].create_index([("user_id", ASCENDING)])
    database["cart_item"].create_index([("product_id", ASCENDING)])
    logger.info("Indexes ensured on %s", database.name)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Insert a document stamped with created_at/updated_at and return it with its _id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    data_dict["_id"] = result.inserted_id
    return data_dict
