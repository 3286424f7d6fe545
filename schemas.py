"""
Database Schemas

Define your MongoDB collection schemas here using Pydantic models.
Each Pydantic model represents a collection in your database.
Collection names are the snake_case form of the class name:
- User -> "user"
- Category -> "category"
- Product -> "product"
- CartItem -> "cart_item"

Reference fields hold the referenced document's id as a string here; the
storage layer stores them as ObjectId.
"""

from typing import Literal

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "admin"]


class User(BaseModel):
    username: str = Field(..., min_length=1, description="Unique login name")
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="passlib hash (argon2, legacy bcrypt)")
    role: Role = Field("user", description="Role: user | admin")


class Category(BaseModel):
    name: str = Field(..., min_length=1, description="Unique category name")
    description: str = Field(..., min_length=1)


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: int = Field(..., gt=0, description="Price in minor currency units")
    image: str = Field(..., description="Image URL")
    category: str = Field(..., description="Category id")


class CartItem(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)
