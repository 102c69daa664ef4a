"""
User login schemas
"""
from pydantic import BaseModel
from typing import Optional


class UserLogin(BaseModel):
    phone: str
    password: str


class UserLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    role: str
    full_name: Optional[str] = None
