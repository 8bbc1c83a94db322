"""
Pydantic models for admin login.
"""

from pydantic import BaseModel, Field


class AdminLogin(BaseModel):
    email: str = Field(..., examples=["admin@example.com"])
    password: str


class TokenRead(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
