from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class TokenType(str, Enum):
    ACCESS = "access"


class TokenPayload(BaseModel):
    """JWT token payload structure"""
    sub: str = Field(..., description="User id")
    exp: datetime = Field(..., description="Token expiration timestamp")
    iat: datetime = Field(..., description="Token issued at timestamp")
    type: TokenType = Field(..., description="Token type")
    jti: str = Field(..., description="Unique token identifier")
    admin: bool = Field(default=False, description="Admin claim at issuance; the user row stays authoritative")


class TokenResponse(BaseModel):
    """Response model for token generation"""
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until access token expires
