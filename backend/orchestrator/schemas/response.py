"""Generic API response schemas"""

from pydantic import BaseModel
from typing import Optional, Dict, Any


class APIResponse(BaseModel):
    """Generic API success response"""
    success: bool = True
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    """Generic API error response"""
    success: bool = False
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
    path: Optional[str] = None
    timestamp: str


class RevokedCountResponse(APIResponse):
    revoked_count: int = 0
