"""Group management schemas"""

from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field

from orchestrator.models.group import Role


class GroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    totp_required: bool = False


class GroupUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    totp_required: Optional[bool] = None


class GroupResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    totp_required: bool
    member_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class GroupMemberResponse(BaseModel):
    account_id: str
    username: str
    role: Role
    created_at: Optional[datetime] = None


class GroupDetailResponse(GroupResponse):
    members: List[GroupMemberResponse] = []


class AddMemberRequest(BaseModel):
    account_id: str
    role: Role = Role.VIEWER


class UpdateMemberRequest(BaseModel):
    role: Role
