from __future__ import annotations

from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class RetrospectiveCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    vote_budget: Optional[int] = Field(None, ge=1)


class ItemCreate(BaseModel):
    category: str
    content: str


class ItemUpdate(BaseModel):
    content: str


class GroupCreate(BaseModel):
    item_ids: List[int] = Field(default_factory=list)
    category: Optional[str] = None
    target_position: Optional[int] = Field(None, ge=0)
    title: Optional[str] = Field(None, max_length=200)


class GroupItemAdd(BaseModel):
    item_id: int


class BoardElementRef(BaseModel):
    type: Literal["item", "group"]
    id: int


class ReorderRequest(BaseModel):
    category: str
    ordered_elements: List[BoardElementRef] = Field(default_factory=list)


class ReorderResponse(BaseModel):
    changed: bool
    category: str
    item_ids: List[int] = Field(default_factory=list)
    group_ids: List[int] = Field(default_factory=list)


class VoteRequest(BaseModel):
    target_type: str
    target_id: int
    count: int


class DiscussedRequest(BaseModel):
    target_type: str
    target_id: int
    discussed: bool = True


class StepRequest(BaseModel):
    target_step: Optional[str] = None
    timer_already_stopped: bool = False


class CompleteRequest(BaseModel):
    timer_already_stopped: bool = False


class TimerStartRequest(BaseModel):
    duration: int


class TimerLikeRequest(BaseModel):
    liked: bool


class ActionCreate(BaseModel):
    description: str
    assigned_to: Optional[str] = None
    assigned_to_name: Optional[str] = None
    due_date: Optional[date] = None
    context_type: Optional[str] = None
    context_id: Optional[int] = None


class ActionUpdate(BaseModel):
    description: Optional[str] = None
    assigned_to: Optional[str] = None
    assigned_to_name: Optional[str] = None
    due_date: Optional[date] = None
    status: Optional[Literal["open", "in_progress", "done"]] = None


class SubscriptionTokenResponse(BaseModel):
    token: str
    topics: List[str] = Field(default_factory=list)
    retrospective_id: str
