from datetime import UTC, date, datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Role(StrEnum):
    USER = "user"
    ADMIN = "admin"


class Plan(StrEnum):
    FREE = "FREE"
    PRO = "PRO"


# Lemon Squeezy statuses that keep a subscription paid up
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "on_trial"})


class CamelModel(BaseModel):
    # rows come in snake_case from Postgres, JSON goes out in camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Identity(BaseModel):
    """Authenticated subject as reported by Supabase Auth."""

    id: str
    email: Optional[str] = None


class ApplicationUser(CamelModel):
    id: str
    email: Optional[str] = None
    role: Role = Role.USER
    plan: Plan = Plan.FREE
    onboarding_completed: bool = False
    messages_used_today: int = 0
    last_message_reset: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def messages_used_on(self, day: date) -> int:
        """Messages counted against *day* (UTC); the counter resets when the day changes."""
        if self.last_message_reset is None:
            return 0
        reset = self.last_message_reset
        if reset.tzinfo is not None:
            reset = reset.astimezone(UTC)
        return self.messages_used_today if reset.date() == day else 0


class Subscription(CamelModel):
    id: str
    user_id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    plan_id: Optional[str] = None
    variant_id: Optional[str] = None
    lemon_squeezy_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_current(self, now: datetime) -> bool:
        if self.status not in ACTIVE_SUBSCRIPTION_STATUSES:
            return False
        end = self.current_period_end
        if end is None:
            return True
        if end.tzinfo is None:
            end = end.replace(tzinfo=UTC)
        return end > now


class ChatMessage(CamelModel):
    id: Optional[str] = None
    chat_id: Optional[str] = None
    role: str
    content: str
    created_at: Optional[datetime] = None


class Chat(CamelModel):
    id: str
    user_id: str
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    messages: List[ChatMessage] = Field(default_factory=list)


class TrainingSplit(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    difficulty: Optional[str] = None
    days_per_week: Optional[int] = None
    is_active: bool = True
    created_at: Optional[datetime] = None


class UserPurchase(CamelModel):
    id: str
    user_id: str
    program_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None


class KnowledgeItem(CamelModel):
    id: str
    title: str
    content: str
    file_name: Optional[str] = None
    storage_path: Optional[str] = None
    status: str = "COMPLETED"
    uploaded_by: Optional[str] = None
    created_at: Optional[datetime] = None


# ---------- request bodies ----------
class ChatRequest(BaseModel):
    message: str = ""
    conversation_id: Optional[str] = Field(
        default=None, validation_alias="conversationId"
    )


class GrantProRequest(BaseModel):
    duration: int = 0
    duration_type: str = Field(default="", validation_alias="durationType")
    reason: Optional[str] = None


class TrainingSplitCreate(BaseModel):
    name: str = ""
    description: Optional[str] = None
    difficulty: Optional[str] = None
    days_per_week: Optional[int] = Field(default=None, validation_alias="daysPerWeek")
