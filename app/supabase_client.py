import datetime
import uuid
from functools import lru_cache
from typing import List, Optional

from supabase import Client, ClientOptions, create_client

from .config import get_settings
from .models import (
    CHATS,
    KNOWLEDGE_ITEMS,
    MESSAGES,
    SUBSCRIPTIONS,
    TRAINING_SPLITS,
    USER_PURCHASES,
    USERS,
)
from .schema import (
    ApplicationUser,
    Chat,
    ChatMessage,
    KnowledgeItem,
    Subscription,
    TrainingSplit,
    UserPurchase,
)


@lru_cache
def get_client() -> Client:
    settings = get_settings()
    if not settings.SUPABASE_URL or not settings.supabase_key:
        raise ValueError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY) must be set"
        )
    return create_client(settings.SUPABASE_URL, settings.supabase_key)


def get_auth_client() -> Client:
    """Fresh, session-less client for per-request auth calls (code exchange).

    Exchanging a code signs the client in, so it must never be the shared
    service-role client used for table access.
    """
    settings = get_settings()
    key = settings.SUPABASE_ANON_KEY.get_secret_value() or settings.supabase_key
    return create_client(
        settings.SUPABASE_URL,
        key,
        options=ClientOptions(auto_refresh_token=False, persist_session=False),
    )


def _now() -> str:
    return datetime.datetime.now(datetime.UTC).isoformat()


def _maybe_data(response) -> Optional[dict]:
    # maybe_single() hands back None instead of an empty response on some client versions
    return response.data if response is not None and response.data else None


def is_uuid(value: str) -> bool:
    """Primary keys are uuid columns; Postgres rejects anything else with 22P02."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


# ---------- users ----------
def get_user(sb: Client, user_id: str) -> Optional[ApplicationUser]:
    response = sb.table(USERS).select("*").eq("id", user_id).maybe_single().execute()
    row = _maybe_data(response)
    return ApplicationUser.model_validate(row) if row else None


def insert_user_if_absent(sb: Client, user: ApplicationUser) -> None:
    """INSERT ... ON CONFLICT (id) DO NOTHING."""
    row = user.model_dump(mode="json", exclude_none=True)
    sb.table(USERS).upsert(row, on_conflict="id", ignore_duplicates=True).execute()


def update_user(sb: Client, user_id: str, fields: dict) -> Optional[ApplicationUser]:
    response = (
        sb.table(USERS)
        .update({**fields, "updated_at": _now()})
        .eq("id", user_id)
        .execute()
    )
    return ApplicationUser.model_validate(response.data[0]) if response.data else None


def increment_message_count(sb: Client, user: ApplicationUser) -> Optional[ApplicationUser]:
    """Count one chat message against today's quota, starting over on a new UTC day."""
    now = datetime.datetime.now(datetime.UTC)
    used = user.messages_used_on(now.date())
    fields = {"messages_used_today": used + 1}
    if used == 0:
        fields["last_message_reset"] = now.isoformat()
    return update_user(sb, user.id, fields)


# ---------- subscriptions ----------
def get_subscription(sb: Client, user_id: str) -> Optional[Subscription]:
    response = (
        sb.table(SUBSCRIPTIONS).select("*").eq("user_id", user_id).maybe_single().execute()
    )
    row = _maybe_data(response)
    return Subscription.model_validate(row) if row else None


def upsert_subscription(sb: Client, user_id: str, fields: dict) -> Subscription:
    """Create or replace the user's single subscription row."""
    response = (
        sb.table(SUBSCRIPTIONS)
        .upsert({**fields, "user_id": user_id, "updated_at": _now()}, on_conflict="user_id")
        .execute()
    )
    return Subscription.model_validate(response.data[0])


# ---------- chats ----------
def list_chats(sb: Client, user_id: str) -> List[Chat]:
    response = (
        sb.table(CHATS)
        .select("id, user_id, title, created_at")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .execute()
    )
    return [Chat.model_validate(row) for row in response.data]


def get_owned_chat(sb: Client, chat_id: str, user_id: str) -> Optional[Chat]:
    """Look a chat up by (id, user_id); someone else's chat reads as missing."""
    if not is_uuid(chat_id):
        return None
    response = (
        sb.table(CHATS)
        .select("id, user_id, title, created_at")
        .eq("id", chat_id)
        .eq("user_id", user_id)
        .maybe_single()
        .execute()
    )
    row = _maybe_data(response)
    return Chat.model_validate(row) if row else None


def create_chat(sb: Client, user_id: str, title: str) -> Chat:
    response = sb.table(CHATS).insert({"user_id": user_id, "title": title}).execute()
    return Chat.model_validate(response.data[0])


def delete_owned_chat(sb: Client, chat_id: str, user_id: str) -> bool:
    if not is_uuid(chat_id):
        return False
    response = (
        sb.table(CHATS).delete().eq("id", chat_id).eq("user_id", user_id).execute()
    )
    return bool(response.data)


def list_messages(sb: Client, chat_id: str) -> List[ChatMessage]:
    response = (
        sb.table(MESSAGES)
        .select("*")
        .eq("chat_id", chat_id)
        .order("created_at")
        .execute()
    )
    return [ChatMessage.model_validate(row) for row in response.data]


def add_message(sb: Client, chat_id: str, role: str, content: str) -> ChatMessage:
    response = (
        sb.table(MESSAGES)
        .insert({"chat_id": chat_id, "role": role, "content": content})
        .execute()
    )
    return ChatMessage.model_validate(response.data[0])


# ---------- training splits ----------
def list_training_splits(sb: Client, active_only: bool = True) -> List[TrainingSplit]:
    query = sb.table(TRAINING_SPLITS).select("*")
    if active_only:
        query = query.eq("is_active", True)
    response = query.order("name").execute()
    return [TrainingSplit.model_validate(row) for row in response.data]


def create_training_split(sb: Client, fields: dict) -> TrainingSplit:
    response = sb.table(TRAINING_SPLITS).insert(fields).execute()
    return TrainingSplit.model_validate(response.data[0])


# ---------- purchases ----------
def list_purchases(sb: Client, user_id: str) -> List[UserPurchase]:
    response = (
        sb.table(USER_PURCHASES)
        .select("*")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .execute()
    )
    return [UserPurchase.model_validate(row) for row in response.data]


def record_purchase(sb: Client, fields: dict) -> Optional[UserPurchase]:
    """Insert a purchase once per order_id; replays of the same order are ignored."""
    response = (
        sb.table(USER_PURCHASES)
        .upsert(fields, on_conflict="order_id", ignore_duplicates=True)
        .execute()
    )
    return UserPurchase.model_validate(response.data[0]) if response.data else None


# ---------- knowledge base ----------
def insert_knowledge_item(sb: Client, fields: dict) -> KnowledgeItem:
    response = sb.table(KNOWLEDGE_ITEMS).insert(fields).execute()
    return KnowledgeItem.model_validate(response.data[0])
