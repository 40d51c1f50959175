"""
Supabase table definitions (SQL):

create table users (
  id uuid primary key,              -- auth.users.id
  email text,
  role text not null default 'user' check (role in ('user', 'admin')),
  plan text not null default 'FREE' check (plan in ('FREE', 'PRO')),
  onboarding_completed boolean not null default false,
  messages_used_today int not null default 0,  -- FREE plan daily quota
  last_message_reset timestamptz,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

-- one row per user; admin grants and Lemon Squeezy events both write here
create table subscriptions (
  id uuid primary key default gen_random_uuid(),
  user_id uuid not null unique references users(id),
  status text not null,
  current_period_start timestamptz,
  current_period_end timestamptz,
  plan_id text,
  variant_id text,
  lemon_squeezy_id text,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table chats (
  id uuid primary key default gen_random_uuid(),
  user_id uuid not null references users(id),
  title text,
  created_at timestamptz not null default now()
);
create index chats_user_id_idx on chats (user_id, created_at desc);

-- deleting a chat removes its messages
create table messages (
  id uuid primary key default gen_random_uuid(),
  chat_id uuid not null references chats(id) on delete cascade,
  role text not null check (role in ('user', 'assistant')),
  content text not null,
  created_at timestamptz not null default now()
);

create table training_splits (
  id uuid primary key default gen_random_uuid(),
  name text not null,
  description text,
  difficulty text,
  days_per_week int,
  is_active boolean not null default true,
  created_at timestamptz not null default now()
);

create table user_purchases (
  id uuid primary key default gen_random_uuid(),
  user_id uuid not null references users(id),
  program_id text,
  order_id text unique,
  amount int,                       -- minor units
  currency text,
  status text,
  created_at timestamptz not null default now()
);

create table knowledge_items (
  id uuid primary key default gen_random_uuid(),
  title text not null,
  content text not null,
  file_name text,
  storage_path text,                -- relative to UPLOAD_DIR
  status text not null default 'COMPLETED',
  uploaded_by uuid references users(id),
  created_at timestamptz not null default now()
);
"""

USERS = "users"
SUBSCRIPTIONS = "subscriptions"
CHATS = "chats"
MESSAGES = "messages"
TRAINING_SPLITS = "training_splits"
USER_PURCHASES = "user_purchases"
KNOWLEDGE_ITEMS = "knowledge_items"
