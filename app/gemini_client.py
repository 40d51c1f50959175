from functools import lru_cache
from typing import Dict, List, Optional

from openai import OpenAI, OpenAIError

from .config import get_settings
from .errors import UpstreamFailure
from .logger import get_logger

logger = get_logger("gemini")

MAX_HISTORY_MESSAGES = 20

SYSTEM_PROMPT = """
You are an evidence-based strength and hypertrophy coach.

Answer questions about training programs, exercise selection, volume,
progression, recovery and nutrition for lifters. Be concise, practical and
specific: give sets, reps, rest periods and RIR when you prescribe work.

If a question is outside fitness and training, say so briefly and steer the
conversation back. Never give medical diagnoses; recommend a professional
for injuries or pain that persists.
"""


@lru_cache
def get_client() -> OpenAI:
    # Gemini exposes an OpenAI-compatible chat completions endpoint
    settings = get_settings()
    return OpenAI(
        api_key=settings.GEMINI_API_KEY.get_secret_value(),
        base_url=settings.GEMINI_BASE_URL,
    )


def build_messages(conversation: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """System prompt followed by the most recent turns of the conversation."""
    history = [
        {"role": turn["role"], "content": turn["content"]}
        for turn in conversation[-MAX_HISTORY_MESSAGES:]
        if turn.get("content")
    ]
    return [{"role": "system", "content": SYSTEM_PROMPT.strip()}, *history]


def send_to_gemini(
    conversation: List[Dict[str, str]], user_id: Optional[str] = None
) -> str:
    settings = get_settings()
    params = {"model": settings.GEMINI_MODEL, "temperature": 0.4}
    if user_id:
        params["user"] = user_id
    try:
        resp = get_client().chat.completions.create(
            messages=build_messages(conversation), **params
        )
    except OpenAIError as exc:
        logger.error("Gemini request failed: %s", exc)
        raise UpstreamFailure("AI service unavailable", cause=exc) from exc
    reply = resp.choices[0].message.content or ""
    logger.info(
        "Gemini reply generated",
        extra={"user_id": user_id or "-", "turns": len(conversation), "chars": len(reply)},
    )
    return reply
