import logging
from typing import Optional

from app.core.checkin import CheckinRecord
from app.services.llm import TextGenerationProvider

logger = logging.getLogger("uvicorn.error")

CHECKIN_FORMAT = "Sleep __h | Mood __ | Energy __ | Notes: __"
PLAN_REPLY_PREFIX = "Good morning! Here's your personalized daily plan:\n\n"
GENERAL_SYSTEM_PROMPT = (
    "You are a supportive, direct life coach. Respond to user messages with helpful, encouraging advice. "
    "Keep responses concise and actionable. If the user hasn't provided a morning check-in, "
    "gently remind them about the format."
)
GENERAL_MAX_TOKENS = 300
GENERAL_TEMPERATURE = 0.7
GENERAL_FALLBACK = f"I'm here to help! Please send me your morning check-in in this format: {CHECKIN_FORMAT}"


def build_general_prompt(message: str, user_name: Optional[str] = None) -> str:
    name_line = f"User's name: {user_name}" if user_name else ""
    return (
        f"User message: {message}\n\n"
        f"{name_line}\n\n"
        "Respond as their supportive coach. If this isn't a morning check-in, "
        f'remind them about the format: "{CHECKIN_FORMAT}"'
    )


def generate_general_response(
    generator: TextGenerationProvider, message: str, user_name: Optional[str] = None
) -> str:
    try:
        reply = generator.complete(
            GENERAL_SYSTEM_PROMPT,
            build_general_prompt(message, user_name),
            max_tokens=GENERAL_MAX_TOKENS,
            temperature=GENERAL_TEMPERATURE,
        )
    except Exception as exc:
        logger.warning("General response generation failed: %s", exc)
        return GENERAL_FALLBACK
    return str(reply or "").strip() or GENERAL_FALLBACK


def compose_reply(
    generator: TextGenerationProvider,
    message: str,
    checkin: Optional[CheckinRecord],
    plan_text: Optional[str],
    user_name: Optional[str] = None,
) -> str:
    if checkin is not None:
        return f"{PLAN_REPLY_PREFIX}{plan_text or ''}"
    return generate_general_response(generator, message, user_name)
