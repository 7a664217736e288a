import logging
from typing import Optional

from app.core.checkin import CheckinRecord
from app.services.llm import TextGenerationProvider

logger = logging.getLogger("uvicorn.error")

PLAN_SYSTEM_PROMPT = """You are a supportive, direct life coach. Your role is to help users create actionable daily plans based on their morning check-ins.

Key principles:
- Be encouraging but realistic
- Provide specific, actionable advice
- Consider their sleep, mood, and energy levels
- Keep responses concise but comprehensive
- End with a motivational line

Format your response as a daily plan with:
1. 3 priorities (specific tasks)
2. 2 wellness activities (health/wellbeing focused)
3. 1 motivational line

Be direct and supportive in your tone."""

PLAN_MAX_TOKENS = 500
PLAN_TEMPERATURE = 0.7
PLAN_EMPTY_FALLBACK = "Unable to generate a plan right now."
PLAN_ERROR_FALLBACK = "I'm having trouble generating your daily plan right now. Please try again later."
NOT_REPORTED = "not reported"


def _format_value(value: Optional[float], suffix: str) -> str:
    if value is None:
        return NOT_REPORTED
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return f"{value}{suffix}"


def build_plan_prompt(checkin: CheckinRecord, user_name: Optional[str] = None) -> str:
    lines = [
        "Based on this morning check-in, create a personalized daily plan:",
        "",
        f"Sleep: {_format_value(checkin.sleep_hours, ' hours')}",
        f"Mood: {_format_value(checkin.mood, '/10')}",
        f"Energy: {_format_value(checkin.energy, '/10')}",
        f"Notes: {checkin.notes or 'none'}",
        "",
    ]
    if user_name:
        lines.append(f"User's name: {user_name}")
        lines.append("")
    lines.append("Please provide a daily plan with 3 priorities, 2 wellness activities, and 1 motivational line.")
    return "\n".join(lines)


def generate_daily_plan(
    generator: TextGenerationProvider, checkin: CheckinRecord, user_name: Optional[str] = None
) -> str:
    """Coaching plan text for a check-in. Never raises and never returns ''."""
    try:
        plan = generator.complete(
            PLAN_SYSTEM_PROMPT,
            build_plan_prompt(checkin, user_name),
            max_tokens=PLAN_MAX_TOKENS,
            temperature=PLAN_TEMPERATURE,
        )
    except Exception as exc:
        logger.warning("Daily plan generation failed: %s", exc)
        return PLAN_ERROR_FALLBACK
    return str(plan or "").strip() or PLAN_EMPTY_FALLBACK
