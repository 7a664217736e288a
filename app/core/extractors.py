import logging
import math
import re
from typing import Any, Optional, Protocol, Sequence

from pydantic import ValidationError

from app.core.checkin import CheckinRecord
from app.services.llm import TextGenerationProvider, find_json_object

logger = logging.getLogger("uvicorn.error")

STRICT_CHECKIN_PATTERN = re.compile(
    r"Sleep\s+(\d+(?:\.\d+)?)h?\s*\|\s*Mood\s+(\d+)\s*\|\s*Energy\s+(\d+)\s*\|\s*Notes:\s*(.+)",
    re.IGNORECASE,
)

FLEXIBLE_SYSTEM_PROMPT = (
    "You extract structured data from short, informal morning check-ins.\n\n"
    "Return ONLY strict JSON (no markdown, no prose) with keys: "
    '"sleep" (number in hours, e.g., 6.5, or null), '
    '"mood" (integer 1-10, or null), '
    '"energy" (integer 1-10, or null), and '
    '"notes" (string with remaining info). '
    "Never guess a number the user did not give: return null for any missing value. "
    "Keep notes concise."
)
FLEXIBLE_MAX_TOKENS = 120


class CheckinExtractor(Protocol):
    name: str

    def extract(self, message: str) -> Optional[CheckinRecord]:
        ...


class StrictCheckinParser:
    """Matches ``Sleep 7h | Mood 8 | Energy 6 | Notes: ...`` and nothing else."""

    name = "strict"

    def extract(self, message: str) -> Optional[CheckinRecord]:
        match = STRICT_CHECKIN_PATTERN.fullmatch((message or "").strip())
        if not match:
            return None
        try:
            return CheckinRecord(
                sleep_hours=float(match.group(1)),
                mood=int(match.group(2)),
                energy=int(match.group(3)),
                notes=match.group(4).strip(),
            )
        except ValidationError:
            # Mood or energy outside 1-10.
            return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _scale_value(value: Any) -> Optional[int]:
    number = _as_number(value)
    if number is None:
        return None
    rounded = _round_half_up(number)
    return rounded if 1 <= rounded <= 10 else None


def coerce_checkin(data: dict[str, Any]) -> Optional[CheckinRecord]:
    """Apply the acceptance policy to a decoded extraction payload."""
    sleep = _as_number(data.get("sleep"))
    if sleep is not None and sleep < 0:
        sleep = None
    notes_raw = data.get("notes")
    notes = "" if notes_raw is None else str(notes_raw).strip()
    record = CheckinRecord(
        sleep_hours=sleep,
        mood=_scale_value(data.get("mood")),
        energy=_scale_value(data.get("energy")),
        notes=notes,
    )
    if not record.has_numeric() and not record.notes:
        return None
    return record


class FlexibleCheckinExtractor:
    """Asks the text generator to turn a free-form check-in into JSON.

    Every failure (provider error, empty or malformed output, a payload that
    carries nothing) is reported as ``None``.
    """

    name = "flexible"

    def __init__(self, generator: TextGenerationProvider) -> None:
        self.generator = generator

    def extract(self, message: str) -> Optional[CheckinRecord]:
        try:
            raw = self.generator.complete(
                FLEXIBLE_SYSTEM_PROMPT,
                f"Parse this check-in: {message}",
                max_tokens=FLEXIBLE_MAX_TOKENS,
                temperature=0,
                task_type="extraction",
            )
        except Exception as exc:
            logger.warning("Flexible check-in extraction failed: %s", exc)
            return None
        text = str(raw or "").strip()
        if not text:
            return None
        data = find_json_object(text)
        if data is None:
            logger.info("Flexible check-in extraction returned no JSON object")
            return None
        return coerce_checkin(data)


def extract_checkin(
    message: str, extractors: Sequence[CheckinExtractor]
) -> tuple[Optional[CheckinRecord], Optional[str]]:
    """Run extractors in order and stop at the first record.

    Returns the record and the name of the stage that produced it.
    """
    for extractor in extractors:
        record = extractor.extract(message)
        if record is not None:
            return record, extractor.name
    return None, None


def default_extractors(generator: TextGenerationProvider) -> list[CheckinExtractor]:
    return [StrictCheckinParser(), FlexibleCheckinExtractor(generator)]
