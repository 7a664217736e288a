import logging
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Callable, Optional, Sequence

from pydantic import BaseModel, Field

from app.core.checkin import CheckinRecord
from app.core.clock import log_day
from app.core.extractors import CheckinExtractor, default_extractors, extract_checkin
from app.core.normalizer import InboundMessage, is_valid_inbound, normalize_phone
from app.core.plan_generator import generate_daily_plan
from app.core.responses import compose_reply
from app.db.store import PersistenceStore, UserRecord
from app.services.llm import TextGenerationProvider
from app.services.messaging import MessagingGateway

logger = logging.getLogger("uvicorn.error")


class ValidationFailure(ValueError):
    def __init__(self, message: str, missing_fields: Sequence[str] = ()):
        super().__init__(message)
        self.missing_fields = list(missing_fields)


class PipelineState(str, Enum):
    RECEIVED = "RECEIVED"
    NORMALIZED = "NORMALIZED"
    STRICT_MATCHED = "STRICT_MATCHED"
    STRICT_MISS = "STRICT_MISS"
    FLEXIBLE_MATCHED = "FLEXIBLE_MATCHED"
    FLEXIBLE_MISS = "FLEXIBLE_MISS"
    PLAN_PATH = "PLAN_PATH"
    GENERAL_PATH = "GENERAL_PATH"
    RESPONDED = "RESPONDED"


class PipelineResult(BaseModel):
    user_id: int
    phone: str
    reply: str
    message_sid: Optional[str] = None
    checkin: Optional[CheckinRecord] = None
    extraction_stage: Optional[str] = None
    log_date: Optional[date] = None
    states: list[PipelineState] = Field(default_factory=list)

    @property
    def state(self) -> PipelineState:
        return self.states[-1]


def _extraction_states(stage: Optional[str]) -> list[PipelineState]:
    if stage is None:
        return [PipelineState.STRICT_MISS, PipelineState.FLEXIBLE_MISS]
    if stage == "strict":
        return [PipelineState.STRICT_MATCHED]
    return [PipelineState.STRICT_MISS, PipelineState.FLEXIBLE_MATCHED]


class CheckinPipeline:
    """One pass from an inbound provider payload to a sent reply.

    Parse and generation failures are handled inside their stages; a
    ``ValidationFailure`` or a persistence error ends the request.
    """

    def __init__(
        self,
        store: PersistenceStore,
        generator: TextGenerationProvider,
        gateway: MessagingGateway,
        extractors: Optional[Sequence[CheckinExtractor]] = None,
        now: Optional[Callable[[], datetime]] = None,
        use_user_timezone: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.gateway = gateway
        self.extractors = list(extractors) if extractors is not None else default_extractors(generator)
        self.now = now
        self.use_user_timezone = use_user_timezone

    def resolve_log_date(self, user: UserRecord) -> date:
        current = self.now() if self.now else None
        return log_day(user.timezone, current, self.use_user_timezone)

    def _get_or_create_user(self, message: InboundMessage) -> UserRecord:
        user = self.store.get_user_by_phone(message.from_)
        if user:
            return user
        name = message.display_name.strip()
        return self.store.create_user(message.from_, name or None)

    def handle(self, payload: Mapping[str, object]) -> PipelineResult:
        states = [PipelineState.RECEIVED]
        message = self.gateway.parse_incoming(payload)
        if not is_valid_inbound(message):
            missing = [name for name, value in (("From", message.from_), ("Body", message.body)) if not value.strip()]
            raise ValidationFailure("Invalid message data", missing_fields=missing)
        states.append(PipelineState.NORMALIZED)

        phone = normalize_phone(message.from_)
        body = message.body
        logger.info(
            "Received message %s from %s (wa_id=%s): %s", message.message_id or "-", phone, message.wa_id or "-", body
        )

        user = self._get_or_create_user(message)
        self.store.log_message(user.id, "inbound", body)

        checkin, stage = extract_checkin(body, self.extractors)
        states.extend(_extraction_states(stage))

        plan_text: Optional[str] = None
        log_date: Optional[date] = None
        if checkin is not None:
            states.append(PipelineState.PLAN_PATH)
            log_date = self.resolve_log_date(user)
            self.store.upsert_daily_log(user.id, log_date, morning_payload=checkin)
            plan_text = generate_daily_plan(self.generator, checkin, user.name or None)
            self.store.upsert_daily_log(user.id, log_date, plan_text=plan_text)
            logger.info("Check-in (%s) stored for user_id=%s date=%s", stage, user.id, log_date)
        else:
            states.append(PipelineState.GENERAL_PATH)

        reply = compose_reply(self.generator, body, checkin, plan_text, user.name or None)

        message_sid = self.gateway.send(phone, reply)
        if message_sid:
            self.store.log_message(user.id, "outbound", reply)
            logger.info("Response sent successfully: %s", message_sid)
        else:
            logger.warning("Failed to send response to %s", phone)
        states.append(PipelineState.RESPONDED)

        return PipelineResult(
            user_id=user.id,
            phone=phone,
            reply=reply,
            message_sid=message_sid,
            checkin=checkin,
            extraction_stage=stage,
            log_date=log_date,
            states=states,
        )
