import json
import logging
import os
import re
from pathlib import Path
from typing import Optional

from petvax.models import ChatReply, InboundMessage, Session
from petvax.services import text_parsing
from petvax.services.action_executor import ActionExecutor
from petvax.services.errors import InterpreterUnavailable, SessionConflictError, StorageError
from petvax.services.intent_router import IntentRouter, RouteDecision
from petvax.services.plan_interpreter import PlanInterpreter
from petvax.services.planner import FALLBACK_APOLOGY, NOT_UNDERSTOOD, PlannerTurn, SlotFillingPlanner
from petvax.services.record_store import RecordStore, build_record_store
from petvax.services.session_store import SessionStore

logger = logging.getLogger(__name__)

MENU_TEXT = "เมนู 🐾\n- เพิ่มสัตว์เลี้ยง\n- บันทึกวัคซีน\n- บันทึกการรักษา\n- ดูวัคซีน\n- ดูการรักษา"
STORAGE_APOLOGY = "ขออภัย ระบบบันทึกข้อมูลขัดข้อง โปรดลองใหม่อีกครั้งนะครับ"
CONFLICT_REPLY = "ได้รับข้อความซ้อนกัน โปรดส่งข้อความล่าสุดอีกครั้งนะครับ"
EMERGENCY_REPLY = (
    "อาการนี้อาจเป็นภาวะฉุกเฉิน ระบบแชทไม่สามารถวินิจฉัยได้ "
    "โปรดติดต่อโรงพยาบาลสัตว์ที่ใกล้ที่สุดทันทีครับ"
)
HEALTH_FALLBACK = (
    "ระบบไม่สามารถวินิจฉัยโรคได้ แต่แนะนำให้สังเกตการกินน้ำ กินอาหาร และการขับถ่าย "
    "ให้พักในที่สงบ และหากอาการไม่ดีขึ้นภายใน 24 ชั่วโมง ซึม หรือมีเลือดปน ควรพาไปพบสัตวแพทย์ครับ"
)
EMERGENCY_PATTERNS = [
    r"ชัก",
    r"หายใจไม่ออก|หายใจลำบาก",
    r"หมดสติ",
    r"กินยาเบื่อ|โดนยาพิษ|สารพิษ",
    r"seizure",
    r"not\s+breathing|can'?t\s+breathe",
    r"poison(ed|ing)?",
    r"unconscious|collapsed?",
]


def _read_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _read_threshold_env(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        return default
    return min(1.0, max(0.0, value))


class PetCareAssistant:
    """Runs one conversational turn: route, plan, execute, persist session, reply."""

    def __init__(
        self,
        sessions: Optional[SessionStore] = None,
        records: Optional[RecordStore] = None,
        interpreter: Optional[PlanInterpreter] = None,
        executor: Optional[ActionExecutor] = None,
    ) -> None:
        default_session_db = str(Path(__file__).resolve().parents[2] / "data" / "sessions.sqlite3")
        self.sessions = sessions or SessionStore(db_path=os.getenv("SESSION_DB_PATH", default_session_db))
        self.records = records or build_record_store()
        self.interpreter = interpreter or PlanInterpreter()
        self.executor = executor or ActionExecutor(self.records)
        self.router = IntentRouter(self.interpreter)
        self.planner = SlotFillingPlanner(
            interpreter=self.interpreter,
            executor=self.executor,
            confidence_threshold=_read_threshold_env("PLAN_CONFIDENCE_THRESHOLD", 0.6),
        )
        self.route_telemetry_enabled = _read_bool_env("ROUTE_TELEMETRY_ENABLED", True)

    @property
    def llm_available(self) -> bool:
        return self.interpreter.llm_available

    async def handle_message(self, message: InboundMessage) -> ChatReply:
        user_id = message.user_id.strip()
        text = text_parsing.normalize(message.text)[:4000]

        try:
            self.records.ensure_owner(user_id)
            session = self.sessions.load(user_id)
        except StorageError:
            logger.exception("Storage unavailable before routing for user=%s", user_id)
            return ChatReply(reply=STORAGE_APOLOGY, route="unknown", reason="storage_unavailable")

        if text_parsing.is_menu(text):
            return self._reply(user_id, session, text, MENU_TEXT, "chat", "menu", "menu")

        if message.image_ref and not session.is_open:
            decision = RouteDecision(route="planner", reason="image")
        else:
            decision = await self.router.route(text, session)

        try:
            turn = await self._dispatch(decision, session, text, message.image_ref)
        except InterpreterUnavailable:
            turn = PlannerTurn(reply=FALLBACK_APOLOGY, outcome="interpreter_unavailable")
        except StorageError:
            logger.exception("Storage failure during turn for user=%s", user_id)
            turn = PlannerTurn(reply=STORAGE_APOLOGY, outcome="storage_unavailable")

        if turn.session is not None:
            try:
                self.sessions.save(turn.session)
            except SessionConflictError:
                if turn.committed:
                    logger.warning("Session conflict for user=%s after records were written", user_id)
                    turn = self._settle_committed_turn(user_id, turn)
                else:
                    logger.warning("Session conflict for user=%s; turn result discarded", user_id)
                    turn = PlannerTurn(reply=CONFLICT_REPLY, outcome="session_conflict")
            except StorageError:
                logger.exception("Session save failed for user=%s", user_id)
                turn = PlannerTurn(reply=STORAGE_APOLOGY, outcome="storage_unavailable")

        final_session = turn.session or session
        return self._reply(user_id, final_session, text, turn.reply, decision.route, decision.reason, turn.outcome)

    async def _dispatch(
        self,
        decision: RouteDecision,
        session: Session,
        text: str,
        image_ref: Optional[str],
    ) -> PlannerTurn:
        if decision.route == "continue":
            return await self.planner.continue_turn(session, text)
        if decision.route == "planner":
            if image_ref and decision.reason == "image":
                return self.planner.attach_photo(session, image_ref, text)
            return await self.planner.plan_turn(session, text, decision.plan)
        if decision.route == "health":
            return PlannerTurn(reply=await self._health_reply(text), outcome="advice")
        if decision.route == "chat":
            if decision.interpreter_failed:
                raise InterpreterUnavailable("router probe failed")
            hint = decision.plan.reply_hint if decision.plan else None
            return PlannerTurn(reply=hint or NOT_UNDERSTOOD, outcome="chat")
        return PlannerTurn(reply=NOT_UNDERSTOOD, outcome="unknown")

    def _settle_committed_turn(self, user_id: str, turn: PlannerTurn) -> PlannerTurn:
        """Close the session on top of the newer stored version and report what was written.

        Records from this turn are already committed, so asking for a resend would
        write them twice. Any question the turn had left open is dropped.
        """
        reply = "\n".join(turn.committed)
        try:
            latest = self.sessions.load(user_id)
            latest.clear()
            if turn.session is not None and turn.session.last_pet_name:
                latest.last_pet_name = turn.session.last_pet_name
            self.sessions.save(latest)
        except StorageError:
            logger.exception("Could not close session for user=%s after a conflict", user_id)
            return PlannerTurn(reply=reply, outcome="executed")
        return PlannerTurn(reply=reply, outcome="executed", session=latest, committed=turn.committed)

    async def _health_reply(self, text: str) -> str:
        lowered = text.lower()
        if any(re.search(pattern, lowered) for pattern in EMERGENCY_PATTERNS):
            return EMERGENCY_REPLY
        advice = await self.interpreter.advise(text)
        return advice or HEALTH_FALLBACK

    def _reply(
        self, user_id: str, session: Session, text: str, reply: str, route: str, reason: str, outcome: str
    ) -> ChatReply:
        self._emit_route_telemetry(
            user_id=user_id, session=session, text=text, route=route, reason=reason, outcome=outcome
        )
        return ChatReply(reply=reply, route=route, reason=reason)  # type: ignore[arg-type]

    def _emit_route_telemetry(
        self,
        *,
        user_id: str,
        session: Session,
        text: str,
        route: str,
        reason: str,
        outcome: str,
    ) -> None:
        if not self.route_telemetry_enabled:
            return
        payload = {
            "user_id": user_id,
            "message_length": len(text),
            "route": route,
            "reason": reason,
            "expect": session.expect_field if session.expect == "awaiting_field" else session.expect,
            "pending_action": session.pending_action,
            "outcome": outcome,
        }
        logger.info("route_telemetry=%s", json.dumps(payload, sort_keys=True, ensure_ascii=False))
