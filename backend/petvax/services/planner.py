import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from petvax.models import ActionRequest, Plan, Session
from petvax.services import text_parsing
from petvax.services.action_executor import PARAM_MODELS, REQUIRED_FIELDS, ActionExecutor, ActionResult
from petvax.services.errors import ActionValidationError, InterpreterUnavailable, ResolutionError
from petvax.services.plan_interpreter import PlanInterpreter

logger = logging.getLogger(__name__)

FIELD_QUESTIONS = {
    "name": "สัตว์เลี้ยงชื่ออะไรครับ?",
    "vaccine_name": "ฉีดวัคซีนอะไรครับ? (เช่น Rabies, DHPP)",
    "treatment_name": "รักษาหรือป้องกันอะไรครับ? (เช่น ถ่ายพยาธิ, หยอดเห็บหมัด)",
    "pet_name": "ของสัตว์เลี้ยงตัวไหนครับ? พิมพ์ชื่อได้เลย",
    "date": "วันที่เท่าไหร่ครับ? (เช่น 2025-11-03 หรือ วันนี้)",
    "birthdate": "เกิดวันที่เท่าไหร่ครับ? (เช่น 2023-05-01)",
    "cycle_days": "ต้องฉีดซ้ำทุกกี่วันครับ? (เช่น 365)",
}
KIND_LABELS = {
    "add_pet": "เพิ่มสัตว์เลี้ยง",
    "add_vaccine": "บันทึกวัคซีน",
    "add_treatment": "บันทึกการรักษา",
    "list_vaccine": "ดูวัคซีน",
    "list_treatment": "ดูการรักษา",
}
SLOT_EXTRACTORS = {
    "vaccine_name": text_parsing.extract_vaccine_name,
    "treatment_name": text_parsing.extract_treatment_name,
    "pet_name": text_parsing.extract_pet_name,
    "name": text_parsing.extract_pet_name,
    "date": text_parsing.extract_date,
    "cycle_days": text_parsing.extract_cycle_days,
}
FALLBACK_APOLOGY = "ขออภัย ตอนนี้ระบบยังไม่เข้าใจข้อความนี้ โปรดลองใหม่อีกครั้งนะครับ"
NOT_UNDERSTOOD = 'ยังไม่เข้าใจครับ ลองพิมพ์ "เมนู" เพื่อดูตัวเลือก'
CANCELLED = "ยกเลิกรายการที่ค้างไว้แล้วครับ"


@dataclass
class PlannerTurn:
    reply: str
    outcome: str
    session: Optional[Session] = None
    # Reply lines for actions already written to the record store this turn.
    committed: List[str] = field(default_factory=list)


def slot_params(action: ActionRequest) -> Dict[str, Any]:
    """Type-checked params restricted to the slots the action's kind declares."""
    model = PARAM_MODELS.get(action.kind)
    if model is None:
        return {}
    return {key: value for key, value in clean_params(action.params).items() if key in model.model_fields}


def clean_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only values that pass type checks for the slot they claim to fill."""
    cleaned: Dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        if key in {"date", "birthdate"}:
            parsed = text_parsing.parse_date_value(value)
            if parsed:
                cleaned[key] = parsed
        elif key == "cycle_days":
            try:
                days = int(value)
            except (TypeError, ValueError):
                continue
            if 1 <= days <= 3650:
                cleaned[key] = days
        elif key == "neutered":
            if isinstance(value, bool):
                cleaned[key] = value
        elif isinstance(value, str):
            if value.strip():
                cleaned[key] = value.strip()[:200]
        elif isinstance(value, (int, float)):
            cleaned[key] = value
    return cleaned


def question_for(field: str, invalid: bool = False) -> str:
    question = FIELD_QUESTIONS.get(field, "ขอข้อมูลเพิ่มอีกนิดครับ")
    if invalid:
        return f"ข้อมูลไม่ถูกต้อง {question}"
    return question


def _messages(results: List[ActionResult]) -> List[str]:
    return [result.message for result in results if result.message]


class SlotFillingPlanner:
    """Per-user state machine: IDLE, AWAITING_FOLLOWUP, AWAITING_FIELD(field).

    Every method works on a copy of the session and hands back the copy to
    persist, or None when the stored session must stay untouched.
    """

    def __init__(
        self,
        interpreter: PlanInterpreter,
        executor: ActionExecutor,
        confidence_threshold: float = 0.6,
    ) -> None:
        self.interpreter = interpreter
        self.executor = executor
        self.confidence_threshold = confidence_threshold

    def context_for(self, session: Session) -> Dict[str, Any]:
        pets = [pet.name for pet in self.executor.store.list_pets(session.user_id)]
        return {
            "pending_kind": session.pending_kind,
            "expect_field": session.expect_field,
            "partial": session.partial,
            "last_pet_name": session.last_pet_name,
            "pets": pets[:20],
        }

    async def plan_turn(self, session: Session, text: str, plan: Optional[Plan] = None) -> PlannerTurn:
        if plan is None:
            plan = await self.interpreter.interpret(text, self.context_for(session))
        if plan is None:
            raise InterpreterUnavailable("interpreter returned no plan")
        working = session.model_copy(deep=True)
        return self._evaluate(working, plan.actions, plan.confidence, plan.followup_question, plan.reply_hint)

    async def continue_turn(self, session: Session, text: str) -> PlannerTurn:
        working = session.model_copy(deep=True)
        if text_parsing.is_cancel(text):
            working.clear()
            return PlannerTurn(reply=CANCELLED, outcome="cancelled", session=working)
        if working.expect == "awaiting_field":
            return self._fill_field(working, text)
        if working.expect == "awaiting_followup":
            return await self._answer_followup(working, text)
        # Short answer with no open question: treat it as a fresh request.
        return await self.plan_turn(session, text)

    def attach_photo(self, session: Session, image_ref: str, text: str = "") -> PlannerTurn:
        working = session.model_copy(deep=True)
        pet_name = text_parsing.extract_pet_name(text) or (text_parsing.extract_slot("pet_name", text) if text else None)
        try:
            result = self.executor.attach_photo(working.user_id, image_ref, pet_name, working)
        except ResolutionError:
            working.clear()
            working.partial = {"photo_ref": image_ref}
            working.pending_action = "attach_photo"
            working.expect = "awaiting_field"
            working.expect_field = "pet_name"
            return PlannerTurn(reply=f"รูปนี้เป็นของสัตว์เลี้ยงตัวไหนครับ? {question_for('pet_name')}", outcome="asked", session=working)
        return self._completed(working, [result])

    def _fill_field(self, working: Session, text: str) -> PlannerTurn:
        field = working.expect_field or ""
        if working.pending_action == "attach_photo":
            return self._finish_photo(working, text)

        value = text_parsing.extract_slot(field, text)
        value = clean_params({field: value}).get(field) if value is not None else None
        if value is None:
            return PlannerTurn(reply=question_for(field, invalid=True), outcome="reasked", session=working)

        working.partial[field] = value
        kind = working.pending_kind or "noop"
        self._absorb_text(working, kind, text)
        action = ActionRequest(kind=kind, params=dict(working.partial))
        return self._evaluate(working, [action], 1.0, None, None)

    async def _answer_followup(self, working: Session, text: str) -> PlannerTurn:
        if text_parsing.is_negative(text):
            working.clear()
            return PlannerTurn(reply=CANCELLED, outcome="cancelled", session=working)
        if working.pending_kind and text_parsing.is_affirmative(text):
            action = ActionRequest(kind=working.pending_kind, params=dict(working.partial))
            return self._evaluate(working, [action], 1.0, None, None)

        plan = await self.interpreter.interpret(text, self.context_for(working))
        if plan is None:
            raise InterpreterUnavailable("interpreter returned no plan")

        actions = [action for action in plan.actions if action.kind != "noop"]
        if working.pending_kind:
            match = next((a for a in actions if a.kind == working.pending_kind), None)
            merged = {**working.partial, **(slot_params(match) if match else {})}
            working.partial = merged
            self._absorb_text(working, working.pending_kind, text)
            actions = [ActionRequest(kind=working.pending_kind, params=dict(working.partial))]
        elif actions:
            first = actions[0]
            actions[0] = ActionRequest(kind=first.kind, params={**working.partial, **slot_params(first)})
        # The user answered the question, so a fresh plan is trusted as-is.
        return self._evaluate(working, actions, max(plan.confidence, self.confidence_threshold), plan.followup_question, plan.reply_hint)

    def _finish_photo(self, working: Session, text: str) -> PlannerTurn:
        photo_ref = working.partial.get("photo_ref")
        pet_name = text_parsing.extract_slot("pet_name", text)
        if not photo_ref or not pet_name:
            return PlannerTurn(reply=question_for("pet_name", invalid=True), outcome="reasked", session=working)
        try:
            result = self.executor.attach_photo(working.user_id, photo_ref, pet_name, working)
        except ResolutionError:
            return PlannerTurn(
                reply=f'ไม่พบสัตว์เลี้ยงชื่อ "{pet_name}" ในระบบ {question_for("pet_name")}',
                outcome="reasked",
                session=working,
            )
        return self._completed(working, [result])

    def _absorb_text(self, working: Session, kind: str, text: str) -> None:
        for name in REQUIRED_FIELDS.get(kind, []) + ["cycle_days"]:
            if name in working.partial:
                continue
            extractor = SLOT_EXTRACTORS.get(name)
            if extractor is None:
                continue
            found = clean_params({name: extractor(text)})
            if name in found:
                working.partial[name] = found[name]

    def _evaluate(
        self,
        working: Session,
        actions: List[ActionRequest],
        confidence: float,
        followup_question: Optional[str],
        reply_hint: Optional[str],
    ) -> PlannerTurn:
        owner = working.user_id
        results: List[ActionResult] = []
        for index, action in enumerate(actions):
            if action.kind == "noop":
                continue
            action = ActionRequest(kind=action.kind, params=slot_params(action))
            if action.kind == "confirm":
                results.append(self.executor.execute(owner, action, working))
                continue

            missing = self.executor.missing_fields(owner, action, working)
            if missing:
                self._log_dropped(actions[index + 1 :])
                return self._ask(working, action, missing[0], results)
            if confidence < self.confidence_threshold:
                self._log_dropped(actions[index + 1 :])
                return self._ask_confirmation(working, action, results)

            try:
                result = self.executor.execute(owner, action, working)
            except ActionValidationError as exc:
                self._log_dropped(actions[index + 1 :])
                params = {k: v for k, v in action.params.items() if k != exc.field}
                return self._ask(
                    working,
                    ActionRequest(kind=action.kind, params=params),
                    exc.field,
                    results,
                    invalid=exc.reason == "invalid_field",
                )
            except ResolutionError as exc:
                self._log_dropped(actions[index + 1 :])
                params = {k: v for k, v in action.params.items() if k != "pet_name"}
                prefix = f'ไม่พบสัตว์เลี้ยงชื่อ "{exc.pet_name}" ในระบบ' if exc.pet_name else "ยังไม่มีสัตว์เลี้ยงในระบบ"
                return self._ask(working, ActionRequest(kind=action.kind, params=params), "pet_name", results, prefix=prefix)
            results.append(result)

        if results:
            return self._completed(working, results)
        if followup_question:
            merged: Dict[str, Any] = {}
            for action in actions:
                if action.kind != "noop":
                    merged.update(slot_params(action))
            working.partial = {**working.partial, **merged}
            working.expect = "awaiting_followup"
            working.expect_field = None
            return PlannerTurn(reply=followup_question, outcome="asked", session=working)
        return PlannerTurn(reply=reply_hint or NOT_UNDERSTOOD, outcome="no_action", session=None)

    def _ask(
        self,
        working: Session,
        action: ActionRequest,
        field: str,
        results: List[ActionResult],
        invalid: bool = False,
        prefix: str = "",
    ) -> PlannerTurn:
        for result in results:
            if result.pet_name:
                working.last_pet_name = result.pet_name
        working.partial = dict(action.params)
        working.pending_kind = action.kind
        working.pending_action = "add_vaccine" if action.kind == "add_vaccine" else "collect"
        working.expect = "awaiting_field"
        working.expect_field = field
        question = question_for(field, invalid=invalid)
        parts = _messages(results) + [f"{prefix} {question}".strip()]
        return PlannerTurn(reply="\n".join(parts), outcome="asked", session=working, committed=_messages(results))

    def _ask_confirmation(self, working: Session, action: ActionRequest, results: List[ActionResult]) -> PlannerTurn:
        working.partial = dict(action.params)
        working.pending_kind = action.kind
        working.pending_action = "add_vaccine" if action.kind == "add_vaccine" else "collect"
        working.expect = "awaiting_followup"
        working.expect_field = None
        summary = ", ".join(f"{key}: {value}" for key, value in action.params.items())
        label = KIND_LABELS.get(action.kind, action.kind)
        question = f"ต้องการให้{label} ({summary}) ใช่ไหมครับ? ตอบ ใช่ หรือ ไม่"
        parts = _messages(results) + [question]
        return PlannerTurn(reply="\n".join(parts), outcome="confirming", session=working, committed=_messages(results))

    def _completed(self, working: Session, results: List[ActionResult]) -> PlannerTurn:
        for result in results:
            if result.pet_name:
                working.last_pet_name = result.pet_name
        working.clear()
        reply = "\n".join(_messages(results)) or "รับทราบ ✅"
        return PlannerTurn(reply=reply, outcome="executed", session=working, committed=[reply])

    def _log_dropped(self, actions: List[ActionRequest]) -> None:
        dropped = [action.kind for action in actions if action.kind != "noop"]
        if dropped:
            logger.info("dropping actions after an incomplete one: %s", dropped)
