import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern

from petvax.models import Plan, Route, Session
from petvax.services import text_parsing
from petvax.services.plan_interpreter import PlanInterpreter

logger = logging.getLogger(__name__)

PLANNER_VERBS = (
    "เพิ่ม",
    "บันทึก",
    "แก้ไข",
    "ดูวัคซีน",
    "ดูการรักษา",
    "ดูประวัติ",
    "ดูข้อมูล",
    "ดูรายการ",
    "เตือน",
    "ฉีด",
    "ถ่ายพยาธิ",
    "หยอดเห็บ",
    "add",
    "record",
    "edit",
    "update",
    "view",
    "list",
    "show",
    "remind",
    "vaccinate",
)
SYMPTOM_TERMS = (
    "อาเจียน",
    "ท้องเสีย",
    "ไม่กินอาหาร",
    "ไม่ยอมกิน",
    "ซึม",
    "ไอ",
    "จาม",
    "คัน",
    "ชัก",
    "ถ่ายเป็นเลือด",
    "หายใจลำบาก",
    "ป่วย",
    "ขาเจ็บ",
    "vomit",
    "diarrhea",
    "diarrhoea",
    "not eating",
    "letharg",
    "cough",
    "sneez",
    "itch",
    "seizure",
    "limp",
    "sick",
    "bleeding",
)
SHORT_ANSWER_MAX_WORDS = 3


@dataclass
class RouteDecision:
    route: Route
    reason: str
    plan: Optional[Plan] = None
    interpreter_failed: bool = False


def _compile_terms(terms: tuple) -> List[Pattern[str]]:
    patterns: List[Pattern[str]] = []
    for term in terms:
        escaped = re.escape(term)
        if term.isascii():
            patterns.append(re.compile(rf"(?<![a-z]){escaped}", re.I))
        else:
            # Thai is written without spaces, so match anywhere.
            patterns.append(re.compile(escaped))
    return patterns


class IntentRouter:
    """Cheap heuristics first, one interpreter probe last; never raises."""

    def __init__(self, interpreter: PlanInterpreter) -> None:
        self.interpreter = interpreter
        self.planner_patterns = _compile_terms(PLANNER_VERBS)
        self.symptom_patterns = _compile_terms(SYMPTOM_TERMS)

    def matches_planner_verb(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.planner_patterns)

    def matches_symptom(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.symptom_patterns)

    def is_short_answer(self, text: str) -> bool:
        normalized = text_parsing.normalize(text)
        if not normalized or len(normalized.split()) > SHORT_ANSWER_MAX_WORDS:
            return False
        return (
            text_parsing.is_affirmative(normalized)
            or text_parsing.is_negative(normalized)
            or text_parsing.parse_date_value(normalized) is not None
        )

    async def route(self, text: str, session: Session) -> RouteDecision:
        if session.is_open:
            return RouteDecision(route="continue", reason=f"open_{session.expect}")

        normalized = text_parsing.normalize(text)
        if not normalized:
            return RouteDecision(route="unknown", reason="empty_text")
        if self.matches_planner_verb(normalized):
            return RouteDecision(route="planner", reason="verb_keyword")
        if self.matches_symptom(normalized):
            return RouteDecision(route="health", reason="symptom_keyword")
        if self.is_short_answer(normalized):
            return RouteDecision(route="continue", reason="short_answer")

        try:
            plan = await self.interpreter.interpret(normalized, {"partial": session.partial})
        except Exception:
            logger.exception("Interpreter probe raised")
            plan = None
        if plan is None:
            return RouteDecision(route="chat", reason="probe_failed", interpreter_failed=True)
        if plan.has_work():
            return RouteDecision(route="planner", reason="probe_actions", plan=plan)
        return RouteDecision(route="chat", reason="probe_no_actions", plan=plan)
