import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI
from pydantic import ValidationError

from petvax.models import ACTION_KINDS, ActionRequest, Plan
from petvax.services import text_parsing

logger = logging.getLogger(__name__)

PLAN_SYSTEM_PROMPT = (
    "You are the planner for a pet record-keeping assistant used in Thai and English chat. "
    "Return strict JSON only, no prose, with fields: "
    '{"confidence": number 0..1, "reply_hint": optional string, "followup_question": optional string, '
    '"actions": [{"kind": string, "params": object}]}. '
    "Allowed kinds: add_pet, add_vaccine, add_treatment, list_vaccine, list_treatment, confirm, noop. "
    "Params: add_pet {name, species?, breed?, sex?, birthdate?, neutered?, markings?}; "
    "add_vaccine {vaccine_name, pet_name, date, cycle_days?}; "
    "add_treatment {treatment_name, pet_name, date, note?}; "
    "list_vaccine {pet_name?}; list_treatment {pet_name?}. "
    "Dates are YYYY-MM-DD, or the literal token today. Never invent a value the user did not give: "
    "omit the param instead. Use context.partial for values collected in earlier turns. "
    "If the user only chats or asks for advice, return actions=[] and put a short Thai reply in reply_hint. "
    "Ask at most one followup_question."
)
ADVICE_SYSTEM_PROMPT = (
    "You are a pet-care assistant. The owner describes symptoms. Do not diagnose. "
    "Give at most four short practical steps, list red flags that need a vet today, "
    "and answer in the user's language."
)
PLACEHOLDER_KEYS = {"replace-with-openai-key", "your-openai-api-key"}
FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)

LIST_TREATMENT_TRIGGERS = ("ดูการรักษา", "ประวัติการรักษา", "ดูประวัติรักษา", "list treatment", "view treatment", "show treatment", "treatment history")
LIST_VACCINE_TRIGGERS = ("ดูวัคซีน", "ประวัติวัคซีน", "รายการวัคซีน", "list vaccine", "view vaccine", "show vaccine", "vaccine history")
ADD_PET_TRIGGERS = ("เพิ่มหมา", "เพิ่มแมว", "เพิ่มสุนัข", "เพิ่มสัตว์เลี้ยง", "add pet", "add dog", "add cat", "new pet", "register pet")
ADD_TREATMENT_TRIGGERS = ("บันทึกการรักษา", "รักษา", "treatment")
ADD_VACCINE_TRIGGERS = ("ฉีด", "วัคซีน", "vaccin", "shot")


def _normalize_env_value(value: str) -> str:
    normalized = value.strip()
    if len(normalized) >= 2 and normalized[0] == normalized[-1] and normalized[0] in {"'", '"'}:
        normalized = normalized[1:-1].strip()
    return normalized


def load_openai_api_key() -> str:
    api_key = _normalize_env_value(os.getenv("OPENAI_API_KEY", ""))
    if not api_key:
        key_file = _normalize_env_value(os.getenv("OPENAI_API_KEY_FILE", ""))
        if key_file:
            try:
                api_key = _normalize_env_value(Path(key_file).read_text(encoding="utf-8"))
            except OSError:
                logger.warning("OPENAI_API_KEY_FILE is set but unreadable.")
    if api_key.lower() in PLACEHOLDER_KEYS:
        return ""
    return api_key


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """Pull a JSON object out of model output: fenced block first, then the outermost braces."""
    text = (raw or "").strip()
    candidates: List[str] = []
    fence_match = FENCED_JSON.search(text)
    if fence_match:
        candidates.append(fence_match.group(1))
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def normalize_plan(data: Dict[str, Any]) -> Optional[Plan]:
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    raw_actions = data.get("actions", [])
    if not isinstance(raw_actions, list):
        raw_actions = []

    actions: List[ActionRequest] = []
    for item in raw_actions:
        if not isinstance(item, dict):
            continue
        kind = item.get("kind")
        params = item.get("params")
        actions.append(
            ActionRequest(
                kind=kind if kind in ACTION_KINDS else "noop",
                params={k: v for k, v in params.items() if v not in (None, "")} if isinstance(params, dict) else {},
            )
        )

    def _optional_text(key: str) -> Optional[str]:
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip()

    try:
        return Plan(
            confidence=min(1.0, max(0.0, confidence)),
            reply_hint=_optional_text("reply_hint"),
            followup_question=_optional_text("followup_question"),
            actions=actions,
        )
    except ValidationError:
        return None


class PlanInterpreter:
    """Turns user text plus session context into a Plan; never raises."""

    def __init__(self, client: Optional[AsyncOpenAI] = None) -> None:
        self.model = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
        self.context_max_chars = self._read_int_env("PLAN_CONTEXT_MAX_CHARS", 2000)
        if client is None:
            api_key = load_openai_api_key()
            client = AsyncOpenAI(api_key=api_key) if api_key else None
        self.client = client
        self.llm_available = self.client is not None
        if not self.llm_available:
            logger.warning("LLM disabled: set OPENAI_API_KEY (or OPENAI_API_KEY_FILE); using heuristic plans.")

    @staticmethod
    def _read_int_env(name: str, default: int) -> int:
        try:
            value = int(os.getenv(name, str(default)))
        except ValueError:
            return default
        return value if value > 0 else default

    async def interpret(self, text: str, context: Optional[Dict[str, Any]] = None) -> Optional[Plan]:
        context = context or {}
        if not self.client:
            return self.heuristic_plan(text, context)

        payload = {"message": text, "context": self.serialize_context(context)}
        try:
            response = await self.client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": PLAN_SYSTEM_PROMPT},
                    {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
                ],
                temperature=0.1,
            )
            content = getattr(response, "output_text", "") or ""
        except Exception:
            logger.warning("Plan interpreter call failed", exc_info=True)
            return None
        return self.parse_plan(content)

    def parse_plan(self, content: str) -> Optional[Plan]:
        data = extract_json_object(content)
        if data is None:
            logger.warning("Plan interpreter returned non-json output: %s", (content or "")[:220])
            return None
        return normalize_plan(data)

    def serialize_context(self, context: Dict[str, Any]) -> str:
        serialized = json.dumps(context, ensure_ascii=False, sort_keys=True, default=str)
        if len(serialized) <= self.context_max_chars:
            return serialized
        trimmed = {
            key: (value[:200] if isinstance(value, str) else value)
            for key, value in context.items()
        }
        serialized = json.dumps(trimmed, ensure_ascii=False, sort_keys=True, default=str)
        return serialized[: self.context_max_chars]

    async def advise(self, text: str) -> Optional[str]:
        if not self.client:
            return None
        try:
            response = await self.client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": ADVICE_SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
                temperature=0.2,
            )
        except Exception:
            logger.warning("Advice call failed", exc_info=True)
            return None
        answer = (getattr(response, "output_text", "") or "").strip()
        return answer or None

    def heuristic_plan(self, text: str, context: Dict[str, Any]) -> Plan:
        lowered = text_parsing.normalize(text).casefold()
        kind = self._detect_kind(lowered)
        if kind is None:
            return Plan(confidence=0.0, actions=[])

        if kind == "add_pet":
            params = self._pet_params(text)
        elif kind == "add_vaccine":
            params = {
                "vaccine_name": text_parsing.extract_vaccine_name(text),
                "pet_name": text_parsing.extract_pet_name(text),
                "date": text_parsing.extract_date(text),
                "cycle_days": text_parsing.extract_cycle_days(text),
            }
        elif kind == "add_treatment":
            params = {
                "treatment_name": text_parsing.extract_treatment_name(text),
                "pet_name": text_parsing.extract_pet_name(text),
                "date": text_parsing.extract_date(text),
            }
        else:
            params = {"pet_name": text_parsing.extract_pet_name(text)}

        return Plan(
            confidence=0.9,
            actions=[ActionRequest(kind=kind, params={k: v for k, v in params.items() if v is not None})],
        )

    def _detect_kind(self, lowered: str) -> Optional[str]:
        if any(trigger in lowered for trigger in LIST_TREATMENT_TRIGGERS):
            return "list_treatment"
        if any(trigger in lowered for trigger in LIST_VACCINE_TRIGGERS):
            return "list_vaccine"
        if any(trigger in lowered for trigger in ADD_PET_TRIGGERS):
            return "add_pet"
        if any(trigger in lowered for trigger in ADD_TREATMENT_TRIGGERS) or text_parsing.extract_treatment_name(lowered):
            return "add_treatment"
        if any(trigger in lowered for trigger in ADD_VACCINE_TRIGGERS):
            return "add_vaccine"
        return None

    def _pet_params(self, text: str) -> Dict[str, Any]:
        cleaned = text_parsing.normalize(text)
        lowered = cleaned.casefold()
        params: Dict[str, Any] = {"name": text_parsing.extract_pet_name(cleaned)}

        breed_match = re.search(r"(?:พันธุ์|breed)\s*[:]?\s*([^\s,]+)", cleaned, re.I)
        if breed_match:
            params["breed"] = breed_match.group(1)
        if re.search(r"เพศผู้|ตัวผู้|\bmale\b", lowered):
            params["sex"] = "male"
        elif re.search(r"เพศเมีย|ตัวเมีย|\bfemale\b", lowered):
            params["sex"] = "female"
        born_match = re.search(r"(?:เกิด|born)\s*(?:วันที่|on)?\s*(\S+)", cleaned, re.I)
        if born_match:
            params["birthdate"] = text_parsing.parse_date_value(born_match.group(1))
        if re.search(r"ทำหมันแล้ว|\bneutered\b|\bspayed\b", lowered):
            params["neutered"] = True
        return params
