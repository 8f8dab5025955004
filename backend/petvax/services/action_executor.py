import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Type
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from petvax.models import (
    ActionRequest,
    AddPetParams,
    AddTreatmentParams,
    AddVaccineParams,
    ListParams,
    Pet,
    Session,
    TreatmentRecord,
    VaccinationRecord,
)
from petvax.services.errors import ActionValidationError, ResolutionError
from petvax.services.record_store import RecordStore
from petvax.services.reminders import add_days, build_reminders, local_today
from petvax.services.text_parsing import parse_date_value

logger = logging.getLogger(__name__)

# Order is the order missing fields are asked for.
REQUIRED_FIELDS: Dict[str, List[str]] = {
    "add_pet": ["name"],
    "add_vaccine": ["vaccine_name", "pet_name", "date"],
    "add_treatment": ["treatment_name", "pet_name", "date"],
    "list_vaccine": ["pet_name"],
    "list_treatment": ["pet_name"],
    "confirm": [],
    "noop": [],
}
PARAM_MODELS: Dict[str, Type[BaseModel]] = {
    "add_pet": AddPetParams,
    "add_vaccine": AddVaccineParams,
    "add_treatment": AddTreatmentParams,
    "list_vaccine": ListParams,
    "list_treatment": ListParams,
}
PET_SCOPED_KINDS = {"add_vaccine", "add_treatment", "list_vaccine", "list_treatment"}
AUTO_CREATE_PET_KINDS = {"add_vaccine", "add_treatment"}


@dataclass
class ActionResult:
    kind: str
    status: str
    message: str = ""
    pet_name: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionExecutor:
    """Dispatch table of record mutations and queries, one handler per action kind."""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self.clock = clock
        self._handlers: Dict[str, Callable[[str, Dict[str, Any]], ActionResult]] = {
            "add_pet": self._add_pet,
            "add_vaccine": self._add_vaccine,
            "add_treatment": self._add_treatment,
            "list_vaccine": self._list_vaccine,
            "list_treatment": self._list_treatment,
            "confirm": self._confirm,
            "noop": self._noop,
        }

    def resolve_pet_name(self, owner_user_id: str, params: Dict[str, Any], session: Session) -> Optional[str]:
        """Explicit name, then the last pet mentioned in this session, then the latest pet on file."""
        explicit = params.get("pet_name")
        if isinstance(explicit, str) and explicit.strip():
            return explicit.strip()
        if session.last_pet_name and self.store.find_pet(owner_user_id, session.last_pet_name):
            return session.last_pet_name
        latest = self.store.latest_pet(owner_user_id)
        return latest.name if latest else None

    def missing_fields(self, owner_user_id: str, action: ActionRequest, session: Session) -> List[str]:
        missing: List[str] = []
        for name in REQUIRED_FIELDS.get(action.kind, []):
            if name == "pet_name" and action.kind in PET_SCOPED_KINDS:
                if not self.resolve_pet_name(owner_user_id, action.params, session):
                    missing.append(name)
                continue
            value = action.params.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing

    def execute(self, owner_user_id: str, action: ActionRequest, session: Session) -> ActionResult:
        handler = self._handlers.get(action.kind, self._noop)
        params = dict(action.params)
        if action.kind in PET_SCOPED_KINDS:
            missing = self.missing_fields(owner_user_id, action, session)
            if missing and missing[0] != "pet_name":
                raise ActionValidationError(missing[0])
            pet_name = self.resolve_pet_name(owner_user_id, params, session)
            if not pet_name:
                raise ResolutionError("no pet on file and none named")
            params["pet_name"] = pet_name
        logger.info("executing action kind=%s user=%s", action.kind, owner_user_id)
        return handler(owner_user_id, params)

    def validate(self, kind: str, params: Dict[str, Any]) -> BaseModel:
        model = PARAM_MODELS[kind]
        known = {key: value for key, value in params.items() if key in model.model_fields}
        try:
            return model.model_validate(known)
        except ValidationError as exc:
            error = exc.errors()[0]
            field_name = str(error["loc"][0]) if error.get("loc") else "params"
            reason = "missing_required_field" if error.get("type") == "missing" else "invalid_field"
            raise ActionValidationError(field_name, reason=reason) from exc

    def resolve_date(self, value: Any, field_name: str = "date") -> str:
        """Validate a date slot and turn the today token into the current UTC+7 civil date."""
        parsed = parse_date_value(value)
        if parsed is None:
            raise ActionValidationError(field_name, reason="invalid_field")
        if parsed == "today":
            return local_today(self.clock()).isoformat()
        return parsed

    def attach_photo(self, owner_user_id: str, photo_ref: str, pet_name: Optional[str], session: Session) -> ActionResult:
        name = self.resolve_pet_name(owner_user_id, {"pet_name": pet_name}, session)
        pet = self.store.find_pet(owner_user_id, name) if name else None
        if not pet:
            raise ResolutionError("no pet to attach the photo to", pet_name=pet_name)
        updated = self.store.set_pet_photo(pet.id, photo_ref) or pet
        return ActionResult(
            kind="attach_photo",
            status="updated",
            message=f'บันทึกรูปของ "{updated.name}" เรียบร้อย 📷',
            pet_name=updated.name,
        )

    def _pet_for_listing(self, owner_user_id: str, name: str) -> Pet:
        pet = self.store.find_pet(owner_user_id, name)
        if not pet:
            raise ResolutionError(f"no pet named {name}", pet_name=name)
        return pet

    def _add_pet(self, owner_user_id: str, params: Dict[str, Any]) -> ActionResult:
        typed = self.validate("add_pet", params)
        assert isinstance(typed, AddPetParams)
        if typed.birthdate:
            typed.birthdate = self.resolve_date(typed.birthdate, "birthdate")
        pet, created = self.store.upsert_pet(owner_user_id, typed)
        if created:
            message = f'เพิ่มสัตว์เลี้ยง "{pet.name}" เรียบร้อย ✅'
        else:
            message = f'อัปเดตข้อมูล "{pet.name}" เรียบร้อย ✅'
        return ActionResult(
            kind="add_pet",
            status="created" if created else "updated",
            message=message,
            pet_name=pet.name,
            data={"pet": pet.model_dump()},
        )

    def _add_vaccine(self, owner_user_id: str, params: Dict[str, Any]) -> ActionResult:
        typed = self.validate("add_vaccine", params)
        assert isinstance(typed, AddVaccineParams)
        shot_date = self.resolve_date(typed.date)
        pet = self.store.find_or_create_pet(owner_user_id, typed.pet_name)
        record = VaccinationRecord(
            id=f"vac_{uuid4().hex[:10]}",
            owner_user_id=owner_user_id,
            pet_id=pet.id,
            pet_name=pet.name,
            vaccine_name=typed.vaccine_name.strip(),
            last_shot_date=shot_date,
            next_due_date=add_days(shot_date, typed.cycle_days),
            cycle_days=typed.cycle_days,
            created_at=self.clock().isoformat(),
        )
        reminders = build_reminders(record)
        self.store.create_vaccination(record, reminders)
        return ActionResult(
            kind="add_vaccine",
            status="created",
            message=f"บันทึกวัคซีน {record.vaccine_name} ให้ {pet.name} แล้ว ✅ นัดถัดไป: {record.next_due_date}",
            pet_name=pet.name,
            data={"vaccination": record.model_dump(), "reminders": [r.model_dump() for r in reminders]},
        )

    def _add_treatment(self, owner_user_id: str, params: Dict[str, Any]) -> ActionResult:
        typed = self.validate("add_treatment", params)
        assert isinstance(typed, AddTreatmentParams)
        treatment_date = self.resolve_date(typed.date)
        pet = self.store.find_or_create_pet(owner_user_id, typed.pet_name)
        record = TreatmentRecord(
            id=f"trt_{uuid4().hex[:10]}",
            owner_user_id=owner_user_id,
            pet_id=pet.id,
            pet_name=pet.name,
            treatment_name=typed.treatment_name.strip(),
            treatment_date=treatment_date,
            note=typed.note,
            created_at=self.clock().isoformat(),
        )
        self.store.create_treatment(record)
        return ActionResult(
            kind="add_treatment",
            status="created",
            message=f"บันทึกการรักษา {record.treatment_name} ให้ {pet.name} วันที่ {treatment_date} แล้ว ✅",
            pet_name=pet.name,
            data={"treatment": record.model_dump()},
        )

    def _list_vaccine(self, owner_user_id: str, params: Dict[str, Any]) -> ActionResult:
        typed = self.validate("list_vaccine", params)
        assert isinstance(typed, ListParams)
        pet = self._pet_for_listing(owner_user_id, typed.pet_name)
        records = self.store.list_vaccinations(owner_user_id, pet.id)
        if not records:
            return ActionResult(
                kind="list_vaccine",
                status="empty",
                message=f"ยังไม่พบประวัติวัคซีนของ {pet.name}",
                pet_name=pet.name,
            )
        lines = [f"วัคซีนของ {pet.name}:"]
        lines.extend(
            f"- {r.vaccine_name} ฉีดล่าสุด {r.last_shot_date} ครบกำหนด {r.next_due_date}" for r in records
        )
        return ActionResult(
            kind="list_vaccine",
            status="listed",
            message="\n".join(lines),
            pet_name=pet.name,
            data={"vaccinations": [r.model_dump() for r in records]},
        )

    def _list_treatment(self, owner_user_id: str, params: Dict[str, Any]) -> ActionResult:
        typed = self.validate("list_treatment", params)
        assert isinstance(typed, ListParams)
        pet = self._pet_for_listing(owner_user_id, typed.pet_name)
        records = self.store.list_treatments(owner_user_id, pet.id)
        if not records:
            return ActionResult(
                kind="list_treatment",
                status="empty",
                message=f"ยังไม่พบประวัติการรักษาของ {pet.name}",
                pet_name=pet.name,
            )
        lines = [f"การรักษาของ {pet.name}:"]
        for r in records:
            line = f"- {r.treatment_date} {r.treatment_name}"
            lines.append(f"{line} ({r.note})" if r.note else line)
        return ActionResult(
            kind="list_treatment",
            status="listed",
            message="\n".join(lines),
            pet_name=pet.name,
            data={"treatments": [r.model_dump() for r in records]},
        )

    def _confirm(self, owner_user_id: str, params: Dict[str, Any]) -> ActionResult:
        return ActionResult(kind="confirm", status="noop", message="รับทราบ ✅")

    def _noop(self, owner_user_id: str, params: Dict[str, Any]) -> ActionResult:
        return ActionResult(kind="noop", status="noop")
