from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

ActionKind = Literal[
    "add_pet",
    "add_vaccine",
    "add_treatment",
    "list_vaccine",
    "list_treatment",
    "confirm",
    "noop",
]
ACTION_KINDS = {
    "add_pet",
    "add_vaccine",
    "add_treatment",
    "list_vaccine",
    "list_treatment",
    "confirm",
    "noop",
}

ExpectState = Literal["none", "awaiting_followup", "awaiting_field"]
PendingAction = Literal["none", "add_vaccine", "attach_photo", "collect"]
ReminderType = Literal["D-7", "D-1", "D0"]
Route = Literal["continue", "planner", "health", "chat", "unknown"]


class Session(BaseModel):
    user_id: str
    expect: ExpectState = "none"
    expect_field: Optional[str] = None
    pending_action: PendingAction = "none"
    pending_kind: Optional[ActionKind] = None
    partial: Dict[str, Any] = Field(default_factory=dict)
    last_pet_name: Optional[str] = None
    updated_at: Optional[str] = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.expect != "none"

    def clear(self) -> None:
        self.expect = "none"
        self.expect_field = None
        self.pending_action = "none"
        self.pending_kind = None
        self.partial = {}


class ActionRequest(BaseModel):
    kind: ActionKind = "noop"
    params: Dict[str, Any] = Field(default_factory=dict)


class Plan(BaseModel):
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reply_hint: Optional[str] = None
    followup_question: Optional[str] = None
    actions: list[ActionRequest] = Field(default_factory=list)

    def has_work(self) -> bool:
        return any(action.kind != "noop" for action in self.actions)


class AddPetParams(BaseModel):
    name: str = Field(min_length=1)
    species: Optional[str] = None
    breed: Optional[str] = None
    sex: Optional[str] = None
    birthdate: Optional[str] = None
    neutered: Optional[bool] = None
    markings: Optional[str] = None
    photo_ref: Optional[str] = None


class AddVaccineParams(BaseModel):
    vaccine_name: str = Field(min_length=1)
    pet_name: str = Field(min_length=1)
    date: str
    cycle_days: int = Field(default=365, ge=1, le=3650)


class AddTreatmentParams(BaseModel):
    treatment_name: str = Field(min_length=1)
    pet_name: str = Field(min_length=1)
    date: str
    note: Optional[str] = None


class ListParams(BaseModel):
    pet_name: str = Field(min_length=1)


class Pet(BaseModel):
    id: str
    owner_user_id: str
    name: str
    species: Optional[str] = None
    breed: Optional[str] = None
    sex: Optional[str] = None
    birthdate: Optional[str] = None
    neutered: Optional[bool] = None
    markings: Optional[str] = None
    photo_ref: Optional[str] = None
    updated_at: str


class VaccinationRecord(BaseModel):
    id: str
    owner_user_id: str
    pet_id: str
    pet_name: str
    vaccine_name: str
    last_shot_date: str
    next_due_date: str
    cycle_days: int
    created_at: str


class TreatmentRecord(BaseModel):
    id: str
    owner_user_id: str
    pet_id: str
    pet_name: str
    treatment_name: str
    treatment_date: str
    note: Optional[str] = None
    created_at: str


class Reminder(BaseModel):
    id: str
    vaccination_id: str
    owner_user_id: str
    pet_name: str
    vaccine_name: str
    type: ReminderType
    remind_at: str
    sent: bool = False


class InboundMessage(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    text: str = ""
    image_ref: Optional[str] = None


class ChatReply(BaseModel):
    reply: str
    route: Route
    reason: str
