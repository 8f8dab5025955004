import json
import logging
import os
import sys
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from petvax.models import AddPetParams, InboundMessage
from petvax.services import assistant as assistant_module
from petvax.services.action_executor import ActionExecutor
from petvax.services.assistant import PetCareAssistant
from petvax.services.errors import SessionConflictError, StorageError
from petvax.services.plan_interpreter import PlanInterpreter
from petvax.services.planner import CANCELLED, FALLBACK_APOLOGY, FIELD_QUESTIONS
from petvax.services.record_store import RecordStore
from petvax.services.session_store import SessionStore


class _FakeResponses:
    def __init__(self, outputs):
        self.outputs = list(outputs)

    async def create(self, **kwargs):
        item = self.outputs.pop(0)
        if isinstance(item, Exception):
            raise item
        return SimpleNamespace(output_text=item)


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _assistant(tmp_path, monkeypatch, outputs=None, clock=None):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY_FILE", raising=False)
    records = RecordStore(db_path=str(tmp_path / "records.sqlite3"))
    sessions = SessionStore(db_path=str(tmp_path / "sessions.sqlite3"))
    client = SimpleNamespace(responses=_FakeResponses(outputs)) if outputs is not None else None
    interpreter = PlanInterpreter(client=client)
    executor = ActionExecutor(records, clock=clock or _Clock(datetime(2025, 11, 3, 2, 0, tzinfo=timezone.utc)))
    return PetCareAssistant(sessions=sessions, records=records, interpreter=interpreter, executor=executor)


async def _say(assistant, text, user_id="line:u1", image_ref=None):
    return await assistant.handle_message(InboundMessage(user_id=user_id, text=text, image_ref=image_ref))


@pytest.mark.asyncio
async def test_add_pet_without_species(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    reply = await _say(assistant, "เพิ่มหมาชื่อ โมจิ")

    assert reply.route == "planner"
    assert reply.reply == 'เพิ่มสัตว์เลี้ยง "โมจิ" เรียบร้อย ✅'
    pet = assistant.records.find_pet("line:u1", "โมจิ")
    assert pet is not None
    assert pet.species is None

    session = assistant.sessions.load("line:u1")
    assert session.expect == "none"
    assert session.last_pet_name == "โมจิ"


@pytest.mark.asyncio
async def test_single_turn_vaccination_creates_reminder_triplet(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    reply = await _say(assistant, "ฉีด Rabies ให้โมจิ 2025-11-03 รอบ 365")

    assert "นัดถัดไป: 2026-11-03" in reply.reply
    pet = assistant.records.find_pet("line:u1", "โมจิ")
    records = assistant.records.list_vaccinations("line:u1", pet.id)
    assert len(records) == 1
    assert records[0].vaccine_name == "Rabies"
    assert records[0].last_shot_date == "2025-11-03"
    assert records[0].next_due_date == "2026-11-03"

    reminders = assistant.records.list_reminders(records[0].id)
    assert [(r.type, r.remind_at) for r in reminders] == [
        ("D-7", "2026-10-27T09:00:00+07:00"),
        ("D-1", "2026-11-02T09:00:00+07:00"),
        ("D0", "2026-11-03T09:00:00+07:00"),
    ]
    assert assistant.sessions.load("line:u1").expect == "none"


@pytest.mark.asyncio
async def test_slot_filling_asks_one_field_at_a_time(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)

    first = await _say(assistant, "ฉีดวัคซีน")
    assert first.reply == FIELD_QUESTIONS["vaccine_name"]
    session = assistant.sessions.load("line:u1")
    assert session.expect == "awaiting_field"
    assert session.expect_field == "vaccine_name"
    assert session.pending_action == "add_vaccine"

    second = await _say(assistant, "Rabies")
    assert second.route == "continue"
    assert second.reply == FIELD_QUESTIONS["pet_name"]

    third = await _say(assistant, "โมจิ")
    assert third.reply == FIELD_QUESTIONS["date"]
    assert assistant.sessions.load("line:u1").partial == {"vaccine_name": "Rabies", "pet_name": "โมจิ"}

    done = await _say(assistant, "2025-11-03")
    assert "บันทึกวัคซีน Rabies ให้ โมจิ" in done.reply
    session = assistant.sessions.load("line:u1")
    assert session.expect == "none"
    assert session.partial == {}


@pytest.mark.asyncio
async def test_invalid_answer_reasks_same_field(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    await _say(assistant, "ฉีด Rabies ให้โมจิ")

    reply = await _say(assistant, "เมื่อไหร่ก็ได้")
    assert reply.reply.startswith("ข้อมูลไม่ถูกต้อง")
    session = assistant.sessions.load("line:u1")
    assert session.expect_field == "date"
    assert session.partial["vaccine_name"] == "Rabies"


@pytest.mark.asyncio
async def test_today_is_resolved_when_the_action_runs(tmp_path, monkeypatch):
    clock = _Clock(datetime(2025, 11, 2, 12, 0, tzinfo=timezone.utc))
    assistant = _assistant(tmp_path, monkeypatch, clock=clock)

    await _say(assistant, "ฉีด Rabies วันนี้")
    session = assistant.sessions.load("line:u1")
    assert session.expect_field == "pet_name"
    assert session.partial["date"] == "today"

    clock.now = datetime(2025, 11, 3, 18, 0, tzinfo=timezone.utc)
    await _say(assistant, "โมจิ")
    pet = assistant.records.find_pet("line:u1", "โมจิ")
    record = assistant.records.list_vaccinations("line:u1", pet.id)[0]
    assert record.last_shot_date == "2025-11-04"
    assert record.next_due_date == "2026-11-04"


@pytest.mark.asyncio
async def test_unparseable_interpreter_output_leaves_session_untouched(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch, outputs=["Sorry, I can't do JSON today."])
    session = assistant.sessions.load("line:u1")
    session.expect = "awaiting_followup"
    session.partial = {"note": "kept"}
    assistant.sessions.save(session)

    reply = await _say(assistant, "อืม ไม่แน่ใจ")
    assert reply.reply == FALLBACK_APOLOGY

    after = assistant.sessions.load("line:u1")
    assert after.version == 1
    assert after.expect == "awaiting_followup"
    assert after.partial == {"note": "kept"}


@pytest.mark.asyncio
async def test_followup_question_is_the_only_reply(tmp_path, monkeypatch):
    plan = {"confidence": 0.5, "followup_question": "เป็นหมาหรือแมวครับ?", "actions": []}
    assistant = _assistant(tmp_path, monkeypatch, outputs=[json.dumps(plan, ensure_ascii=False)])

    reply = await _say(assistant, "ช่วยบันทึกให้หน่อย")
    assert reply.reply == "เป็นหมาหรือแมวครับ?"
    assert assistant.sessions.load("line:u1").expect == "awaiting_followup"


@pytest.mark.asyncio
async def test_missing_field_wins_over_followup_question(tmp_path, monkeypatch):
    plan = {
        "confidence": 0.9,
        "followup_question": "ฉีดที่คลินิกไหนครับ?",
        "actions": [{"kind": "add_vaccine", "params": {"vaccine_name": "Rabies"}}],
    }
    assistant = _assistant(tmp_path, monkeypatch, outputs=[json.dumps(plan, ensure_ascii=False)])

    reply = await _say(assistant, "บันทึกวัคซีน rabies")
    assert reply.reply == FIELD_QUESTIONS["pet_name"]
    session = assistant.sessions.load("line:u1")
    assert session.expect == "awaiting_field"
    assert session.expect_field == "pet_name"


@pytest.mark.asyncio
async def test_actions_after_an_incomplete_one_are_dropped(tmp_path, monkeypatch):
    plan = {
        "confidence": 0.95,
        "actions": [
            {"kind": "add_pet", "params": {"name": "Luna"}},
            {"kind": "add_vaccine", "params": {"vaccine_name": "Rabies"}},
            {"kind": "add_pet", "params": {"name": "Kiki"}},
        ],
    }
    assistant = _assistant(tmp_path, monkeypatch, outputs=[json.dumps(plan)])

    reply = await _say(assistant, "add Luna, she got rabies shot, also add Kiki")
    assert 'เพิ่มสัตว์เลี้ยง "Luna"' in reply.reply
    assert reply.reply.endswith(FIELD_QUESTIONS["date"])
    assert assistant.records.find_pet("line:u1", "Luna") is not None
    assert assistant.records.find_pet("line:u1", "Kiki") is None

    session = assistant.sessions.load("line:u1")
    assert session.pending_kind == "add_vaccine"
    assert session.expect_field == "date"


@pytest.mark.asyncio
async def test_low_confidence_action_needs_confirmation(tmp_path, monkeypatch):
    plan = {"confidence": 0.3, "actions": [{"kind": "add_pet", "params": {"name": "Luna"}}]}
    assistant = _assistant(tmp_path, monkeypatch, outputs=[json.dumps(plan), json.dumps(plan)])

    ask = await _say(assistant, "add Luna maybe")
    assert "ใช่ไหมครับ" in ask.reply
    assert assistant.records.find_pet("line:u1", "Luna") is None
    assert assistant.sessions.load("line:u1").expect == "awaiting_followup"

    done = await _say(assistant, "ใช่")
    assert 'เพิ่มสัตว์เลี้ยง "Luna"' in done.reply
    assert assistant.records.find_pet("line:u1", "Luna") is not None

    await _say(assistant, "add Luna maybe", user_id="line:u2")
    declined = await _say(assistant, "no", user_id="line:u2")
    assert declined.reply == CANCELLED
    assert assistant.records.find_pet("line:u2", "Luna") is None
    assert assistant.sessions.load("line:u2").expect == "none"


@pytest.mark.asyncio
async def test_cancel_clears_open_question(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    await _say(assistant, "ฉีดวัคซีน")

    reply = await _say(assistant, "ยกเลิก")
    assert reply.reply == CANCELLED
    session = assistant.sessions.load("line:u1")
    assert session.expect == "none"
    assert session.pending_action == "none"


@pytest.mark.asyncio
async def test_last_pet_survives_clear_and_fills_pet_name(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    await _say(assistant, "เพิ่มหมาชื่อ โมจิ")

    reply = await _say(assistant, "ฉีด Rabies 2025-11-03")
    assert "ให้ โมจิ" in reply.reply


@pytest.mark.asyncio
async def test_photo_attaches_to_resolved_pet(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    await _say(assistant, "เพิ่มหมาชื่อ โมจิ")

    reply = await _say(assistant, "", image_ref="img://abc")
    assert reply.reason == "image"
    assert assistant.records.find_pet("line:u1", "โมจิ").photo_ref == "img://abc"


@pytest.mark.asyncio
async def test_photo_without_pet_asks_which_pet(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    await _say(assistant, "", image_ref="img://abc")

    session = assistant.sessions.load("line:u1")
    assert session.pending_action == "attach_photo"
    assert session.expect_field == "pet_name"

    assistant.records.upsert_pet("line:u1", AddPetParams(name="โมจิ"))
    await _say(assistant, "โมจิ")
    assert assistant.records.find_pet("line:u1", "โมจิ").photo_ref == "img://abc"
    assert assistant.sessions.load("line:u1").expect == "none"


@pytest.mark.asyncio
async def test_listing_orders_by_due_date_and_reports_empty(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    await _say(assistant, "ฉีด Rabies ให้โมจิ 2025-11-03")
    await _say(assistant, "ฉีด DHPP ให้โมจิ 2025-01-10 รอบ 30")

    listed = await _say(assistant, "ดูวัคซีนของโมจิ")
    assert listed.reply.index("DHPP") < listed.reply.index("Rabies")

    empty = await _say(assistant, "ดูการรักษาของโมจิ")
    assert empty.reply == "ยังไม่พบประวัติการรักษาของ โมจิ"


@pytest.mark.asyncio
async def test_listing_unknown_pet_asks_again(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    await _say(assistant, "เพิ่มหมาชื่อ โมจิ")

    reply = await _say(assistant, "ดูวัคซีนของลูน่า")
    assert 'ไม่พบสัตว์เลี้ยงชื่อ "ลูน่า"' in reply.reply
    assert assistant.sessions.load("line:u1").expect_field == "pet_name"


@pytest.mark.asyncio
async def test_treatment_is_recorded(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    reply = await _say(assistant, "ถ่ายพยาธิให้โมจิ 2025-10-01")

    assert "Deworming" in reply.reply
    pet = assistant.records.find_pet("line:u1", "โมจิ")
    treatments = assistant.records.list_treatments("line:u1", pet.id)
    assert [(t.treatment_name, t.treatment_date) for t in treatments] == [("Deworming", "2025-10-01")]


@pytest.mark.asyncio
async def test_storage_failure_keeps_session_and_apologizes(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)

    def broken_create(*_args, **_kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(assistant.records, "create_vaccination", broken_create)
    reply = await _say(assistant, "ฉีด Rabies ให้โมจิ 2025-11-03")

    assert reply.reply == assistant_module.STORAGE_APOLOGY
    assert assistant.sessions.load("line:u1").version == 0


@pytest.mark.asyncio
async def test_session_conflict_asks_to_resend(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)

    def conflicting_save(session):
        raise SessionConflictError("stale")

    monkeypatch.setattr(assistant.sessions, "save", conflicting_save)
    reply = await _say(assistant, "ฉีดวัคซีน")
    assert reply.reply == assistant_module.CONFLICT_REPLY


@pytest.mark.asyncio
async def test_menu_health_and_chat_replies(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)

    menu = await _say(assistant, "เมนู")
    assert menu.reply == assistant_module.MENU_TEXT

    emergency = await _say(assistant, "หมาชักไม่หยุด")
    assert emergency.route == "health"
    assert emergency.reply == assistant_module.EMERGENCY_REPLY

    advice = await _say(assistant, "โมจิอาเจียน")
    assert advice.reply == assistant_module.HEALTH_FALLBACK

    chat = await _say(assistant, "hello there friend")
    assert chat.route == "chat"
    assert "เมนู" in chat.reply
    assert assistant.sessions.load("line:u1").expect == "none"


@pytest.mark.asyncio
async def test_route_telemetry_is_logged(tmp_path, monkeypatch, caplog):
    assistant = _assistant(tmp_path, monkeypatch)
    caplog.set_level(logging.INFO, logger="petvax.services.assistant")

    await _say(assistant, "ฉีดวัคซีน")

    lines = [r.getMessage() for r in caplog.records if "route_telemetry=" in r.getMessage()]
    assert len(lines) == 1
    payload = json.loads(lines[0].split("route_telemetry=", 1)[1])
    assert payload["route"] == "planner"
    assert payload["expect"] == "vaccine_name"
    assert payload["pending_action"] == "add_vaccine"
    assert payload["outcome"] == "asked"
    assert payload["message_length"] == len("ฉีดวัคซีน")


@pytest.mark.asyncio
async def test_conflict_after_records_written_keeps_result(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    real_save = assistant.sessions.save
    calls = {"count": 0}

    def save_stale_once(session):
        calls["count"] += 1
        if calls["count"] == 1:
            raise SessionConflictError("stale")
        return real_save(session)

    monkeypatch.setattr(assistant.sessions, "save", save_stale_once)
    reply = await _say(assistant, "ฉีด Rabies ให้โมจิ 2025-11-03")

    assert reply.reply != assistant_module.CONFLICT_REPLY
    assert "นัดถัดไป: 2026-11-03" in reply.reply
    pet = assistant.records.find_pet("line:u1", "โมจิ")
    records = assistant.records.list_vaccinations("line:u1", pet.id)
    assert len(records) == 1
    assert len(assistant.records.list_reminders(records[0].id)) == 3

    session = assistant.sessions.load("line:u1")
    assert session.expect == "none"
    assert session.last_pet_name == "โมจิ"


@pytest.mark.asyncio
async def test_run_together_today_is_not_part_of_pet_name(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    reply = await _say(assistant, "ฉีด Rabies ให้โมจิวันนี้")

    assert "ให้ โมจิ แล้ว" in reply.reply
    pets = assistant.records.list_pets("line:u1")
    assert [p.name for p in pets] == ["โมจิ"]
    record = assistant.records.list_vaccinations("line:u1", pets[0].id)[0]
    assert record.last_shot_date == "2025-11-03"


@pytest.mark.asyncio
async def test_followup_keeps_only_declared_slots(tmp_path, monkeypatch):
    unknown_kind = {
        "confidence": 0.5,
        "followup_question": "ต้องการทำอะไรครับ?",
        "actions": [{"kind": "delete_all", "params": {"drop_table": "pets"}}],
    }
    extra_keys = {
        "confidence": 0.9,
        "actions": [{"kind": "add_vaccine", "params": {"vaccine_name": "Rabies", "drop_table": "pets"}}],
    }
    assistant = _assistant(tmp_path, monkeypatch, outputs=[json.dumps(unknown_kind), json.dumps(extra_keys)])

    asked = await _say(assistant, "บันทึกอะไรสักอย่าง")
    assert asked.reply == "ต้องการทำอะไรครับ?"
    session = assistant.sessions.load("line:u1")
    assert session.expect == "awaiting_followup"
    assert session.partial == {}

    await _say(assistant, "บันทึกวัคซีน rabies", user_id="line:u2")
    assert assistant.sessions.load("line:u2").partial == {"vaccine_name": "Rabies"}


@pytest.mark.asyncio
async def test_bare_no_is_not_a_vaccine_name(tmp_path, monkeypatch):
    assistant = _assistant(tmp_path, monkeypatch)
    await _say(assistant, "ฉีดวัคซีน")

    reply = await _say(assistant, "ไม่")
    assert reply.reply == "ข้อมูลไม่ถูกต้อง " + FIELD_QUESTIONS["vaccine_name"]
    session = assistant.sessions.load("line:u1")
    assert session.expect_field == "vaccine_name"
    assert "vaccine_name" not in session.partial
