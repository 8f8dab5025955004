import os
import sys
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from petvax.models import Session
from petvax.services.intent_router import IntentRouter
from petvax.services.plan_interpreter import PlanInterpreter


class _FakeResponses:
    def __init__(self, outputs):
        self.outputs = list(outputs)

    async def create(self, **kwargs):
        item = self.outputs.pop(0)
        if isinstance(item, Exception):
            raise item
        return SimpleNamespace(output_text=item)


def _router(*outputs):
    client = SimpleNamespace(responses=_FakeResponses(outputs))
    return IntentRouter(PlanInterpreter(client=client))


@pytest.mark.asyncio
async def test_open_session_always_continues():
    router = _router()
    session = Session(user_id="u1", expect="awaiting_field", expect_field="date")
    decision = await router.route("หมาอาเจียน", session)
    assert decision.route == "continue"
    assert decision.reason == "open_awaiting_field"


@pytest.mark.asyncio
async def test_keyword_routes_without_probe():
    router = _router()
    idle = Session(user_id="u1")
    assert (await router.route("ฉีดวัคซีนให้โมจิ", idle)).route == "planner"
    assert (await router.route("Add my cat", idle)).route == "planner"
    assert (await router.route("โมจิอาเจียนทั้งคืน", idle)).route == "health"
    assert (await router.route("my dog keeps coughing", idle)).route == "health"
    assert (await router.route("ใช่", idle)).route == "continue"
    assert (await router.route("   ", idle)).route == "unknown"


def test_ascii_keywords_need_a_word_start():
    router = _router()
    assert router.matches_planner_verb("please add Luna")
    assert not router.matches_planner_verb("my padded bed")
    assert not router.matches_symptom("musicality")


@pytest.mark.asyncio
async def test_probe_with_actions_routes_to_planner():
    router = _router('{"confidence": 0.9, "actions": [{"kind": "list_vaccine", "params": {}}]}')
    decision = await router.route("what shots are due for Luna", Session(user_id="u1"))
    assert decision.route == "planner"
    assert decision.reason == "probe_actions"
    assert decision.plan.actions[0].kind == "list_vaccine"


@pytest.mark.asyncio
async def test_probe_without_actions_routes_to_chat():
    router = _router('{"confidence": 0.2, "reply_hint": "สวัสดีครับ", "actions": []}')
    decision = await router.route("hello there friend", Session(user_id="u1"))
    assert decision.route == "chat"
    assert decision.plan.reply_hint == "สวัสดีครับ"


@pytest.mark.asyncio
async def test_failed_probe_is_flagged():
    router = _router(RuntimeError("upstream down"))
    decision = await router.route("hello there friend", Session(user_id="u1"))
    assert decision.route == "chat"
    assert decision.interpreter_failed is True


@pytest.mark.asyncio
async def test_thai_words_containing_view_verb_are_not_planner_requests():
    router = _router()
    assert not router.matches_planner_verb("ช่วยดูแลโมจิหน่อย")
    assert router.matches_planner_verb("ดูวัคซีนของโมจิ")
    decision = await router.route("ดูแลหมาที่ป่วยยังไงดี", Session(user_id="u1"))
    assert decision.route == "health"
