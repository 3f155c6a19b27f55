from __future__ import annotations

import asyncio

import pytest

from deepsearch.agents.agent_loop import AgentLoop
from deepsearch.errors import AgentAborted, ChatNotFound, ModelProviderError, PersistenceError
from deepsearch.llm_client import StepFinish, TextDelta
from deepsearch.models.events import EventType
from deepsearch.models.messages import ConversationTurn, Role
from deepsearch.services.chat_service import GENERIC_ERROR_MESSAGE, SAVE_FAILED_MESSAGE, ChatService
from deepsearch.services.conversation_store import InMemoryConversationStore, PostgresConversationStore
from deepsearch.tools.web_tools import build_research_tools
from tests.fakes import ClosedPool, ScriptedModel, answer, fake_search


def _service(model, crawler, store=None) -> tuple[ChatService, InMemoryConversationStore]:
    store = store or InMemoryConversationStore()
    registry = build_research_tools(crawler=crawler, store=None, ttl_seconds=60, search_fn=fake_search)
    return ChatService(store, lambda chat_id: AgentLoop(model, registry, chat_id=chat_id)), store


async def _collect(gen) -> list:
    return [event async for event in gen]


@pytest.mark.asyncio
async def test_new_chat_is_saved_with_assistant_turn(crawler):
    service, store = _service(ScriptedModel([answer("Four.")]), crawler)
    messages = [ConversationTurn.user("What is 2+2?")]

    await service.prepare_chat(user_id="u1", chat_id="c1", messages=messages, is_new_chat=True)
    events = await _collect(service.stream_chat(user_id="u1", chat_id="c1", messages=messages, is_new_chat=True))

    assert events[0].event == EventType.NEW_CHAT_CREATED
    assert events[0].data == {"chat_id": "c1"}
    assert events[-1].event == EventType.FINISH

    chat = await store.get("c1")
    assert chat.user_id == "u1"
    assert chat.title == "What is 2+2?..."
    assert [m.role for m in chat.messages] == [Role.USER, Role.ASSISTANT]
    assert chat.messages[1].text == "Four."


@pytest.mark.asyncio
async def test_follow_up_replaces_stored_messages(crawler):
    service, store = _service(ScriptedModel([answer("Second answer.")]), crawler)
    first = [ConversationTurn.user("First question")]
    await store.upsert("u1", "c1", "First question...", first)

    history = [*first, ConversationTurn(role=Role.ASSISTANT), ConversationTurn.user("Follow up")]
    await service.prepare_chat(user_id="u1", chat_id="c1", messages=history, is_new_chat=False)
    events = await _collect(service.stream_chat(user_id="u1", chat_id="c1", messages=history))

    assert EventType.NEW_CHAT_CREATED not in [e.event for e in events]
    chat = await store.get("c1")
    assert len(chat.messages) == 4
    assert chat.title == "Follow up..."


@pytest.mark.asyncio
async def test_existing_chat_of_another_user_is_not_found(crawler):
    service, store = _service(ScriptedModel([answer("x")]), crawler)
    await store.upsert("owner", "c1", "t", [ConversationTurn.user("hi")])

    with pytest.raises(ChatNotFound):
        await service.prepare_chat(
            user_id="intruder",
            chat_id="c1",
            messages=[ConversationTurn.user("hi")],
            is_new_chat=False,
        )
    with pytest.raises(ChatNotFound):
        await service.prepare_chat(
            user_id="owner",
            chat_id="missing",
            messages=[ConversationTurn.user("hi")],
            is_new_chat=False,
        )


@pytest.mark.asyncio
async def test_request_must_end_with_a_user_message(crawler):
    service, _ = _service(ScriptedModel([answer("x")]), crawler)

    with pytest.raises(ValueError):
        await service.prepare_chat(user_id="u", chat_id="c", messages=[], is_new_chat=True)
    with pytest.raises(ValueError):
        await service.prepare_chat(
            user_id="u",
            chat_id="c",
            messages=[ConversationTurn(role=Role.ASSISTANT)],
            is_new_chat=True,
        )


@pytest.mark.asyncio
async def test_model_failure_becomes_generic_error_event(crawler):
    model = ScriptedModel([[TextDelta("Partial "), ModelProviderError("upstream 502")]])
    service, store = _service(model, crawler)
    messages = [ConversationTurn.user("q")]
    await service.prepare_chat(user_id="u", chat_id="c", messages=messages, is_new_chat=True)

    events = await _collect(service.stream_chat(user_id="u", chat_id="c", messages=messages))

    assert [e.event for e in events][-2:] == [EventType.TEXT_DELTA, EventType.ERROR]
    assert events[-1].data == {"message": GENERIC_ERROR_MESSAGE, "fatal": True}
    assert len((await store.get("c")).messages) == 1


class _FailingSaveStore(InMemoryConversationStore):
    async def upsert(self, user_id, chat_id, title, messages):
        raise PersistenceError("database offline")


@pytest.mark.asyncio
async def test_save_failure_is_reported_after_the_answer(crawler):
    service, _ = _service(ScriptedModel([answer("Answer.")]), crawler, store=_FailingSaveStore())
    messages = [ConversationTurn.user("q")]

    events = await _collect(service.stream_chat(user_id="u", chat_id="c", messages=messages))

    assert events[-2].event == EventType.FINISH
    assert events[-1].event == EventType.ERROR
    assert events[-1].data == {"message": SAVE_FAILED_MESSAGE, "fatal": False}


@pytest.mark.asyncio
async def test_closed_database_pool_is_reported_after_the_answer(crawler):
    store = PostgresConversationStore(ClosedPool())
    service, _ = _service(ScriptedModel([answer("Answer.")]), crawler, store=store)

    events = await _collect(
        service.stream_chat(user_id="u", chat_id="c", messages=[ConversationTurn.user("q")])
    )

    assert [e.event for e in events[-2:]] == [EventType.FINISH, EventType.ERROR]
    assert events[-1].data == {"message": SAVE_FAILED_MESSAGE, "fatal": False}


class _HangingModel:
    async def stream_step(self, *, system, turns, tools):
        yield TextDelta("Half an answer")
        await asyncio.sleep(30)
        yield StepFinish("stop")


@pytest.mark.asyncio
async def test_abort_saves_partial_turn_only_when_requested(crawler):
    messages = [ConversationTurn.user("q")]

    for best_effort, expected in ((False, 1), (True, 2)):
        service, store = _service(_HangingModel(), crawler)
        await store.upsert("u", "c", "q...", messages)
        abort = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, abort.set)

        with pytest.raises(AgentAborted):
            await _collect(
                service.stream_chat(
                    user_id="u",
                    chat_id="c",
                    messages=messages,
                    abort=abort,
                    best_effort_save=best_effort,
                )
            )

        chat = await store.get("c")
        assert len(chat.messages) == expected
    assert chat.messages[-1].text == "Half an answer"
