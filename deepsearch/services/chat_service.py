from __future__ import annotations

import asyncio
from typing import AsyncGenerator, Callable

from loguru import logger

from deepsearch.agents.agent_loop import AgentLoop
from deepsearch.errors import AgentAborted, ChatNotFound, ModelProviderError, PersistenceError
from deepsearch.models.events import StreamEvent
from deepsearch.models.messages import ConversationTurn, Role, chat_title
from deepsearch.services import logger as log_service
from deepsearch.services import streaming
from deepsearch.services.conversation_store import ConversationStore

GENERIC_ERROR_MESSAGE = "Oops, an error occurred!"
SAVE_FAILED_MESSAGE = "The answer could not be saved to your chat history."

AgentFactory = Callable[[str], AgentLoop]


class ChatService:
    """Runs one chat request: ownership checks, the agent loop, final save.

    The conversation is written once the loop completes (or, on abort, only
    when ``best_effort_save`` is requested). Turn-level failures become a
    single generic error event after whatever text was already streamed.
    """

    def __init__(
        self,
        store: ConversationStore,
        agent_factory: AgentFactory,
        *,
        title_max_chars: int = 50,
    ):
        self.store = store
        self.agent_factory = agent_factory
        self.title_max_chars = title_max_chars

    async def prepare_chat(
        self,
        *,
        user_id: str,
        chat_id: str,
        messages: list[ConversationTurn],
        is_new_chat: bool,
    ) -> None:
        """Validate the request before streaming starts.

        A new chat is saved with the user's message; an existing chat must
        belong to ``user_id``.
        """
        if not messages:
            raise ValueError("No messages provided")
        if messages[-1].role != Role.USER:
            raise ValueError("The last message must come from the user")

        if is_new_chat:
            await self.store.upsert(user_id, chat_id, self._title(messages), messages)
            return

        chat = await self.store.get(chat_id)
        if chat is None or chat.user_id != user_id:
            raise ChatNotFound(f"Chat {chat_id} not found")

    async def stream_chat(
        self,
        *,
        user_id: str,
        chat_id: str,
        messages: list[ConversationTurn],
        is_new_chat: bool = False,
        abort: asyncio.Event | None = None,
        best_effort_save: bool = False,
    ) -> AsyncGenerator[StreamEvent, None]:
        log_service.log_event(
            event_type="chat_started",
            message="Chat turn started",
            chat_id=chat_id,
            user_id=user_id,
            messages=len(messages),
        )
        if is_new_chat:
            yield streaming.new_chat_created(chat_id)

        agent = self.agent_factory(chat_id)
        try:
            async for event in agent.run(messages, abort=abort):
                yield event
        except ModelProviderError as e:
            logger.error(f"Model provider failed for chat {chat_id}: {e}")
            yield streaming.error(GENERIC_ERROR_MESSAGE)
            return
        except AgentAborted as e:
            log_service.log_event(event_type="chat_aborted", message="Chat turn aborted", chat_id=chat_id)
            if best_effort_save:
                await self._save_partial(user_id, chat_id, messages, e.partial_turn)
            raise
        except asyncio.CancelledError:
            log_service.log_event(event_type="chat_cancelled", message="Chat turn cancelled", chat_id=chat_id)
            if best_effort_save:
                await self._save_partial(user_id, chat_id, messages, agent.partial_turn)
            raise
        except Exception as e:
            logger.exception(f"Unhandled error in chat stream {chat_id}: {e}")
            yield streaming.error(GENERIC_ERROR_MESSAGE)
            return

        run = agent.result
        if run is None:
            return
        try:
            await self.store.upsert(
                user_id,
                chat_id,
                self._title(messages),
                [*messages, run.assistant_turn],
            )
        except PersistenceError as e:
            logger.error(f"Failed to save chat {chat_id}: {e}")
            yield streaming.error(SAVE_FAILED_MESSAGE, fatal=False)

    async def _save_partial(
        self,
        user_id: str,
        chat_id: str,
        messages: list[ConversationTurn],
        partial_turn: ConversationTurn | None,
    ) -> None:
        if partial_turn is None or not partial_turn.parts:
            return
        try:
            await self.store.upsert(user_id, chat_id, self._title(messages), [*messages, partial_turn])
        except PersistenceError as e:
            logger.error(f"Best-effort save failed for chat {chat_id}: {e}")

    def _title(self, messages: list[ConversationTurn]) -> str:
        return chat_title(messages, self.title_max_chars)
