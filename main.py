"""DeepSearch - Conversational Research Assistant

Simple CLI for asking a single research question.
"""

import argparse
import asyncio

from deepsearch.api.deps import build_agent_factory, build_registry
from deepsearch.config import settings
from deepsearch.errors import ModelProviderError
from deepsearch.llm_client import get_client
from deepsearch.models.messages import ConversationTurn
from deepsearch.services.result_cache import get_cache_store


async def run_question(query: str, model: str | None = None, max_steps: int | None = None):
    """Answer the given question, printing progress as it streams."""
    print(f"Question: {query}")
    print("-" * 50)

    cache_store = get_cache_store(enabled=settings.cache_enabled, redis_url=settings.redis_url)
    agent = build_agent_factory(
        get_client(model),
        build_registry(cache_store),
        max_steps=max_steps,
    )("cli")

    try:
        async for event in agent.run([ConversationTurn.user(query)]):
            event_type = event.event.value
            data = event.data

            if event_type == "step_started":
                print(f"\n[~] Step {data.get('step')}")

            elif event_type == "text_delta":
                print(data.get("text", ""), end="", flush=True)

            elif event_type == "tool_call":
                print(f"\n[*] {data.get('tool_name')}({data.get('arguments')})")

            elif event_type == "tool_result":
                marker = "!" if data.get("is_error") else "+"
                print(f"  [{marker}] {data.get('tool_name')} returned")

            elif event_type == "finish":
                print(f"\n\n[*] Done ({data.get('reason')})")
                print(f"   Steps: {data.get('steps')}")
                print(f"   Runtime: {data.get('runtime_ms')}ms")
                print(f"   Tokens: {data.get('tokens_used')}")
                sources = data.get("sources", [])
                print(f"   Sources: {len(sources)}")
                for source in sources:
                    print(f"     - {source.get('url')}")

            elif event_type == "error":
                print(f"\n[!] Error: {data.get('message', 'Unknown error')}")
    except ModelProviderError as e:
        print(f"\n[!] Error: {e}")
    finally:
        close = getattr(cache_store, "close", None)
        if close is not None:
            await close()


def main():
    parser = argparse.ArgumentParser(description="DeepSearch research assistant")
    parser.add_argument("--query", "-q", required=True, help="Question to research")
    parser.add_argument("--model", "-m", help="Model to use (default: from config)")
    parser.add_argument("--max-steps", type=int, help="Step budget for the agent loop")

    args = parser.parse_args()

    asyncio.run(run_question(args.query, args.model, args.max_steps))


if __name__ == "__main__":
    main()
