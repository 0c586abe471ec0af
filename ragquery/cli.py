"""ragquery - answer one question from the command line."""

import argparse
import asyncio

from ragquery.api import deps
from ragquery.errors import RagQueryError
from ragquery.services.streaming import EventChannel


async def print_events(channel: EventChannel) -> None:
    async for event in channel:
        event_type = event.event.value
        data = event.data

        if event_type == "status":
            print(f"[~] {data.get('message', '')}")

        elif event_type == "source":
            print(f"[+] Source {data.get('id')}: {data.get('title', '')[:80]}")
            print(f"    {data.get('url', '')}")

        elif event_type == "answer":
            print(f"\n{'=' * 50}")
            print(f"ANSWER ({data.get('model', '')}):")
            print(f"{'=' * 50}")
            print(data.get("answer", ""))

        elif event_type == "error":
            print(f"[!] Error: {data.get('message', 'Unknown error')}")


async def run_query(
    query: str,
    *,
    search_enabled: bool = True,
    model: str | None = None,
    search_provider: str | None = None,
) -> int:
    await deps.get_storage().init()
    registry = deps.get_registry()
    await registry.refresh()
    await registry.refresh_limits()

    channel = EventChannel()
    printer = asyncio.create_task(print_events(channel))
    try:
        await deps.get_orchestrator().query(
            query,
            search_enabled,
            model=model,
            search_provider=search_provider,
            channel=channel,
        )
    except RagQueryError:
        return 1
    finally:
        await printer
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Answer a question with web-grounded LLM providers")
    parser.add_argument("--query", "-q", required=True, help="Question to answer")
    parser.add_argument("--no-search", action="store_true", help="Answer from stored sources only")
    parser.add_argument("--model", "-m", help="Model id (default: automatic selection)")
    parser.add_argument(
        "--search-provider",
        "-s",
        help="tavily, brave, searxng or duckduckgo (default: first configured)",
    )

    args = parser.parse_args()

    return asyncio.run(
        run_query(
            args.query,
            search_enabled=not args.no_search,
            model=args.model,
            search_provider=args.search_provider,
        )
    )


if __name__ == "__main__":
    raise SystemExit(main())
