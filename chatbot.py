"""
Interactive RAG chatbot.

Answers questions from one tenant's knowledge graph, showing which nodes were
used and how confident the answer is.

Usage:
    python chatbot.py [--tenant T] [--provider openai|anthropic|gemini|groq|ollama]
"""

import argparse
import asyncio
from typing import Optional

from kg_rag.config import KGRagConfig
from kg_rag.engine import RAGEngine
from kg_rag.exceptions import QueryFailed
from kg_rag.logger import setup_logging
from kg_rag.orchestrator import ChatRequest, new_session_id
from kg_rag.providers import ProviderKind


class RAGChatbot:
    def __init__(
        self,
        engine: RAGEngine,
        tenant_id: str,
        provider: Optional[ProviderKind] = None,
    ):
        self._engine = engine
        self._tenant_id = tenant_id
        self._provider = provider
        self._session_id = new_session_id()
        self.use_rag = True

    async def chat(self, question: str, verbose: bool = False) -> str:
        await self._engine.initialize()
        response = await self._engine.orchestrator.answer(
            ChatRequest(
                message=question,
                tenant_id=self._tenant_id,
                session_id=self._session_id,
                provider=self._provider,
                use_rag=self.use_rag,
            )
        )

        lines = [response.answer]
        if verbose:
            lines.append("")
            lines.append("=" * 60)
            lines.append(f"SOURCES ({len(response.sources)}):")
            for source in response.sources:
                lines.append(f"  ({source.score:.3f}) {source.node.title}")
            lines.append(
                f"confidence={response.confidence:.2f} "
                f"provider={response.provider.value} model={response.model} "
                f"time={response.processing_time_ms} ms"
            )
            lines.append("=" * 60)
        return "\n".join(lines)


async def _interactive_loop(chatbot: RAGChatbot) -> None:
    print("RAG Chatbot - type 'exit' to quit, '/verbose' to toggle sources, '/rag' to toggle retrieval.")
    print("-" * 60)
    verbose_mode = False

    while True:
        try:
            question = input("\nYou: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nSession ended.")
            break

        if question.lower() in ("exit", "quit", "q"):
            break
        if question.lower() == "/verbose":
            verbose_mode = not verbose_mode
            print(f"Verbose mode: {'ON' if verbose_mode else 'OFF'}")
            continue
        if question.lower() == "/rag":
            chatbot.use_rag = not chatbot.use_rag
            print(f"Retrieval: {'ON' if chatbot.use_rag else 'OFF'}")
            continue
        if not question:
            continue

        try:
            answer = await chatbot.chat(question, verbose=verbose_mode)
        except QueryFailed as exc:
            print(f"\nAssistant: [error] {exc}")
            continue
        print(f"\nAssistant:\n{answer}")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Interactive knowledge-graph chatbot.")
    parser.add_argument("--tenant", default="default")
    parser.add_argument("--provider", choices=[k.value for k in ProviderKind])
    args = parser.parse_args()

    config = KGRagConfig()
    setup_logging(config.logging)
    engine = RAGEngine(config)
    chatbot = RAGChatbot(
        engine,
        args.tenant,
        ProviderKind.parse(args.provider) if args.provider else None,
    )

    try:
        await _interactive_loop(chatbot)
    finally:
        engine.close()


if __name__ == "__main__":
    asyncio.run(main())
