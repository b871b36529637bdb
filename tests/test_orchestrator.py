import re

import pytest

from kg_rag.exceptions import QueryFailed
from kg_rag.graph_store import KnowledgeNode, NodeMetadata, NodeType, new_id
from kg_rag.orchestrator import ChatRequest, context_passage
from kg_rag.providers import ProviderCredential, ProviderKind


@pytest.fixture
async def ml_node(ready_engine):
    return await ready_engine.knowledge.add_node(
        "alice",
        "Machine Learning",
        "ML is a subset of AI that learns from data",
        NodeType.CONCEPT,
        NodeMetadata(confidence=0.9, tags=["document"]),
    )


def _node(confidence):
    return KnowledgeNode(
        node_id=new_id(),
        tenant_id="alice",
        title="t",
        content="c",
        node_type=NodeType.CONCEPT,
        metadata=NodeMetadata(confidence=confidence),
    )


async def test_question_is_answered_from_matching_node(ready_engine, ml_node, generation_backends):
    response = await ready_engine.orchestrator.answer(
        ChatRequest(message="What is machine learning?", tenant_id="alice")
    )

    assert [s.node.node_id for s in response.sources] == [ml_node.node_id]
    assert response.confidence == pytest.approx(0.9)
    assert 0.0 <= response.confidence <= 1.0
    assert response.provider is ProviderKind.OLLAMA
    assert response.answer == "answer from ollama"
    assert response.processing_time_ms >= 0

    prompt = generation_backends[ProviderKind.OLLAMA].prompts[0]
    assert prompt.user == "What is machine learning?"
    assert prompt.system == "Context: " + context_passage(ml_node)


async def test_other_tenant_gets_no_sources(ready_engine, ml_node):
    response = await ready_engine.orchestrator.answer(
        ChatRequest(message="What is machine learning?", tenant_id="bob")
    )

    assert response.sources == []
    assert response.confidence == pytest.approx(0.5)


async def test_rag_disabled_skips_retrieval(ready_engine, ml_node, primary_embedder, generation_backends):
    response = await ready_engine.orchestrator.answer(
        ChatRequest(message="What is machine learning?", tenant_id="alice", use_rag=False)
    )

    assert response.sources == []
    assert response.confidence == 1.0
    # Only the node's own embedding call, none for the query.
    assert len(primary_embedder.calls) == 1
    assert generation_backends[ProviderKind.OLLAMA].prompts[-1].system is None


async def test_generation_fallback_is_reported(config, ready_engine, ml_node, generation_backends):
    generation_backends[ProviderKind.GEMINI].fail = True

    response = await ready_engine.orchestrator.answer(
        ChatRequest(
            message="What is machine learning?",
            tenant_id="alice",
            tenant_credentials=[ProviderCredential(ProviderKind.GEMINI, "tenant-key")],
        )
    )

    assert response.provider is ProviderKind.OLLAMA
    assert response.model == config.llm.ollama_model
    assert generation_backends[ProviderKind.GEMINI].calls[0]["api_key"] == "tenant-key"


async def test_total_generation_failure_is_generic(ready_engine, generation_backends):
    generation_backends[ProviderKind.OLLAMA].fail = True

    with pytest.raises(QueryFailed) as exc_info:
        await ready_engine.orchestrator.answer(ChatRequest(message="hello there", tenant_id="alice"))

    assert str(exc_info.value) == "Failed to perform RAG query"
    assert exc_info.value.__cause__ is not None


async def test_embedding_failure_is_generic(ready_engine, primary_embedder, secondary_embedder):
    primary_embedder.fail = True
    secondary_embedder.fail = True

    with pytest.raises(QueryFailed):
        await ready_engine.orchestrator.answer(ChatRequest(message="hello there", tenant_id="alice"))


async def test_session_id_generated_when_missing(ready_engine):
    response = await ready_engine.orchestrator.answer(ChatRequest(message="hi", tenant_id="alice"))
    assert re.fullmatch(r"session_\d+_[0-9a-f]+", response.session_id)

    echoed = await ready_engine.orchestrator.answer(
        ChatRequest(message="hi", tenant_id="alice", session_id="session_abc")
    )
    assert echoed.session_id == "session_abc"


async def test_empty_message_rejected(ready_engine):
    with pytest.raises(ValueError):
        await ready_engine.orchestrator.answer(ChatRequest(message="  ", tenant_id="alice"))


def test_confidence_is_mean_with_default_for_missing(engine):
    orchestrator = engine.orchestrator

    assert orchestrator.aggregate_confidence([_node(0.9), _node(None)]) == pytest.approx(0.7)
    assert orchestrator.aggregate_confidence([_node(1.0), _node(0.2)]) == pytest.approx(0.6)
    assert orchestrator.aggregate_confidence([]) == pytest.approx(0.5)


async def test_response_serialises(ready_engine, ml_node):
    response = await ready_engine.orchestrator.answer(
        ChatRequest(message="What is machine learning?", tenant_id="alice")
    )

    data = response.to_dict()

    assert data["provider"] == "ollama"
    assert data["sources"][0]["node_id"] == ml_node.node_id
    assert "embedding" not in data["sources"][0]
