from unittest.mock import patch

import pytest

from kg_rag.config import GraphConfig
from kg_rag.exceptions import DuplicateRelationError, GraphStoreError, NodeNotFound
from kg_rag.graph_store import (
    GraphStore,
    KnowledgeNode,
    KnowledgeRelation,
    NodeMetadata,
    NodeType,
    new_id,
)


def make_node(tenant="alice", title="Node", content="Some content", node_type=NodeType.CONCEPT, **meta):
    return KnowledgeNode(
        node_id=new_id(),
        tenant_id=tenant,
        title=title,
        content=content,
        node_type=node_type,
        metadata=NodeMetadata(**meta),
    )


def make_relation(source, target, tenant="alice", relation_type="related_to", strength=0.5):
    return KnowledgeRelation(
        relation_id=new_id(),
        tenant_id=tenant,
        source_id=source.node_id,
        target_id=target.node_id,
        relation_type=relation_type,
        strength=strength,
    )


@pytest.fixture
def store():
    return GraphStore(GraphConfig(storage_path=""))


async def test_add_and_get_node(store):
    node = make_node(confidence=0.9, tags=["ml"], source="notes.md")
    await store.add_node(node)

    fetched = await store.get_node(node.node_id, "alice")

    assert fetched.title == "Node"
    assert fetched.node_type is NodeType.CONCEPT
    assert fetched.metadata.confidence == 0.9
    assert fetched.metadata.tags == ["ml"]
    assert fetched.connections == []


async def test_foreign_tenant_sees_nothing(store):
    node = make_node()
    await store.add_node(node)

    assert await store.get_node(node.node_id, "mallory") is None
    with pytest.raises(NodeNotFound):
        await store.delete_node(node.node_id, "mallory")


async def test_relation_updates_both_adjacency_lists(store):
    a, b = make_node(title="A"), make_node(title="B")
    await store.add_node(a)
    await store.add_node(b)

    await store.add_relation(make_relation(a, b))

    fetched_a = await store.get_node(a.node_id, "alice")
    fetched_b = await store.get_node(b.node_id, "alice")
    assert fetched_a.connections == [b.node_id]
    assert fetched_b.connections == [a.node_id]


async def test_duplicate_relation_rejected(store):
    a, b = make_node(), make_node()
    await store.add_node(a)
    await store.add_node(b)
    await store.add_relation(make_relation(a, b))

    with pytest.raises(DuplicateRelationError):
        await store.add_relation(make_relation(a, b, relation_type="other"))

    assert len(await store.get_relations("alice")) == 1


async def test_reverse_direction_is_a_distinct_pair(store):
    a, b = make_node(), make_node()
    await store.add_node(a)
    await store.add_node(b)
    await store.add_relation(make_relation(a, b))

    await store.add_relation(make_relation(b, a))

    assert len(await store.get_relations("alice")) == 2
    assert (await store.get_node(a.node_id, "alice")).connections == [b.node_id]


async def test_relation_across_tenants_rejected(store):
    mine, theirs = make_node(tenant="alice"), make_node(tenant="bob")
    await store.add_node(mine)
    await store.add_node(theirs)

    with pytest.raises(NodeNotFound):
        await store.add_relation(make_relation(mine, theirs, tenant="alice"))

    assert (await store.get_node(mine.node_id, "alice")).connections == []


async def test_self_relation_rejected(store):
    a = make_node()
    await store.add_node(a)
    with pytest.raises(GraphStoreError):
        await store.add_relation(make_relation(a, a))


def test_strength_outside_unit_interval_rejected():
    a, b = make_node(), make_node()
    with pytest.raises(ValueError):
        make_relation(a, b, strength=1.2)


def test_confidence_outside_unit_interval_rejected():
    with pytest.raises(ValueError):
        NodeMetadata(confidence=-0.1)


async def test_delete_removes_node_relations_and_back_references(store):
    a, b, c = make_node(title="A"), make_node(title="B"), make_node(title="C")
    for node in (a, b, c):
        await store.add_node(node)
    rel_ab = make_relation(a, b)
    rel_ca = make_relation(c, a)
    await store.add_relation(rel_ab)
    await store.add_relation(rel_ca)
    await store.add_relation(make_relation(b, c))

    removed = await store.delete_node(a.node_id, "alice")

    assert set(removed) == {rel_ab.relation_id, rel_ca.relation_id}
    assert await store.get_node(a.node_id, "alice") is None
    assert (await store.get_node(b.node_id, "alice")).connections == [c.node_id]
    assert (await store.get_node(c.node_id, "alice")).connections == [b.node_id]
    remaining = await store.get_relations("alice")
    assert [(r.source_id, r.target_id) for r in remaining] == [(b.node_id, c.node_id)]
    nodes, _ = await store.get_graph("alice")
    assert a.node_id not in [n.node_id for n in nodes]


async def test_find_nodes_filters(store):
    doc = make_node(title="Report", content="Quarterly numbers", node_type=NodeType.DOCUMENT)
    ml = make_node(title="Machine Learning", content="Learns from data", tags=["ml", "document"])
    ai = make_node(title="AI", content="Intelligence in machines", tags=["document"])
    for node in (doc, ml, ai):
        await store.add_node(node)
    await store.add_relation(make_relation(ml, ai))

    assert [n.node_id for n in await store.find_nodes("alice", node_type=NodeType.DOCUMENT)] == [doc.node_id]
    assert [n.node_id for n in await store.find_nodes("alice", tag="ml")] == [ml.node_id]
    assert [n.node_id for n in await store.find_nodes("alice", text="MACHINES")] == [ai.node_id]
    assert [n.node_id for n in await store.find_nodes("alice", connected_to=ai.node_id)] == [ml.node_id]
    assert await store.find_nodes("bob") == []


async def test_find_nodes_newest_first_with_limit(store):
    first = make_node(title="first", created_at="2024-01-01T00:00:00+00:00")
    second = make_node(title="second", created_at="2024-02-01T00:00:00+00:00")
    third = make_node(title="third", created_at="2024-03-01T00:00:00+00:00")
    for node in (second, third, first):
        await store.add_node(node)

    nodes = await store.find_nodes("alice", limit=2)

    assert [n.title for n in nodes] == ["third", "second"]


async def test_find_nodes_decodes_only_returned_nodes(store):
    for index in range(5):
        await store.add_node(make_node(title=f"n{index}", tags=["even"] if index % 2 == 0 else []))

    with patch.object(store, "_make_node", wraps=store._make_node) as make:
        nodes = await store.find_nodes("alice", tag="even", limit=2)

    assert len(nodes) == 2
    assert make.call_count == 2


async def test_get_graph_returns_relations_touching_nodes(store):
    a, b = make_node(), make_node()
    await store.add_node(a)
    await store.add_node(b)
    relation = make_relation(a, b)
    await store.add_relation(relation)

    nodes, relations = await store.get_graph("alice", limit=10)

    assert {n.node_id for n in nodes} == {a.node_id, b.node_id}
    assert [r.relation_id for r in relations] == [relation.relation_id]


async def test_graphml_round_trip(tmp_path):
    config = GraphConfig(storage_path=str(tmp_path))
    store = GraphStore(config)
    a = make_node(title="A", confidence=0.9, tags=["x", "y"], source="a.md", attributes={"segment_index": 3})
    a.embedding = [0.1, 0.2, 0.3]
    a.embedding_model = "nomic-embed-text"
    b = make_node(title="B")
    await store.add_node(a)
    await store.add_node(b)
    relation = make_relation(a, b, relation_type="similar", strength=0.83)
    relation.metadata = {"similarity": 0.83}
    await store.add_relation(relation)
    await store.save()

    reloaded = GraphStore(config)
    fetched = await reloaded.get_node(a.node_id, "alice")
    relations = await reloaded.get_relations("alice", source_id=a.node_id)

    assert (tmp_path / config.graph_filename).exists()
    assert fetched.metadata.confidence == pytest.approx(0.9)
    assert fetched.metadata.tags == ["x", "y"]
    assert fetched.metadata.source == "a.md"
    assert fetched.metadata.attributes == {"segment_index": 3}
    assert fetched.embedding == [0.1, 0.2, 0.3]
    assert fetched.embedding_model == "nomic-embed-text"
    assert fetched.connections == [b.node_id]
    assert (await reloaded.get_node(b.node_id, "alice")).metadata.confidence is None
    assert relations[0].strength == pytest.approx(0.83)
    assert relations[0].metadata == {"similarity": 0.83}
    with pytest.raises(DuplicateRelationError):
        await reloaded.add_relation(make_relation(a, b))


async def test_reloaded_store_finds_and_deletes_saved_nodes(tmp_path):
    config = GraphConfig(storage_path=str(tmp_path))
    store = GraphStore(config)
    a, b = make_node(title="A"), make_node(title="B")
    await store.add_node(a)
    await store.add_node(b)
    await store.add_relation(make_relation(a, b))
    await store.save()

    assert {n.node_id for n in await GraphStore(config).find_nodes("alice")} == {a.node_id, b.node_id}

    reloaded = GraphStore(config)
    removed = await reloaded.delete_node(a.node_id, "alice")

    assert len(removed) == 1
    assert (await reloaded.get_node(b.node_id, "alice")).connections == []


async def test_stats_per_tenant(store):
    a, b = make_node(), make_node(node_type=NodeType.ENTITY)
    await store.add_node(a)
    await store.add_node(b)
    await store.add_node(make_node(tenant="bob"))
    await store.add_relation(make_relation(a, b))

    stats = await store.get_stats("alice")

    assert stats["nodes_count"] == 2
    assert stats["edges_count"] == 1
    assert stats["node_types"] == {"concept": 1, "entity": 1}
    assert (await store.get_stats())["nodes_count"] == 3
