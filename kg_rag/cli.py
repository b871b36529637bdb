"""
Command-line interface for the knowledge-graph RAG engine.

Usage:
    python -m kg_rag init                              Prepare the stores
    python -m kg_rag ingest <file> --tenant T          Decompose a .txt/.md file
    python -m kg_rag ask "<question>" --tenant T       Answer with retrieved context
    python -m kg_rag search "<query>" --tenant T       Similar nodes with scores
    python -m kg_rag graph --tenant T                  Dump the tenant's graph as JSON
    python -m kg_rag add-node --title ... --content ...
    python -m kg_rag relate <source> <target> --type related_to
    python -m kg_rag delete <node_id> --tenant T
    python -m kg_rag providers                         List usable generation providers
    python -m kg_rag stats [--tenant T]
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from .config import KGRagConfig
from .engine import RAGEngine
from .exceptions import KGRagError
from .graph_store import NodeMetadata, NodeType
from .logger import setup_logging
from .orchestrator import ChatRequest
from .providers import ProviderKind, available_providers

DEFAULT_TENANT = "default"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kg_rag",
        description="Knowledge-graph RAG engine CLI.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def tenant_arg(p: argparse.ArgumentParser, default: Optional[str] = DEFAULT_TENANT):
        p.add_argument("--tenant", default=default, help="Owning tenant id.")

    sub.add_parser("init", help="Create the vector collection and load the graph.")

    ingest_p = sub.add_parser("ingest", help="Decompose a .txt or .md file into concept nodes.")
    ingest_p.add_argument("path", help="Path to the document.")
    tenant_arg(ingest_p)

    ask_p = sub.add_parser("ask", help="Answer a question using the knowledge base.")
    ask_p.add_argument("question")
    tenant_arg(ask_p)
    ask_p.add_argument("--provider", choices=[k.value for k in ProviderKind])
    ask_p.add_argument("--model")
    ask_p.add_argument("--no-rag", action="store_true", help="Skip retrieval.")
    ask_p.add_argument("--top-k", type=int)
    ask_p.add_argument("--threshold", type=float)
    ask_p.add_argument("--session")
    ask_p.add_argument("--show-sources", action="store_true")

    search_p = sub.add_parser("search", help="Find nodes similar to a query.")
    search_p.add_argument("query")
    tenant_arg(search_p)
    search_p.add_argument("--limit", type=int, default=10)
    search_p.add_argument("--threshold", type=float)

    graph_p = sub.add_parser("graph", help="Print the tenant's newest nodes and their relations.")
    tenant_arg(graph_p)
    graph_p.add_argument("--limit", type=int, default=100)

    add_p = sub.add_parser("add-node", help="Insert a single node.")
    tenant_arg(add_p)
    add_p.add_argument("--title", required=True)
    add_p.add_argument("--content", required=True)
    add_p.add_argument(
        "--type", default=NodeType.CONCEPT.value, choices=[t.value for t in NodeType]
    )
    add_p.add_argument("--source")
    add_p.add_argument("--confidence", type=float)
    add_p.add_argument("--tag", action="append", default=[], help="Repeatable.")

    relate_p = sub.add_parser("relate", help="Relate two nodes.")
    relate_p.add_argument("source_id")
    relate_p.add_argument("target_id")
    tenant_arg(relate_p)
    relate_p.add_argument("--type", default="related_to")
    relate_p.add_argument("--strength", type=float, default=0.5)

    delete_p = sub.add_parser("delete", help="Delete a node and its relations.")
    delete_p.add_argument("node_id")
    tenant_arg(delete_p)

    sub.add_parser("providers", help="List available generation providers.")

    stats_p = sub.add_parser("stats", help="Print vector and graph store statistics.")
    tenant_arg(stats_p, None)

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


async def _run_init(args: argparse.Namespace, engine: RAGEngine) -> None:
    await engine.initialize()
    print(f"Ready: collection '{engine.vectors.collection_name}' ({', '.join(engine.vectors.namespaces)})")


async def _run_ingest(args: argparse.Namespace, engine: RAGEngine) -> None:
    result = await engine.ingest_file(args.path, args.tenant)
    print(result.summary)
    for node in result.nodes:
        print(f"  [{node.node_id}] {node.title}")


async def _run_ask(args: argparse.Namespace, engine: RAGEngine) -> None:
    await engine.initialize()
    response = await engine.orchestrator.answer(
        ChatRequest(
            message=args.question,
            tenant_id=args.tenant,
            session_id=args.session,
            model=args.model,
            provider=ProviderKind.parse(args.provider) if args.provider else None,
            use_rag=not args.no_rag,
            top_k=args.top_k,
            score_threshold=args.threshold,
        )
    )
    print(response.answer)
    print(
        f"\n-- {response.provider.value}/{response.model} | confidence={response.confidence:.2f} "
        f"| sources={len(response.sources)} | tokens={response.tokens} "
        f"| {response.processing_time_ms} ms"
    )
    if args.show_sources:
        for source in response.sources:
            print(f"  ({source.score:.3f}) {source.node.title}")


async def _run_search(args: argparse.Namespace, engine: RAGEngine) -> None:
    await engine.initialize()
    results = await engine.knowledge.search_similar_nodes(
        args.query, args.tenant, limit=args.limit, threshold=args.threshold
    )
    if not results:
        print("No similar nodes found.")
        return
    for item in results:
        print(f"{item.score:.3f}  [{item.node.node_id}] {item.node.title}")


async def _run_graph(args: argparse.Namespace, engine: RAGEngine) -> None:
    await engine.initialize()
    view = await engine.knowledge.get_knowledge_graph(args.tenant, limit=args.limit)
    _print_json(view.to_dict())


async def _run_add_node(args: argparse.Namespace, engine: RAGEngine) -> None:
    await engine.initialize()
    node = await engine.knowledge.add_node(
        args.tenant,
        args.title,
        args.content,
        NodeType(args.type),
        NodeMetadata(source=args.source, confidence=args.confidence, tags=args.tag),
    )
    await engine.graph.save()
    print(node.node_id)


async def _run_relate(args: argparse.Namespace, engine: RAGEngine) -> None:
    await engine.initialize()
    relation = await engine.knowledge.add_relation(
        args.tenant, args.source_id, args.target_id, args.type, strength=args.strength
    )
    await engine.graph.save()
    print(relation.relation_id)


async def _run_delete(args: argparse.Namespace, engine: RAGEngine) -> None:
    await engine.initialize()
    try:
        _, removed = await engine.knowledge.delete_node(args.node_id, args.tenant)
    finally:
        await engine.graph.save()
    print(f"Deleted {args.node_id} ({len(removed)} relation(s) removed)")


async def _run_providers(args: argparse.Namespace, engine: RAGEngine) -> None:
    for descriptor in available_providers(engine.config.llm):
        print(f"{descriptor.name:<22} {descriptor.family.value:<9} {', '.join(descriptor.models)}")


async def _run_stats(args: argparse.Namespace, engine: RAGEngine) -> None:
    stats = await engine.get_stats(args.tenant)

    print("--- Vector Index ---")
    vstats = stats["vector_store"]
    if "error" in vstats:
        print(f"  {vstats['name']}: ERROR ({vstats['error']})")
    else:
        print(f"  {vstats['name']}: {vstats.get('points_count', 0)} points ({vstats.get('status', '?')})")
        if "tenant_points" in vstats:
            print(f"  tenant points: {vstats['tenant_points']}")

    print("\n--- Graph Store ---")
    gstats = stats["graph_store"]
    print(f"  Nodes : {gstats.get('nodes_count', 0)}")
    print(f"  Edges : {gstats.get('edges_count', 0)}")
    print(f"  Density: {gstats.get('density', 0.0):.4f}")
    if gstats.get("node_types"):
        print("\n  Node types:")
        for t, count in sorted(gstats["node_types"].items()):
            print(f"    {t}: {count}")


_COMMANDS = {
    "init": _run_init,
    "ingest": _run_ingest,
    "ask": _run_ask,
    "search": _run_search,
    "graph": _run_graph,
    "add-node": _run_add_node,
    "relate": _run_relate,
    "delete": _run_delete,
    "providers": _run_providers,
    "stats": _run_stats,
}


async def _main_async(argv: Optional[List[str]], engine: Optional[RAGEngine]) -> int:
    args = _build_parser().parse_args(argv)
    if engine is None:
        config = KGRagConfig()
        setup_logging(config.logging)
        engine = RAGEngine(config)

    try:
        await _COMMANDS[args.command](args, engine)
    except (KGRagError, FileNotFoundError, ValueError) as exc:
        print(f"FAILED: {exc}", file=sys.stderr)
        return 1
    finally:
        engine.close()
    return 0


def main(argv: Optional[List[str]] = None, engine: Optional[RAGEngine] = None) -> int:
    return asyncio.run(_main_async(argv, engine))


if __name__ == "__main__":
    sys.exit(main())
