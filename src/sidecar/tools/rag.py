"""Semantic memory tools: remember facts and search collections."""

from pydantic import Field

from ..errors import CollectionNotReady
from ..logging_config import get_logger
from ..rag.engine import MEMORY_COLLECTION, WORKSPACE_COLLECTION, RagEngine
from .base import Capability, ToolArgs, ToolContext, ToolOutput, ToolSpec
from .registry import ToolRegistry

logger = get_logger(__name__)

MAX_RESULT_CHARS = 1500


class SemanticSearchArgs(ToolArgs):
    query: str = Field(min_length=1, description="What to look for, in natural language")
    collection: str = Field(default=WORKSPACE_COLLECTION, description="Collection to search")
    k: int = Field(default=5, ge=1, le=20, description="Number of results")
    refresh: bool = Field(default=False, description="Re-index the collection in the background first")


class RememberArgs(ToolArgs):
    text: str = Field(min_length=1, description="Fact or note to store for later recall")
    collection: str = Field(default=MEMORY_COLLECTION, description="Collection to store it in")


class ListCollectionsArgs(ToolArgs):
    pass


def _index_resource(collection: str) -> set[str]:
    return {f"index://{collection}"}


class RagTools:
    """Tool handlers over a RagEngine."""

    def __init__(self, engine: RagEngine):
        self.engine = engine

    def semantic_search(self, args: SemanticSearchArgs, ctx: ToolContext) -> ToolOutput:
        notes = []
        if args.refresh:
            job = self.engine.refresh(args.collection)
            notes.append(f"Re-indexing '{args.collection}' in the background ({job.files_seen} files so far).")
        else:
            job = self.engine.ensure_indexed(args.collection)
            if job is not None:
                raise CollectionNotReady(
                    f"Collection '{args.collection}' was empty; indexing has started. Try the search again shortly."
                )
        ctx.token.raise_if_cancelled()
        results = self.engine.semantic_search(args.collection, args.query, args.k)
        if not results:
            return ToolOutput(text="\n".join(notes + ["No results."]), metadata={"count": 0})

        blocks = []
        hits = []
        for rank, scored in enumerate(results, start=1):
            entry = scored.entry
            meta = entry.metadata
            location = entry.source_id
            if "path" in meta:
                location = f"{meta['path']}:{meta.get('start_line', '?')}-{meta.get('end_line', '?')}"
            text = entry.text
            if len(text) > MAX_RESULT_CHARS:
                text = text[:MAX_RESULT_CHARS] + "..."
            blocks.append(f"[{rank}] {location} (score {scored.score:.3f})\n{text}")
            hits.append({"source_id": entry.source_id, "score": round(scored.score, 4)})
        return ToolOutput(text="\n\n".join(notes + blocks), metadata={"count": len(results), "hits": hits})

    def remember(self, args: RememberArgs, ctx: ToolContext) -> ToolOutput:
        entry = self.engine.remember(args.collection, args.text)
        return ToolOutput(
            text=f"Stored in '{args.collection}'.",
            metadata={"collection": args.collection, "entry_id": entry.entry_id},
        )

    def list_collections(self, args: ListCollectionsArgs, ctx: ToolContext) -> str:
        lines = []
        for collection in self.engine.collections():
            stats = self.engine.stats(collection.name)
            root = f" ({collection.root})" if collection.root else ""
            state = ""
            if stats["indexing"] and stats["indexing"]["state"] == "running":
                state = ", indexing"
            lines.append(f"- {collection.name}{root}: {stats['entries']} entries{state}")
        return "\n".join(lines)


def register_rag_tools(registry: ToolRegistry, engine: RagEngine) -> RagTools:
    """Register ``semantic_search``, ``remember`` and ``list_collections``."""
    tools = RagTools(engine)
    registry.register(
        ToolSpec(
            name="semantic_search",
            description=(
                "Search a knowledge collection by meaning. Collections include 'workspace' (the current "
                "project), 'memory' (remembered facts) and 'web' (past search results)."
            ),
            args_schema=SemanticSearchArgs,
            handler=tools.semantic_search,
            capabilities=frozenset({Capability.READ_FS}),
            resources=lambda a: _index_resource(a.collection),
        )
    )
    registry.register(
        ToolSpec(
            name="remember",
            description="Store a fact or note so it can be found later with semantic_search.",
            args_schema=RememberArgs,
            handler=tools.remember,
            capabilities=frozenset({Capability.WRITE_FS}),
            resources=lambda a: _index_resource(a.collection),
        )
    )
    registry.register(
        ToolSpec(
            name="list_collections",
            description="List the knowledge collections and how many entries each holds.",
            args_schema=ListCollectionsArgs,
            handler=tools.list_collections,
        )
    )
    return tools
