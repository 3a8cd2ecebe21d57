import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from textwrap import dedent
from typing import Annotated, Optional

import redis
from fastmcp import FastMCP
from fastmcp.server.auth import AccessToken, TokenVerifier
from mcp import ErrorData, McpError
from mcp.types import INTERNAL_ERROR, INVALID_PARAMS
from pydantic import BaseModel, Field

from .audit import analyze_collection as run_analysis
from .audit import audit_collection as run_audit
from .audit import document_collection as run_docs
from .config import AUTH_TOKEN, HOST, PORT, Credentials
from .errors import AuthFailure, NotFound, ReqForgeError
from .generator import ContentGenerator
from .history import RunHistory, connect_redis
from .locator import PatchStrategy
from .locator import generate_test_script as run_test_script
from .store import PostmanStore
from .synchronizer import generate_examples as run_examples

logger = logging.getLogger(__name__)

CREDENTIALS = Credentials.from_env()


# --- Auth ---
class StaticBearerVerifier(TokenVerifier):
    def __init__(self, token: str):
        super().__init__()
        self._expected = token

    async def verify_token(self, token: str) -> AccessToken | None:
        if token == self._expected:
            return AccessToken(
                token=token,
                client_id="reqforge-client",
                scopes=["*"],
                expires_at=None,
            )
        return None


# --- Rich Tool Description model ---
class RichToolDescription(BaseModel):
    description: str
    use_when: str
    side_effects: Optional[str] = None


# --- Run history (Redis) ---
HISTORY_RETRY_S = 30.0

_history: Optional[RunHistory] = None
_history_retry_at = 0.0


def _connect_history() -> Optional[RunHistory]:
    try:
        client = connect_redis()
        client.ping()
    except redis.RedisError as e:
        print(f"❌ Failed to connect to Redis: {e}; run history disabled for {HISTORY_RETRY_S:.0f}s")
        return None
    print("✅ Connected to Redis")
    return RunHistory(client)


async def get_history() -> Optional[RunHistory]:
    """The shared run history; reconnects at most every ``HISTORY_RETRY_S`` while Redis is down."""
    global _history, _history_retry_at
    if _history is None and time.monotonic() >= _history_retry_at:
        # redis-py blocks, keep the ping off the event loop
        _history = await asyncio.to_thread(_connect_history)
        if _history is None:
            _history_retry_at = time.monotonic() + HISTORY_RETRY_S
    return _history


@asynccontextmanager
async def _track(kind: str, collection_id: str):
    history = await get_history()
    if history is None:
        yield {}
        return
    async with history.track(kind, collection_id) as detail:
        yield detail


def _mcp_error(e: ReqForgeError) -> McpError:
    code = INVALID_PARAMS if isinstance(e, (NotFound, AuthFailure)) else INTERNAL_ERROR
    return McpError(ErrorData(code=code, message=str(e)))


def _store() -> PostmanStore:
    return PostmanStore(CREDENTIALS)


_content_generator: Optional[ContentGenerator] = None


def _generator() -> ContentGenerator:
    global _content_generator
    if _content_generator is None:
        _content_generator = ContentGenerator(CREDENTIALS)
    return _content_generator


# --- MCP Server Setup ---
mcp = FastMCP(
    "ReqForge AI MCP Server",
    auth=StaticBearerVerifier(AUTH_TOKEN),
)


@mcp.tool
async def about() -> str:
    """
    Return a human-readable description of this MCP server for UI / client display.
    """
    description = dedent("""
    ReqForge AI augments Postman collections with generated content:
      • Copies a collection into a new "[AI Examples]" collection with example bodies and query params
      • Adds generated test scripts to a single request
      • Produces security audits, analyses and API documentation for a collection
    """).strip()
    meta = {
        "name": "ReqForge AI",
        "version": "1.0",
        "description": description,
        "features": [
            "Example generation",
            "Test script injection",
            "Security audit",
            "Collection analysis",
            "API documentation",
            "Run history",
        ],
    }
    return json.dumps(meta, indent=2)


# --- Tool: list_collections ---
ListCollectionsDescription = RichToolDescription(
    description="List Postman collections (id and name)",
    use_when="You need the id of a collection to work on",
)

@mcp.tool(description=ListCollectionsDescription.model_dump_json())
async def list_collections(
    workspace_id: Annotated[Optional[str], Field(description="Postman workspace id to filter by")] = None,
) -> str:
    try:
        async with _store() as store:
            collections = await store.list_collections(workspace_id)
    except ReqForgeError as e:
        raise _mcp_error(e) from e
    return json.dumps({
        "message": "Successfully fetched Postman collections.",
        "count": len(collections),
        "collections": [{"id": c.id, "name": c.name} for c in collections],
    }, indent=2)


# --- Tool: get_collection ---
GetCollectionDescription = RichToolDescription(
    description="Get one collection's full folder/request tree",
    use_when="You need request ids or want to inspect a collection",
)

@mcp.tool(description=GetCollectionDescription.model_dump_json())
async def get_collection(
    collection_id: Annotated[str, Field(description="Postman collection id or uid")],
) -> str:
    try:
        async with _store() as store:
            tree = await store.fetch_tree(collection_id)
    except ReqForgeError as e:
        raise _mcp_error(e) from e
    return json.dumps(tree.to_payload()["collection"], indent=2)


# --- Tool: generate_examples ---
GenerateExamplesDescription = RichToolDescription(
    description="Copy a collection into a new '[AI Examples]' collection with AI-generated bodies and query params",
    use_when="You want ready-to-send example requests for every endpoint of a collection",
    side_effects="Creates a new collection, folders and requests in Postman",
)

@mcp.tool(description=GenerateExamplesDescription.model_dump_json())
async def generate_examples(
    collection_id: Annotated[str, Field(description="Source collection id or uid")],
    workspace_id: Annotated[Optional[str], Field(description="Workspace to create the new collection in")] = None,
    preserve_order: Annotated[bool, Field(description="Create siblings in source order")] = True,
) -> str:
    try:
        async with _track("generate_examples", collection_id) as detail:
            async with _store() as store:
                run = await run_examples(store, _generator(), collection_id, workspace_id,
                                         preserve_order=preserve_order)
            detail.update({"newCollectionId": run.collection_id, "report": run.report.model_dump()})
    except ReqForgeError as e:
        raise _mcp_error(e) from e
    return json.dumps({
        "message": "Successfully generated example requests!",
        "newCollectionId": run.collection_id,
        "postmanLink": run.link,
        "report": run.report.model_dump(),
    }, indent=2)


# --- Tool: generate_test_script ---
GenerateTestDescription = RichToolDescription(
    description="Generate a test script for one request and add it to the request's tests",
    use_when="You want automated assertions for a specific request",
    side_effects="Updates the request in Postman (or the whole collection if single updates are unavailable)",
)

@mcp.tool(description=GenerateTestDescription.model_dump_json())
async def generate_test_script(
    collection_id: Annotated[str, Field(description="Collection id or uid")],
    request_id: Annotated[str, Field(description="Request id or uid inside the collection")],
    strategy: Annotated[PatchStrategy, Field(description="single, whole_tree or auto")] = PatchStrategy.AUTO,
) -> str:
    try:
        async with _track("generate_test_script", collection_id) as detail:
            async with _store() as store:
                updated = await run_test_script(store, _generator(), collection_id, request_id, strategy)
            detail["requestId"] = request_id
    except ReqForgeError as e:
        raise _mcp_error(e) from e
    return json.dumps({
        "message": f"Successfully added AI test script to request: {updated.name}",
        "tests": updated.event_lines("test"),
    }, indent=2)


async def _report_tool(kind: str, runner, collection_id: str) -> str:
    try:
        async with _track(kind, collection_id) as detail:
            async with _store() as store:
                report = await runner(store, _generator(), collection_id)
            detail["chars"] = len(report.text)
    except ReqForgeError as e:
        raise _mcp_error(e) from e
    return json.dumps({"collectionName": report.collection_name, "kind": report.kind.value,
                       "report": report.text}, indent=2)


# --- Tool: audit_collection ---
AuditDescription = RichToolDescription(
    description="Run an AI security and performance audit on a collection",
    use_when="You want a review of auth, headers and endpoint design",
)

@mcp.tool(description=AuditDescription.model_dump_json())
async def audit_collection(
    collection_id: Annotated[str, Field(description="Collection id or uid")],
) -> str:
    return await _report_tool("audit_collection", run_audit, collection_id)


# --- Tool: analyze_collection ---
AnalyzeDescription = RichToolDescription(
    description="Explain a collection's purpose and functionality",
    use_when="You need a quick high-level overview of an unfamiliar API",
)

@mcp.tool(description=AnalyzeDescription.model_dump_json())
async def analyze_collection(
    collection_id: Annotated[str, Field(description="Collection id or uid")],
) -> str:
    return await _report_tool("analyze_collection", run_analysis, collection_id)


# --- Tool: document_collection ---
DocumentDescription = RichToolDescription(
    description="Write Markdown API documentation for a collection",
    use_when="You need human-readable docs generated from a collection",
)

@mcp.tool(description=DocumentDescription.model_dump_json())
async def document_collection(
    collection_id: Annotated[str, Field(description="Collection id or uid")],
) -> str:
    return await _report_tool("document_collection", run_docs, collection_id)


# --- Tool: list_runs ---
ListRunsDescription = RichToolDescription(
    description="List recent runs (newest first), including partial results of failed example generations",
    use_when="You want to see what a previous run created or why it failed",
)

@mcp.tool(description=ListRunsDescription.model_dump_json())
async def list_runs(
    collection_id: Annotated[Optional[str], Field(description="Only runs for this collection")] = None,
    limit: Annotated[int, Field(description="Maximum number of runs")] = 20,
) -> str:
    history = await get_history()
    if history is None:
        raise McpError(ErrorData(code=INTERNAL_ERROR, message="Run history unavailable: Redis is not connected"))
    runs = await asyncio.to_thread(history.recent, limit, collection_id)
    return json.dumps([r.model_dump() for r in runs], indent=2)


# --- Run MCP Server ---
async def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    await get_history()
    print(f"🚀 Starting MCP server on http://{HOST}:{PORT}")
    await mcp.run_async("streamable-http", host=HOST, port=PORT)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
