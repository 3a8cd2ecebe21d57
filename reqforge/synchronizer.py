"""Recursive replication of a collection tree into another collection.

Siblings at one level run concurrently. A folder's children are only dispatched
once the folder itself exists remotely, because they need its new id. Every
remote call goes through a shared ``CallPool``.
"""
import asyncio
import json
import logging
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, Field

from .config import POSTMAN_APP_URL
from .errors import SyncAborted, SyncError
from .generator import example_body, example_query_params
from .models import BODY_METHODS, FolderNode, RequestBody, RequestNode
from .pool import CallPool

logger = logging.getLogger(__name__)


class SyncReport(BaseModel):
    collection_id: Optional[str] = None
    created_folders: List[str] = Field(default_factory=list)
    created_requests: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)


class ExampleRun(BaseModel):
    source_collection_id: str
    collection_id: str
    collection_name: str
    link: str
    report: SyncReport


class _Turnstile:
    """Releases sibling creation calls in source order when ``ordered`` is set."""

    def __init__(self, size: int, ordered: bool):
        self.ordered = ordered
        self._done = [asyncio.Event() for _ in range(size)] if ordered else []

    async def wait_turn(self, index: int) -> None:
        if self.ordered and index > 0:
            await self._done[index - 1].wait()

    def done(self, index: int) -> None:
        if self.ordered:
            self._done[index].set()


class _SyncRun:
    """State for one ``synchronize`` call: the report and the first failure."""

    def __init__(self, synchronizer: "TreeSynchronizer", collection_id: str):
        self.store = synchronizer.store
        self.generator = synchronizer.generator
        self.pool = synchronizer.pool
        self.preserve_order = synchronizer.preserve_order
        self.collection_id = collection_id
        self.report = SyncReport(collection_id=collection_id)
        self.failure: Optional[BaseException] = None

    def _fail(self, exc: BaseException) -> None:
        if self.failure is None and not isinstance(exc, SyncAborted):
            self.failure = exc

    async def _call(self, label: str, fn, *args: Any) -> Any:
        if self.failure is not None:
            raise SyncAborted(f"{label}: not started, synchronization already failed")
        return await self.pool.run(label, fn, *args)

    async def sync_level(self, nodes: Sequence[Any], folder_id: Optional[str]) -> None:
        gate = _Turnstile(len(nodes), self.preserve_order)
        results = await asyncio.gather(
            *(self._sync_node(node, index, gate, folder_id) for index, node in enumerate(nodes)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _sync_node(self, node: Any, index: int, gate: _Turnstile, folder_id: Optional[str]) -> None:
        if isinstance(node, FolderNode):
            await self._sync_folder(node, index, gate, folder_id)
        else:
            await self._sync_request(node, index, gate, folder_id)

    async def _sync_folder(self, node: FolderNode, index: int, gate: _Turnstile, parent_id: Optional[str]) -> None:
        try:
            await gate.wait_turn(index)
            logger.info("Creating folder: %s", node.name)
            new_id = await self._call(f"create folder {node.name!r}", self.store.create_folder,
                                      self.collection_id, parent_id, node.name)
            self.report.created_folders.append(new_id)
        except Exception as exc:
            self._fail(exc)
            raise
        finally:
            gate.done(index)
        await self.sync_level(node.children, new_id)

    async def _sync_request(self, node: RequestNode, index: int, gate: _Turnstile, folder_id: Optional[str]) -> None:
        try:
            outgoing = await self._augment(node)
            await gate.wait_turn(index)
            if outgoing is None:
                return
            new_id = await self._call(f"create request {node.name!r}", self.store.create_request,
                                      self.collection_id, folder_id, outgoing.to_request_payload())
            self.report.created_requests.append(new_id)
        except Exception as exc:
            self._fail(exc)
            raise
        finally:
            gate.done(index)

    async def _augment(self, node: RequestNode) -> Optional[RequestNode]:
        """The request to create, with generated content attached, or None to skip it."""
        if node.url is None:
            logger.warning('Skipping request "%s" due to missing URL.', node.name)
            self.report.skipped.append(node.id or node.name)
            return None
        outgoing = node.model_copy(deep=True)
        path = outgoing.url.joined_path
        if node.method in BODY_METHODS:
            facts = {"name": node.name, "method": node.method, "path": path}
            original = node.body.parsed_json() if node.body else None
            if original is not None:
                facts["originalBody"] = original
            body = await self._call(f"example body for {node.name!r}", example_body, self.generator, facts)
            if body is not None:
                outgoing.body = RequestBody.raw_json(json.dumps(body, indent=2))
        elif node.method == "GET":
            facts = {"name": node.name, "method": node.method, "path": path}
            params = await self._call(f"query params for {node.name!r}", example_query_params, self.generator, facts)
            if params:
                outgoing.url.query = params
        return outgoing


class TreeSynchronizer:
    def __init__(self, store: Any, generator: Any, pool: Optional[CallPool] = None, preserve_order: bool = True):
        self.store = store
        self.generator = generator
        self.pool = pool or CallPool()
        self.preserve_order = preserve_order

    async def synchronize(
        self,
        source_children: Sequence[Any],
        destination_collection_id: str,
        destination_folder_id: Optional[str] = None,
    ) -> SyncReport:
        """Replicate ``source_children`` under the destination folder (or collection root).

        Raises ``SyncError`` carrying the report of everything created before the
        first failure. Nothing is rolled back.
        """
        run = _SyncRun(self, destination_collection_id)
        try:
            await run.sync_level(source_children, destination_folder_id)
        except Exception as exc:
            cause = run.failure or exc
            raise SyncError(cause, run.report) from cause
        return run.report


async def synchronize(
    store: Any,
    generator: Any,
    source_children: Sequence[Any],
    destination_collection_id: str,
    destination_folder_id: Optional[str] = None,
    pool: Optional[CallPool] = None,
) -> SyncReport:
    return await TreeSynchronizer(store, generator, pool).synchronize(
        source_children, destination_collection_id, destination_folder_id)


async def generate_examples(
    store: Any,
    generator: Any,
    collection_id: str,
    workspace_id: Optional[str] = None,
    pool: Optional[CallPool] = None,
    preserve_order: bool = True,
) -> ExampleRun:
    """Copy a collection into a new "[AI Examples]" collection with generated bodies and query params."""
    source = await store.fetch_tree(collection_id)
    new_name = f"{source.name} [AI Examples]"
    logger.info('Creating new collection "%s"...', new_name)
    created = await store.create_collection(new_name, workspace_id)

    logger.info("Starting parallel processing of %d top-level item(s)", len(source.children))
    synchronizer = TreeSynchronizer(store, generator, pool, preserve_order)
    report = await synchronizer.synchronize(source.children, created.id)
    logger.info("Finished processing: %d folder(s), %d request(s), %d skipped",
                len(report.created_folders), len(report.created_requests), len(report.skipped))
    return ExampleRun(
        source_collection_id=collection_id,
        collection_id=created.id,
        collection_name=new_name,
        link=f"{POSTMAN_APP_URL}/collection/{created.id}",
        report=report,
    )
