import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .errors import NotFound, UnsupportedOperation
from .generator import write_test_script
from .models import SCRIPT_TYPE, TEST_EVENT, CollectionTree, Event, FolderNode, RequestNode, events_to_source

logger = logging.getLogger(__name__)


class PatchStrategy(str, Enum):
    SINGLE = "single"
    WHOLE_TREE = "whole_tree"
    AUTO = "auto"


def _matches(node: Any, target_id: str) -> bool:
    return node.id == target_id or (node.model_extra or {}).get("uid") == target_id


def locate(nodes: Sequence[Any], target_id: str) -> Optional[Any]:
    """Depth-first, pre-order search by id (or uid). Returns None when absent."""
    for node in nodes:
        if _matches(node, target_id):
            return node
        if isinstance(node, FolderNode):
            found = locate(node.children, target_id)
            if found is not None:
                return found
    return None


def inject_test_script(node: RequestNode, script_text: str, now: Optional[datetime] = None) -> RequestNode:
    """Return a copy of ``node`` with ``script_text`` first in its "test" script. ``node`` is left untouched.

    Only the ``exec`` lines of the first "test" event change; every other event,
    and every other key of that event and its script, is carried over as is.
    """
    stamp = (now or datetime.now()).strftime("%H:%M:%S")
    entry = f"// AI-Generated Test ({stamp})\n{script_text}\n"
    events = events_to_source(node.events)
    test_event = next((e for e in events if e.get("listen") == TEST_EVENT), None)
    if test_event is None:
        events.append({"listen": TEST_EVENT, "script": {"type": SCRIPT_TYPE, "exec": [entry]}})
    else:
        script = test_event.get("script") or {}
        # newest first, the order the Postman UI shows them in
        test_event["script"] = {**script, "exec": [entry] + Event.model_validate(test_event).lines}
    updated = node.model_copy(deep=True)
    updated.events = [Event.model_validate(e) for e in events]
    return updated


def replace_node(nodes: Sequence[Any], updated: Any) -> List[Any]:
    out = []
    for node in nodes:
        if node.id == updated.id:
            out.append(updated)
        elif isinstance(node, FolderNode):
            out.append(node.model_copy(update={"children": replace_node(node.children, updated)}))
        else:
            out.append(node)
    return out


def events_patch(node: RequestNode) -> Dict[str, Any]:
    """The payload the single-request update route expects for a scripts change."""
    return {"events": events_to_source(node.events)}


async def persist_request(
    store: Any,
    collection_id: str,
    tree: CollectionTree,
    node: RequestNode,
    strategy: PatchStrategy = PatchStrategy.AUTO,
) -> Dict[str, Any]:
    # No version check on either path: two concurrent patches of one request can lose an update.
    strategy = PatchStrategy(strategy)
    if strategy in (PatchStrategy.SINGLE, PatchStrategy.AUTO):
        try:
            return await store.update_single_request(collection_id, node.id, events_patch(node))
        except UnsupportedOperation:
            if strategy is PatchStrategy.SINGLE:
                raise
            logger.warning("Single-request update unavailable, replacing whole collection %s", collection_id)
    patched = tree.model_copy(update={"children": replace_node(tree.children, node)})
    return await store.replace_whole_tree(collection_id, patched)


async def generate_test_script(
    store: Any,
    generator: Any,
    collection_id: str,
    request_id: str,
    strategy: PatchStrategy = PatchStrategy.AUTO,
) -> RequestNode:
    tree = await store.fetch_tree(collection_id)
    node = locate(tree.children, request_id)
    if not isinstance(node, RequestNode):
        raise NotFound("Request not found in collection.")
    if node.url is None:
        raise NotFound(f'Request "{node.name}" has no URL to test.')
    script = await write_test_script(generator, node)
    updated = inject_test_script(node, script)
    await persist_request(store, collection_id, tree, updated, strategy)
    logger.info("Added AI test script to request: %s", node.name)
    return updated
