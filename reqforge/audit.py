import logging
from typing import Any, List, Tuple

from pydantic import BaseModel

from .generator import GenerationKind
from .models import FolderNode, RequestNode

logger = logging.getLogger(__name__)


class EndpointDescriptor(BaseModel):
    path: str
    method: str
    url: str
    auth: str
    headers: str


class Report(BaseModel):
    collection_id: str
    collection_name: str
    kind: GenerationKind
    text: str


def _describe(node: RequestNode, names: Tuple[str, ...]) -> EndpointDescriptor:
    return EndpointDescriptor(
        path="/" + "/".join(names),
        method=node.method,
        url=node.url.display() if node.url else "No URL defined",
        auth=f"Type: {node.auth.type}" if node.auth else "None",
        headers=", ".join(h.key for h in node.header or [] if h.key) or "None",
    )


def _flatten_node(node: Any, ancestors: Tuple[str, ...]) -> List[EndpointDescriptor]:
    names = ancestors + (node.name,)
    if isinstance(node, FolderNode):
        return [d for child in node.children for d in _flatten_node(child, names)]
    return [_describe(node, names)]


def flatten(root: Any) -> List[EndpointDescriptor]:
    """One descriptor per request under ``root`` (a folder or a collection), in pre-order."""
    return [d for child in root.children for d in _flatten_node(child, ())]


def iter_requests(nodes: Any) -> List[RequestNode]:
    out: List[RequestNode] = []
    for node in nodes:
        if isinstance(node, FolderNode):
            out.extend(iter_requests(node.children))
        else:
            out.append(node)
    return out


def audit_summary(collection_name: str, descriptors: List[EndpointDescriptor]) -> str:
    lines = [f'Collection Name: "{collection_name}"', "Requests:"]
    for d in descriptors:
        lines.extend([
            f"- Path: {d.path}",
            f"  Method: {d.method}",
            f"  URL: {d.url}",
            f"  Auth: {d.auth}",
            f"  Headers: [{d.headers}]",
        ])
    return "\n".join(lines)


def endpoint_summary(collection_name: str, root: Any) -> str:
    endpoints = []
    for node in iter_requests(root.children):
        if node.url is None or not node.method:
            continue
        info = f"- {node.method} /{node.url.joined_path}"
        body = node.body.parsed_json() if node.body else None
        if isinstance(body, dict) and body:
            info += f" (Body keys: {', '.join(body.keys())})"
        endpoints.append(info)
    return f'Collection Name: "{collection_name}"\n\nEndpoints:\n' + "\n".join(endpoints)


async def _report(store: Any, generator: Any, collection_id: str, kind: GenerationKind) -> Report:
    tree = await store.fetch_tree(collection_id)
    if kind is GenerationKind.COLLECTION_ANALYSIS:
        summary = endpoint_summary(tree.name, tree)
    else:
        summary = audit_summary(tree.name, flatten(tree))
    logger.info("Generating %s for collection %s", kind.value, tree.name)
    text = await generator.generate(kind, {"collectionName": tree.name, "summary": summary})
    return Report(collection_id=collection_id, collection_name=tree.name, kind=kind, text=text)


async def audit_collection(store: Any, generator: Any, collection_id: str) -> Report:
    return await _report(store, generator, collection_id, GenerationKind.SECURITY_AUDIT)


async def analyze_collection(store: Any, generator: Any, collection_id: str) -> Report:
    return await _report(store, generator, collection_id, GenerationKind.COLLECTION_ANALYSIS)


async def document_collection(store: Any, generator: Any, collection_id: str) -> Report:
    return await _report(store, generator, collection_id, GenerationKind.API_DOCS)
