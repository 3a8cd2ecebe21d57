"""Collection tree model.

A Postman collection is a forest of items. Each item is turned into exactly one
of two node variants when it is loaded from the store: a ``FolderNode`` (the item
carries an ``item`` list) or a ``RequestNode`` (the item carries a ``request``).
Everything downstream dispatches on the variant, never on the raw payload.

Unknown fields are kept (``extra="allow"`` plus ``request_extra``) so that a
node can be written back without losing anything the engine does not own.
"""
import copy
import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import MalformedCollectionError

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
BODY_METHODS = {"POST", "PUT", "PATCH"}
TEST_EVENT = "test"
SCRIPT_TYPE = "text/javascript"
COLLECTION_SCHEMA = "https://schema.getpostman.com/json/collection/v2.1.0/collection.json"


class QueryParam(BaseModel):
    model_config = ConfigDict(extra="allow")

    key: Optional[str] = None
    value: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, str):
            return v
        return json.dumps(v) if isinstance(v, (dict, list)) else str(v)


class Header(BaseModel):
    model_config = ConfigDict(extra="allow")

    key: Optional[str] = None
    value: Optional[str] = None


class RequestAuth(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str


class RequestBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    mode: Optional[str] = None
    raw: Optional[str] = None
    options: Optional[Dict[str, Any]] = None

    @classmethod
    def raw_json(cls, text: str) -> "RequestBody":
        return cls(mode="raw", raw=text, options={"raw": {"language": "json"}})

    def parsed_json(self) -> Optional[Any]:
        if not self.raw:
            return None
        try:
            return json.loads(self.raw)
        except ValueError:
            return None


def _segments(value: Any) -> List[str]:
    if isinstance(value, str):
        return [seg for seg in value.split("/") if seg]
    return [seg.get("value", "") if isinstance(seg, dict) else str(seg) for seg in value or []]


class RequestUrl(BaseModel):
    """A Postman url object. ``host`` and ``path`` keep the shape the source used."""

    model_config = ConfigDict(extra="allow")

    raw: Optional[str] = None
    host: Optional[Union[List[Any], str]] = None
    path: Optional[Union[List[Any], str]] = None
    query: Optional[List[QueryParam]] = None

    @classmethod
    def from_source(cls, value: Any) -> Optional["RequestUrl"]:
        """Build the structured form of a Postman url (string or object), or None when absent."""
        if isinstance(value, str):
            return cls(raw=value) if value.strip() else None
        if not isinstance(value, dict):
            return None
        data = copy.deepcopy(value)
        if not isinstance(data.get("query"), list):
            data.pop("query", None)
        url = cls.model_validate(data)
        return url if url.resolvable else None

    @property
    def resolvable(self) -> bool:
        return bool(self.raw or self.path or self.host)

    @property
    def joined_path(self) -> str:
        return "/".join(_segments(self.path))

    def display(self) -> str:
        if self.raw:
            return self.raw
        host = self.host if isinstance(self.host, str) else ".".join(_segments(self.host))
        return f"{host}/{self.joined_path}" if host else f"/{self.joined_path}"


class EventScript(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    exec: Optional[Union[List[Any], str]] = None

    @property
    def lines(self) -> List[str]:
        if self.exec is None:
            return []
        if isinstance(self.exec, str):
            return [self.exec]
        return [str(line) for line in self.exec]


class Event(BaseModel):
    """One entry of an item's ``event`` list. Ids, ``disabled`` and script extras are kept as they came."""

    model_config = ConfigDict(extra="allow")

    listen: Optional[str] = None
    script: Optional[EventScript] = None

    @property
    def lines(self) -> List[str]:
        return self.script.lines if self.script else []


def _events_from_source(raw_events: Any) -> Optional[List[Event]]:
    if not isinstance(raw_events, list):
        return None
    return [Event.model_validate(event) for event in raw_events if isinstance(event, dict)]


def events_to_source(events: Optional[List[Event]]) -> List[Dict[str, Any]]:
    return [event.model_dump(exclude_unset=True) for event in events or []]


class FolderNode(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["folder"] = "folder"
    id: Optional[str] = None
    name: str = ""
    description: Optional[Any] = None
    children: List["Node"] = Field(default_factory=list)

    def to_item(self) -> Dict[str, Any]:
        item = copy.deepcopy(self.model_extra or {})
        if self.id is not None:
            item["id"] = self.id
        item["name"] = self.name
        if self.description is not None:
            item["description"] = self.description
        item["item"] = [child.to_item() for child in self.children]
        return item


class RequestNode(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: Literal["request"] = "request"
    id: Optional[str] = None
    name: str = ""
    method: str = "GET"
    url: Optional[RequestUrl] = None
    body: Optional[RequestBody] = None
    header: Optional[List[Header]] = None
    auth: Optional[RequestAuth] = None
    description: Optional[Any] = None
    # the item-level description, next to the request-level one above
    item_description: Optional[Any] = None
    # None when the item has no "event" list at all
    events: Optional[List[Event]] = None
    # request-object fields this model does not name (proxy, certificate, ...)
    request_extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("method", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> str:
        return str(v or "GET").upper()

    def to_request(self) -> Dict[str, Any]:
        request = copy.deepcopy(self.request_extra)
        request["method"] = self.method
        if self.header is not None:
            request["header"] = [h.model_dump(exclude_unset=True) for h in self.header]
        if self.url is not None:
            request["url"] = self.url.model_dump(exclude_unset=True)
        if self.body is not None:
            request["body"] = self.body.model_dump(exclude_unset=True)
        if self.auth is not None:
            request["auth"] = self.auth.model_dump(exclude_unset=True)
        if self.description is not None:
            request["description"] = self.description
        return request

    def to_item(self) -> Dict[str, Any]:
        item = copy.deepcopy(self.model_extra or {})
        if self.id is not None:
            item["id"] = self.id
        item["name"] = self.name
        if self.item_description is not None:
            item["description"] = self.item_description
        item["request"] = self.to_request()
        if self.events is not None:
            item["event"] = events_to_source(self.events)
        return item

    def event_lines(self, listen: str) -> List[str]:
        return [line for event in self.events or [] if event.listen == listen for line in event.lines]

    def to_request_payload(self) -> Dict[str, Any]:
        """Body for the store's create-request call."""
        description = self.description if self.description is not None else self.item_description
        payload: Dict[str, Any] = {
            "name": self.name,
            "description": description if isinstance(description, str) else "",
            "request": self.to_request(),
        }
        if self.events:
            payload["events"] = events_to_source(self.events)
        return payload


Node = Annotated[Union[FolderNode, RequestNode], Field(discriminator="kind")]

FolderNode.model_rebuild()

# keys that only exist on the parsed model, never on a Postman item
_MODEL_ONLY_KEYS = ("kind", "children", "events", "request_extra", "item_description")


def parse_item(item: Any) -> Union[FolderNode, RequestNode]:
    """Build the node variant for one Postman item (recursively for folders)."""
    if not isinstance(item, dict):
        raise MalformedCollectionError(f"Collection item must be an object, got {type(item).__name__}")
    data = copy.deepcopy(item)
    for key in _MODEL_ONLY_KEYS:
        data.pop(key, None)
    if "id" not in data and "_postman_id" in data:
        data["id"] = data["_postman_id"]
    try:
        if isinstance(data.get("item"), list):
            children = [parse_item(child) for child in data.pop("item")]
            return FolderNode(children=children, **data)
        request = data.pop("request", None)
        if isinstance(request, str):
            request = {"url": request}
        if isinstance(request, dict):
            events = _events_from_source(data.pop("event", None))
            item_description = data.pop("description", None)
            for key in ("method", "url", "body", "header", "auth"):
                data.pop(key, None)
            body = request.pop("body", None)
            auth = request.pop("auth", None)
            headers = request.pop("header", None)
            return RequestNode(
                method=request.pop("method", "GET"),
                url=RequestUrl.from_source(request.pop("url", None)),
                body=body if isinstance(body, dict) else None,
                header=[h for h in headers if isinstance(h, dict)] if isinstance(headers, list) else None,
                auth=auth if isinstance(auth, dict) and auth.get("type") else None,
                description=request.pop("description", None),
                item_description=item_description,
                events=events,
                request_extra=request,
                **data,
            )
    except ValidationError as e:
        raise MalformedCollectionError(f"Invalid collection item {item.get('name')!r}: {e}") from e
    raise MalformedCollectionError(f"Item {item.get('name')!r} is neither a folder nor a request")


class CollectionSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    uid: Optional[str] = None


class CollectionTree(BaseModel):
    """A fetched collection: its info block, top-level items and any other collection fields."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: str = ""
    info: Dict[str, Any] = Field(default_factory=dict)
    children: List[Node] = Field(default_factory=list)

    @classmethod
    def from_source(cls, collection: Dict[str, Any]) -> "CollectionTree":
        data = copy.deepcopy(collection)
        info = data.pop("info", None) or {}
        items = data.pop("item", None) or []
        for key in ("id", "name", "children"):
            data.pop(key, None)
        return cls(
            id=info.get("_postman_id") or info.get("id") or collection.get("id"),
            name=info.get("name", ""),
            info=info,
            children=[parse_item(item) for item in items],
            **data,
        )

    def root(self) -> FolderNode:
        return FolderNode(name="", children=self.children)

    def to_payload(self) -> Dict[str, Any]:
        collection = copy.deepcopy(self.model_extra or {})
        collection["info"] = {"schema": COLLECTION_SCHEMA, **self.info, "name": self.name}
        collection["item"] = [child.to_item() for child in self.children]
        return {"collection": collection}
