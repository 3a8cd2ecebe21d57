import asyncio

from reqforge.audit import (
    analyze_collection,
    audit_collection,
    audit_summary,
    endpoint_summary,
    flatten,
)
from reqforge.generator import GenerationKind
from reqforge.models import CollectionTree

from fakes import FakeStore, ScriptedGenerator, folder_item, request_item, structured_url


def _tree():
    secured = request_item(
        "Create order", "POST", structured_url("orders"), body='{"sku": "x", "qty": 1}',
        header=[{"key": "Authorization", "value": "Bearer t"}, {"key": "X-Trace", "value": "1"}],
        auth={"type": "bearer", "bearer": [{"key": "token", "value": "t"}]},
    )
    return CollectionTree.from_source({
        "info": {"_postman_id": "c1", "name": "Shop"},
        "item": [
            folder_item("Orders", request_item("List orders", "GET", structured_url("orders")), secured),
            folder_item("Empty"),
            request_item("Health", "GET", url=None),
        ],
    })


def test_flatten_yields_one_descriptor_per_request_in_order():
    descriptors = flatten(_tree())

    assert [d.path for d in descriptors] == ["/Orders/List orders", "/Orders/Create order", "/Health"]


def test_flatten_descriptor_fields():
    listed, created, health = flatten(_tree())

    assert listed.method == "GET"
    assert listed.url == "https://api.example.com/orders"
    assert listed.auth == "None"
    assert listed.headers == "None"
    assert created.auth == "Type: bearer"
    assert created.headers == "Authorization, X-Trace"
    assert health.url == "No URL defined"


def test_flatten_of_a_folder_uses_relative_paths():
    orders = _tree().children[0]
    assert [d.path for d in flatten(orders)] == ["/List orders", "/Create order"]


def test_audit_summary_lists_every_request():
    text = audit_summary("Shop", flatten(_tree()))

    assert text.startswith('Collection Name: "Shop"')
    assert "- Path: /Orders/Create order" in text
    assert "  Headers: [Authorization, X-Trace]" in text
    assert text.count("- Path:") == 3


def test_endpoint_summary_skips_requests_without_url_and_lists_body_keys():
    text = endpoint_summary("Shop", _tree())

    assert "- GET /orders" in text
    assert "- POST /orders (Body keys: sku, qty)" in text
    assert "Health" not in text


def test_audit_collection_sends_summary_to_generator():
    store = FakeStore(collection=_tree().to_payload()["collection"])
    generator = ScriptedGenerator(defaults={GenerationKind.SECURITY_AUDIT: "No auth on List orders."})

    report = asyncio.run(audit_collection(store, generator, "c1"))

    assert report.kind is GenerationKind.SECURITY_AUDIT
    assert report.collection_name == "Shop"
    assert report.text == "No auth on List orders."
    kind, facts = generator.calls[0]
    assert kind is GenerationKind.SECURITY_AUDIT
    assert "- Path: /Orders/List orders" in facts["summary"]


def test_analyze_collection_uses_endpoint_summary():
    store = FakeStore(collection=_tree().to_payload()["collection"])
    generator = ScriptedGenerator(defaults={GenerationKind.COLLECTION_ANALYSIS: "An order API."})

    report = asyncio.run(analyze_collection(store, generator, "c1"))

    assert report.text == "An order API."
    assert "(Body keys: sku, qty)" in generator.calls[0][1]["summary"]
