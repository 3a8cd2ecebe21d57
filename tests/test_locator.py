import asyncio
from datetime import datetime

import pytest

from reqforge.errors import NotFound, UnsupportedOperation
from reqforge.generator import GenerationKind
from reqforge.locator import PatchStrategy, generate_test_script, inject_test_script, locate, persist_request
from reqforge.models import CollectionTree, RequestNode, parse_item

from fakes import FakeStore, ScriptedGenerator, folder_item, request_item

NOON = datetime(2024, 5, 1, 12, 0, 0)


def _collection():
    deep = request_item("Deep", "POST", id="r-deep")
    deep["uid"] = "123-r-deep"
    return {
        "info": {"_postman_id": "c1", "name": "Shop"},
        "item": [
            folder_item("A", folder_item("B", folder_item("C", deep))),
            request_item("Top", id="r-top"),
        ],
    }


def _with_tests(*lines):
    item = request_item("Login", "POST", id="r1")
    item["event"] = [
        {"listen": "prerequest", "script": {"exec": ["pm.variables.set('t', 1);"]}},
        {"listen": "test", "script": {"exec": list(lines)}},
    ]
    return parse_item(item)


def test_locate_finds_nodes_three_folders_deep():
    tree = CollectionTree.from_source(_collection())

    found = locate(tree.children, "r-deep")
    assert isinstance(found, RequestNode)
    assert found.name == "Deep"
    assert locate(tree.children, "123-r-deep") is found
    assert locate(tree.children, "src-B").name == "B"


def test_locate_returns_none_when_absent():
    tree = CollectionTree.from_source(_collection())
    assert locate(tree.children, "nope") is None
    assert locate([], "r-top") is None


def test_inject_puts_new_script_first_and_keeps_old():
    node = _with_tests("OLD")

    updated = inject_test_script(node, "NEW", now=NOON)

    lines = updated.event_lines("test")
    assert len(lines) == 2
    assert lines[0] == "// AI-Generated Test (12:00:00)\nNEW\n"
    assert lines[1] == "OLD"


def test_inject_twice_puts_second_before_first():
    node = _with_tests()

    once = inject_test_script(node, "FIRST", now=NOON)
    twice = inject_test_script(once, "SECOND", now=NOON)

    assert "SECOND" in twice.event_lines("test")[0]
    assert "FIRST" in twice.event_lines("test")[1]


def test_inject_creates_test_event_when_missing():
    node = parse_item(request_item("Plain", id="p1"))

    updated = inject_test_script(node, "NEW", now=NOON)

    assert [e.listen for e in updated.events] == ["test"]
    assert node.events is None


def test_inject_leaves_input_and_other_fields_untouched():
    node = _with_tests("OLD")
    before = node.model_dump()

    updated = inject_test_script(node, "NEW", now=NOON)

    assert node.model_dump() == before
    assert updated.event_lines("prerequest") == ["pm.variables.set('t', 1);"]
    assert updated.model_dump(exclude={"events"}) == node.model_dump(exclude={"events"})


def test_single_strategy_sends_events_patch():
    store = FakeStore()
    tree = CollectionTree(id="c1", name="Shop", children=[_with_tests("OLD")])
    node = inject_test_script(tree.children[0], "NEW", now=NOON)

    asyncio.run(persist_request(store, "c1", tree, node, PatchStrategy.SINGLE))

    collection_id, request_id, patch = store.updates[0]
    assert (collection_id, request_id) == ("c1", "r1")
    test_event = next(e for e in patch["events"] if e["listen"] == "test")
    assert test_event["script"]["exec"][1] == "OLD"
    assert store.replaced == []


def test_single_strategy_does_not_fall_back():
    store = FakeStore(single_update=False)
    tree = CollectionTree(id="c1", name="Shop", children=[_with_tests("OLD")])

    with pytest.raises(UnsupportedOperation):
        asyncio.run(persist_request(store, "c1", tree, tree.children[0], PatchStrategy.SINGLE))
    assert store.replaced == []


def test_auto_strategy_falls_back_to_whole_tree():
    store = FakeStore(single_update=False)
    source = CollectionTree.from_source(_collection())
    node = inject_test_script(locate(source.children, "r-deep"), "NEW", now=NOON)

    asyncio.run(persist_request(store, "c1", source, node, PatchStrategy.AUTO))

    collection_id, replaced = store.replaced[0]
    assert collection_id == "c1"
    assert locate(replaced.children, "r-deep").event_lines("test")[0].endswith("NEW\n")
    assert locate(source.children, "r-deep").events is None
    assert locate(replaced.children, "r-top").name == "Top"


def test_generate_test_script_end_to_end():
    store = FakeStore(collection=_collection())
    generator = ScriptedGenerator({(GenerationKind.TEST_SCRIPT, "Deep"): "```javascript\npm.test('created', () => {});\n```"})

    updated = asyncio.run(generate_test_script(store, generator, "c1", "r-deep", PatchStrategy.SINGLE))

    assert updated.name == "Deep"
    assert updated.event_lines("test")[0].endswith("pm.test('created', () => {});\n")
    assert store.updates[0][1] == "r-deep"


def test_generate_test_script_rejects_unknown_or_folder_ids():
    store = FakeStore(collection=_collection())

    with pytest.raises(NotFound, match="Request not found in collection."):
        asyncio.run(generate_test_script(store, ScriptedGenerator(), "c1", "missing"))
    with pytest.raises(NotFound):
        asyncio.run(generate_test_script(store, ScriptedGenerator(), "c1", "src-A"))
    assert store.updates == [] and store.replaced == []


def _scripted(name, id, *events):
    item = request_item(name, id=id)
    item["event"] = list(events)
    return item


def test_inject_keeps_event_and_script_fields():
    node = parse_item(_scripted(
        "Login", "r1",
        {"listen": "prerequest", "disabled": True,
         "script": {"id": "pre-1", "type": "text/javascript", "exec": ["setup();"], "packages": {}}},
        {"listen": "test", "script": {"id": "t-1", "src": {"path": "tests.js"}, "exec": "OLD"}},
        {"listen": "test", "script": {"id": "t-2", "exec": ["SECOND"]}},
    ))

    sent = inject_test_script(node, "NEW", now=NOON).to_item()["event"]

    assert sent[0] == {"listen": "prerequest", "disabled": True,
                       "script": {"id": "pre-1", "type": "text/javascript", "exec": ["setup();"], "packages": {}}}
    assert sent[1]["script"]["id"] == "t-1"
    assert sent[1]["script"]["src"] == {"path": "tests.js"}
    assert sent[1]["script"]["exec"] == ["// AI-Generated Test (12:00:00)\nNEW\n", "OLD"]
    assert sent[2] == {"listen": "test", "script": {"id": "t-2", "exec": ["SECOND"]}}


def test_whole_tree_fallback_resends_other_requests_unchanged():
    sibling_events = [{"listen": "test", "disabled": True,
                       "script": {"id": "keep-me", "type": "text/javascript", "exec": ["a"], "packages": {}}}]
    collection = {
        "info": {"_postman_id": "c1", "name": "Shop"},
        "item": [_scripted("Target", "r1"), _scripted("Sibling", "r2", *sibling_events)],
    }
    store = FakeStore(collection=collection, single_update=False)

    asyncio.run(generate_test_script(store, ScriptedGenerator(), "c1", "r1", PatchStrategy.AUTO))

    _, replaced = store.replaced[0]
    assert locate(replaced.children, "r2").to_item()["event"] == sibling_events
    assert locate(replaced.children, "r1").to_item()["event"][0]["listen"] == "test"
