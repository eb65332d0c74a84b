import json
import logging

import pytest

from assettree.manager import SELECTED_ID_STORAGE_KEY, TREE_DATA_STORAGE_KEY, TreeManager
from assettree.models import DatapointInput, Label, NodeType, TreeNode, dump_forest
from assettree.operations import iter_nodes
from assettree.storage.base import MemoryStorage


def seed(storage, forest, selected=None):
    storage.set_item(TREE_DATA_STORAGE_KEY, json.dumps(dump_forest(forest)))
    if selected is not None:
        storage.set_item(SELECTED_ID_STORAGE_KEY, json.dumps(selected))


def stored_forest(storage):
    return json.loads(storage.get_item(TREE_DATA_STORAGE_KEY))


def ids(nodes):
    return [n.id for n in nodes]


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def plant():
    """
    f1 Plant/
    ├── f2 Line/
    │   └── a1 Pump [asset]
    │       ├── d1 Temp
    │       └── d2 Flow
    └── f3 Spare/
    f4 Office/
    """
    return [
        TreeNode(id="f1", name="Plant", type="folder",
                 labels=[Label(key="site", value="Berlin")], children=[
            TreeNode(id="f2", name="Line", type="folder", children=[
                TreeNode(id="a1", name="Pump", type="asset", children=[
                    TreeNode(id="d1", name="Temp", type="datapoint",
                             labels=[Label(key="unit", value="C")]),
                    TreeNode(id="d2", name="Flow", type="datapoint"),
                ]),
            ]),
            TreeNode(id="f3", name="Spare", type="folder", children=[]),
        ]),
        TreeNode(id="f4", name="Office", type="folder", children=[]),
    ]


@pytest.fixture
def manager(storage, plant):
    seed(storage, plant)
    return TreeManager(storage)


# --- loading & selection ---

def test_empty_storage_starts_empty(storage):
    manager = TreeManager(storage)
    assert manager.forest == []
    assert manager.selected_id is None
    assert manager.selected_node is None


def test_load_selects_first_root_when_nothing_stored(manager):
    assert manager.selected_id == "f1"


def test_load_keeps_stored_selection(storage, plant):
    seed(storage, plant, selected="a1")
    manager = TreeManager(storage)
    assert manager.selected_id == "a1"
    assert manager.selected_node.name == "Pump"


def test_load_replaces_dangling_selection(storage, plant):
    seed(storage, plant, selected="gone")
    manager = TreeManager(storage)
    assert manager.selected_id == "f1"
    assert json.loads(storage.get_item(SELECTED_ID_STORAGE_KEY)) == "f1"


def test_corrupt_tree_loads_empty(storage):
    storage.set_item(TREE_DATA_STORAGE_KEY, "[{\"id\": 1")
    storage.set_item(SELECTED_ID_STORAGE_KEY, "42")
    manager = TreeManager(storage)
    assert manager.forest == []
    assert manager.selected_id is None


def test_navigate(manager):
    assert manager.navigate("d2")
    assert manager.selected_id == "d2"
    assert not manager.navigate("ghost")
    assert manager.selected_id == "d2"


# --- create ---

def test_create_folder_on_empty_forest(storage):
    manager = TreeManager(storage)
    new_id = manager.create_folder()
    assert ids(manager.forest) == [new_id]
    assert manager.forest[0].name == "New Node"
    assert manager.selected_id == new_id
    assert stored_forest(storage)[0]["id"] == new_id


def test_create_folder_inside_selected_folder(manager):
    manager.select("f1")
    new_id = manager.create_folder()
    assert ids(manager.find("f1").children) == [new_id, "f2", "f3"]
    assert manager.selected_id == "f1"


def test_create_folder_requires_selected_folder(manager):
    manager.select("a1")
    before = manager.forest
    assert manager.create_folder() is None
    assert manager.forest == before


def test_create_asset_scenario(storage):
    seed(storage, [TreeNode(id="f1", name="Root", type="folder", children=[])])
    manager = TreeManager(storage)
    asset_id = manager.create_asset("f1", "Pump A", [])
    children = manager.find("f1").children
    assert len(children) == 1
    asset = children[0]
    assert asset.id == asset_id
    assert asset.name == "Pump A"
    assert asset.type == NodeType.ASSET
    assert asset.labels == []
    assert asset.children == []


def test_create_asset_with_datapoints_is_prepended(manager):
    asset_id = manager.create_asset("f2", "Fan", [{"id": "d7", "name": "Speed"},
                                                  DatapointInput(id="d8", name="Power")])
    f2 = manager.find("f2")
    assert ids(f2.children) == [asset_id, "a1"]
    assert ids(f2.children[0].children) == ["d7", "d8"]
    assert all(c.type == NodeType.DATAPOINT for c in f2.children[0].children)


def test_create_asset_only_in_folders(manager):
    before = manager.forest
    assert manager.create_asset("a1", "Nested", []) is None
    assert manager.create_asset("ghost", "Lost", []) is None
    assert manager.forest == before


def test_create_asset_rejects_taken_datapoint_ids(manager, caplog):
    before = manager.forest
    with caplog.at_level(logging.DEBUG, logger="assettree.manager"):
        assert manager.create_asset("f3", "Copy", [{"id": "d1", "name": "Temp"}]) is None
    assert manager.create_asset("f3", "Clash", [{"id": "f4", "name": "Office"}]) is None
    assert manager.forest == before
    assert "Datapoint id 'd1' is already in use" in caplog.text


def test_create_asset_rejects_repeated_ids_in_batch(manager):
    before = manager.forest
    assert manager.create_asset("f3", "Twin", [{"id": "d7", "name": "A"},
                                               {"id": "d7", "name": "B"}]) is None
    assert manager.forest == before


# --- rename & labels ---

def test_rename(manager, storage):
    assert manager.rename("d2", "Flow rate")
    assert manager.find("d2").name == "Flow rate"
    assert not manager.rename("ghost", "x")


def test_rename_does_not_mutate_old_snapshot(manager):
    snapshot = manager.forest
    manager.rename("f1", "Factory")
    assert snapshot[0].name == "Plant"
    assert manager.forest[0].name == "Factory"


def test_update_labels_replaces_wholesale(manager):
    manager.update_labels("f1", [{"key": "owner", "value": "ops"}])
    assert manager.find("f1").labels == [Label(key="owner", value="ops")]
    manager.update_labels("f1", [])
    assert manager.find("f1").labels == []


def test_inherited_labels_and_path(manager):
    inherited = manager.inherited_labels("d1")
    assert [(item.id, labels) for item, labels in inherited] == [
        ("f1", [Label(key="site", value="Berlin")]),
    ]
    assert manager.path_string("d1") == "Plant/Line/Pump/Temp"
    assert manager.path_string("ghost") == ""


def test_filtered(manager):
    result = manager.filtered("temp")
    assert [n.id for n in iter_nodes(result)] == ["f1", "f2", "a1", "d1"]
    assert manager.filtered("") is manager.forest


# --- datapoints ---

def test_manage_datapoints_reorders_updates_first(manager):
    assert manager.manage_datapoints("a1", {"id": "d2", "name": "Pressure"})
    children = manager.find("a1").children
    assert [(c.id, c.name) for c in children] == [("d2", "Pressure"), ("d1", "Temp")]


def test_manage_datapoints_updating_first_child(manager):
    manager.manage_datapoints("a1", DatapointInput(id="d1", name="Pressure"))
    children = manager.find("a1").children
    assert [(c.id, c.name) for c in children] == [("d1", "Pressure"), ("d2", "Flow")]
    # labels survive the update
    assert children[0].labels == [Label(key="unit", value="C")]


def test_manage_datapoints_inserts_new(manager):
    manager.manage_datapoints("a1", [{"id": "d9", "name": "Vibration"},
                                     {"id": "d2", "name": "Flow"}])
    assert ids(manager.find("a1").children) == ["d9", "d2", "d1"]


def test_manage_datapoints_ignores_non_assets(manager):
    before = manager.forest
    assert not manager.manage_datapoints("f1", {"id": "d9", "name": "x"})
    assert not manager.manage_datapoints("ghost", {"id": "d9", "name": "x"})
    assert manager.forest == before


def test_manage_datapoints_rejects_ids_used_elsewhere(manager):
    other = manager.create_asset("f3", "Fan", [{"id": "d5", "name": "Speed"}])
    before = manager.forest
    # another asset's datapoint, a folder, and the asset itself
    assert not manager.manage_datapoints("a1", {"id": "d5", "name": "Speed"})
    assert not manager.manage_datapoints(other, {"id": "f1", "name": "Plant"})
    assert not manager.manage_datapoints("a1", {"id": "a1", "name": "Self"})
    assert manager.forest == before


def test_manage_datapoints_rejects_repeated_ids_in_batch(manager):
    before = manager.forest
    assert not manager.manage_datapoints("a1", [{"id": "d9", "name": "x"},
                                                {"id": "d9", "name": "y"}])
    assert not manager.manage_datapoints("a1", [{"id": "d1", "name": "x"},
                                                {"id": "d1", "name": "y"}])
    assert manager.forest == before


def test_add_and_remove_datapoints(manager):
    new_id = manager.add_datapoint("a1", "Noise")
    assert ids(manager.find("a1").children) == [new_id, "d1", "d2"]
    assert manager.add_datapoint("f1", "Nope") is None

    assert manager.remove_datapoints("a1", [new_id, "d1"])
    assert ids(manager.find("a1").children) == ["d2"]
    assert not manager.remove_datapoints("f2", ["a1"])


# --- delete ---

def test_delete_removes_subtree(manager):
    manager.delete(["f2"])
    for node_id in ["f2", "a1", "d1", "d2"]:
        assert manager.find(node_id) is None
    assert manager.find("f3") is not None


def test_delete_clears_dangling_selection(manager):
    manager.select("d1")
    manager.delete(["a1"])
    assert manager.selected_id is None


def test_delete_nothing_is_noop(manager):
    calls = []
    manager.subscribe(calls.append)
    manager.delete([])
    assert calls == []


# --- move ---

def test_move_into_folder(manager):
    assert manager.move(["a1"], "f3", 0)
    assert ids(manager.find("f3").children) == ["a1"]
    assert manager.find("f2").children == []
    assert manager.selected_id == "a1"


def test_move_batch_keeps_block_contiguous(manager):
    assert manager.move(["f4", "f3"], "f2", 1)
    # removed in tree order, inserted as one block
    assert ids(manager.find("f2").children) == ["a1", "f3", "f4"]
    assert ids(manager.forest) == ["f1"]
    assert manager.selected_id == "f4"


def test_move_folder_to_root(manager):
    assert manager.move(["f3"], None, 0)
    assert ids(manager.forest) == ["f3", "f1", "f4"]


def test_move_asset_to_root_rejected(manager):
    before = manager.forest
    manager.select("f4")
    assert not manager.move(["a1"], None, 0)
    assert manager.forest == before
    assert manager.selected_id == "f4"


def test_move_batch_with_one_asset_to_root_rejected(manager):
    before = manager.forest
    assert not manager.move(["f3", "a1"], None, 0)
    assert manager.forest == before


def test_move_into_asset_rejected(manager):
    manager.create_asset("f3", "Other", [])
    before = manager.forest
    assert not manager.move(["f4"], "a1", 0)
    assert not manager.move(["d1"], manager.find("f3").children[0].id, 0)
    assert manager.forest == before


def test_move_datapoint_out_of_asset_rejected(manager):
    before = manager.forest
    assert not manager.move(["d1"], "f3", 0)
    assert not manager.move(["d1"], None, 0)
    assert manager.forest == before


def test_move_into_own_subtree_rejected(manager):
    before = manager.forest
    assert not manager.move(["f1"], "f2", 0)
    assert not manager.move(["f2"], "f2", 0)
    assert manager.forest == before


def test_move_unknown_ids_rejected(manager):
    before = manager.forest
    assert not manager.move(["ghost"], "f3", 0)
    assert not manager.move(["f3"], "ghost", 0)
    assert not manager.move([], "f3", 0)
    assert manager.forest == before


def test_move_never_breaks_containment(manager):
    attempts = [
        (["a1"], None), (["a1"], "a1"), (["f2"], "a1"), (["d1"], None),
        (["d2"], "f4"), (["f2"], "f4"), (["a1"], "f4"), (["f4"], "f3"),
    ]
    for drag_ids, parent_id in attempts:
        manager.move(drag_ids, parent_id, 0)
        for root in manager.forest:
            assert root.type == NodeType.FOLDER
        for node in iter_nodes(manager.forest):
            for child in node.children or []:
                assert NodeType(node.type).can_contain(child.type)


def test_ids_stay_unique_across_commands(manager):
    manager.select("f1")
    manager.create_folder()
    manager.create_folder()
    manager.create_asset("f3", "A", [{"id": "dx", "name": "X"}])
    manager.add_datapoint("a1", "Y")
    manager.move(["f3"], "f4", 0)
    all_ids = [n.id for n in iter_nodes(manager.forest)]
    assert len(all_ids) == len(set(all_ids))


# --- notification & cross-context sync ---

def test_each_command_notifies_once(manager):
    calls = []
    manager.subscribe(calls.append)
    manager.move(["a1"], "f3", 0)
    assert calls == [manager]


def test_unsubscribe(manager):
    calls = []
    unsubscribe = manager.subscribe(calls.append)
    unsubscribe()
    manager.rename("f1", "X")
    assert calls == []


def test_changes_reach_other_context(storage, plant):
    seed(storage, plant)
    tab_a = TreeManager(storage)
    tab_b = TreeManager(storage.context())
    calls = []
    tab_b.subscribe(calls.append)

    tab_a.rename("a1", "Main pump")
    assert tab_b.find("a1").name == "Main pump"
    assert calls == [tab_b]

    tab_a.select("d2")
    assert tab_b.selected_id == "d2"


def test_external_removal_resets_forest(storage, plant):
    seed(storage, plant)
    tab = TreeManager(storage.context())
    storage.remove_item(TREE_DATA_STORAGE_KEY)
    assert tab.forest == []
    assert tab.selected_node is None


def test_first_external_population_restores_selection(storage, plant):
    tab_b = TreeManager(storage.context())
    assert tab_b.selected_id is None
    seed(storage, plant)
    assert tab_b.selected_id == "f1"


def test_last_write_wins(storage, plant):
    seed(storage, plant)
    tab_a = TreeManager(storage)
    tab_b = TreeManager(storage.context())
    tab_a.rename("f4", "From A")
    tab_b.rename("f4", "From B")
    assert tab_a.find("f4").name == "From B"
    assert stored_forest(storage)[1]["name"] == "From B"


def test_renaming_back_after_other_context_is_written(storage):
    tab_a = TreeManager(storage)
    tab_b = TreeManager(storage.context())
    folder_id = tab_a.create_folder()

    tab_b.rename(folder_id, "B")
    assert tab_a.find(folder_id).name == "B"

    # same forest tab_a wrote first, but storage now holds tab_b's rename
    tab_a.rename(folder_id, "New Node")
    assert tab_b.find(folder_id).name == "New Node"
    assert stored_forest(storage)[0]["name"] == "New Node"


def test_close_detaches(storage, plant):
    seed(storage, plant)
    tab_a = TreeManager(storage)
    tab_b = TreeManager(storage.context())
    tab_b.close()
    tab_a.rename("f4", "Changed")
    assert tab_b.find("f4").name == "Office"
