from __future__ import annotations

import json
from pathlib import Path

import pytest

from phonebackend.exceptions import InvalidBodyError, InvalidPathError, PathConflictError
from phonebackend.store import CoercionPolicy, PathStore, split_path


@pytest.fixture
def db_file(tmp_path: Path) -> Path:
    return tmp_path / "data" / "database.json"


def test_split_path_ignores_empty_segments() -> None:
    assert split_path("/items//abc/") == ["items", "abc"]
    assert split_path("") == []
    assert split_path("/") == []


def test_write_then_read(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("/users/alice/profile", {"age": 30})
    store.set("counter", 5)

    assert store.get("/users/alice/profile") == {"age": 30}
    assert store.get("users/alice") == {"profile": {"age": 30}}
    assert store.get("counter") == 5


def test_unwritten_path_is_absent_and_delete_is_noop(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("items/1", {"name": "x"})

    assert store.get("items/2") is None
    assert store.get("missing/deep/path") is None
    assert store.delete("missing/deep/path") is False
    assert store.delete("items/2") is False
    assert store.snapshot() == {"items": {"1": {"name": "x"}}}


def test_get_does_not_descend_into_scalars(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("name", "alice")
    assert store.get("name/first") is None


def test_empty_path_reads_whole_tree(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("a", 1)
    assert store.get("/") == {"a": 1}


def test_root_path_cannot_be_written_or_deleted(db_file: Path) -> None:
    store = PathStore(db_file)
    with pytest.raises(InvalidPathError):
        store.set("/", {"a": 1})
    with pytest.raises(InvalidPathError):
        store.delete("")


def test_merge_is_right_biased_shallow_union(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("doc", {"keep": True, "nested": {"x": 1}})

    store.merge("doc", {"a": 1})
    merged = store.merge("doc", {"a": 2, "b": 3, "nested": {"y": 2}})

    assert merged == {"keep": True, "a": 2, "b": 3, "nested": {"y": 2}}
    assert store.get("doc") == merged


def test_merge_missing_path_returns_none(db_file: Path) -> None:
    store = PathStore(db_file)
    assert store.merge("nope", {"a": 1}) is None
    assert not db_file.exists()


def test_merge_rejects_scalar_target_and_non_object_patch(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("scalar", 3)
    store.set("doc", {"a": 1})

    with pytest.raises(PathConflictError):
        store.merge("scalar", {"a": 1})
    with pytest.raises(InvalidBodyError):
        store.merge("doc", ["not", "an", "object"])
    assert store.get("doc") == {"a": 1}


def test_delete_after_set_makes_path_absent(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("items/1", {"name": "x"})

    assert store.delete("items/1") is True
    assert store.get("items/1") is None
    assert store.get("items") == {}
    assert store.delete("items/1") is False


def test_overwrite_policy_replaces_scalar_intermediate(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("a", "scalar")
    store.set("a/b", 1)

    assert store.get("a") == {"b": 1}


def test_reject_policy_refuses_write_through_scalar(db_file: Path) -> None:
    store = PathStore(db_file, coercion=CoercionPolicy.REJECT)
    store.set("a", "scalar")

    with pytest.raises(PathConflictError):
        store.set("a/b/c", 1)

    assert store.get("a") == "scalar"
    # Missing intermediates are still created.
    store.set("x/y/z", 1)
    assert store.get("x") == {"y": {"z": 1}}


def test_values_are_copied_on_write_and_read(db_file: Path) -> None:
    store = PathStore(db_file)
    value = {"tags": ["a"]}
    store.set("doc", value)
    value["tags"].append("b")

    read = store.get("doc")
    read["tags"].append("c")
    snapshot = store.snapshot()
    snapshot["doc"]["tags"].append("d")

    assert store.get("doc") == {"tags": ["a"]}


def test_persisted_file_round_trip(db_file: Path) -> None:
    store = PathStore(db_file)
    pairs = {
        "users/alice": {"age": 30},
        "users/bob/pets": ["cat", "dog"],
        "settings/theme": "dark",
        "settings/volume": 0.5,
        "flags/beta": False,
    }
    for path, value in pairs.items():
        store.set(path, value)

    reloaded = PathStore(db_file)
    assert reloaded.snapshot() == store.snapshot()


def test_file_is_indented_json(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("a/b", 1)

    text = db_file.read_text(encoding="utf-8")
    assert json.loads(text) == {"a": {"b": 1}}
    assert '\n  "a"' in text
    assert not db_file.with_name("database.json.tmp").exists()


def test_corrupted_file_loads_empty(db_file: Path, caplog: pytest.LogCaptureFixture) -> None:
    db_file.parent.mkdir(parents=True)
    db_file.write_text("{not json", encoding="utf-8")

    store = PathStore(db_file)

    assert store.snapshot() == {}
    assert "unreadable" in caplog.text


def test_non_object_file_loads_empty(db_file: Path) -> None:
    db_file.parent.mkdir(parents=True)
    db_file.write_text("[1, 2, 3]", encoding="utf-8")

    assert PathStore(db_file).snapshot() == {}


def test_reload_picks_up_external_changes(db_file: Path) -> None:
    store = PathStore(db_file)
    store.set("a", 1)
    PathStore(db_file).set("b", 2)

    store.reload()
    assert store.snapshot() == {"a": 1, "b": 2}


def _fail_replace(*_args: object) -> None:
    raise OSError("disk full")


def test_failed_write_leaves_tree_and_file_unchanged(db_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = PathStore(db_file)
    store.set("items/1", {"n": 1})
    monkeypatch.setattr("phonebackend.store.os.replace", _fail_replace)

    with pytest.raises(OSError, match="disk full"):
        store.set("items/2", {"n": 2})
    with pytest.raises(OSError, match="disk full"):
        store.delete("items/1")

    assert store.get("items/2") is None
    assert store.get("items/1") == {"n": 1}
    assert json.loads(db_file.read_text(encoding="utf-8")) == {"items": {"1": {"n": 1}}}
    assert not db_file.with_name("database.json.tmp").exists()


def test_failed_write_is_not_persisted_by_next_write(db_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = PathStore(db_file)
    with monkeypatch.context() as patch:
        patch.setattr("phonebackend.store.os.replace", _fail_replace)
        with pytest.raises(OSError):
            store.set("lost", 1)

    store.set("kept", 2)

    assert PathStore(db_file).snapshot() == {"kept": 2}
