"""Tests for saving and restoring history checkpoints."""

from tern.checkpoints import CheckpointStore
from tern.content import Message, Part


def _make_history() -> list[Message]:
    return [
        Message.user("list files"),
        Message.model(Part.from_function_call("ls", {"path": "."}, id="c1")),
        Message.user(Part.from_function_response("ls", {"output": "a.txt"}, id="c1")),
        Message.model("There is one file."),
    ]


class TestCheckpointStore:
    def test_save_and_load(self, tmp_path):
        """1. A saved history loads back equal."""
        store = CheckpointStore(tmp_path)
        history = _make_history()
        path = store.save(history, "work")
        assert path.name == "checkpoint-work.json"
        assert store.load("work") == history

    def test_missing_tag_loads_empty(self, tmp_path):
        """2. Unknown tags load as an empty history."""
        assert CheckpointStore(tmp_path).load("nope") == []

    def test_corrupt_file_loads_empty(self, tmp_path):
        """3. A corrupt file is ignored."""
        store = CheckpointStore(tmp_path)
        store.path_for("bad").write_text("{not json")
        assert store.load("bad") == []

    def test_tags_and_delete(self, tmp_path):
        """4. Tags are listed and can be deleted."""
        store = CheckpointStore(tmp_path / "nested")
        assert store.tags() == []
        store.save(_make_history(), "b")
        store.save(_make_history(), "a")
        assert store.tags() == ["a", "b"]
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.tags() == ["b"]

    def test_unsafe_tag_sanitized(self, tmp_path):
        """5. Path separators in tags cannot escape the directory."""
        path = CheckpointStore(tmp_path).path_for("../x")
        assert path.parent == tmp_path
        assert path.name == "checkpoint-.._x.json"
