import tempfile
from pathlib import Path

import pytest

from tutor_core.domain.exceptions import BusinessError
from tutor_core.infrastructure.storage.json_store import JsonKeyValueStore, MemoryKeyValueStore
from tutor_core.memory.system import MemorySystem


def test_json_store_put_get_remove():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonKeyValueStore(root=root)
        store.put("tutor_chat", '[{"a": 1}]')

        assert store.get("tutor_chat") == '[{"a": 1}]'
        assert (root / "kv" / "tutor_chat.json").exists()
        assert not (root / "kv" / "tutor_chat.json.tmp").exists()
        assert store.keys() == ["tutor_chat"]

        store.remove("tutor_chat")
        store.remove("tutor_chat")
        assert store.get("tutor_chat") is None


def test_json_store_rejects_unsafe_keys():
    with tempfile.TemporaryDirectory() as d:
        store = JsonKeyValueStore(root=d)
        with pytest.raises(BusinessError) as exc:
            store.put("../escape", "x")
        assert exc.value.code == "STORE_INVALID_KEY"


def test_memory_system_persists_through_json_store():
    with tempfile.TemporaryDirectory() as d:
        memory = MemorySystem(JsonKeyValueStore(root=d))
        memory.append_turn("What is entropy?", "A measure of disorder.", ["general_conversation"])
        memory.save_to_storage()

        restored = MemorySystem(JsonKeyValueStore(root=d))
        restored.load_from_storage()

        assert [t.content for t in restored.chat_history] == ["What is entropy?", "A measure of disorder."]
        assert restored.chat_history[1].related_tools == ["general_conversation"]


def test_memory_store_keys():
    store = MemoryKeyValueStore({"b": "2"})
    store.put("a", "1")
    assert store.keys() == ["a", "b"]
