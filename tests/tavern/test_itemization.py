"""Tests for itemized prompt records."""

from tavern.itemization import Itemization, ItemizationStore


def _record(total):
    return Itemization(sections={"history": total}, total=total)


class TestItemizationStore:
    def test_put_and_get(self):
        store = ItemizationStore()
        store.put(2, 0, _record(5))
        store.put(2, 1, _record(7))
        assert store.get(2).total == 5
        assert store.get(2, 1).total == 7
        assert store.get(3) is None
        assert [r.total for r in store.for_message(2)] == [5, 7]

    def test_delete_message_shifts_later_records(self):
        store = ItemizationStore()
        store.put(1, 0, _record(1))
        store.put(2, 0, _record(2))
        store.put(3, 0, _record(3))

        assert store.delete_message(2) == 1

        assert store.get(1).total == 1
        assert store.get(2).total == 3
        assert store.get(3) is None
        assert len(store) == 2

    def test_delete_variant_shifts_later_variants(self):
        store = ItemizationStore()
        for vid in range(3):
            store.put(4, vid, _record(vid))
        store.put(5, 1, _record(50))

        store.delete_variant(4, 1)

        assert [r.total for r in store.for_message(4)] == [0, 2]
        assert store.get(5, 1).total == 50

    def test_add_accumulates_sections(self):
        record = Itemization()
        record.add("history", 3)
        record.add("history", 4)
        assert record.sections == {"history": 7}


class TestSidecar:
    def test_save_and_load(self, tmp_path):
        path = tmp_path / "chat.itemized.json"
        store = ItemizationStore(path)
        store.put(1, 0, Itemization(sections={"story": 10}, total=10, budget=100, backend="openai", model="m"))
        store.save()

        loaded = ItemizationStore(path)
        loaded.load()
        assert loaded.get(1).to_dict() == store.get(1).to_dict()
        assert not list(tmp_path.glob("*.tmp"))

    def test_no_path_is_a_noop(self, tmp_path):
        store = ItemizationStore()
        store.put(0, 0, _record(1))
        store.save()
        store.load()
        assert len(store) == 1
        assert not list(tmp_path.iterdir())

    def test_missing_file_leaves_store_empty(self, tmp_path):
        store = ItemizationStore(tmp_path / "missing.json")
        store.load()
        assert len(store) == 0
