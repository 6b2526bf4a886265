"""Unit tests for record stores."""

import json

import pytest
from unittest.mock import MagicMock

from volumania.errors import NotFound
from volumania.models import PolicyStatus
from volumania.store import MemoryRecordStore, RedisRecordStore


class TestMemoryRecordStore:
    """Tests for the in-process record store."""

    def test_put_and_get(self, make_policy):
        """Test storing and fetching a policy."""
        store = MemoryRecordStore()
        policy = make_policy()
        store.put(policy)

        fetched = store.get(policy.id)
        assert fetched == policy
        assert store.exists(policy.id)

    def test_get_missing(self):
        """Test that unknown ids raise NotFound."""
        store = MemoryRecordStore()

        with pytest.raises(NotFound):
            store.get("nope")
        assert store.exists("nope") is False

    def test_returns_copies(self, make_policy):
        """Test that callers cannot mutate stored records."""
        store = MemoryRecordStore()
        policy = make_policy()
        store.put(policy)

        fetched = store.get(policy.id)
        fetched.status = PolicyStatus.ERROR

        assert store.get(policy.id).status == PolicyStatus.ACTIVE

    def test_put_replaces_in_place(self, make_policy):
        """Test that updating a record keeps its insertion position."""
        store = MemoryRecordStore()
        first = make_policy(pvc_name="a")
        second = make_policy(pvc_name="b")
        store.put(first)
        store.put(second)
        store.put(first.model_copy(update={"status": PolicyStatus.INACTIVE}))

        listed = store.list()
        assert [p.pvc_name for p in listed] == ["a", "b"]
        assert listed[0].status == PolicyStatus.INACTIVE

    def test_delete(self, make_policy):
        """Test deleting present and absent records."""
        store = MemoryRecordStore()
        policy = make_policy()
        store.put(policy)

        assert store.delete(policy.id) is True
        assert store.delete(policy.id) is False
        assert store.list() == []

    def test_find_by_target(self, make_policy):
        """Test lookup by target PVC."""
        store = MemoryRecordStore()
        policy = make_policy(pvc_name="logs")
        store.put(make_policy(pvc_name="data"))
        store.put(policy)

        assert store.find_by_target("default", "logs").id == policy.id
        with pytest.raises(NotFound):
            store.find_by_target("other", "logs")


class TestRedisRecordStore:
    """Tests for the Redis record store."""

    def _store(self):
        client = MagicMock()
        return RedisRecordStore(prefix="test", client=client), client

    def test_put_new_record(self, make_policy):
        """Test that a new record gets an insertion sequence."""
        store, client = self._store()
        client.hexists.return_value = False
        client.incr.return_value = 7
        pipe = client.pipeline.return_value
        policy = make_policy()

        store.put(policy)

        client.incr.assert_called_once_with("test:policy-seq")
        client.pipeline.assert_called_once_with(transaction=True)
        key, field, record = pipe.hset.call_args[0]
        assert (key, field) == ("test:policies", policy.id)
        assert json.loads(record)["pvcName"] == "data"
        pipe.zadd.assert_called_once_with("test:policy-order", {policy.id: 7})
        pipe.execute.assert_called_once()

    def test_put_existing_record(self, make_policy):
        """Test that replacing a record keeps its order entry."""
        store, client = self._store()
        client.hexists.return_value = True
        pipe = client.pipeline.return_value

        store.put(make_policy())

        client.incr.assert_not_called()
        pipe.hset.assert_called_once()
        pipe.zadd.assert_not_called()

    def test_get(self, make_policy):
        """Test reading a record back."""
        store, client = self._store()
        policy = make_policy(last_error="boom")
        client.hget.return_value = json.dumps(policy.to_dict())

        fetched = store.get(policy.id)

        client.hget.assert_called_once_with("test:policies", policy.id)
        assert fetched == policy

    def test_get_missing(self):
        """Test that unknown ids raise NotFound."""
        store, client = self._store()
        client.hget.return_value = None

        with pytest.raises(NotFound):
            store.get("nope")

    def test_list_in_order(self, make_policy):
        """Test listing follows the order set and skips dangling ids."""
        store, client = self._store()
        first = make_policy(pvc_name="a")
        second = make_policy(pvc_name="b")
        client.zrange.return_value = [first.id, "dangling", second.id]
        client.hmget.return_value = [
            json.dumps(first.to_dict()),
            None,
            json.dumps(second.to_dict()),
        ]

        listed = store.list()

        client.zrange.assert_called_once_with("test:policy-order", 0, -1)
        assert [p.pvc_name for p in listed] == ["a", "b"]

    def test_list_empty(self):
        """Test listing an empty store."""
        store, client = self._store()
        client.zrange.return_value = []

        assert store.list() == []
        client.hmget.assert_not_called()

    def test_delete(self):
        """Test that deletion removes both keys atomically."""
        store, client = self._store()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [1, 1]

        assert store.delete("abc") is True
        pipe.hdel.assert_called_once_with("test:policies", "abc")
        pipe.zrem.assert_called_once_with("test:policy-order", "abc")

        pipe.execute.return_value = [0, 0]
        assert store.delete("abc") is False

    def test_close(self):
        """Test closing the client."""
        store, client = self._store()
        store.close()
        client.close.assert_called_once()
