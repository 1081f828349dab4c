"""tests for the sqlite-backed store."""

import asyncio

import pytest

from warren.core.errors import StoreUnavailableError
from warren.core.store import COLLECTIONS, SCHEMA_VERSION, Store, get_default_db_path


def node_record(canvas_id, node_id, **extra):
    record = {"canvasId": canvas_id, "id": node_id, "type": "default", "createdAt": 1, "updatedAt": 1}
    record.update(extra)
    return record


class TestOpen:
    """tests for open_or_create / close."""

    @pytest.mark.asyncio
    async def test_creates_file(self, temp_dir):
        """opening a new path creates the database."""
        path = temp_dir / "nested" / "warren.db"
        async with Store(path) as store:
            assert store.is_open
        assert path.exists()

    @pytest.mark.asyncio
    async def test_idempotent(self, store):
        """opening twice is harmless."""
        await store.open_or_create()
        assert store.is_open

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, temp_dir):
        """records are durable across connections."""
        path = temp_dir / "warren.db"
        async with Store(path) as store:
            async with store.transaction("settings") as tx:
                await tx.settings.put({"key": "k", "value": 1, "updatedAt": 1})
        async with Store(path) as store:
            async with store.transaction("settings", mode="r") as tx:
                assert (await tx.settings.get("k"))["value"] == 1

    @pytest.mark.asyncio
    async def test_newer_schema_refused(self, temp_dir):
        """a database from a newer build is unavailable, not clobbered."""
        path = temp_dir / "warren.db"
        async with Store(path, schema_version=SCHEMA_VERSION + 1):
            pass
        with pytest.raises(StoreUnavailableError):
            await Store(path).open_or_create()

    @pytest.mark.asyncio
    async def test_unopenable_path(self, temp_dir):
        """a directory is not a database."""
        with pytest.raises(StoreUnavailableError):
            await Store(temp_dir).open_or_create()

    @pytest.mark.asyncio
    async def test_transaction_requires_open(self):
        """using a closed store fails cleanly."""
        with pytest.raises(StoreUnavailableError):
            async with Store(":memory:").transaction("canvases"):
                pass

    def test_default_path_from_env(self, temp_dir, monkeypatch):
        """WARREN_DB_PATH wins, then WARREN_HOME."""
        monkeypatch.setenv("WARREN_DB_PATH", str(temp_dir / "x.db"))
        assert get_default_db_path() == temp_dir / "x.db"
        monkeypatch.delenv("WARREN_DB_PATH")
        monkeypatch.setenv("WARREN_HOME", str(temp_dir / "home"))
        assert get_default_db_path() == temp_dir / "home" / "warren.db"


class TestCollections:
    """tests for collection operations."""

    @pytest.mark.asyncio
    async def test_put_get_compound_key(self, store):
        """nodes are keyed by canvas and id together."""
        async with store.transaction("nodes") as tx:
            await tx.nodes.put(node_record("c1", "n1", label="one"))
            await tx.nodes.put(node_record("c2", "n1", label="two"))
            assert (await tx.nodes.get(("c1", "n1")))["label"] == "one"
            assert (await tx.nodes.get(("c2", "n1")))["label"] == "two"
            assert await tx.nodes.count() == 2

    @pytest.mark.asyncio
    async def test_put_is_upsert(self, store):
        async with store.transaction("nodes") as tx:
            await tx.nodes.put(node_record("c1", "n1", label="old"))
            await tx.nodes.put(node_record("c1", "n1", label="new"))
            assert await tx.nodes.count() == 1
            assert (await tx.nodes.get(("c1", "n1")))["label"] == "new"

    @pytest.mark.asyncio
    async def test_where_keeps_insertion_order(self, store):
        """equality queries return records in the order they were written."""
        async with store.transaction("nodes") as tx:
            await tx.nodes.bulk_put([node_record("c1", i) for i in ("z", "a", "m")])
            await tx.nodes.put(node_record("c2", "b"))
            records = await tx.nodes.where("canvasId", "c1")
        assert [r["id"] for r in records] == ["z", "a", "m"]

    @pytest.mark.asyncio
    async def test_where_compound_index(self, store):
        async with store.transaction("edges") as tx:
            await tx.edges.bulk_put([
                {"canvasId": "c1", "id": "e1", "source": "a", "target": "b"},
                {"canvasId": "c1", "id": "e2", "source": "b", "target": "c"},
                {"canvasId": "c2", "id": "e1", "source": "a", "target": "b"},
            ])
            records = await tx.edges.where(("canvasId", "source"), ("c1", "a"))
        assert [r["id"] for r in records] == ["e1"]
        assert records[0]["canvasId"] == "c1"

    @pytest.mark.asyncio
    async def test_where_undeclared_index(self, store):
        """only declared indexes can be queried."""
        async with store.transaction("nodes", mode="r") as tx:
            with pytest.raises(ValueError):
                await tx.nodes.where("label", "x")

    @pytest.mark.asyncio
    async def test_between(self, store):
        """range query on a single-field index, ordered by it."""
        async with store.transaction("canvases") as tx:
            for i, ts in enumerate([30, 10, 20, 40]):
                await tx.canvases.put({"id": f"c{i}", "name": "n", "createdAt": ts, "updatedAt": ts})
            records = await tx.canvases.between("updatedAt", 10, 30)
        assert [r["updatedAt"] for r in records] == [10, 20, 30]

    @pytest.mark.asyncio
    async def test_all_ordered(self, store):
        async with store.transaction("canvases") as tx:
            await tx.canvases.put({"id": "a", "name": "n", "updatedAt": 1})
            await tx.canvases.put({"id": "b", "name": "n", "updatedAt": 3})
            await tx.canvases.put({"id": "c", "name": "n", "updatedAt": 2})
            records = await tx.canvases.all(order_by="updatedAt", reverse=True)
        assert [r["id"] for r in records] == ["b", "c", "a"]

    @pytest.mark.asyncio
    async def test_delete_and_delete_where(self, store):
        async with store.transaction("nodes") as tx:
            await tx.nodes.bulk_put([node_record("c1", "a"), node_record("c1", "b"), node_record("c2", "a")])
            assert await tx.nodes.delete(("c1", "a"))
            assert not await tx.nodes.delete(("c1", "a"))
            assert await tx.nodes.delete_where("canvasId", "c1") == 1
            assert await tx.nodes.count() == 1

    @pytest.mark.asyncio
    async def test_missing_key_field(self, store):
        """records without their key are refused."""
        async with store.transaction("nodes") as tx:
            with pytest.raises(ValueError):
                await tx.nodes.put({"id": "n1"})

    @pytest.mark.asyncio
    async def test_clear(self, store):
        async with store.transaction("settings") as tx:
            await tx.settings.bulk_put([{"key": "a"}, {"key": "b"}])
            assert await tx.settings.clear() == 2
            assert await tx.settings.all() == []


class TestTransactions:
    """tests for transaction semantics."""

    @pytest.mark.asyncio
    async def test_exception_rolls_back_everything(self, store):
        """a failing body leaves no trace in any collection."""
        with pytest.raises(RuntimeError):
            async with store.transaction("canvases", "nodes") as tx:
                await tx.canvases.put({"id": "c1", "name": "n"})
                await tx.nodes.put(node_record("c1", "n1"))
                raise RuntimeError("boom")

        async with store.transaction("canvases", "nodes", mode="r") as tx:
            assert await tx.canvases.count() == 0
            assert await tx.nodes.count() == 0

    @pytest.mark.asyncio
    async def test_body_exception_unchanged(self, store):
        """the body's own exception propagates as-is."""
        error = KeyError("x")
        with pytest.raises(KeyError) as exc:
            async with store.transaction("settings"):
                raise error
        assert exc.value is error

    @pytest.mark.asyncio
    async def test_out_of_scope_collection(self, store):
        async with store.transaction("canvases") as tx:
            with pytest.raises(ValueError):
                tx.nodes

    @pytest.mark.asyncio
    async def test_read_only_refuses_writes(self, store):
        async with store.transaction("settings", mode="r") as tx:
            with pytest.raises(ValueError):
                await tx.settings.put({"key": "k"})

    @pytest.mark.asyncio
    async def test_nested_joins_outer(self, store):
        """an inner transaction shares the outer one's fate."""
        with pytest.raises(RuntimeError):
            async with store.transaction("canvases", "settings") as outer:
                await outer.settings.put({"key": "a"})
                async with store.transaction("settings") as inner:
                    assert inner is outer
                    await inner.settings.put({"key": "b"})
                raise RuntimeError("boom")

        async with store.transaction("settings", mode="r") as tx:
            assert await tx.settings.count() == 0

    @pytest.mark.asyncio
    async def test_nested_cannot_widen(self, store):
        async with store.transaction("settings"):
            with pytest.raises(ValueError):
                async with store.transaction("nodes"):
                    pass

    @pytest.mark.asyncio
    async def test_concurrent_transactions_serialize(self, store):
        """two tasks never interleave inside transactions."""
        order = []

        async def writer(name):
            async with store.transaction("settings") as tx:
                order.append(f"{name}-start")
                await tx.settings.put({"key": name})
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(writer("a"), writer("b"))
        assert order in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )

    @pytest.mark.asyncio
    async def test_unknown_collection(self, store):
        with pytest.raises(ValueError):
            async with store.transaction("widgets"):
                pass

    @pytest.mark.asyncio
    async def test_info(self, store):
        """info reports counts for every collection."""
        async with store.transaction("settings") as tx:
            await tx.settings.put({"key": "k"})
        info = await store.info()
        assert info["version"] == SCHEMA_VERSION
        assert set(info["tables"]) == set(COLLECTIONS)
        assert info["tables"]["settings"] == 1
