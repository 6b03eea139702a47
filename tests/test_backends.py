"""Tests for storage backends, backend selection and the partition store."""

from unittest.mock import patch

import pytest

from conftest import make_settings
from pwms.storage import (
    ChangeLog,
    EntityMirrorStore,
    MemoryBackend,
    PartitionStore,
    SQLiteBackend,
    StorageBackend,
    SupabaseBackend,
    select_backend,
)
from pwms.types import BackendUnavailable, ChangeRecord


class FlakyBackend(StorageBackend):
    """Durable backend whose calls raise while ``down`` is set."""

    name = "flaky"
    durable = True

    def __init__(self):
        self.data = {}
        self.down = False

    async def get(self, key):
        if self.down:
            raise BackendUnavailable(self.name, "offline")
        return self.data.get(key)

    async def set(self, key, value):
        if self.down:
            raise BackendUnavailable(self.name, "offline")
        self.data[key] = value
        return True


class TestMemoryBackend:
    @pytest.mark.asyncio
    async def test_get_missing_partition_returns_none(self):
        assert await MemoryBackend().get("quality") is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        backend = MemoryBackend()
        value = {"B-1": {"status": "ok"}}
        await backend.set("quality", value)

        value["B-1"]["status"] = "mutated"
        stored = await backend.get("quality")
        assert stored["B-1"]["status"] == "ok"

        stored["B-1"]["status"] = "mutated again"
        assert (await backend.get("quality"))["B-1"]["status"] == "ok"

    @pytest.mark.asyncio
    async def test_unknown_partition_rejected(self):
        with pytest.raises(ValueError):
            await MemoryBackend().set("materials", {})


class TestSQLiteBackend:
    @pytest.mark.asyncio
    async def test_roundtrip_survives_new_instance(self, tmp_path):
        path = tmp_path / "kv" / "storage.db"
        await SQLiteBackend(path).set("shipment", {"B-1": {"shipped": True}})

        reopened = SQLiteBackend(path)
        assert await reopened.get("shipment") == {"B-1": {"shipped": True}}
        assert await reopened.get("quality") is None

    @pytest.mark.asyncio
    async def test_set_overwrites(self, tmp_path):
        backend = SQLiteBackend(tmp_path / "storage.db")
        await backend.set("changelog", [{"id": "1"}])
        await backend.set("changelog", [{"id": "2"}])
        assert await backend.get("changelog") == [{"id": "2"}]

    def test_unopenable_path_raises_backend_unavailable(self, tmp_path):
        # A directory cannot be opened as a database file
        with pytest.raises(BackendUnavailable):
            SQLiteBackend(tmp_path)


class TestSupabaseBackend:
    @pytest.mark.asyncio
    async def test_quality_map_upserts_one_row_per_batch(self, fake_supabase):
        backend = SupabaseBackend(fake_supabase)
        await backend.set(
            "quality",
            {
                "B-1": {"status": "passed", "checkedBy": "ana", "checkedDate": "2026-01-01T00:00:00Z"},
                "B-2": {"status": "failed"},
            },
        )

        rows = {row["batch_number"]: row for row in fake_supabase.rows("quality")}
        assert set(rows) == {"B-1", "B-2"}
        assert rows["B-1"]["checked_by"] == "ana"

        quality = await backend.get("quality")
        assert quality["B-1"]["status"] == "passed"
        assert quality["B-1"]["checkedBy"] == "ana"
        assert quality["B-2"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_shipment_defaults_shipped_true(self, fake_supabase):
        backend = SupabaseBackend(fake_supabase)
        await backend.set("shipment", {"B-9": {"shippedBy": "joe"}})

        shipment = (await backend.get("shipment"))["B-9"]
        assert shipment["shipped"] is True
        assert shipment["shippedBy"] == "joe"
        assert shipment["shippedDate"]

    @pytest.mark.asyncio
    async def test_changelog_keeps_insertion_order_and_skips_known_ids(self, fake_supabase):
        backend = SupabaseBackend(fake_supabase)
        first = {"id": "a", "type": "quality", "batchNumber": "B-1", "timestamp": "2026-01-01T00:00:01Z"}
        second = {"id": "b", "type": "quality", "batchNumber": "B-2", "timestamp": "2026-01-01T00:00:02Z"}

        await backend.set("changelog", [first])
        await backend.set("changelog", [first, second])

        assert len(fake_supabase.rows("sync_changes")) == 2
        assert [change["id"] for change in await backend.get("changelog")] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_changelog_trims_outside_newest_capacity(self, fake_supabase):
        backend = SupabaseBackend(fake_supabase, capacity=3)
        changes = [
            {"id": f"c{n}", "type": "quality", "batchNumber": "B-1", "timestamp": f"2026-01-01T00:00:0{n}Z"}
            for n in range(5)
        ]

        for n in range(1, 6):
            await backend.set("changelog", changes[max(0, n - 3) : n])

        assert [row["change_id"] for row in fake_supabase.rows("sync_changes")] == ["c2", "c3", "c4"]

    @pytest.mark.asyncio
    async def test_append_after_failed_read_keeps_durable_history(self, fake_supabase):
        seeded = SupabaseBackend(fake_supabase)
        await seeded.set(
            "changelog",
            [
                {"id": f"c{n}", "type": "quality", "batchNumber": f"B-{n}", "timestamp": f"2026-01-01T00:00:0{n}Z"}
                for n in range(5)
            ],
        )

        # Fresh process: memory secondary is empty and the first read times out
        changelog = ChangeLog(PartitionStore(SupabaseBackend(fake_supabase)))
        fake_supabase.fail_reads = 1
        await changelog.append(
            ChangeRecord(id="new", kind="quality", entity_key="B-9", occurred_at="2026-01-02T00:00:00Z")
        )

        ids = [row["change_id"] for row in fake_supabase.rows("sync_changes")]
        assert ids == ["c0", "c1", "c2", "c3", "c4", "new"]

    @pytest.mark.asyncio
    async def test_stale_map_after_failed_read_does_not_overwrite_newer_rows(self, fake_supabase):
        backend = SupabaseBackend(fake_supabase)
        store = PartitionStore(backend)
        await store.set("quality", {"B-1": {"status": "pending", "updatedAt": "2026-01-01T00:00:00Z"}})

        # Another process records a newer verdict directly in the durable table
        await SupabaseBackend(fake_supabase).set(
            "quality", {"B-1": {"status": "passed", "updatedAt": "2026-01-02T00:00:00Z"}}
        )

        fake_supabase.fail_reads = 1
        mirror = EntityMirrorStore(store)
        await mirror.set_one("quality", "B-2", {"status": "failed", "updatedAt": "2026-01-03T00:00:00Z"})

        rows = {row["batch_number"]: row for row in fake_supabase.rows("quality")}
        assert rows["B-1"]["status"] == "passed"
        assert rows["B-1"]["updated_at"] == "2026-01-02T00:00:00Z"
        assert rows["B-2"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_newer_map_row_replaces_stored_row(self, fake_supabase):
        backend = SupabaseBackend(fake_supabase)
        await backend.set("shipment", {"B-1": {"shippedBy": "joe", "updatedAt": "2026-01-01T00:00:00Z"}})
        await backend.set("shipment", {"B-1": {"shippedBy": "ana", "updatedAt": "2026-01-01T00:00:01Z"}})

        [row] = fake_supabase.rows("shipments")
        assert row["shipped_by"] == "ana"

    @pytest.mark.asyncio
    async def test_errors_surface_as_backend_unavailable(self, fake_supabase):
        backend = SupabaseBackend(fake_supabase)
        fake_supabase.fail = True

        with pytest.raises(BackendUnavailable):
            await backend.get("quality")
        with pytest.raises(BackendUnavailable):
            await backend.set("quality", {"B-1": {"status": "ok"}})

    def test_from_settings_requires_url_and_key(self):
        with pytest.raises(BackendUnavailable):
            SupabaseBackend.from_settings(make_settings(supabase_url="https://x.supabase.co"))


class TestSelectBackend:
    def test_memory_when_nothing_configured(self, caplog):
        backend = select_backend(make_settings())
        assert isinstance(backend, MemoryBackend)
        assert "in-memory storage" in caplog.text

    def test_sqlite_when_storage_path_configured(self, tmp_path):
        backend = select_backend(make_settings(storage_path=str(tmp_path / "kv.db")))
        assert isinstance(backend, SQLiteBackend)

    def test_supabase_preferred_when_configured(self, tmp_path, fake_supabase):
        settings = make_settings(
            supabase_url="https://x.supabase.co",
            supabase_secret_key="secret",
            storage_path=str(tmp_path / "kv.db"),
        )
        with patch("supabase.create_client", return_value=fake_supabase):
            backend = select_backend(settings)
        assert isinstance(backend, SupabaseBackend)

    def test_legacy_service_role_key_accepted(self, fake_supabase):
        settings = make_settings(
            supabase_url="https://x.supabase.co", supabase_service_role_key="legacy"
        )
        with patch("supabase.create_client", return_value=fake_supabase) as create:
            backend = select_backend(settings)
        assert isinstance(backend, SupabaseBackend)
        create.assert_called_once_with("https://x.supabase.co", "legacy")

    def test_failed_supabase_falls_through_to_sqlite(self, tmp_path):
        settings = make_settings(
            supabase_url="https://x.supabase.co",
            supabase_secret_key="secret",
            storage_path=str(tmp_path / "kv.db"),
        )
        with patch("supabase.create_client", side_effect=RuntimeError("bad url")):
            backend = select_backend(settings)
        assert isinstance(backend, SQLiteBackend)

    def test_failed_sqlite_falls_through_to_memory(self, tmp_path):
        backend = select_backend(make_settings(storage_path=str(tmp_path)))
        assert isinstance(backend, MemoryBackend)


class TestPartitionStore:
    @pytest.mark.asyncio
    async def test_memory_secondary_written_when_durable_succeeds(self):
        durable = FlakyBackend()
        store = PartitionStore(durable)

        assert await store.set("quality", {"B-1": {"status": "ok"}}) is True
        assert durable.data["quality"] == {"B-1": {"status": "ok"}}
        assert await store.memory.get("quality") == {"B-1": {"status": "ok"}}

    @pytest.mark.asyncio
    async def test_failed_durable_write_kept_in_memory(self):
        durable = FlakyBackend()
        durable.down = True
        store = PartitionStore(durable)

        assert await store.set("shipment", {"B-1": {"shipped": True}}) is True
        assert await store.get("shipment") == {"B-1": {"shipped": True}}
        assert "shipment" not in durable.data

    @pytest.mark.asyncio
    async def test_fallback_is_per_call(self):
        durable = FlakyBackend()
        store = PartitionStore(durable)
        await store.set("quality", {"B-1": {"status": "v1"}})

        durable.down = True
        await store.set("quality", {"B-1": {"status": "v2"}})
        assert (await store.get("quality"))["B-1"]["status"] == "v2"

        # Durable backend is back: reads go to it again
        durable.down = False
        assert (await store.get("quality"))["B-1"]["status"] == "v1"
        assert store.backend is durable

    @pytest.mark.asyncio
    async def test_memory_only_store(self):
        store = PartitionStore(MemoryBackend())
        assert store.backend is store.memory
        assert store.backend_name == "memory"
        assert store.durable is False

        await store.set("changelog", [{"id": "1"}])
        assert await store.get("changelog") == [{"id": "1"}]

    @pytest.mark.asyncio
    async def test_unknown_partition_rejected(self):
        with pytest.raises(ValueError):
            await PartitionStore(FlakyBackend()).get("recipes")
