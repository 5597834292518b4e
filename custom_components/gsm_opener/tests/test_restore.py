"""
Unit tests for restore.py: the restore/merge engine.

Coverage:
- boundary recovery trims noise and stops at the first top-level close
- parse tiers: strict, trailing-comma repair, key extraction, terminal failure
- shape normalization of wrapped, direct and array backups
- merge: devices/users unioned by id with on-device winning, logs merged per bucket
- pipeline: round trip, merge non-destructiveness, noisy input, unrecoverable
  input writes nothing, zero successful writes fails, reload errors do not fail
"""

from __future__ import annotations

import json
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from custom_components.gsm_opener.backup import async_create_backup
from custom_components.gsm_opener.const import LEGACY_LOGS_KEY, STORE_KEY
from custom_components.gsm_opener.data_store import DataStore
from custom_components.gsm_opener.errors import BackupFormatError, RestoreError
from custom_components.gsm_opener.restore import (
    async_restore_from_backup,
    async_restore_from_file,
    collect_log_keys,
    extract_key_values,
    isolate_json_object,
    merge_app_data,
    normalize_backup_shape,
    parse_backup_text,
)

from .test_common import (
    InMemoryStorage,
    make_app_data_dict,
    make_device_dict,
    make_hass,
    make_log_dict,
    make_storage_with_document,
    make_store,
    make_user_dict,
)


def _backup_text(data: dict) -> str:
    return json.dumps({"version": "1.0", "timestamp": "2024-01-01T00:00:00+00:00", "data": data})


# ---------------------------------------------------------------------------
# Pure stages
# ---------------------------------------------------------------------------

class TestIsolateJsonObject(unittest.TestCase):

    def test_trims_leading_and_trailing_noise(self):
        clean = '{"a": {"b": 1}}'
        self.assertEqual(isolate_json_object("xx garbage" + clean + "}} trailing"), clean)

    def test_braces_inside_strings_do_not_end_object(self):
        clean = '{"a": "}{", "b": "say \\"}\\""}'
        self.assertEqual(isolate_json_object(clean + " tail"), clean)

    def test_text_without_markers_is_returned_stripped(self):
        self.assertEqual(isolate_json_object("  nothing here  "), "nothing here")

    def test_bare_array_left_intact(self):
        text = '[{"id": "A"}, {"id": "B"}]'
        self.assertEqual(isolate_json_object(text), text)

    def test_bracket_prefixed_noise_is_trimmed(self):
        clean = '{"a": [1, 2], "b": {"c": 3}}'
        self.assertEqual(isolate_json_object("[fwd] hello " + clean + " [fwd]"), clean)

    def test_bare_array_with_trailing_comma_left_intact(self):
        text = '[{"id": "A"}, {"id": "B"},]'
        self.assertEqual(isolate_json_object(text), text)

    def test_earliest_marker_wins(self):
        text = 'noise { "a": 1, "b": {"c": 2}} end'
        self.assertEqual(isolate_json_object(text), '{ "a": 1, "b": {"c": 2}}')


class TestParseBackupText(unittest.TestCase):

    def test_strict(self):
        self.assertEqual(parse_backup_text('{"a": 1}'), {"a": 1})

    def test_trailing_comma_repaired(self):
        clean = '{"a": [1, 2], "b": {"c": 3}}'
        broken = '{"a": [1, 2,], "b": {"c": 3,},}'
        self.assertEqual(parse_backup_text(broken), parse_backup_text(clean))

    def test_key_extraction_last_resort(self):
        text = '{"name": "Gate", "count": 3, "ok": true, "missing": null "tags": ["x"]}'
        self.assertEqual(
            parse_backup_text(text),
            {"name": "Gate", "count": 3, "ok": True, "missing": None, "tags": ["x"]},
        )

    def test_unparseable_raises(self):
        with self.assertRaises(BackupFormatError):
            parse_backup_text("this is not a backup")

    def test_extraction_skips_unreadable_values(self):
        self.assertEqual(extract_key_values('"a": {bad}, "b": "ok"'), {"b": "ok"})


class TestNormalizeBackupShape(unittest.TestCase):

    def test_wrapped_backup(self):
        self.assertEqual(normalize_backup_shape({"version": "1.0", "data": {"k": 1}}), {"k": 1})

    def test_direct_dump(self):
        self.assertEqual(normalize_backup_shape({"k": 1}), {"k": 1})

    def test_array_is_wrapped(self):
        self.assertEqual(normalize_backup_shape([{"id": 1}]), {"gsm_devices": [{"id": 1}]})

    def test_scalar_rejected(self):
        with self.assertRaises(BackupFormatError):
            normalize_backup_shape(42)


class TestCollectLogKeys(unittest.TestCase):

    def test_caches_log_keys_and_app_data_logs(self):
        logs = {"dev-1": [make_log_dict()]}
        flat = {
            STORE_KEY: make_app_data_dict(logs=logs),
            "app_logs_dev-2": [2],
            "systemLogs": [3],
            "smsCommandLogs": [4],
            "unitNumber": "0400000000",
        }

        cached = collect_log_keys(flat)

        self.assertEqual(
            cached,
            {LEGACY_LOGS_KEY: logs, "app_logs_dev-2": [2], "systemLogs": [3], "smsCommandLogs": [4]},
        )


class TestMergeAppData(unittest.TestCase):

    def test_devices_unioned_on_device_wins(self):
        on_device = make_app_data_dict(devices=[make_device_dict("A", name="Local A")])
        incoming = make_app_data_dict(devices=[
            make_device_dict("A", name="Backup A"),
            make_device_dict("B"),
        ])

        merged = merge_app_data(on_device, incoming)

        self.assertEqual([d["id"] for d in merged["devices"]], ["A", "B"])
        self.assertEqual(merged["devices"][0]["name"], "Local A")

    def test_users_unioned_by_id(self):
        on_device = make_app_data_dict(users=[make_user_dict("u1", name="Local")])
        incoming = make_app_data_dict(users=[make_user_dict("u1", name="Backup"), make_user_dict("u2")])

        merged = merge_app_data(on_device, incoming)

        self.assertEqual([u["id"] for u in merged["users"]], ["u1", "u2"])
        self.assertEqual(merged["users"][0]["name"], "Local")

    def test_logs_merged_per_bucket(self):
        on_device = make_app_data_dict(logs={
            "A": [make_log_dict("a2", "A"), make_log_dict("a1", "A")],
            "C": [make_log_dict("c1", "C")],
        })
        incoming = make_app_data_dict(logs={
            "A": [make_log_dict("a3", "A"), make_log_dict("a2", "A", action="Backup copy")],
            "B": [make_log_dict("b1", "B")],
        })

        merged = merge_app_data(on_device, incoming)

        self.assertEqual([e["id"] for e in merged["logs"]["A"]], ["a3", "a2", "a1"])
        self.assertEqual(merged["logs"]["A"][1]["action"], "Gate Open")
        self.assertEqual([e["id"] for e in merged["logs"]["B"]], ["b1"])
        self.assertEqual([e["id"] for e in merged["logs"]["C"]], ["c1"])

    def test_settings_taken_from_backup(self):
        on_device = make_app_data_dict(adminNumber="0411111111")
        incoming = make_app_data_dict(adminNumber="0422222222")

        merged = merge_app_data(on_device, incoming)

        self.assertEqual(merged["globalSettings"]["adminNumber"], "0422222222")

    def test_inputs_not_mutated(self):
        on_device = make_app_data_dict(devices=[make_device_dict("A")])
        incoming = make_app_data_dict(devices=[make_device_dict("B")])
        before = json.dumps([on_device, incoming])

        merge_app_data(on_device, incoming)

        self.assertEqual(json.dumps([on_device, incoming]), before)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestRestorePipeline(unittest.IsolatedAsyncioTestCase):

    async def test_round_trip_into_empty_store(self):
        source = await make_store()
        gate = await source.async_add_device(name="Gate", unit_number="0400000000", password="1234")
        user = await source.async_add_user(name="Ann", phone_number="0411111111", serial_number="001")
        await source.async_authorize_user_for_device(gate.id, user.id)
        await source.async_add_device_log(gate.id, "Gate Open", "details", category="relay")
        await source.async_update_global_settings(admin_number="0499999999", active_device_id=gate.id)
        backup = await async_create_backup(source.storage)

        target = await make_store()
        result = await async_restore_from_backup(target.storage, target, backup)

        self.assertFalse(result.merged)
        self.assertIn(STORE_KEY, result.written_keys)
        self.assertEqual(target.get_store().to_dict(), source.get_store().to_dict())

    async def test_merge_keeps_on_device_devices_and_logs(self):
        local_logs = [make_log_dict("a1", "A"), make_log_dict("a0", "A")]
        storage = make_storage_with_document(
            make_app_data_dict(devices=[make_device_dict("A")], logs={"A": local_logs})
        )
        store = await make_store(storage)
        backup = _backup_text({
            STORE_KEY: make_app_data_dict(
                devices=[make_device_dict("B")],
                logs={"B": [make_log_dict("b1", "B")]},
            )
        })

        result = await async_restore_from_backup(storage, store, backup)

        self.assertTrue(result.merged)
        self.assertEqual({d.id for d in store.get_devices()}, {"A", "B"})
        self.assertEqual([e.id for e in store.get_device_logs("A")], ["a1", "a0"])
        self.assertEqual([e.id for e in store.get_device_logs("B")], ["b1"])

    async def test_noisy_input_restores_like_clean_input(self):
        data = {STORE_KEY: make_app_data_dict(devices=[make_device_dict("A")])}
        clean = _backup_text(data)

        clean_storage = InMemoryStorage()
        await async_restore_from_backup(clean_storage, DataStore(clean_storage), clean)
        noisy_storage = InMemoryStorage()
        await async_restore_from_backup(noisy_storage, DataStore(noisy_storage), "0123456789" + clean + "abcdefghij")

        self.assertEqual(noisy_storage.values, clean_storage.values)

    async def test_bracket_prefixed_noise_keeps_backed_up_device(self):
        source = await make_store()
        gate = await source.async_add_device(name="Gate", unit_number="0400000000", password="1234")
        clean = await async_create_backup(source.storage)

        target = await make_store()
        result = await async_restore_from_backup(
            target.storage, target, "[fwd]abcde" + clean + "[fwd]abcde"
        )

        self.assertEqual(result.written_keys, [STORE_KEY])
        self.assertEqual([d.id for d in target.get_devices()], [gate.id])

    async def test_trailing_comma_restores_like_clean_input(self):
        clean = '{"data": {"completedSteps": ["password"], "adminNumber": "0499999999"}}'
        broken = '{"data": {"completedSteps": ["password"], "adminNumber": "0499999999",}}'

        clean_storage = InMemoryStorage()
        await async_restore_from_backup(clean_storage, DataStore(clean_storage), clean)
        broken_storage = InMemoryStorage()
        await async_restore_from_backup(broken_storage, DataStore(broken_storage), broken)

        self.assertEqual(broken_storage.values, clean_storage.values)

    async def test_unrecoverable_input_writes_nothing(self):
        storage = InMemoryStorage({"unitNumber": "0400000000"})

        with self.assertRaises(BackupFormatError):
            await async_restore_from_backup(storage, DataStore(storage), "no json to be found here")

        self.assertEqual(storage.values, {"unitNumber": "0400000000"})
        self.assertEqual(storage.set_calls, [])

    async def test_empty_input_rejected(self):
        storage = InMemoryStorage()

        for text in ("", "   "):
            with self.assertRaises(BackupFormatError):
                await async_restore_from_backup(storage, DataStore(storage), text)

    async def test_only_null_values_rejected_before_clearing(self):
        storage = InMemoryStorage({"unitNumber": "0400000000"})

        with self.assertRaises(RestoreError):
            await async_restore_from_backup(storage, DataStore(storage), '{"data": {"a": null}}')

        self.assertEqual(storage.values, {"unitNumber": "0400000000"})

    async def test_zero_successful_writes_fails(self):
        storage = InMemoryStorage()
        storage.fail_set = True

        with self.assertRaises(RestoreError):
            await async_restore_from_backup(storage, DataStore(storage), '{"data": {"a": 1}}')

    async def test_partial_write_failure_reports_failed_keys(self):
        storage = InMemoryStorage()
        storage.fail_set_keys = {"b"}

        result = await async_restore_from_backup(storage, DataStore(storage), '{"data": {"a": 1, "b": 2}}')

        self.assertEqual(result.written_keys, ["a"])
        self.assertEqual(result.failed_keys, ["b"])

    async def test_existing_keys_cleared(self):
        storage = InMemoryStorage({"unitNumber": "0400000000", "password": "1234"})

        await async_restore_from_backup(storage, DataStore(storage), '{"data": {"adminNumber": "0499999999"}}')

        self.assertEqual(storage.values, {"adminNumber": "0499999999"})

    async def test_legacy_array_backup(self):
        storage = InMemoryStorage()

        result = await async_restore_from_backup(storage, DataStore(storage), '[{"id": "A"}]')

        self.assertEqual(result.written_keys, ["gsm_devices"])
        self.assertEqual(json.loads(storage.values["gsm_devices"]), [{"id": "A"}])

    async def test_app_data_logs_cached_under_legacy_key(self):
        logs = {"A": [make_log_dict("a1", "A")]}
        storage = InMemoryStorage()

        await async_restore_from_backup(
            storage, DataStore(storage), _backup_text({STORE_KEY: make_app_data_dict(logs=logs)})
        )

        self.assertEqual(json.loads(storage.values[LEGACY_LOGS_KEY]), logs)

    async def test_backup_log_key_not_overwritten_by_cache(self):
        storage = InMemoryStorage()
        backup = _backup_text({
            STORE_KEY: make_app_data_dict(logs={"A": [make_log_dict("a1", "A")]}),
            LEGACY_LOGS_KEY: [make_log_dict("old", None)],
        })

        await async_restore_from_backup(storage, DataStore(storage), backup)

        self.assertEqual([e["id"] for e in json.loads(storage.values[LEGACY_LOGS_KEY])], ["old"])

    async def test_reload_failure_does_not_fail_restore(self):
        storage = InMemoryStorage()
        data_store = MagicMock()
        data_store.async_force_reinitialization = AsyncMock(side_effect=RuntimeError("boom"))

        result = await async_restore_from_backup(storage, data_store, '{"data": {"a": 1}}')

        self.assertEqual(result.written_keys, ["a"])
        data_store.async_force_reinitialization.assert_awaited_once()

    async def test_restore_from_file_wraps_os_error(self):
        store = await make_store()
        hass = make_hass()

        with patch(
            "custom_components.gsm_opener.restore.async_read_backup_file",
            new=AsyncMock(side_effect=FileNotFoundError("missing")),
        ):
            with self.assertRaises(BackupFormatError):
                await async_restore_from_file(hass, store, "missing.json")

    async def test_restore_from_file_runs_pipeline(self):
        store = await make_store()
        hass = make_hass()
        backup = _backup_text({STORE_KEY: make_app_data_dict(devices=[make_device_dict("A")])})

        with patch(
            "custom_components.gsm_opener.restore.async_read_backup_file",
            new=AsyncMock(return_value=backup),
        ):
            await async_restore_from_file(hass, store, "backup.json")

        self.assertIsNotNone(store.get_device_by_id("A"))
