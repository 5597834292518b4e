"""
Unit tests for sms.py: GsmCommandSender.

Coverage:
- split_notify_service accepts "domain.service" and bare service names
- a sent command reaches the notify service with the unit number as target
- a rejected command is logged as failed and returns False
- successful settings commands update the store
- an unknown device or malformed option raises ValidationError without sending
"""

from __future__ import annotations

import unittest

from homeassistant.exceptions import HomeAssistantError

from custom_components.gsm_opener.errors import ValidationError
from custom_components.gsm_opener.sms import GsmCommandSender, split_notify_service

from .test_common import make_hass, make_store


async def _make_sender(notify_service: str = "notify.sms_gateway"):
    hass = make_hass()
    store = await make_store()
    device = await store.async_add_device(name="Front", unit_number="0400000000", password="1234")
    return hass, store, device, GsmCommandSender(hass, store, notify_service)


class TestSplitNotifyService(unittest.TestCase):

    def test_split(self):
        self.assertEqual(split_notify_service("notify.sms_gateway"), ("notify", "sms_gateway"))
        self.assertEqual(split_notify_service("sms_gateway"), ("notify", "sms_gateway"))
        self.assertEqual(split_notify_service("other.mobile_app_phone"), ("other", "mobile_app_phone"))


class TestSendCommand(unittest.IsolatedAsyncioTestCase):

    async def test_open_calls_notify_service(self):
        hass, store, device, sender = await _make_sender()

        self.assertTrue(await sender.async_send_command(device.id, "open"))

        hass.services.async_call.assert_awaited_once_with(
            "notify", "sms_gateway",
            {"message": "1234CC", "target": ["0400000000"]},
            blocking=True,
        )
        entry = store.get_device_logs(device.id)[0]
        self.assertEqual(entry.action, "Gate Open")
        self.assertEqual(entry.category, "relay")
        self.assertTrue(entry.success)

    async def test_bare_service_name(self):
        hass, _, device, sender = await _make_sender("sms_gateway")

        await sender.async_send_command(device.id, "status")

        self.assertEqual(hass.services.async_call.call_args.args[:2], ("notify", "sms_gateway"))

    async def test_failure_is_logged_and_returns_false(self):
        hass, store, device, sender = await _make_sender()
        hass.services.async_call.side_effect = HomeAssistantError("service not found")

        self.assertFalse(await sender.async_send_command(device.id, "change_password", new_password="5678"))

        entry = store.get_device_logs(device.id)[0]
        self.assertEqual(entry.action, "Password Change")
        self.assertFalse(entry.success)
        self.assertEqual(store.get_device_by_id(device.id).password, "1234")

    async def test_logged_details_never_contain_password(self):
        _, store, device, sender = await _make_sender()

        await sender.async_send_command(device.id, "add_user", serial="5", phone="0411111111")

        entry = store.get_device_logs(device.id)[0]
        self.assertEqual(entry.details, "Added user 0411111111 at position 005")
        self.assertNotIn("1234", entry.details)

    async def test_unknown_device_raises(self):
        hass, _, _, sender = await _make_sender()

        with self.assertRaises(ValidationError):
            await sender.async_send_command("missing", "open")

        hass.services.async_call.assert_not_awaited()

    async def test_invalid_option_raises_before_sending(self):
        hass, _, device, sender = await _make_sender()

        with self.assertRaises(ValidationError):
            await sender.async_send_command(device.id, "latch_time", latch_time="1000")

        hass.services.async_call.assert_not_awaited()


class TestSideEffects(unittest.IsolatedAsyncioTestCase):

    async def test_access_control_updates_relay_settings(self):
        hass, store, device, sender = await _make_sender()

        await sender.async_send_command(device.id, "access_control", access_control="allow-all")

        self.assertEqual(hass.services.async_call.call_args.args[2]["message"], "1234ALL#")
        relay = store.get_device_by_id(device.id).relay_settings
        self.assertEqual(relay.access_control, "allow-all")
        self.assertEqual(relay.latch_time, "000")

    async def test_latch_time_updates_relay_settings(self):
        _, store, device, sender = await _make_sender()

        await sender.async_send_command(device.id, "latch_time", latch_time="30")

        self.assertEqual(store.get_device_by_id(device.id).relay_settings.latch_time, "030")

    async def test_register_admin_updates_global_settings(self):
        _, store, device, sender = await _make_sender()

        await sender.async_send_command(device.id, "register_admin", admin_number="0499 999 999")

        self.assertEqual(store.get_global_settings().admin_number, "0499999999")

    async def test_change_password_updates_device(self):
        hass, store, device, sender = await _make_sender()

        await sender.async_send_command(device.id, "change_password", new_password="5678")

        self.assertEqual(hass.services.async_call.call_args.args[2]["message"], "1234P5678")
        self.assertEqual(store.get_device_by_id(device.id).password, "5678")
        self.assertEqual(store.get_device_logs(device.id)[0].action, "Password Change")

    async def test_open_leaves_device_untouched(self):
        _, store, device, sender = await _make_sender()

        await sender.async_send_command(device.id, "open")

        self.assertEqual(store.get_device_by_id(device.id).updated_at, device.updated_at)
