from yamen_bridge.actions import RemoteActionListener, action_changes
from yamen_bridge.device import Device
from yamen_bridge.errors import SyncError, WriteError
from yamen_bridge.presence import CardDetected

from .conftest import FakeReader, run

UID = "04A1B2C3"


class Registry:
    def __init__(self, *devices):
        self.devices = list(devices)

    def find_device(self, uid):
        for device in self.devices:
            if device.state.uid == uid:
                return device
        return None


def write_action(codec, action_id=1, uid=UID, signature=None, status="PENDING"):
    return {
        "id": action_id,
        "terminal_id": 1,
        "action_type": "WRITE_SIGNATURE",
        "status": status,
        "payload": {
            "uid": uid,
            "signature": signature if signature is not None else codec.generate_hex(uid),
        },
    }


async def seated_device(reader, codec, cloud, notifier, clock, uid=UID):
    device = Device("device-0", reader, codec, cloud, notifier, terminal_id=1, clock=clock)
    device.start()
    device.post(CardDetected(uid))
    await device.idle()
    return device


def test_action_changes_filter():
    assert action_changes(7) == [{
        "event": "INSERT",
        "schema": "public",
        "table": "terminal_actions",
        "filter": "terminal_id=eq.7",
    }]


def test_card_not_present(codec, cloud, notifier):
    listener = RemoteActionListener(None, cloud, Registry(), codec, notifier)
    run(listener.handle(write_action(codec)))
    assert cloud.failed == [(1, "Card not present")]
    assert cloud.completed == []


def test_invalid_payload(codec, cloud, notifier):
    listener = RemoteActionListener(None, cloud, Registry(), codec, notifier)
    run(listener.handle(write_action(codec, signature="59414D45")))
    assert cloud.failed == [(1, "Invalid signature payload")]


def test_successful_write(codec, cloud, notifier, clock):
    reader = FakeReader(block_data=bytes(16))

    async def scenario():
        device = await seated_device(reader, codec, cloud, notifier, clock)
        listener = RemoteActionListener(None, cloud, Registry(device), codec, notifier)
        await listener.handle(write_action(codec, action_id=9))
        await device.stop(close_episode=False)

    run(scenario())
    assert reader.writes == [(4, codec.generate(UID), 16)]
    assert cloud.completed == [9]
    assert cloud.failed == []
    assert cloud.cards == [(UID, codec.generate_hex(UID), False)]
    assert cloud.updates == [(101, {"metadata": {"secured": True, "signature_valid": True}})]
    assert ("Injection Successful", f"Card {UID} secured.") in notifier.notifications


def test_ultralight_write_uses_pages(codec, cloud, notifier, clock):
    uid = "04D2E3F4A5B6C7"
    reader = FakeReader(block_data=bytes(16), classic=False)

    async def scenario():
        device = await seated_device(reader, codec, cloud, notifier, clock, uid=uid)
        listener = RemoteActionListener(None, cloud, Registry(device), codec, notifier)
        await listener.handle(write_action(codec, uid=uid))
        await device.stop(close_episode=False)

    run(scenario())
    assert reader.writes == [(4, codec.generate(uid), 4)]
    assert cloud.completed == [1]


def test_locked_block_reports_friendly_failure(codec, cloud, notifier, clock):
    reader = FakeReader(block_data=bytes(16))
    reader.write_error = WriteError("Write block 4 failed: SW=0x6300", 0x63, 0x00)

    async def scenario():
        device = await seated_device(reader, codec, cloud, notifier, clock)
        listener = RemoteActionListener(None, cloud, Registry(device), codec, notifier)
        await listener.handle(write_action(codec))
        await device.stop(close_episode=False)

    run(scenario())
    assert cloud.failed == [(1, "Failed: Auth Required or Block Locked (0x6300)")]
    assert cloud.completed == []
    assert cloud.updates == []
    assert notifier.notifications[-1][0] == "Injection Failed"


def test_non_pending_actions_are_ignored(codec, cloud, notifier):
    listener = RemoteActionListener(None, cloud, Registry(), codec, notifier)
    run(listener.handle(write_action(codec, status="COMPLETED")))
    assert cloud.failed == [] and cloud.completed == []


def test_unknown_action_type_is_ignored(codec, cloud, notifier):
    listener = RemoteActionListener(None, cloud, Registry(), codec, notifier)
    action = dict(write_action(codec), action_type="REBOOT")
    run(listener.handle(action))
    assert cloud.failed == [] and cloud.completed == []


def test_duplicate_delivery_is_handled_once(codec, cloud, notifier):
    listener = RemoteActionListener(None, cloud, Registry(), codec, notifier)

    async def scenario():
        action = write_action(codec, action_id=5)
        listener.dispatch(action)
        listener.dispatch(dict(action))
        await listener.wait_idle()

    run(scenario())
    assert cloud.failed == [(5, "Card not present")]


class FakeChannel:
    def __init__(self, records):
        self._records = records

    async def records(self):
        for record in self._records:
            yield record


def test_run_dispatches_channel_records(codec, cloud, notifier):
    channel = FakeChannel([write_action(codec, action_id=1), write_action(codec, action_id=2)])
    listener = RemoteActionListener(channel, cloud, Registry(), codec, notifier)

    async def scenario():
        await listener.run()
        await listener.wait_idle()

    run(scenario())
    assert sorted(cloud.failed) == [(1, "Card not present"), (2, "Card not present")]


def test_handled_ids_are_bounded(codec, cloud, notifier):
    listener = RemoteActionListener(None, cloud, Registry(), codec, notifier, history=2)

    async def scenario():
        for action_id in (1, 2, 3):
            await listener.handle(write_action(codec, action_id=action_id))
        # id 1 fell out of the history, id 3 is still remembered
        await listener.handle(write_action(codec, action_id=1))
        await listener.handle(write_action(codec, action_id=3))

    run(scenario())
    assert [action_id for action_id, _ in cloud.failed] == [1, 2, 3, 1]
    assert len(listener._handled) == 2


def test_card_recorded_even_if_completion_fails(codec, cloud, notifier, clock):
    reader = FakeReader(block_data=bytes(16))

    async def completion_down(action_id):
        raise SyncError("Failed to update action 9: 503")

    cloud.complete_action = completion_down

    async def scenario():
        device = await seated_device(reader, codec, cloud, notifier, clock)
        listener = RemoteActionListener(None, cloud, Registry(device), codec, notifier)
        await listener.handle(write_action(codec, action_id=9))
        await device.stop(close_episode=False)

    run(scenario())
    assert reader.writes == [(4, codec.generate(UID), 16)]
    assert cloud.cards == [(UID, codec.generate_hex(UID), False)]
    assert cloud.updates == [(101, {"metadata": {"secured": True, "signature_valid": True}})]
