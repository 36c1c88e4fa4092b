import json

from padlink.discovery import DiscoveryListener


def _reply(ip, name, ts):
    return json.dumps({"ip": ip, "device_name": name, "timestamp": ts}).encode()


def test_duplicate_replies_collapse_into_one_device():
    changes = []
    listener = DiscoveryListener(port=0, on_change=changes.append)

    listener.handle_datagram(_reply("10.0.0.5", "AGamePad-UDP", 10), ("10.0.0.5", 2242))
    listener.handle_datagram(_reply("10.0.0.5", "AGamePad-UDP", 10), ("10.0.0.5", 2242))
    listener.handle_datagram(_reply("10.0.0.5", "AGamePad-UDP", 12), ("10.0.0.5", 2242))
    listener.handle_datagram(_reply("10.0.0.9", "Other", 11), ("10.0.0.9", 2242))

    devices = {d.address: d for d in listener.devices.to_list()}
    assert set(devices) == {"10.0.0.5", "10.0.0.9"}
    assert devices["10.0.0.5"].timestamp == 12
    assert len(changes) == 3


def test_probe_echo_is_ignored():
    listener = DiscoveryListener(port=0)
    assert listener.handle_datagram(b"discover", ("10.0.0.1", 2242)) is None
    assert len(listener.devices) == 0


def test_listener_binds_ephemeral_port():
    listener = DiscoveryListener(port=0, bind_host="127.0.0.1")
    assert listener.start()
    try:
        assert listener.bound_port > 0
        assert listener.running
    finally:
        listener.stop()
    assert not listener.running
