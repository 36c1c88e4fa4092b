from padlink.config import Settings
from padlink.report import TriggerPolicy
from padlink.transport import Mode


def test_defaults_when_file_missing(tmp_path):
    settings = Settings(str(tmp_path / "missing.ini"))
    assert settings.device_name == "AGamepad"
    assert settings.mode is Mode.BLE
    assert settings.discovery_port == 2242
    assert settings.data_port == 2243
    assert settings.handshake_timeout == 5.0
    assert settings.liveness_interval == 2.0
    assert settings.trigger_policy is TriggerPolicy.DIGITAL
    assert settings.last_udp_address is None


def test_reads_values(tmp_path):
    path = tmp_path / "padlink.ini"
    path.write_text(
        "[device]\nname = Deck\ntrigger_policy = max\n"
        "[udp]\ndata_port = 3000\n"
        "[state]\nmode = udp\n"
    )
    settings = Settings(str(path))
    assert settings.device_name == "Deck"
    assert settings.trigger_policy is TriggerPolicy.MAX
    assert settings.data_port == 3000
    assert settings.mode is Mode.UDP


def test_bad_values_fall_back(tmp_path):
    path = tmp_path / "padlink.ini"
    path.write_text("[udp]\ndata_port = lots\n[device]\ntrigger_policy = sideways\n")
    settings = Settings(str(path))
    assert settings.data_port == 2243
    assert settings.trigger_policy is TriggerPolicy.DIGITAL


def test_state_round_trips_through_file(tmp_path):
    path = str(tmp_path / "nested" / "padlink.ini")
    settings = Settings(path)
    settings.set_mode(Mode.CLASSIC)
    settings.set_last_udp_address("192.168.1.40")

    reloaded = Settings(path)
    assert reloaded.mode is Mode.CLASSIC
    assert reloaded.last_udp_address == "192.168.1.40"
