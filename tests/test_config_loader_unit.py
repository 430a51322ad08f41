import pytest
import yaml

from keeper.utils import config_loader
from keeper.utils.config_loader import load_config, load_keeper_settings, private_key_from_env

PERPS = "0x" + "12" * 20


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for _, _, _, names in config_loader._ENV_OVERRIDES:
        for name in names:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("KEEPER_PRIVATE_KEY", raising=False)
    monkeypatch.delenv("PRIVATE_KEY", raising=False)


def _write(tmp_path, cfg: dict):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


def _base(**keeper) -> dict:
    return {"ledger": {"perps_address": PERPS}, "keeper": dict(keeper)}


def test_default_config_file_loads_with_address_from_env(monkeypatch):
    monkeypatch.setenv("PERPS", PERPS)
    cfg = load_config(force_reload=True)
    settings = load_keeper_settings(cfg)
    assert settings.perps_address == PERPS
    assert settings.scan_chunk == 2000
    assert settings.max_tx_per_loop == 5
    assert settings.loop_interval_seconds == 10.0
    assert settings.scan_interval_seconds == 60.0
    assert settings.start_block is None
    assert settings.gas_limit is None
    assert settings.max_attempts == 5
    assert set(settings.event_signatures) == {"opened", "closed", "liquidated", "stop_closed", "stops_updated"}


def test_missing_perps_address_is_fatal(tmp_path):
    path = _write(tmp_path, {"ledger": {"perps_address": ""}, "keeper": {}})
    with pytest.raises(ValueError, match="perps_address"):
        load_config(path, force_reload=True)


def test_malformed_perps_address_is_rejected(tmp_path):
    path = _write(tmp_path, {"ledger": {"perps_address": "0x1234"}, "keeper": {}})
    with pytest.raises(ValueError, match="20-byte"):
        load_config(path, force_reload=True)


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", force_reload=True)


def test_short_env_names_override_yaml(tmp_path, monkeypatch):
    path = _write(tmp_path, _base(scan_chunk=2000, max_tx_per_loop=5))
    monkeypatch.setenv("SCAN_CHUNK", "500")
    monkeypatch.setenv("MAX_TX_PER_LOOP", "2")
    monkeypatch.setenv("KEEPERS_INTERVAL_SEC", "3")
    monkeypatch.setenv("SCAN_EVERY_SEC", "15")
    monkeypatch.setenv("START_BLOCK", "1234")
    monkeypatch.setenv("GAS_LIMIT", "800000")
    monkeypatch.setenv("DEBUG_KEEPERS", "1")

    settings = load_keeper_settings(load_config(path, force_reload=True))

    assert settings.scan_chunk == 500
    assert settings.max_tx_per_loop == 2
    assert settings.loop_interval_seconds == 3.0
    assert settings.scan_interval_seconds == 15.0
    assert settings.start_block == 1234
    assert settings.gas_limit == 800000
    assert settings.debug is True


def test_keeper_prefixed_name_wins_over_short_name(tmp_path, monkeypatch):
    path = _write(tmp_path, _base())
    monkeypatch.setenv("SCAN_CHUNK", "500")
    monkeypatch.setenv("KEEPER_SCAN_CHUNK", "250")
    assert load_config(path, force_reload=True)["keeper"]["scan_chunk"] == 250


def test_invalid_numeric_env_value_is_reported(tmp_path, monkeypatch):
    path = _write(tmp_path, _base())
    monkeypatch.setenv("SCAN_CHUNK", "lots")
    with pytest.raises(ValueError, match="SCAN_CHUNK"):
        load_config(path, force_reload=True)


@pytest.mark.parametrize("key", ["scan_chunk", "max_tx_per_loop", "loop_interval_seconds", "scan_interval_seconds"])
def test_non_positive_values_are_rejected(tmp_path, key):
    path = _write(tmp_path, _base(**{key: 0}))
    with pytest.raises(ValueError, match=key):
        load_config(path, force_reload=True)


def test_negative_start_block_is_rejected(tmp_path):
    path = _write(tmp_path, _base(start_block=-1))
    with pytest.raises(ValueError, match="start_block"):
        load_config(path, force_reload=True)


def test_cached_config_is_a_copy(tmp_path):
    path = _write(tmp_path, _base(scan_chunk=100))
    first = load_config(path, force_reload=True)
    first["keeper"]["scan_chunk"] = 1
    assert load_config(path)["keeper"]["scan_chunk"] == 100


def test_private_key_is_env_only_and_prefixed(monkeypatch):
    assert private_key_from_env() is None
    monkeypatch.setenv("PRIVATE_KEY", "ab" * 32)
    assert private_key_from_env() == "0x" + "ab" * 32
    monkeypatch.setenv("KEEPER_PRIVATE_KEY", "0x" + "cd" * 32)
    assert private_key_from_env() == "0x" + "cd" * 32
