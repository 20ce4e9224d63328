import pytest

from ledger_provider.core.config import (
    DEFAULT_ACTION_TIMEOUT_MS,
    LedgerOptions,
    _env_int,
    allow_mock_device,
    default_derivation_path,
    load_network_config,
    resolve_user_config,
)
from ledger_provider.core.ledger_exceptions import ConfigurationError


def test_default_derivation_path():
    assert default_derivation_path(0) == "m/44'/60'/0'/0/0"
    assert default_derivation_path(12) == "m/44'/60'/0'/0/12"


def test_network_without_ledger_accounts_is_ignored():
    assert load_network_config("mainnet", {"url": "http://localhost:8545"}) is None
    assert load_network_config("mainnet", {"ledgerAccounts": []}) is None


def test_network_with_options():
    config = load_network_config(
        "sepolia",
        {
            "url": "http://localhost:8545",
            "ledgerAccounts": [0, "m/44'/60'/0'/0/3"],
            "ledgerOptions": {
                "connectionTimeout": 5000,
                "deviceFilter": {"modelId": "nanoX"},
                "transportType": "ble",
            },
        },
    )

    assert config.accounts == [0, "m/44'/60'/0'/0/3"]
    assert config.options.connection_timeout_seconds == 5.0
    assert config.options.action_timeout == DEFAULT_ACTION_TIMEOUT_MS
    assert config.options.device_filter.model_id == "nanoX"
    assert config.options.transport_type == "ble"
    assert config.options.derivation_function(1) == "m/44'/60'/0'/0/1"


def test_null_options_use_defaults():
    config = load_network_config("local", {"ledgerAccounts": [1], "ledgerOptions": None})
    assert isinstance(config.options, LedgerOptions)


@pytest.mark.parametrize(
    "options",
    [
        {"transportType": "serial"},
        {"connectionTimeout": 0},
        {"deviceFilter": {"serial": "x"}},
        {"unknown": True},
    ],
)
def test_invalid_options_raise_configuration_error(options):
    with pytest.raises(ConfigurationError, match="Invalid Ledger configuration for network 'bad'") as exc:
        load_network_config("bad", {"ledgerAccounts": [0], "ledgerOptions": options})
    assert exc.value.code == "INVALID_CONFIG"
    assert exc.value.details["network"] == "bad"


def test_resolve_user_config_keeps_ledger_networks_only():
    resolved = resolve_user_config(
        {
            "networks": {
                "hardhat": {"url": "http://127.0.0.1:8545"},
                "sepolia": {"ledgerAccounts": ["1"]},
                "empty": None,
            }
        }
    )
    assert list(resolved) == ["sepolia"]


def test_env_int(monkeypatch):
    monkeypatch.setenv("LEDGER_TEST_TIMEOUT", "1500")
    assert _env_int("LEDGER_TEST_TIMEOUT", 10) == 1500
    monkeypatch.setenv("LEDGER_TEST_TIMEOUT", "soon")
    assert _env_int("LEDGER_TEST_TIMEOUT", 10) == 10
    monkeypatch.delenv("LEDGER_TEST_TIMEOUT")
    assert _env_int("LEDGER_TEST_TIMEOUT", 10) == 10


@pytest.mark.parametrize("value,expected", [("1", True), ("yes", True), (" ON ", True), ("0", False), ("", False)])
def test_allow_mock_device(monkeypatch, value, expected):
    monkeypatch.setenv("LEDGER_ALLOW_MOCK_DEVICE", value)
    assert allow_mock_device() is expected
