"""
Test source configuration validation and settings.
"""

import pytest
from pydantic import ValidationError

from chain_indexer.core.config import Settings, DatabaseConfig
from chain_indexer.indexer.core.types import SchemaKind, SourceConfig


ADDRESS = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"


def test_defaults_and_normalization():
    config = SourceConfig(network_id=1, contract_address=ADDRESS, schema_kind="RepaymentEscrow")

    assert config.contract_address == ADDRESS.lower()
    assert config.schema_kind is SchemaKind.REPAYMENT_ESCROW
    assert config.start_height == 0
    assert config.confirmations == 12
    assert config.batch_size == 1000
    assert config.key == (1, ADDRESS.lower(), "RepaymentEscrow")


def test_identity_is_case_insensitive():
    a = SourceConfig(network_id=1, contract_address=ADDRESS, schema_kind=SchemaKind.LIFT_UNITS)
    b = SourceConfig(network_id=1, contract_address=ADDRESS.lower(), schema_kind=SchemaKind.LIFT_UNITS)

    assert a.key == b.key


@pytest.mark.parametrize("overrides", [
    {"network_id": 0},
    {"contract_address": "0x1234"},
    {"contract_address": "not-an-address"},
    {"schema_kind": "Erc20"},
    {"start_height": -1},
    {"confirmations": 0},
    {"confirmations": 101},
    {"batch_size": 0},
    {"batch_size": 10001},
])
def test_invalid_values_rejected(overrides):
    values = {"network_id": 1, "contract_address": ADDRESS, "schema_kind": "AllocationEscrow"}
    values.update(overrides)

    with pytest.raises(ValidationError):
        SourceConfig(**values)


def test_config_is_immutable():
    config = SourceConfig(network_id=1, contract_address=ADDRESS, schema_kind="AllocationEscrow")

    with pytest.raises(ValidationError):
        config.batch_size = 5


def test_settings_parse_sources_and_rpc_urls(monkeypatch):
    monkeypatch.setenv("RPC_URLS", '{"1": "http://localhost:8545"}')
    monkeypatch.setenv(
        "INDEXER_SOURCES",
        '[{"network_id": 1, "contract_address": "%s", "schema_kind": "RepaymentEscrow"}]' % ADDRESS
    )
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings()

    assert settings.rpc_urls == {1: "http://localhost:8545"}
    assert settings.indexer_sources[0]["schema_kind"] == "RepaymentEscrow"
    assert settings.log_level == "DEBUG"


def test_settings_reject_unknown_environment(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "qa")

    with pytest.raises(ValidationError):
        Settings()


def test_database_url_drivers():
    assert DatabaseConfig.get_database_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    assert DatabaseConfig.get_database_url("sqlite:///x.db") == "sqlite+aiosqlite:///x.db"
    assert DatabaseConfig.get_database_url(
        "postgresql+asyncpg://u:p@h/db", async_driver=False
    ) == "postgresql://u:p@h/db"
    assert DatabaseConfig.get_engine_config("sqlite:///x.db") == {}
