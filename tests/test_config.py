import logging
import tomllib
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from lending.config import Settings, get_settings
from lending.logging_setup import LOG_FORMAT, configure_logging


class TestSettings:
    def test_rpc_url_fallback(self, monkeypatch):
        monkeypatch.delenv("BASE_RPC_URL", raising=False)
        monkeypatch.delenv("OPTIMISM_RPC_URL", raising=False)

        settings = Settings(ethereum_rpc_url="https://mainnet.example", arbitrum_rpc_url="https://arb.example")

        assert settings.get_rpc_url("arbitrum") == "https://arb.example"
        assert settings.get_rpc_url(42161) == "https://arb.example"
        assert settings.get_rpc_url(8453) == "https://mainnet.example"
        assert settings.get_rpc_url("Optimism") == "https://mainnet.example"

    def test_bnb_rpc_url(self):
        settings = Settings(ethereum_rpc_url="https://mainnet.example", bnb_rpc_url="https://bnb.example")

        assert settings.get_rpc_url(56) == "https://bnb.example"

    def test_unknown_chain_id_uses_ethereum(self):
        settings = Settings(ethereum_rpc_url="https://mainnet.example")

        assert settings.get_rpc_url(137) == "https://mainnet.example"

    def test_slippage_bounds(self):
        assert Settings(swap_slippage_bps=0).swap_slippage_bps == 0

        with pytest.raises(ValidationError):
            Settings(swap_slippage_bps=10000)
        with pytest.raises(ValidationError):
            Settings(swap_slippage_bps=-1)

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("QUOTE_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("SWAP_SLIPPAGE_BPS", "50")

        settings = get_settings()

        assert settings.quote_timeout_seconds == 2.5
        assert settings.swap_slippage_bps == 50
        assert get_settings() is settings


class TestConfigureLogging:
    def test_uses_configured_level(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")

        with patch("logging.basicConfig") as basic_config:
            configure_logging()

        basic_config.assert_called_once_with(format=LOG_FORMAT, level=logging.DEBUG)

    def test_unknown_level_falls_back_to_info(self):
        with patch("logging.basicConfig") as basic_config:
            configure_logging("verbose")

        assert basic_config.call_args.kwargs["level"] == logging.INFO


class TestPackaging:
    def test_package_discovery_options(self):
        with open(Path(__file__).parent.parent / "pyproject.toml", "rb") as f:
            find = tomllib.load(f)["tool"]["setuptools"]["packages"]["find"]

        # Keys accepted by setuptools' find directive
        assert set(find) <= {"where", "include", "exclude", "namespaces"}
        assert find["namespaces"] is True
        assert find["include"] == ["lending*"]
