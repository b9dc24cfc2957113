"""
Unit tests for environment configuration and the CLI entry points.
"""

import argparse
from unittest.mock import patch

import pytest

from orchestrator.cli import MirrorCLI
from orchestrator.config import ConfigError, MirrorConfig, normalize_env_value
from trader_identification import FollowMode


LEADER = "0x" + "a" * 40
OTHER = "0x" + "b" * 40
ME = "0x" + "1" * 40
FUNDER = "0x" + "2" * 40
KEY = "0x" + "ab" * 32


def base_env(**overrides):
    env = {"TARGET_WALLETS": LEADER, "MY_USER_ADDRESS": ME}
    env.update(overrides)
    return env


class TestFromEnvironment:
    """Test MirrorConfig.from_environment."""

    def test_defaults(self):
        config = MirrorConfig.from_environment(base_env())
        assert config.dry_run
        assert config.selection.follow_mode == FollowMode.LEADER
        assert config.sizing.copy_ratio == 0.02
        assert config.sizing.max_daily_usdc is None
        assert config.polling.poll_ms == 4000
        assert config.allowance.min_allowance_usdc == 50.0
        assert config.filters.disallowed_categories == ["sports"]
        assert config.collect_errors() == []

    def test_wallets_normalized_and_deduplicated(self):
        raw = f" {LEADER.upper().replace('0X', '0x')}, {'b' * 40} ,{LEADER},"
        config = MirrorConfig.from_environment(base_env(TARGET_WALLETS=raw))
        assert config.target_wallets == [LEADER, OTHER]

    def test_quotes_and_prefixes(self):
        """Test quote stripping and 0x prefixing of hex values."""
        config = MirrorConfig.from_environment(
            base_env(COPY_RATIO='"0.05"', MY_USER_ADDRESS="1" * 40, PRIVATE_KEY=" 'ab" + "ab" * 31 + "' ")
        )
        assert config.sizing.copy_ratio == 0.05
        assert config.my_address == ME
        assert config.private_key == KEY

    def test_typed_values(self):
        config = MirrorConfig.from_environment(
            base_env(
                FOLLOW_MODE="topk",
                TOPK="3",
                DRY_RUN="false",
                MAX_DAILY_USDC="25",
                ALLOWED_CATEGORIES="Crypto, Science & Tech",
                APPROVE_AMOUNT_USDC="max",
                ALLOWANCE_THRESHOLD_USDC="10",
                START_FROM_NOW="yes",
            )
        )
        assert config.selection.follow_mode == FollowMode.TOPK
        assert config.selection.topk == 3
        assert not config.dry_run
        assert not config.allowance.dry_run
        assert config.sizing.max_daily_usdc == 25.0
        assert config.filters.allowed_categories == ["crypto", "science-and-tech"]
        assert config.allowance.approve_amount_usdc == "unlimited"
        assert config.allowance.min_allowance_usdc == 10.0
        assert config.polling.start_from_now

    def test_empty_daily_cap_means_unlimited(self):
        config = MirrorConfig.from_environment(base_env(MAX_DAILY_USDC=""))
        assert config.sizing.max_daily_usdc is None

    def test_all_parse_errors_reported(self):
        with pytest.raises(ConfigError) as info:
            MirrorConfig.from_environment(
                base_env(COPY_RATIO="abc", DRY_RUN="maybe", FOLLOW_MODE="copy", APPROVE_AMOUNT_USDC="-5")
            )
        errors = info.value.errors
        assert len(errors) == 4
        assert "Invalid number for COPY_RATIO: abc" in errors
        assert "Invalid boolean for DRY_RUN: maybe" in errors

    def test_bad_wallet_entry(self):
        with pytest.raises(ConfigError, match="TARGET_WALLETS"):
            MirrorConfig.from_environment(base_env(TARGET_WALLETS="0x1234"))

    def test_normalize_env_value(self):
        assert normalize_env_value('  "x" ') == "x"
        assert normalize_env_value("'y'") == "y"
        assert normalize_env_value('"') == '"'
        assert normalize_env_value(None) is None


class TestValidation:
    """Test MirrorConfig.collect_errors."""

    def test_required_fields(self):
        errors = MirrorConfig().collect_errors()
        assert "TARGET_WALLETS is required" in errors
        assert "MY_USER_ADDRESS is required" in errors

    def test_live_requires_key_and_funder(self):
        config = MirrorConfig.from_environment(base_env(DRY_RUN="false"))
        errors = config.collect_errors()
        assert "PRIVATE_KEY is required when DRY_RUN=false" in errors
        assert any(e.startswith("FUNDER_ADDRESS is required") for e in errors)

    def test_signature_type_range(self):
        config = MirrorConfig.from_environment(base_env(SIGNATURE_TYPE="3"))
        assert "SIGNATURE_TYPE must be 0, 1, or 2. Got 3" in config.collect_errors()

    def test_signer_must_match_address(self):
        """Test that MY_USER_ADDRESS must be the signer derived from the key."""
        config = MirrorConfig.from_environment(base_env(PRIVATE_KEY=KEY, FUNDER_ADDRESS=FUNDER))
        with patch("orchestrator.config.derive_signer_address", return_value=OTHER):
            errors = config.collect_errors()
        assert any("must match the signer" in e for e in errors)

        with patch("orchestrator.config.derive_signer_address", return_value=ME):
            assert config.collect_errors() == []

    def test_proxy_funder_must_differ(self):
        config = MirrorConfig.from_environment(base_env(PRIVATE_KEY=KEY, FUNDER_ADDRESS=ME))
        with patch("orchestrator.config.derive_signer_address", return_value=ME):
            errors = config.collect_errors()
        assert any("must differ from signer" in e for e in errors)

    def test_eoa_funder_must_match(self):
        config = MirrorConfig.from_environment(base_env(SIGNATURE_TYPE="0", FUNDER_ADDRESS=FUNDER))
        assert "FUNDER_ADDRESS must match MY_USER_ADDRESS for SIGNATURE_TYPE=0" in config.collect_errors()

    def test_signer_derivation_failure(self):
        config = MirrorConfig.from_environment(base_env(PRIVATE_KEY=KEY))
        with patch("orchestrator.config.derive_signer_address", side_effect=ImportError("no eth_account")):
            errors = config.collect_errors()
        assert any(e.startswith("Could not derive signer address") for e in errors)

    def test_validate_raises_with_every_error(self):
        with pytest.raises(ConfigError) as info:
            MirrorConfig().validate()
        assert len(info.value.errors) >= 2

    def test_to_dict_hides_secrets(self):
        config = MirrorConfig.from_environment(base_env(PRIVATE_KEY=KEY))
        data = config.to_dict()
        assert data["private_key_set"]
        assert KEY not in str(data)
        assert KEY not in repr(config)


class TestCLI:
    """Test the command-line entry points that need no network."""

    def test_invalid_config_exits_2(self, monkeypatch, capsys):
        monkeypatch.delenv("TARGET_WALLETS", raising=False)
        monkeypatch.delenv("MY_USER_ADDRESS", raising=False)
        assert MirrorCLI().run(["check-config"]) == 2
        assert "TARGET_WALLETS is required" in capsys.readouterr().err

    def test_check_config_output(self, capsys):
        config = MirrorConfig.from_environment(base_env())
        args = argparse.Namespace(command="check-config", json=False, live=False, verbose=False)
        assert MirrorCLI()._cmd_check_config(args, config) == 0
        out = capsys.readouterr().out
        assert "✓ Configuration valid" in out
        assert LEADER in out

    def test_parser_rejects_unknown_command(self):
        with pytest.raises(SystemExit):
            MirrorCLI().build_parser().parse_args(["trade"])
