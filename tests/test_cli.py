"""Tests for inflowcli/cli.py — Click CLI entry point."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import toml
from click.testing import CliRunner

from conftest import WALLET
from inflowcli.cli import cli
from inflowcli.exceptions import ProviderUnavailableError
from inflowcli.models import BlockInfo, VolumeBucket, VolumeCache, volume_key
from inflowcli.pipeline import RefreshStats


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """A config file with an API key, wallet and a temp cache dir."""
    path = tmp_path / "config.toml"
    path.write_text(
        toml.dumps(
            {
                "api": {"alchemy_api_key": "secret_key_12345"},
                "wallet": {"address": WALLET},
                "prices": {"use_dex": False, "eth_fallback_usd": 2000.0},
                "cache": {"dir": str(tmp_path / "cache")},
            }
        )
    )
    return path


def last_json_line(output: str) -> dict:
    """Error JSON is the last line written (stderr may be mixed into output)."""
    return json.loads(output.strip().splitlines()[-1])


def sample_cache() -> VolumeCache:
    return VolumeCache(
        daily=[VolumeBucket("2025-03-05", 100.0)],
        weekly=[VolumeBucket("2025-03-03", 100.0)],
        monthly=[VolumeBucket("2025-03-01", 100.0)],
        last_updated="2025-03-31T00:00:00Z",
        block_info=BlockInfo(2000, "2025-03-31T00:00:00Z"),
        transaction_counts={"in": 1, "out": 0},
    )


# ── version ───────────────────────────────────────────────────────────────────


def test_cli_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


# ── config commands ───────────────────────────────────────────────────────────


def test_config_init(runner: CliRunner, tmp_path: Path) -> None:
    path = tmp_path / "new" / "config.toml"
    result = runner.invoke(cli, ["--config", str(path), "config", "init"])
    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "initialized"
    assert path.exists()


def test_config_init_already_exists(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "config", "init"])
    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "already_exists"


def test_config_init_force_backs_up(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "config", "init", "--force"])
    output = json.loads(result.output)
    assert output["status"] == "reinitialized"
    assert Path(output["backup"]).read_text() != config_path.read_text()


def test_config_show_masks_key(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "config", "show"])
    assert result.exit_code == 0
    output = json.loads(result.output)
    assert output["api"]["alchemy_api_key"] == "secr****"
    assert output["wallet"]["address"] == WALLET
    assert output["prices"]["use_dex"] is False


def test_config_set_int_and_list(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "config", "set", "fetch.max_pages", "8"])
    assert result.exit_code == 0
    assert json.loads(result.output) == {"status": "updated", "key": "fetch.max_pages", "value": 8}

    runner.invoke(cli, ["--config", str(config_path), "config", "set", "fetch.categories", "external, erc20, erc721"])
    saved = toml.loads(config_path.read_text())
    assert saved["fetch"]["max_pages"] == 8
    assert saved["fetch"]["categories"] == ["external", "erc20", "erc721"]


def test_config_set_masks_api_key(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(
        cli, ["--config", str(config_path), "config", "set", "api.alchemy_api_key", "brandnewkey"]
    )
    assert json.loads(result.output)["value"] == "bran****"


def test_config_set_unknown_key(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "config", "set", "api.nope", "1"])
    assert result.exit_code == 5


def test_config_set_bad_key_shape(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "config", "set", "toplevel", "1"])
    assert result.exit_code == 1


# ── refresh ───────────────────────────────────────────────────────────────────


def test_refresh_outputs_stats_and_volume(runner: CliRunner, config_path: Path) -> None:
    stats = RefreshStats(wallet=WALLET, year=2025, from_block=24, to_block=2179, new_transactions=1, persisted=True)
    mock = AsyncMock(return_value=(sample_cache(), stats))
    with patch("inflowcli.pipeline.refresh_volume", mock):
        result = runner.invoke(cli, ["--config", str(config_path), "refresh", "--year", "2025", "--force"])

    assert result.exit_code == 0, result.output
    output = json.loads(result.output)
    assert output["stats"]["newTransactions"] == 1
    assert output["volume"]["daily"] == [{"date": "2025-03-05", "volume": 100.0}]
    _, kwargs = mock.call_args
    assert kwargs["force_refresh"] is True
    assert mock.call_args.args[1:] == (WALLET, 2025)


def test_refresh_from_block(runner: CliRunner, config_path: Path) -> None:
    mock = AsyncMock(return_value=(sample_cache(), RefreshStats()))
    with patch("inflowcli.pipeline.refresh_volume", mock):
        runner.invoke(cli, ["--config", str(config_path), "refresh", "--year", "2025", "--from-block", "500"])
    assert mock.call_args.kwargs["last_processed_block"] == 500


def test_refresh_requires_api_key(runner: CliRunner, tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text(toml.dumps({"wallet": {"address": WALLET}}))
    result = runner.invoke(cli, ["--config", str(path), "refresh"])
    assert result.exit_code == 5
    assert last_json_line(result.output)["error"] == "config_missing"


def test_refresh_invalid_wallet(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "refresh", "--wallet", "0xnothex"])
    assert result.exit_code == 4


def test_refresh_provider_unavailable(runner: CliRunner, config_path: Path) -> None:
    mock = AsyncMock(side_effect=ProviderUnavailableError("head unreadable"))
    with patch("inflowcli.pipeline.refresh_volume", mock):
        result = runner.invoke(cli, ["--config", str(config_path), "refresh"])
    assert result.exit_code == 2
    assert last_json_line(result.output)["message"] == "head unreadable"


def test_refresh_table_format(runner: CliRunner, config_path: Path) -> None:
    stats = RefreshStats(wallet=WALLET, year=2025, new_transactions=1)
    with patch("inflowcli.pipeline.refresh_volume", AsyncMock(return_value=(sample_cache(), stats))):
        result = runner.invoke(cli, ["--config", str(config_path), "--format", "table", "refresh"])
    assert result.exit_code == 0
    assert "newTransactions" in result.output


# ── volume / counterparties ───────────────────────────────────────────────────


def _seed(tmp_path: Path) -> None:
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir(exist_ok=True)
    envelope = {"data": sample_cache().to_dict(), "expires": 0, "lastUpdated": 0}
    (cache_dir / f"{volume_key(WALLET, 2025)}.json").write_text(json.dumps(envelope))


def test_volume_reads_cache(runner: CliRunner, config_path: Path, tmp_path: Path) -> None:
    """Expired documents are still served; the read path ignores expiry."""
    _seed(tmp_path)
    result = runner.invoke(
        cli, ["--config", str(config_path), "volume", "--year", "2025", "--period", "monthly"]
    )
    assert result.exit_code == 0, result.output
    output = json.loads(result.output)
    assert output["source"] == "cache"
    assert len(output["data"]) == 12
    assert output["data"][2] == {"date": "2025-03-01", "volume": 100.0}


def test_volume_empty_cache(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "volume", "--year", "2025"])
    assert result.exit_code == 0
    output = json.loads(result.output)
    assert output["source"] == "empty"
    assert len(output["data"]) == 365
    assert "warning" in output


def test_volume_csv(runner: CliRunner, config_path: Path, tmp_path: Path) -> None:
    _seed(tmp_path)
    result = runner.invoke(
        cli, ["--config", str(config_path), "volume", "--year", "2025", "--period", "weekly", "--format", "csv"]
    )
    lines = result.output.splitlines()
    assert lines[0] == "date,volume"
    assert "2025-03-03,100.0" in lines


def test_volume_bad_period(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "volume", "--period", "hourly"])
    assert result.exit_code == 2  # click usage error


def test_counterparties_empty(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "counterparties", "--year", "2025"])
    assert result.exit_code == 0
    assert json.loads(result.output)["counterparties"] == []


# ── price / cache ─────────────────────────────────────────────────────────────


def test_price_without_dex(runner: CliRunner, config_path: Path) -> None:
    result = runner.invoke(cli, ["--config", str(config_path), "price", "ETH", "usdc"])
    assert result.exit_code == 0
    assert json.loads(result.output) == {"prices": {"ETH": 2000.0, "USDC": 1.0}}


def test_cache_prune(runner: CliRunner, config_path: Path, tmp_path: Path) -> None:
    _seed(tmp_path)
    result = runner.invoke(cli, ["--config", str(config_path), "cache", "prune"])
    assert result.exit_code == 0
    assert json.loads(result.output) == {"status": "pruned", "removed": 1}


def test_invalid_config_file(runner: CliRunner, tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("this is = = not toml")
    result = runner.invoke(cli, ["--config", str(path), "volume"])
    assert result.exit_code == 5
