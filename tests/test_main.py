"""Tests for the command line entry point."""

import json

import pytest

from highload_settlement.__main__ import _build_parser, main
from highload_settlement.config import clear_settings_cache


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("TON_WALLET_ADDRESS", "0:" + "ab" * 32)
    monkeypatch.setenv("TON_PUBLIC_KEY_HEX", bytes(range(32)).hex())
    monkeypatch.setenv("TON_WALLET_CODE_HASH_HEX", "33" * 32)
    monkeypatch.setenv("TON_WALLET_CODE_DEPTH", "7")
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestParser:
    def test_allocate_requires_users(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["allocate"])

    def test_default_command(self) -> None:
        assert _build_parser().parse_args([]).command is None


class TestCommands:
    """Commands run against a throwaway SQLite file."""

    def test_allocate_and_export(self, env, capsys) -> None:
        main(["init-db"])
        main(["allocate", "user_alice", "user_bob"])
        allocated = capsys.readouterr().out.strip().splitlines()

        assert [line.split("\t")[0] for line in allocated] == ["user_alice", "user_bob"]

        main(["allocate", "user_alice"])
        again = capsys.readouterr().out.strip()
        assert again == allocated[0]

        main(["export"])
        exported = json.loads(capsys.readouterr().out)
        assert {entry["user_id"] for entry in exported} == {"user_alice", "user_bob"}
