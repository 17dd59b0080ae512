"""
Tests for the sshlink CLI interface.

Tests the command-line interface for:
- Argument parsing (user@host, port, key, SFTP operations)
- The interactive host key prompt
- Exit code on connection failure
"""
from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from sshlink.__main__ import (
    cli_host_key_callback,
    create_parser,
    parse_target,
    run,
)
from sshlink.host_key import HostIdentity, TrustResult
from sshlink.testing import DEFAULT_HOST_IDENTITY


class TestArgumentParsing:
    """Tests for CLI argument parsing."""

    def test_parse_target_with_user(self) -> None:
        assert parse_target("alice@example.com") == ("example.com", "alice")

    def test_parse_target_without_user(self) -> None:
        assert parse_target("example.com") == ("example.com", None)

    def test_parse_target_with_at_in_user(self) -> None:
        """Split on the rightmost @."""
        assert parse_target("user@domain@host.com") == ("host.com", "user@domain")

    def test_parser_defaults(self) -> None:
        args = create_parser().parse_args(["example.com"])

        assert args.target == "example.com"
        assert args.port is None
        assert args.identity is None
        assert args.timeout is None
        assert args.retries is None
        assert not args.no_strict
        assert not args.events
        assert args.verbose == 0
        assert args.ls is None and args.get is None and args.put is None

    def test_parser_options(self) -> None:
        args = create_parser().parse_args([
            "-p", "2222",
            "-i", "~/.ssh/id_ed25519",
            "--timeout", "3.5",
            "--retries", "2",
            "--no-strict",
            "-vv",
            "alice@example.com",
        ])

        assert args.port == 2222
        assert args.identity == "~/.ssh/id_ed25519"
        assert args.timeout == 3.5
        assert args.retries == 2
        assert args.no_strict
        assert args.verbose == 2

    def test_sftp_operations(self) -> None:
        parser = create_parser()

        assert parser.parse_args(["--ls", "/tmp", "h"]).ls == "/tmp"
        assert parser.parse_args(["--get", "/etc/hostname", ".", "h"]).get == ["/etc/hostname", "."]
        assert parser.parse_args(["--put", "a.txt", "/srv", "h"]).put == ["a.txt", "/srv"]

    def test_sftp_operations_exclusive(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--ls", "/tmp", "--put", "a", "b", "h"])


class TestHostKeyPrompt:
    """cli_host_key_callback answers from stdin."""

    @pytest.fixture
    def identity(self) -> HostIdentity:
        return DEFAULT_HOST_IDENTITY

    def test_mismatch_always_refused(
        self,
        identity: HostIdentity,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setattr("builtins.input", lambda prompt="": pytest.fail("prompted"))

        assert not cli_host_key_callback("example.com", identity, TrustResult.MISMATCH)
        assert "HAS CHANGED" in capsys.readouterr().err

    def test_unknown_accepted_on_yes(
        self,
        identity: HostIdentity,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        with patch("builtins.input", return_value="yes") as prompt:
            assert cli_host_key_callback("example.com", identity, TrustResult.NOT_FOUND)

        prompt.assert_called_once()
        assert identity.fingerprint_sha256 in capsys.readouterr().err

    def test_unknown_refused_on_no(
        self,
        identity: HostIdentity,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr("builtins.input", lambda prompt="": "no")

        assert not cli_host_key_callback("example.com", identity, TrustResult.NOT_FOUND)

    def test_asks_again_until_answered(
        self,
        identity: HostIdentity,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        answers = iter(["maybe", "", "y"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))

        assert cli_host_key_callback("example.com", identity, TrustResult.NOT_FOUND)

    def test_eof_refuses(
        self,
        identity: HostIdentity,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def eof(prompt: str = "") -> str:
            raise EOFError

        monkeypatch.setattr("builtins.input", eof)

        assert not cli_host_key_callback("example.com", identity, TrustResult.NOT_FOUND)


class TestRun:
    """run() end to end against a local port nobody listens on."""

    @pytest.mark.asyncio
    async def test_refused_connection_exits_1(
        self,
        tmp_path: Path,
        closed_port: int,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        config = tmp_path / "config"
        config.write_text("")
        args = create_parser().parse_args([
            "-F", str(config),
            "--known-hosts", str(tmp_path / "known_hosts"),
            "--no-strict",
            "--timeout", "5",
            "-q",
            "-p", str(closed_port),
            "alice@127.0.0.1",
        ])

        assert await run(args) == 1
        assert f"127.0.0.1:{closed_port}" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_missing_identity_file_exits_1(
        self,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        config = tmp_path / "config"
        config.write_text("")
        args = create_parser().parse_args([
            "-F", str(config),
            "--known-hosts", str(tmp_path / "known_hosts"),
            "-i", str(tmp_path / "id_missing"),
            "-q",
            "alice@127.0.0.1",
        ])

        assert await run(args) == 1
        assert "Key file not found" in capsys.readouterr().err
