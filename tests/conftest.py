"""Shared pytest fixtures for cloudflared-me tests."""

import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Generator

import pytest

FAKE_CLOUDFLARED = """#!/bin/sh
# Stand-in for cloudflared: records its arguments and answers like the real CLI.
echo "$*" >> "${FAKE_CLOUDFLARED_CALLS:-/dev/null}"
case "$2" in
  login)
    exit "${FAKE_LOGIN_EXIT:-0}"
    ;;
  create)
    if [ -n "$FAKE_CREATE_OUTPUT" ]; then
      echo "$FAKE_CREATE_OUTPUT"
    else
      echo "Tunnel credentials written to /tmp/${FAKE_TUNNEL_ID:-abc123}.json."
      echo "Created tunnel $3 with ID: ${FAKE_TUNNEL_ID:-abc123}"
    fi
    exit "${FAKE_CREATE_EXIT:-0}"
    ;;
  run)
    echo "tunnel $3 running"
    exit 0
    ;;
  route)
    echo "route failed" >&2
    exit "${FAKE_ROUTE_EXIT:-0}"
    ;;
esac
exit 2
"""


@dataclass
class FakeCloudflared:
    """Paths of the fake cloudflared script and its call log."""

    path: Path
    calls_file: Path

    def calls(self) -> list[str]:
        if not self.calls_file.exists():
            return []
        return self.calls_file.read_text().splitlines()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Generator[Path, None, None]:
    """Provide a temporary cloudflared config directory."""
    config_dir = tmp_path / ".cloudflared"
    config_dir.mkdir()
    yield config_dir


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    """Clear all CLOUDFLARED_ME_ environment variables and keep every file under tmp_path."""
    env_vars = [key for key in os.environ if key.startswith("CLOUDFLARED_ME_")]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    # Point to a non-existent settings file to prevent auto-loading
    fake_config = tmp_path / "nonexistent" / "config.yaml"
    monkeypatch.setenv("CLOUDFLARED_ME_CONFIG", str(fake_config))
    monkeypatch.setenv("CLOUDFLARED_ME_LOG_FILE", str(tmp_path / "cloudflared_me.log"))
    monkeypatch.setenv("CLOUDFLARED_ME_TUNNEL_LOG_FILE", str(tmp_path / "cloudflared_tunnel.log"))
    monkeypatch.setenv("CLOUDFLARED_ME_ORIGIN_CERT", str(tmp_path / "no-cert" / "cert.pem"))
    yield


@pytest.fixture
def fake_cloudflared(
    clean_env: None, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> Generator[FakeCloudflared, None, None]:
    """Install a fake cloudflared script and point cloudflared-me at it."""
    for var in ("FAKE_LOGIN_EXIT", "FAKE_CREATE_OUTPUT", "FAKE_CREATE_EXIT", "FAKE_ROUTE_EXIT"):
        monkeypatch.delenv(var, raising=False)

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "cloudflared"
    script.write_text(FAKE_CLOUDFLARED)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    calls_file = tmp_path / "cloudflared_calls.txt"
    monkeypatch.setenv("FAKE_CLOUDFLARED_CALLS", str(calls_file))
    monkeypatch.setenv("FAKE_TUNNEL_ID", "abc123")
    monkeypatch.setenv("CLOUDFLARED_ME_CLOUDFLARED_PATH", str(script))
    yield FakeCloudflared(path=script, calls_file=calls_file)
