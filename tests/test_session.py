"""Tests for browser_netcap.session module."""

from __future__ import annotations

import json
import os
from unittest.mock import patch

from browser_netcap.session import (
    cleanup_runtime_files,
    get_base_dir,
    get_log_path,
    get_socket_path,
    get_state_path,
    is_daemon_alive,
    is_pid_alive,
    read_state,
    read_user_config,
    write_state,
)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


class TestPaths:
    def test_base_dir_is_created(self, netcap_home):
        assert get_base_dir() == netcap_home
        assert netcap_home.is_dir()

    def test_file_locations(self, netcap_home):
        assert get_socket_path() == netcap_home / "daemon.sock"
        assert get_state_path() == netcap_home / "daemon.json"
        assert get_log_path() == netcap_home / "daemon.log"


# ---------------------------------------------------------------------------
# Identity file
# ---------------------------------------------------------------------------


class TestState:
    def test_write_uses_camel_case(self, netcap_home):
        write_state(4242, netcap_home / "daemon.sock")
        data = json.loads(get_state_path().read_text())
        assert data == {"pid": 4242, "socketPath": str(netcap_home / "daemon.sock")}

    def test_read_round_trip(self, netcap_home):
        write_state(4242, get_socket_path())
        state = read_state()
        assert state.pid == 4242
        assert state.socket_path == str(get_socket_path())

    def test_read_missing(self, netcap_home):
        assert read_state() is None

    def test_read_empty_or_corrupt(self, netcap_home):
        get_state_path().write_text("")
        assert read_state() is None
        get_state_path().write_text('{"pid": "not-a-pid"}')
        assert read_state() is None


class TestLiveness:
    def test_own_pid_is_alive(self):
        assert is_pid_alive(os.getpid()) is True

    def test_dead_pid(self):
        with patch("browser_netcap.session.os.kill", side_effect=ProcessLookupError):
            assert is_pid_alive(999999) is False

    def test_permission_error_counts_as_alive(self):
        with patch("browser_netcap.session.os.kill", side_effect=PermissionError):
            assert is_pid_alive(1) is True

    def test_daemon_alive_follows_identity_file(self, netcap_home):
        assert is_daemon_alive() is False
        write_state(os.getpid(), get_socket_path())
        assert is_daemon_alive() is True


class TestCleanup:
    def test_removes_socket_and_state(self, netcap_home):
        get_socket_path().touch()
        write_state(1, get_socket_path())
        cleanup_runtime_files()
        assert not get_socket_path().exists()
        assert not get_state_path().exists()

    def test_idempotent(self, netcap_home):
        cleanup_runtime_files()
        cleanup_runtime_files()


class TestUserConfig:
    def test_missing(self, netcap_home):
        assert read_user_config() is None

    def test_invalid_json(self, netcap_home):
        get_base_dir().joinpath("config.json").write_text("{oops")
        assert read_user_config() is None

    def test_valid(self, netcap_home):
        get_base_dir().joinpath("config.json").write_text('{"browser": {"port": 1}}')
        assert read_user_config() == {"browser": {"port": 1}}
