"""Tests for the fail2ban-client wrapper."""

import subprocess
from unittest import mock

import pytest

from fail2ban_exporter import (
    Fail2BanClient,
    Fail2BanError,
    parse_jail_list,
    parse_version,
    run_command,
)


STATUS_OUTPUT = """Status
|- Number of jail:      3
`- Jail list:   sshd, nginx-http-auth,  postfix
"""


def completed(stdout, returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")


class TestParseJailList:

    def test_jails(self):
        assert parse_jail_list(STATUS_OUTPUT) == ["sshd", "nginx-http-auth", "postfix"]

    def test_no_jails(self):
        output = "Status\n|- Number of jail:      0\n`- Jail list:\n"
        assert parse_jail_list(output) == []

    def test_missing_line_is_an_error(self):
        with pytest.raises(Fail2BanError) as exc_info:
            parse_jail_list("ERROR   Unable to contact server. Is it running?\n")
        assert exc_info.value.category == "unexpected_output"


class TestParseVersion:

    @pytest.mark.parametrize("output,expected", [
        ("Fail2Ban v0.11.2\n", "0.11.2"),
        ("Fail2Ban v1.0.2\n\nCopyright (c) 2004-2008 Cyril Jaquier\n", "1.0.2"),
        ("Fail2Ban 0.10.6", "0.10.6"),
    ])
    def test_valid(self, output, expected):
        assert parse_version(output) == expected

    @pytest.mark.parametrize("output", ["", "Fail2Ban", "Fail2Ban unknown", "\n\n"])
    def test_invalid(self, output):
        with pytest.raises(Fail2BanError):
            parse_version(output)


class TestRunCommand:

    def test_returns_stdout(self):
        with mock.patch("fail2ban_exporter.subprocess.run", return_value=completed("ok\n")) as run:
            assert run_command(["fail2ban-client", "status"], timeout=3) == "ok\n"
        run.assert_called_once_with(
            ["fail2ban-client", "status"],
            capture_output=True, text=True, timeout=3, check=True,
        )

    @pytest.mark.parametrize("exc,category", [
        (subprocess.TimeoutExpired(cmd="fail2ban-client", timeout=3), "timeout"),
        (subprocess.CalledProcessError(255, "fail2ban-client", stderr="denied"), "command_failed"),
        (FileNotFoundError(2, "No such file"), "command_not_found"),
        (PermissionError(13, "Permission denied"), "command_failed"),
    ])
    def test_failures_become_fail2ban_errors(self, exc, category):
        with mock.patch("fail2ban_exporter.subprocess.run", side_effect=exc):
            with pytest.raises(Fail2BanError) as exc_info:
                run_command(["fail2ban-client", "status"], timeout=3)
        assert exc_info.value.category == category
        assert exc_info.value.__cause__ is exc


class TestFail2BanClient:

    def test_list_jails(self):
        client = Fail2BanClient("/usr/bin/fail2ban-client", timeout=2)
        with mock.patch("fail2ban_exporter.subprocess.run", return_value=completed(STATUS_OUTPUT)) as run:
            assert client.list_jails() == ["sshd", "nginx-http-auth", "postfix"]
        assert run.call_args[0][0] == ["/usr/bin/fail2ban-client", "status"]

    def test_list_banned_hosts_filters_tokens(self):
        client = Fail2BanClient()
        output = "1.2.3.4 5.6.7.8\n2001:db8::1 300.2.3.4 1.2.3.4\n"
        with mock.patch("fail2ban_exporter.subprocess.run", return_value=completed(output)) as run:
            assert client.list_banned_hosts("sshd") == ["1.2.3.4", "5.6.7.8"]
        assert run.call_args[0][0] == ["fail2ban-client", "get", "sshd", "banip"]

    def test_list_banned_hosts_failure(self):
        client = Fail2BanClient()
        error = subprocess.CalledProcessError(255, "fail2ban-client", stderr="Sorry but the jail 'x' does not exist")
        with mock.patch("fail2ban_exporter.subprocess.run", side_effect=error):
            with pytest.raises(Fail2BanError):
                client.list_banned_hosts("x")

    def test_version(self):
        client = Fail2BanClient()
        with mock.patch("fail2ban_exporter.subprocess.run", return_value=completed("Fail2Ban v0.11.2\n")):
            assert client.version() == "0.11.2"

    def test_service_running_via_systemctl(self):
        client = Fail2BanClient()
        with mock.patch("fail2ban_exporter.subprocess.run", return_value=completed("active\n")) as run:
            assert client.service_running()
        assert run.call_count == 1

    def test_service_running_falls_back_to_pgrep(self):
        client = Fail2BanClient()
        responses = [
            subprocess.CalledProcessError(3, "systemctl", stderr=""),
            completed("1234\n"),
        ]
        with mock.patch("fail2ban_exporter.subprocess.run", side_effect=responses) as run:
            assert client.service_running()
        assert run.call_args[0][0] == ["pgrep", "-x", "fail2ban-server"]

    def test_service_not_running(self):
        client = Fail2BanClient()
        responses = [
            completed("inactive\n"),
            subprocess.CalledProcessError(1, "pgrep", stderr=""),
        ]
        with mock.patch("fail2ban_exporter.subprocess.run", side_effect=responses):
            assert not client.service_running()
