"""Tests for the installer's generated files and small helpers."""

import hashlib

import pytest

import installer
import user_svc_start as usvc


class TestUsersFormatting:

    def test_format_reads_back(self):
        users = [("gurobi", 2000000000), ("ampl", 2000400000)]
        text = installer.fncFormatUsers(users)
        assert text == "gurobi 2000000000 ampl 2000400000"
        assert usvc.fncParseUsers(text) == users

    def test_next_uid(self):
        assert installer.fncNextUid([]) == 2000000000
        assert installer.fncNextUid([("a", 2000000000), ("b", 2000300000)]) == 2000400000

    def test_prompt_users(self, monkeypatch):
        answers = iter(["alice", "", "bob", "abc", "carol", "2000500000", ""])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))
        assert installer.fncPromptUsers() == [("alice", 2000000000), ("carol", 2000500000)]


class TestShQuote:

    def test_plain(self):
        assert installer.fncShQuote("/dev/sda") == "'/dev/sda'"

    def test_none(self):
        assert installer.fncShQuote(None) == "''"

    def test_embedded_quote(self):
        assert installer.fncShQuote("it's") == "'it'\"'\"'s'"


class TestGeneratedFiles:

    def test_service_unit(self):
        unit = installer.fncBuildServiceUnit()
        assert "Type=oneshot" in unit
        assert f"ExecStart=/usr/bin/python3 {installer.SCRIPT_DST}" in unit
        assert f"ExecCondition={installer.CHECKER}" in unit
        assert f"EnvironmentFile=-{installer.ENVFILE}" in unit
        assert "After=network-online.target sshd.service" in unit
        assert unit.rstrip().endswith("WantedBy=multi-user.target")

    def test_checker_embeds_hashes(self):
        script = installer.fncBuildChecker("a" * 64, "b" * 64)
        assert script.startswith("#!/bin/bash\n")
        assert f'EXPECTED_SHA="{"a" * 64}"' in script
        assert f'EXPECTED_ENV_SHA="{"b" * 64}"' in script
        assert f'SCRIPT="{installer.SCRIPT_DST}"' in script

    def test_sha256(self, tmp_path):
        path = tmp_path / "payload"
        path.write_bytes(b"x" * 20000)
        assert installer.fncSha256Sum(path) == hashlib.sha256(b"x" * 20000).hexdigest()

    def test_envfile_content(self, monkeypatch):
        answers = iter(["alice", "", "", "/srv/home", "-", "podman crun"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))
        content = installer.fncBuildEnvfileContent()
        assert "USERS='alice 2000000000'\n" in content
        assert "HOMEROOT='/srv/home'\n" in content
        assert "MOUNT_DEVICE=''\n" in content
        assert "PACKAGES='podman crun'\n" in content


class TestColor:

    def test_no_color_env(self, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "1")
        assert installer.fncColor("hi", "green") == "hi"

    def test_mono_mode(self, monkeypatch):
        monkeypatch.setenv("FORCE_COLOR", "1")
        monkeypatch.delenv("NO_COLOR", raising=False)
        installer.fncSetColorMode(True)
        try:
            assert installer.fncColor("hi", "green") == "hi"
        finally:
            installer.fncSetColorMode(False)

    def test_forced_color(self, monkeypatch):
        monkeypatch.setenv("FORCE_COLOR", "1")
        monkeypatch.delenv("NO_COLOR", raising=False)
        assert installer.fncColor("hi", "green") != "hi"


class TestRequireRoot:

    def test_exits_when_not_root(self, monkeypatch):
        monkeypatch.setattr(installer.os, "geteuid", lambda: 1000)
        with pytest.raises(SystemExit) as exc:
            installer.fncRequireRoot()
        assert exc.value.code == 1


class TestAskYesNo:

    def _answers(self, monkeypatch, *answers):
        it = iter(answers)
        monkeypatch.setattr("builtins.input", lambda prompt="": next(it))

    def test_blank_takes_default(self, monkeypatch):
        self._answers(monkeypatch, "", "")
        assert installer.fncAskYesNo("Go?") is False
        assert installer.fncAskYesNo("Go?", default_yes=True) is True

    def test_asks_again_on_nonsense(self, monkeypatch, capsys):
        self._answers(monkeypatch, "maybe", "YES")
        assert installer.fncAskYesNo("Go?") is True
        assert "Please answer y or n." in capsys.readouterr().out


@pytest.fixture
def installed(tmp_path, monkeypatch):
    """An installed layout under tmp_path, with the local source one edit ahead."""
    src = tmp_path / "src.py"
    src.write_text("print('v2')\n")
    dst = tmp_path / "sbin" / "user_svc_start.py"
    dst.parent.mkdir()
    dst.write_text("print('v1')\n")
    checker = tmp_path / "sbin" / "check.sh"
    checker.write_text("#!/bin/bash\n")
    envfile = tmp_path / "user_svc_start.env"
    envfile.write_text("USERS='alice 2000000000'\n")
    for name, path in (("SCRIPT_SRC", src), ("SCRIPT_DST", dst), ("CHECKER", checker), ("ENVFILE", envfile),
                       ("SERVICE", tmp_path / "unit.service"), ("LOGROTATE", tmp_path / "logrotate"),
                       ("LOGDIR", tmp_path / "log"), ("STATEDIR", tmp_path / "state")):
        monkeypatch.setattr(installer, name, path)
    monkeypatch.setattr(installer, "fncRequireRoot", lambda: None)
    ran = []
    monkeypatch.setattr(installer, "fncRun", ran.append)
    return {"src": src, "dst": dst, "checker": checker, "envfile": envfile, "ran": ran}


class TestUpdate:

    def test_copies_newer_script_and_repins(self, installed, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt="": "n")
        installer.fncDoUpdate()
        assert installed["dst"].read_text() == "print('v2')\n"
        checker = installed["checker"].read_text()
        assert f'EXPECTED_SHA="{installer.fncSha256Sum(installed["src"])}"' in checker
        assert f'EXPECTED_ENV_SHA="{installer.fncSha256Sum(installed["envfile"])}"' in checker
        assert installed["envfile"].read_text() == "USERS='alice 2000000000'\n"
        assert installed["ran"] == []

    def test_restart(self, installed, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt="": "")
        installer.fncDoUpdate(auto_restart=True)
        assert installed["ran"] == [["systemctl", "restart", installer.SERVICE_NAME]]

    def test_missing_checker_exits(self, installed):
        installed["checker"].unlink()
        with pytest.raises(SystemExit) as exc:
            installer.fncDoUpdate()
        assert exc.value.code == 1


class TestUninstall:

    def test_keeps_what_the_operator_declines(self, installed, monkeypatch):
        installer.LOGDIR.mkdir()
        answers = iter(["n", "y"])
        monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))
        installer.fncDoUninstall()
        assert not installed["dst"].exists()
        assert not installed["checker"].exists()
        assert installed["envfile"].exists()
        assert not installer.LOGDIR.exists()
