"""
Pytest configuration and fixtures for user_svc_start tests.

The `host` fixture swaps fncRun for a small in-memory host that understands the
handful of tools the script calls, and points every path setting into tmp_path.
"""

import os
from pathlib import Path

import pytest

import user_svc_start as usvc

ROOT_PUBKEY = "ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQCrootkeybody root@lmhost"

ACCESS_CONF = """\
# Login access control table.
+:root:LOCAL
-:ALL:ALL
"""


class FakeHost:
    """Records every fncRun call and keeps just enough state for the checks to see."""

    def __init__(self, tmp_path: Path):
        self.calls = []
        self.inputs = {}
        self.groups = {}
        self.users = {}
        self.fail = set()
        self.mounted = False
        self.chowned = []
        self.useradd_stderr = ""
        self.subuid = tmp_path / "subuid"
        self.subgid = tmp_path / "subgid"

    def run(self, cmdkey, args=None, input=None):
        args = list(args or [])
        self.calls.append((cmdkey, args))
        if input is not None:
            self.inputs[cmdkey] = input
        if cmdkey in self.fail:
            return 1, "", f"{cmdkey}: simulated failure"
        handler = getattr(self, "_" + cmdkey.replace("-", "_"), None)
        if handler is None:
            return 0, "", ""
        return handler(args)

    def _getent(self, args):
        database, name = args
        if database == "group" and name in self.groups:
            return 0, f"{name}:x:{self.groups[name]}:", ""
        if database == "passwd" and name in self.users:
            uid, home = self.users[name]
            return 0, f"{name}:x:{uid}:{uid}::{home}:/bin/bash", ""
        return 2, "", ""

    def _groupadd(self, args):
        self.groups[args[-1]] = int(args[args.index("--gid") + 1])
        return 0, "", ""

    def _useradd(self, args):
        home = args[args.index("--home-dir") + 1]
        self.users[args[-1]] = (int(args[args.index("--uid") + 1]), home)
        os.makedirs(home, exist_ok=True)
        return 0, "", self.useradd_stderr

    def _usermod(self, args):
        flag, span, name = args
        first, last = (int(x) for x in span.split("-"))
        path = self.subuid if flag == "--add-subuids" else self.subgid
        with open(path, "a") as f:
            f.write(f"{name}:{first}:{last - first + 1}\n")
        return 0, "", ""

    def _mountpoint(self, args):
        return (0 if self.mounted else 1), "", ""

    def _mount(self, args):
        self.mounted = True
        return 0, "", ""

    def _ssh_keygen(self, args):
        path = args[args.index("-f") + 1]
        Path(path).write_text("PRIVATE\n")
        Path(path + ".pub").write_text(ROOT_PUBKEY + "\n")
        return 0, "", ""

    def commands(self, cmdkey):
        return [args for key, args in self.calls if key == cmdkey]


@pytest.fixture
def host(tmp_path, monkeypatch):
    fake = FakeHost(tmp_path)

    home_root = tmp_path / "home"
    home_root.mkdir()
    access_conf = tmp_path / "access.conf"
    access_conf.write_text(ACCESS_CONF)
    access_conf.chmod(0o644)
    key_dir = tmp_path / "root" / ".ssh"
    key_dir.mkdir(parents=True)
    (key_dir / "id_rsa").write_text("PRIVATE\n")
    (key_dir / "id_rsa.pub").write_text(ROOT_PUBKEY + "\n")

    monkeypatch.setattr(usvc, "fncRun", fake.run)
    monkeypatch.setattr(usvc, "fncChownTree", lambda path, user: fake.chowned.append((path, user)))
    monkeypatch.setattr(usvc, "HOMEROOT", str(home_root))
    monkeypatch.setattr(usvc, "ACCESS_CONF", str(access_conf))
    monkeypatch.setattr(usvc, "ROOT_SSH_KEY", str(key_dir / "id_rsa"))
    monkeypatch.setattr(usvc, "SUBUID_FILE", str(fake.subuid))
    monkeypatch.setattr(usvc, "SUBGID_FILE", str(fake.subgid))
    monkeypatch.setattr(usvc, "SUBUID_INC", 99999)
    monkeypatch.setattr(usvc, "SSHD_RESTART_DELAY", 0)
    monkeypatch.setattr(usvc, "SSH_CONNECT_TIMEOUT", 5)
    monkeypatch.setattr(usvc, "SERVICE_SUFFIX", "_lm")
    monkeypatch.setattr(usvc, "MOUNT_DEVICE", "/dev/sda")
    monkeypatch.setattr(usvc, "PACKAGES", ["podman"])
    return fake
