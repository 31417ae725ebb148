#!/usr/bin/env python3
# Script: user_svc_start.py
# Provisions rootless-container users and starts their licensing services.
#
# What this does (for my future self):
# - Mount the home disk (stateless host, it isn't mounted at boot) and install podman
# - Make sure root has an ssh key pair
# - For every "username uid" pair in USERS:
#     * group + user with uid=gid=uid, home under HOMEROOT
#     * subuid/subgid range uid+1 .. uid+SUBUID_INC
#     * linger, so the user's systemd keeps running with nobody logged in
#     * PAM access.conf rule so root may ssh username@localhost
#     * root's public key in ~username/.ssh/authorized_keys
#     * over ssh as the user: podman system migrate, then enable/start username_lm
# - Every step checks first, so running it again is harmless
# - Logs to /var/log/user_svc_start/user_svc_start.log
#
# Caveats:
# - uids in USERS must go up in steps of 100000 ("userA 2000700000", "userB 2000800000"),
#   nothing here checks that ranges don't overlap.
# - ~username/.config/systemd/user/username_lm.service is not created here. It can be
#   dropped in later; the next run starts it.
# - If a uid in /etc/passwd drifts from the files in that user's home, move the home
#   away, "userdel -r" the user and start again with a fresh uid.

# ==============================
# Imports
# ==============================

# Standard library
import fcntl
import logging
import os
import re
import shutil
import stat
import subprocess
import sys
import tempfile
import time

# Third-party
from colorama import Fore, Style

#=================#
# Global Settings #
#=================#

MIN_PYTHON_VERSION = (3, 10)
ADMIN_REQUIRED = True   # Script requires root

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
# Usernames/uids may be separated by any combination of tabs, spaces & newlines.
#username    uid
USERS = """
gurobi       2000000000
schrodinger  2000100000
tecplot      2000200000
xfdtd        2000300000
ampl         2000400000
totalview    2000500000
"""

HOMEROOT = "/home"
SUBUID_INC = 99999

MOUNT_DEVICE = "/dev/sda"           # Empty string = don't mount anything
PACKAGES = ["podman"]               # Installed with dnf before provisioning

ACCESS_CONF = "/etc/security/access.conf"
DENY_ALL_RULE = "-:ALL:ALL"
LOOPBACK_ORIGINS = "127.0.0.1 ::1"

ROOT_SSH_KEY = "/root/.ssh/id_rsa"
SSH_CONNECT_TIMEOUT = 5             # Seconds
SSHD_RESTART_DELAY = 3              # Seconds; keeps us under systemd's StartLimitBurst

SERVICE_SUFFIX = "_lm"              # Unit is <username>_lm.service

SUBUID_FILE = "/etc/subuid"
SUBGID_FILE = "/etc/subgid"

LOG_FILE = "/var/log/user_svc_start/user_svc_start.log"
STATE_DIR = "/var/lib/user_svc_start"
LOCK_PATH = os.path.join(STATE_DIR, ".lock")
LOGROTATE_PATH = "/etc/logrotate.d/user_svc_start"

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "getent":     "/usr/bin/getent",
  "groupadd":   "/usr/sbin/groupadd",
  "useradd":    "/usr/sbin/useradd",
  "usermod":    "/usr/sbin/usermod",
  "loginctl":   "/usr/bin/loginctl",
  "systemctl":  "/usr/bin/systemctl",
  "ssh":        "/usr/bin/ssh",
  "ssh-keygen": "/usr/bin/ssh-keygen",
  "mount":      "/usr/bin/mount",
  "mountpoint": "/usr/bin/mountpoint",
  "dnf":        "/usr/bin/dnf",
}

#===========================#
# Environment Overlay Utils #
#===========================#

# Lockfile so two runs don't stampede each other
_LOCK_FH = None

def fncAcquireLock():
    """Acquire an exclusive lock to prevent concurrent runs."""
    os.makedirs(STATE_DIR, exist_ok=True)
    global _LOCK_FH
    try:
        _LOCK_FH = open(LOCK_PATH, "w")
        os.chmod(LOCK_PATH, 0o600)
        fcntl.lockf(_LOCK_FH, fcntl.LOCK_EX | fcntl.LOCK_NB)
        logging.debug("Acquired lock: %s", LOCK_PATH)
    except BlockingIOError:
        fncPrintMessage("Another instance of user_svc_start is already running.", "warning")
        sys.exit(1)
    except Exception as e:
        fncPrintMessage(f"Failed to acquire lock ({LOCK_PATH}): {e}", "error")
        sys.exit(1)

# Function: _env_int
# Purpose : Read an integer env var with a default.
# Notes   : A non-numeric value is a config error; int() raises.
def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return int(v.strip())

# Function: _env_list
# Purpose : Parse a list from env using commas/spaces as separators.
# Notes   : Returns default when env missing; a set-but-blank value means "nothing".
def _env_list(name: str, default: list[str]) -> list[str]:
    v = os.getenv(name)
    if v is None:
        return default
    return [p.strip() for p in re.split(r"[,\s]+", v) if p.strip()]

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return (v.strip() if v is not None else default)

def _assert_regular_or_missing(p: str | os.PathLike):
    try:
        st = os.lstat(p)
        if not stat.S_ISREG(st.st_mode):
            raise RuntimeError(f"{p} is not a regular file")
    except FileNotFoundError:
        return

def _safe_write_atomic(path: str, data: str, mode: int = 0o600):
    d = os.path.dirname(path)
    _assert_regular_or_missing(path)
    # write to a secure temp in same dir
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=d)
    try:
        os.write(fd, data.encode(errors="surrogateescape"))
        os.fsync(fd)
    finally:
        os.close(fd)
    os.chmod(tmp, mode)
    # refuse to overwrite a symlink
    try:
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            os.remove(tmp)
            raise RuntimeError(f"Refusing to overwrite symlink: {path}")
    except FileNotFoundError:
        pass
    os.replace(tmp, path)

def _read_text_or_empty(path: str) -> str:
    try:
        with open(path, "r", errors="surrogateescape") as f:
            return f.read()
    except FileNotFoundError:
        return ""

#===========================#
# Apply Environment Overrides
#===========================#

USERS               = os.getenv("USERS", USERS)
HOMEROOT            = _env_str("HOMEROOT", HOMEROOT)
SUBUID_INC          = _env_int("SUBUID_INC", SUBUID_INC)
MOUNT_DEVICE        = _env_str("MOUNT_DEVICE", MOUNT_DEVICE)
PACKAGES            = _env_list("PACKAGES", PACKAGES)
ACCESS_CONF         = _env_str("ACCESS_CONF", ACCESS_CONF)
ROOT_SSH_KEY        = _env_str("ROOT_SSH_KEY", ROOT_SSH_KEY)
SSH_CONNECT_TIMEOUT = _env_int("SSH_CONNECT_TIMEOUT", SSH_CONNECT_TIMEOUT)
SSHD_RESTART_DELAY  = _env_int("SSHD_RESTART_DELAY", SSHD_RESTART_DELAY)
SERVICE_SUFFIX      = _env_str("SERVICE_SUFFIX", SERVICE_SUFFIX)

#===================#
# Utility / Logging #
#===================#

# Function: fncScriptSecurityCheck
# Purpose : Ensure script is root-owned, root-executed, and locked-down perms.
# Notes   : Exits non-zero with a clear message if any check fails.
def fncScriptSecurityCheck():
    script_path = os.path.realpath(__file__)
    st = os.stat(script_path)

    # 1) Must be executed as root
    if os.geteuid() != 0:
        fncPrintMessage("This script must be run as root.", "error")
        sys.exit(1)

    # 2) Must be owned by root
    if st.st_uid != 0:
        fncPrintMessage("Script must be owned by root.", "error")
        sys.exit(1)

    # 3) Group/other must have no write access
    bad_perms = stat.S_IWGRP | stat.S_IWOTH
    if st.st_mode & bad_perms:
        fncPrintMessage(
            f"Insecure permissions on {script_path}. Only root may write it (chmod 700).",
            "error"
        )
        sys.exit(1)
    return True

# Function: fncBootstrapPaths
# Purpose : Create required directories and apply conservative permissions.
# Notes   : Safe to call multiple times; no-op when present.
def fncBootstrapPaths():
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    os.makedirs(STATE_DIR, exist_ok=True)
    os.chmod(os.path.dirname(LOG_FILE), 0o750)
    os.chmod(STATE_DIR, 0o750)

# Function: fncEnsureLogrotate
# Purpose : Drop a logrotate file so the log doesn't grow forever.
# Notes   : Creates once; ignores errors (warns only).
def fncEnsureLogrotate():
    content = f"""{LOG_FILE} {{
  weekly
  rotate 8
  compress
  missingok
  notifempty
  create 0640 root root
}}
"""
    try:
        if not os.path.exists(LOGROTATE_PATH):
            with open(LOGROTATE_PATH, "w") as f:
                f.write(content)
            os.chmod(LOGROTATE_PATH, 0o644)
    except Exception as e:
        logging.warning("Couldn't write logrotate file (%s): %s", LOGROTATE_PATH, e)

# Function: fncSetupLogging
# Purpose : Configure logging to file and stdout; ensure paths & logrotate exist.
# Notes   : INFO for changes; DEBUG for "already there" skips.
def fncSetupLogging():
    fncBootstrapPaths()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[logging.FileHandler(LOG_FILE), logging.StreamHandler(sys.stdout)],
    )
    logging.info("---- Script start ----")
    fncEnsureLogrotate()

# Function: fncPrintMessage
# Purpose : Human-friendly colored console messages.
# Notes   : Used for important user-facing prints (not logs).
def fncPrintMessage(message, msg_type="info"):
    styles = {
        "info":    Fore.CYAN  + "{~} ",
        "warning": Fore.RED   + "{!} ",
        "success": Fore.GREEN + "{=]} ",
        "error":   Fore.RED   + "{!} ",
        "disabled":Fore.LIGHTBLACK_EX + "{X} ",
    }
    print(f"{styles.get(msg_type, Fore.WHITE)}{message}{Style.RESET_ALL}")

# Function: fncCheckPyVersion
# Purpose : Fail fast on unsupported Python versions.
def fncCheckPyVersion():
    python_version = sys.version.split()[0]
    fncPrintMessage(f"Python Version Detected: {python_version}", "info")
    if sys.version_info < MIN_PYTHON_VERSION:
        fncPrintMessage("This script requires Python 3.10.0 or higher. Please upgrade.", "error")
        sys.exit(1)

# Function: fncAdminCheck
# Purpose : Ensure the process runs as root when ADMIN_REQUIRED is True.
def fncAdminCheck():
    if ADMIN_REQUIRED and os.geteuid() != 0:
        fncPrintMessage("This needs root. useradd, access.conf and sshd won't listen to anyone else.", "error")
        sys.exit(1)

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). Never raises on tool failure.
def fncRun(cmdkey: str, args: list[str] | None = None, input: str | None = None) -> tuple[int, str, str]:
    exe = BIN.get(cmdkey)
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: {cmdkey} -> {exe}"
    logging.debug("Run: %s %s", exe, " ".join(args or []))
    try:
        p = subprocess.run([exe] + (args or []), input=input, capture_output=True, text=True, check=False)
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except FileNotFoundError as e:
        return 127, "", str(e)

#====================#
# Users list         #
#====================#

# Function: fncParseUsers
# Purpose : Turn the whitespace-separated "name uid name uid ..." list into pairs.
# Notes   : Order kept, duplicates not detected. Odd token count or a non-numeric uid raises ValueError.
def fncParseUsers(text: str) -> list[tuple[str, int]]:
    tokens = text.split()
    if len(tokens) % 2:
        raise ValueError(f"USERS has a username without a uid: {tokens[-1]!r}")
    return [(tokens[i], int(tokens[i + 1])) for i in range(0, len(tokens), 2)]

# Function: fncSubidRange
# Purpose : First and last subordinate id owned by a user.
def fncSubidRange(uid: int) -> tuple[int, int]:
    return uid + 1, uid + SUBUID_INC

def fncHomeDir(user: str) -> str:
    return os.path.join(HOMEROOT, user)

def fncServiceName(user: str) -> str:
    return f"{user}{SERVICE_SUFFIX}"

#====================#
# Host preparation   #
#====================#

# Function: fncMountHome
# Purpose : Mount MOUNT_DEVICE on HOMEROOT unless something is mounted there already.
# Notes   : This host is stateless; the home disk isn't in fstab.
def fncMountHome():
    if not MOUNT_DEVICE:
        logging.debug("MOUNT_DEVICE empty; not mounting %s", HOMEROOT)
        return
    rc, _, _ = fncRun("mountpoint", ["-q", HOMEROOT])
    if rc == 0:
        logging.debug("%s already mounted", HOMEROOT)
        return
    rc, _, err = fncRun("mount", [MOUNT_DEVICE, HOMEROOT])
    if rc != 0:
        logging.error("Failed to mount %s on %s: %s", MOUNT_DEVICE, HOMEROOT, err)
    else:
        logging.info("Mounted %s on %s", MOUNT_DEVICE, HOMEROOT)

# Function: fncInstallPackages
# Purpose : Install the container runtime (dnf is a no-op when already installed).
def fncInstallPackages():
    if not PACKAGES:
        return
    rc, _, err = fncRun("dnf", ["-y", "--quiet", "install"] + list(PACKAGES))
    if rc != 0:
        logging.error("dnf install %s failed: %s", " ".join(PACKAGES), err)
    else:
        logging.info("Packages present: %s", " ".join(PACKAGES))

# Function: fncEnsureRootKey
# Purpose : Generate root's RSA key pair unless both halves exist.
# Notes   : "y" on stdin lets ssh-keygen overwrite a lone private key.
def fncEnsureRootKey():
    pub = ROOT_SSH_KEY + ".pub"
    if os.path.exists(ROOT_SSH_KEY) and os.path.exists(pub):
        logging.debug("Root key pair present: %s", ROOT_SSH_KEY)
        return
    os.makedirs(os.path.dirname(ROOT_SSH_KEY), mode=0o700, exist_ok=True)
    rc, _, err = fncRun("ssh-keygen", ["-q", "-t", "rsa", "-N", "", "-f", ROOT_SSH_KEY], input="y\n")
    if rc != 0:
        logging.error("ssh-keygen failed for %s: %s", ROOT_SSH_KEY, err)
    else:
        logging.info("Generated root key pair: %s", ROOT_SSH_KEY)

# Function: fncReadRootPubKey
# Purpose : Root's public key as a single line, or None if it can't be read.
def fncReadRootPubKey() -> str | None:
    pub = ROOT_SSH_KEY + ".pub"
    try:
        with open(pub, "r") as f:
            key = f.read().strip()
    except OSError as e:
        logging.error("Can't read root public key %s: %s", pub, e)
        return None
    if len(key.split()) < 2:
        logging.error("Unexpected key format in %s", pub)
        return None
    return key

#====================#
# Accounts           #
#====================#

# Function: fncGetent
# Purpose : One getent record split on ":", or None when the name is unknown.
def fncGetent(database: str, name: str) -> list[str] | None:
    rc, out, _ = fncRun("getent", [database, name])
    if rc != 0 or not out:
        return None
    return out.splitlines()[0].split(":")

# Function: fncEnsureGroup
# Purpose : Ensure group <name> exists with the given gid.
# Notes   : An existing group with another gid is reported, not changed.
def fncEnsureGroup(name: str, gid: int) -> bool:
    entry = fncGetent("group", name)
    if entry is not None:
        if len(entry) > 2 and entry[2] != str(gid):
            logging.warning("Group %s exists with gid %s, expected %d; leaving it", name, entry[2], gid)
        else:
            logging.debug("Group %s already exists", name)
        return False
    rc, _, err = fncRun("groupadd", ["--gid", str(gid), name])
    if rc != 0:
        logging.error("Failed to create group %s: %s", name, err)
        return False
    logging.info("Created group: %s (gid=%d)", name, gid)
    return True

# Function: fncEnsureUser
# Purpose : Ensure user <name> exists with uid=gid=uid and a home under HOMEROOT.
# Notes   : --no-user-group since the group is made first. An existing home dir only
#           makes useradd warn; the account is still added.
def fncEnsureUser(name: str, uid: int, home: str) -> bool:
    entry = fncGetent("passwd", name)
    if entry is not None:
        if len(entry) > 2 and entry[2] != str(uid):
            logging.warning("User %s exists with uid %s, expected %d; leaving it", name, entry[2], uid)
        else:
            logging.debug("User %s already exists", name)
        return False
    rc, _, err = fncRun("useradd", [
        "--create-home", "--home-dir", home,
        "--gid", str(uid), "--uid", str(uid),
        "--no-user-group", name,
    ])
    if rc != 0:
        logging.error("Failed to create user %s: %s", name, err)
        return False
    if err:
        logging.warning("useradd %s: %s", name, err)
    logging.info("Created user: %s (uid=%d, home=%s)", name, uid, home)
    return True

# Function: fncHasSubidRange
# Purpose : True if a subuid/subgid file already lists exactly this range for the user.
def fncHasSubidRange(path: str, name: str, start: int, count: int) -> bool:
    wanted = f"{name}:{start}:{count}"
    return any(line.strip() == wanted for line in _read_text_or_empty(path).splitlines())

# Function: fncEnsureSubids
# Purpose : Give the user subuid and subgid ranges uid+1 .. uid+SUBUID_INC.
# Notes   : Overlap with other users is not checked.
def fncEnsureSubids(name: str, uid: int) -> bool:
    first, last = fncSubidRange(uid)
    changed = False
    for path, flag in ((SUBUID_FILE, "--add-subuids"), (SUBGID_FILE, "--add-subgids")):
        if fncHasSubidRange(path, name, first, SUBUID_INC):
            logging.debug("%s already has %s:%d:%d", path, name, first, SUBUID_INC)
            continue
        rc, _, err = fncRun("usermod", [flag, f"{first}-{last}", name])
        if rc != 0:
            logging.error("usermod %s %d-%d %s failed: %s", flag, first, last, name, err)
            continue
        logging.info("Added %s range %d-%d for %s", os.path.basename(path), first, last, name)
        changed = True
    return changed

# Function: fncEnableLinger
# Purpose : Keep the user's systemd instance alive without a login session.
def fncEnableLinger(name: str):
    rc, _, err = fncRun("loginctl", ["enable-linger", name])
    if rc != 0:
        logging.error("loginctl enable-linger %s failed: %s", name, err)
    else:
        logging.debug("Linger enabled for %s", name)

#====================#
# PAM access.conf    #
#====================#

# Function: fncAccessConfHasUser
# Purpose : True if any (non-comment) access.conf rule names the user in its users field.
def fncAccessConfHasUser(text: str, name: str) -> bool:
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(":", 2)
        if len(parts) == 3 and name in parts[1].split():
            return True
    return False

# Function: fncInsertAccessRule
# Purpose : Return access.conf text with "+:<name>:127.0.0.1 ::1" inserted before the last deny-all.
# Notes   : None when there is no deny-all line to anchor on.
def fncInsertAccessRule(text: str, name: str) -> str | None:
    lines = text.splitlines(keepends=True)
    anchor = None
    for idx, line in enumerate(lines):
        if line.strip() == DENY_ALL_RULE:
            anchor = idx
    if anchor is None:
        return None
    rule = f"+:{name}:{LOOPBACK_ORIGINS}\n"
    return "".join(lines[:anchor] + [rule] + lines[anchor:])

# Function: fncRestartSshd
# Purpose : Restart sshd so it re-reads PAM config.
# Notes   : Sleeps first; back-to-back restarts for several users trip StartLimitBurst.
def fncRestartSshd():
    time.sleep(SSHD_RESTART_DELAY)
    rc, _, err = fncRun("systemctl", ["restart", "sshd"])
    if rc != 0:
        logging.error("systemctl restart sshd failed: %s", err)
    else:
        logging.info("Restarted sshd")

# Function: fncEnsureAccessRule
# Purpose : Allow root to ssh <name>@localhost through pam_access.
# Notes   : Returns True when access.conf was changed (and sshd restarted).
def fncEnsureAccessRule(name: str) -> bool:
    text = _read_text_or_empty(ACCESS_CONF)
    if fncAccessConfHasUser(text, name):
        logging.debug("%s already mentions %s", ACCESS_CONF, name)
        return False
    new_text = fncInsertAccessRule(text, name)
    if new_text is None:
        logging.warning("No '%s' line in %s; not adding a rule for %s", DENY_ALL_RULE, ACCESS_CONF, name)
        return False
    mode = stat.S_IMODE(os.stat(ACCESS_CONF).st_mode)
    _safe_write_atomic(ACCESS_CONF, new_text, mode)
    logging.info("Allowed %s from %s in %s", name, LOOPBACK_ORIGINS, ACCESS_CONF)
    fncRestartSshd()
    return True

#====================#
# authorized_keys    #
#====================#

# Function: fncAuthorizedKeysHas
# Purpose : True if any authorized_keys line carries the same key type and body.
# Notes   : Comments and options don't matter, only the key itself.
def fncAuthorizedKeysHas(text: str, pubkey: str) -> bool:
    algo, body = pubkey.split()[:2]
    for line in text.splitlines():
        tokens = line.split()
        if body in tokens and algo in tokens:
            return True
    return False

# Function: fncChownTree
# Purpose : chown -R user:user path
def fncChownTree(path: str, user: str):
    try:
        shutil.chown(path, user=user, group=user)
        for root, dirs, files in os.walk(path):
            for entry in dirs + files:
                shutil.chown(os.path.join(root, entry), user=user, group=user)
    except (LookupError, OSError) as e:
        logging.error("Failed to chown %s to %s: %s", path, user, e)

# Function: fncEnsureAuthorizedKey
# Purpose : Put root's public key in ~user/.ssh/authorized_keys once.
# Notes   : Returns True when the file was written.
def fncEnsureAuthorizedKey(name: str, home: str, pubkey: str) -> bool:
    ssh_dir = os.path.join(home, ".ssh")
    path = os.path.join(ssh_dir, "authorized_keys")
    current = _read_text_or_empty(path)
    if fncAuthorizedKeysHas(current, pubkey):
        logging.debug("Root key already authorized for %s", name)
        return False
    os.makedirs(ssh_dir, exist_ok=True)
    os.chmod(ssh_dir, 0o700)
    _assert_regular_or_missing(path)
    with open(path, "a", errors="surrogateescape") as f:
        if current and not current.endswith("\n"):
            f.write("\n")
        f.write(pubkey + "\n")
    os.chmod(path, 0o600)
    fncChownTree(ssh_dir, name)
    logging.info("Authorized root key for %s in %s", name, path)
    return True

#====================#
# User services      #
#====================#

def fncSshArgs(name: str, command: list[str]) -> list[str]:
    return [
        "-o", f"ConnectTimeout={SSH_CONNECT_TIMEOUT}",
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=no",
        f"{name}@localhost",
    ] + command

# Function: fncActivateService
# Purpose : As the user, tell podman about new sub{u,g}ids and enable/start <name>_lm.
# Notes   : ssh instead of su: only a real login gets a clean session environment
#           (XDG_RUNTIME_DIR, user bus). Only the connect is time-bounded.
def fncActivateService(name: str, home: str) -> int:
    unit = fncServiceName(name)
    unit_file = os.path.join(home, ".config", "systemd", "user", f"{unit}.service")
    if not os.path.exists(unit_file):
        logging.warning("%s not found yet; enable/start of %s will fail until it exists", unit_file, unit)

    failures = 0
    for command in (
        ["podman", "system", "migrate"],
        ["systemctl", "--user", "daemon-reload"],
        ["systemctl", "--user", "enable", unit],
        ["systemctl", "--user", "start", unit],
    ):
        rc, _, err = fncRun("ssh", fncSshArgs(name, command))
        if rc != 0:
            failures += 1
            logging.error("%s@localhost: %s failed (rc=%d): %s", name, " ".join(command), rc, err)
        else:
            logging.info("%s@localhost: %s", name, " ".join(command))
    return failures

#====================#
# Provisioning       #
#====================#

# Function: _fncStep
# Purpose : Run one provisioning step; a Python-level error is logged, not raised.
# Notes   : Returns the step's result, or None when it blew up.
def _fncStep(label: str, func, *args):
    try:
        return func(*args)
    except Exception as e:
        logging.error("%s failed: %s", label, e)
        return None

# Function: fncProvisionUser
# Purpose : Whole per-user sequence; each step checks before acting.
# Notes   : Failures are logged and the next step still runs.
def fncProvisionUser(name: str, uid: int, pubkey: str | None):
    home = fncHomeDir(name)
    logging.info("== %s (uid=%d) ==", name, uid)

    _fncStep(f"groupadd {name}", fncEnsureGroup, name, uid)
    _fncStep(f"useradd {name}", fncEnsureUser, name, uid, home)
    _fncStep(f"sub{{u,g}}ids for {name}", fncEnsureSubids, name, uid)
    _fncStep(f"linger for {name}", fncEnableLinger, name)
    _fncStep(f"{ACCESS_CONF} rule for {name}", fncEnsureAccessRule, name)
    if pubkey is not None:
        _fncStep(f"authorized_keys for {name}", fncEnsureAuthorizedKey, name, home, pubkey)
    else:
        logging.error("No root public key; skipping authorized_keys for %s", name)
    _fncStep(f"{fncServiceName(name)} activation", fncActivateService, name, home)

# Function: fncRunAll
# Purpose : Prepare the host, then provision users one after another.
def fncRunAll(users: list[tuple[str, int]]) -> int:
    _fncStep("mount", fncMountHome)
    _fncStep("package install", fncInstallPackages)
    _fncStep("root key", fncEnsureRootKey)
    pubkey = _fncStep("root public key", fncReadRootPubKey)

    for name, uid in users:
        fncProvisionUser(name, uid, pubkey)

    logging.info("Done. Users processed=%d", len(users))
    return len(users)

#=================#
# Script harness  #
#=================#

# Function: fncMain
# Purpose : Program entrypoint; preflight checks, logging, locking, provisioning.
# Notes   : Uses umask(077) to protect any new files. Tool failures don't change the exit code.
def fncMain():
    try:
        os.umask(0o077)
        fncScriptSecurityCheck()
        fncAdminCheck()
        fncSetupLogging()
        fncAcquireLock()
        fncRunAll(fncParseUsers(USERS))
    except KeyboardInterrupt:
        fncPrintMessage("Bye then...", "error")
        sys.exit(0)
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        sys.exit(1)
    sys.exit(0)

if __name__ == "__main__":
    fncCheckPyVersion()
    fncMain()
