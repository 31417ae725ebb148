#!/usr/bin/env python3
import os
import sys
import shutil
import hashlib
import subprocess
import argparse
from pathlib import Path
from colorama import init as _cinit, Fore as F, Style as S
from datetime import datetime

# ============================
# Paths & constants
# ============================
ROOT_DIR = Path(__file__).resolve().parent
SCRIPT_SRC = ROOT_DIR / "user_svc_start.py"
REQS = ROOT_DIR / "requirements.txt"
VERSION = "1.0.0"

# System paths
SCRIPT_DST = Path("/usr/local/sbin/user_svc_start.py")
CHECKER = Path("/usr/local/sbin/user_svc_start_check.sh")
SERVICE_NAME = "user_svc_start.service"
SERVICE = Path("/etc/systemd/system") / SERVICE_NAME
LOGDIR = Path("/var/log/user_svc_start")
STATEDIR = Path("/var/lib/user_svc_start")
LOGROTATE = Path("/etc/logrotate.d/user_svc_start")
ENVFILE = Path("/etc/user_svc_start.env")

UID_STEP = 100000

VERSION_INFO = f"""
==============================================
| user_svc_start                              |
| Version: {VERSION}                              |
|                                             |
| Rootless podman users + <user>_lm services: |
| uid=gid accounts, sub{{u,g}}id ranges,        |
| linger, root ssh on loopback,               |
| runs once at every boot.                    |
==============================================
"""

# ============================
# Colour / output helpers
# ============================
_cinit(autoreset=True)

_COLOR_MONO = False

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=sys.stdout):
    """Decide if we should output ANSI colours."""
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except Exception:
        return False

def fncColor(text: str, *styles: str) -> str:
    """fncColor('Hello', 'green', 'bold') -> styled text (or plain if disabled)."""
    if not fncWantColor() or not styles:
        return text
    m = {
        "red": F.RED, "green": F.GREEN, "yellow": F.YELLOW, "blue": F.BLUE,
        "magenta": F.MAGENTA, "cyan": F.CYAN, "white": F.WHITE, "gray": F.LIGHTBLACK_EX,
        "bold": S.BRIGHT, "dim": S.DIM,
    }
    seq = "".join(m.get(s, "") for s in styles)
    return f"{seq}{text}{S.RESET_ALL}"

def fncHeading(msg: str): print(fncColor(msg, "magenta", "bold"))
def fncInfo(msg: str):    print(fncColor("[*] ", "cyan") + msg)
def fncOk(msg: str):      print(fncColor("[+] ", "green") + msg)
def fncWarn(msg: str):    print(fncColor("[!] ", "yellow") + msg)
def fncErr(msg: str):     print(fncColor("[-] ", "red") + msg)

# ============================
# Core helpers
# ============================
def fncRequireRoot():
    if os.geteuid() != 0:
        print("[-] This script must be run as root (try sudo)")
        sys.exit(1)

def fncSha256Sum(filepath: Path) -> str:
    h = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()

def fncRun(cmd: list[str]):
    print(f"[*] Running: {' '.join(cmd)}")
    subprocess.run(cmd, check=True)

def fncInstallRequirements():
    if REQS.exists():
        print(f"[*] Found {REQS}, installing dependencies...")
        try:
            fncRun(["pip3", "install", "-r", str(REQS), "--break-system-packages"])
            print("[+] Requirements installed successfully")
        except subprocess.CalledProcessError:
            print("[-] Failed to install requirements.txt")
            sys.exit(1)
    else:
        print("[i] No requirements.txt found, skipping dependency installation.")

def fncPrintVersion():
    print(F.CYAN + VERSION_INFO + S.RESET_ALL)

def fncShQuote(val: str) -> str:
    """Safe-ish single-quoted value for env files."""
    if val is None:
        val = ""
    return "'" + val.replace("'", "'\"'\"'") + "'"

def fncFormatUsers(users: list[tuple[str, int]]) -> str:
    """[("alice", 2000000000), ...] -> 'alice 2000000000 ...' (what user_svc_start reads back)."""
    return " ".join(f"{name} {uid}" for name, uid in users)

def fncNextUid(users: list[tuple[str, int]], first: int = 2000000000) -> int:
    """Suggest the next uid, one UID_STEP above the highest one so far."""
    if not users:
        return first
    return max(uid for _, uid in users) + UID_STEP

def fncEnvBackupPath(p: Path) -> Path:
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    return p.with_suffix(p.suffix + f".bak-{ts}")

# ============================
# Interactive prompts
# ============================
def fncPromptUsers() -> list[tuple[str, int]]:
    """Zero or more username/uid pairs. Leave username empty to finish."""
    users: list[tuple[str, int]] = []
    fncHeading("\n== Users (one licensing service each) ==")
    print("uids must step by " + fncColor(str(UID_STEP), "bold") + " so sub{u,g}id ranges don't overlap.")
    while True:
        name = input(f"{fncColor('?', 'cyan')} Username {fncColor('(blank to finish)', 'white')}: ").strip()
        if not name:
            break
        suggested = fncNextUid(users)
        raw = input(f"{fncColor('?', 'cyan')} uid for {name} [{fncColor(str(suggested), 'green')}]: ").strip()
        if not raw:
            uid = suggested
        elif raw.isdigit():
            uid = int(raw)
        else:
            fncWarn("uid must be a number, try again.")
            continue
        if uid % UID_STEP:
            fncWarn(f"{uid} isn't a multiple of {UID_STEP}; ranges may overlap.")
        users.append((name, uid))
        fncOk(f"Added {name} uid={uid} (subids {uid + 1}-{uid + UID_STEP - 1})")
    return users

def fncBuildEnvfileContent() -> str:
    """
    Build /etc/user_svc_start.env content:
    - USERS (single line, name/uid pairs)
    - HOMEROOT, MOUNT_DEVICE, PACKAGES
    """
    def ask_default(q: str, default: str) -> str:
        a = input(f"{fncColor(q, 'cyan', 'bold')}{fncColor(f' [{default}]', 'gray')}: ").strip()
        return a or default

    print()
    fncHeading("== user_svc_start — Runtime configuration ==")
    users = fncPromptUsers()
    if not users:
        fncWarn("No users given; the script will only prepare the host.")
    homeroot = ask_default("Home root for the users", "/home")
    device = ask_default("Block device to mount on the home root ('-' for none)", "/dev/sda")
    if device == "-":
        device = ""
    packages = ask_default("Packages to install (space-separated)", "podman")

    lines = [
        "# Autogenerated by user_svc_start installer",
        "# Keep this file 0600, owner root",
        "",
        f"USERS={fncShQuote(fncFormatUsers(users))}",
        f"HOMEROOT={fncShQuote(homeroot)}",
        f"MOUNT_DEVICE={fncShQuote(device)}",
        f"PACKAGES={fncShQuote(packages)}",
        "",
    ]
    return "\n".join(lines) + "\n"

def fncWriteEnvfile(content: str):
    if ENVFILE.exists():
        fncInfo(f"Updating {ENVFILE}")
    else:
        fncOk(f"Creating {ENVFILE}")
    ENVFILE.write_text(content)
    os.chmod(ENVFILE, 0o600)
    fncOk("Wrote config to " + fncColor(str(ENVFILE), "white", "bold") + " (mode 0600)")

# ============================
# Generated files
# ============================
def fncBuildChecker(expected_sha: str, expected_env_sha: str = "") -> str:
    return f"""#!/bin/bash
set -euo pipefail

SCRIPT="{SCRIPT_DST}"
ENVFILE="{ENVFILE}"

EXPECTED_SHA="{expected_sha}"
EXPECTED_ENV_SHA="{expected_env_sha}"

log_warn() {{
    logger -t user_svc_start_runner "$1" || true
    echo "$1" >&2
}}

fail() {{
    logger -t user_svc_start_runner "$1" || true
    echo "$1" >&2
    exit 1
}}

sha256_file() {{
    /usr/bin/sha256sum "$1" | awk '{{print $1}}'
}}

# --- 1) Check main script checksum (hard fail on mismatch) ---
ACTUAL_SHA=$(sha256_file "$SCRIPT")
if [[ "$ACTUAL_SHA" != "$EXPECTED_SHA" ]]; then
    fail "Checksum mismatch! Potential tampering detected in $SCRIPT (have=$ACTUAL_SHA expect=$EXPECTED_SHA)"
fi

# --- 2) Env file must be root-owned, not a symlink; warn if it changed ---
if [[ -e "$ENVFILE" ]]; then
    if [[ -L "$ENVFILE" ]]; then
        fail "Integrity: refusing to use symlink: $ENVFILE"
    fi
    uid=$(stat -Lc %u "$ENVFILE" 2>/dev/null || echo 99999)
    if [[ "$uid" != "0" ]]; then
        fail "Integrity: $ENVFILE not owned by root (uid=$uid)"
    fi
    if [[ -n "$EXPECTED_ENV_SHA" ]]; then
        ACTUAL_ENV_SHA=$(sha256_file "$ENVFILE")
        if [[ "$ACTUAL_ENV_SHA" != "$EXPECTED_ENV_SHA" ]]; then
            log_warn "Integrity: env checksum changed: $ENVFILE (have=$ACTUAL_ENV_SHA expect=$EXPECTED_ENV_SHA)"
        fi
    fi
fi

exit 0
"""

def fncWriteChecker(expected_sha: str):
    # env hash captured now is the baseline the checker warns against
    try:
        expected_env_sha = fncSha256Sum(ENVFILE) if ENVFILE.exists() else ""
    except Exception:
        expected_env_sha = ""
    CHECKER.write_text(fncBuildChecker(expected_sha, expected_env_sha))
    os.chmod(CHECKER, 0o700)
    fncOk(f"Created/updated checker script at {CHECKER}")

def fncBuildServiceUnit() -> str:
    # Oneshot at boot: the home disk and the users' services come back after every restart.
    return f"""[Unit]
Description=Provision rootless licensing users and start their <user>_lm services
After=network-online.target sshd.service systemd-logind.service
Wants=network-online.target

[Service]
Type=oneshot
RemainAfterExit=yes
EnvironmentFile=-{ENVFILE}
ExecCondition={CHECKER}
ExecStart=/usr/bin/python3 {SCRIPT_DST}
User=root

[Install]
WantedBy=multi-user.target
"""

def fncWriteUnits():
    SERVICE.write_text(fncBuildServiceUnit())
    fncOk(f"Wrote service unit: {SERVICE}")

# Function: fncAskYesNo
# Purpose : y/n prompt; an empty answer takes the default.
def fncAskYesNo(prompt: str, default_yes: bool = False) -> bool:
    hint = "Y/n" if default_yes else "y/N"
    while True:
        ans = input(f"{fncColor(prompt, 'cyan', 'bold')} {fncColor(f'[{hint}]', 'gray')}: ").strip().lower()
        if not ans:
            return default_yes
        if ans in ("y", "yes"):
            return True
        if ans in ("n", "no"):
            return False
        fncWarn("Please answer y or n.")

# Function: fncInstallScript
# Purpose : Copy the provisioner into place (root-only) and return its SHA-256.
def fncInstallScript() -> str:
    shutil.copy2(SCRIPT_SRC, SCRIPT_DST)
    os.chmod(SCRIPT_DST, 0o700)
    sha = fncSha256Sum(SCRIPT_DST)
    fncOk(f"Installed script to {SCRIPT_DST}")
    fncInfo(f"Calculated SHA256: {fncColor(sha, 'white', 'bold')}")
    return sha

# Function: fncRefreshEnvfile
# Purpose : On update, offer to rebuild the env file (backing up the old one) or create it.
def fncRefreshEnvfile():
    if not ENVFILE.exists():
        if fncAskYesNo(f"{ENVFILE} not found. Create it now?", default_yes=True):
            fncWriteEnvfile(fncBuildEnvfileContent())
        else:
            fncWarn("No env file; the built-in user list will be used.")
        return
    if not fncAskYesNo(f"Rebuild the user list in {ENVFILE}?"):
        fncInfo("Keeping existing env file.")
        return
    backup = fncEnvBackupPath(ENVFILE)
    try:
        shutil.copy2(ENVFILE, backup)
        fncInfo(f"Old env saved as {fncColor(str(backup), 'white', 'bold')}")
    except OSError as e:
        fncWarn(f"Could not back up {ENVFILE} ({e}); writing the new one anyway.")
    fncWriteEnvfile(fncBuildEnvfileContent())

# ============================
# Actions
# ============================
def fncDoUninstall(purge: bool = False):
    fncRequireRoot()
    fncHeading("[*] Uninstalling user_svc_start...")

    # The users and their services stay; only our own unit goes.
    try:
        fncRun(["systemctl", "disable", SERVICE_NAME])
        fncInfo(f"Disabled {SERVICE_NAME}")
    except subprocess.CalledProcessError:
        fncWarn(f"{SERVICE_NAME} was not enabled")

    for p in (SERVICE, SCRIPT_DST, CHECKER, LOGROTATE):
        try:
            if p.exists():
                p.unlink()
                fncOk(f"Removed {p}")
            else:
                fncInfo(f"Not present: {p}")
        except Exception as e:
            fncWarn(f"Could not remove {p}: {e}")

    try:
        fncRun(["systemctl", "daemon-reload"])
        fncInfo("systemd daemon reloaded")
    except subprocess.CalledProcessError:
        fncWarn("Failed to reload systemd daemon")

    targets = [
        ("env file", ENVFILE),
        ("log dir", LOGDIR),
        ("state dir", STATEDIR),
    ]

    if purge:
        fncHeading("Purging configuration, logs, and state...")
    else:
        fncHeading("Optional cleanup")
    for label, path in targets:
        try:
            if not path.exists():
                fncInfo(f"Not present: {label} ({path})")
                continue
            if purge or fncAskYesNo(f"Remove {label} {path}?"):
                if path.is_file():
                    path.unlink()
                else:
                    shutil.rmtree(path, ignore_errors=True)
                fncOk(f"Removed {label}: {path}")
        except Exception as e:
            fncWarn(f"Failed to remove {label} {path}: {e}")

    fncOk("Uninstall complete.")
    fncInfo("Provisioned users, access.conf rules and authorized keys were left in place.")

def fncDoInstall():
    fncRequireRoot()
    fncHeading("[*] Installing user_svc_start...")

    fncInstallRequirements()

    expected_sha = fncInstallScript()

    LOGDIR.mkdir(mode=0o750, parents=True, exist_ok=True)
    fncOk(f"Ensured log directory {LOGDIR}")

    fncWriteEnvfile(fncBuildEnvfileContent())

    # Checker last, so it records the env file we just wrote
    fncWriteChecker(expected_sha)

    fncWriteUnits()

    fncRun(["systemctl", "daemon-reload"])
    fncOk("systemd daemon reloaded")
    fncRun(["systemctl", "enable", SERVICE_NAME])
    fncOk(f"Enabled {SERVICE_NAME} (runs at every boot)")

    fncOk("Installation complete.")
    fncInfo("Run it now: " + fncColor(f"systemctl start {SERVICE_NAME}", "white", "bold"))
    fncInfo("Check logs: " + fncColor(f"journalctl -u {SERVICE_NAME} -n 200 --no-pager", "white", "bold"))
    fncInfo("Edit config: " + fncColor(str(ENVFILE), "white", "bold")
            + " then: " + fncColor(f"python3 {Path(__file__).name} update", "white", "bold"))

# Function: fncDoUpdate
# Purpose : Re-install the provisioner if the local copy differs, then re-pin the checker.
# Notes   : The checker is rewritten every time so an edited env file is accepted again.
def fncDoUpdate(auto_restart: bool = False):
    fncRequireRoot()
    fncHeading("[*] Updating user_svc_start...")

    for path, hint in ((SCRIPT_SRC, "local source"), (SCRIPT_DST, "installed script"), (CHECKER, "checker")):
        if not path.exists():
            fncErr(f"Missing {hint}: {path} (run install first?)")
            sys.exit(1)

    fncRefreshEnvfile()

    local_sha = fncSha256Sum(SCRIPT_SRC)
    pinned_sha = fncSha256Sum(SCRIPT_DST)
    if local_sha == pinned_sha:
        fncInfo(f"{SCRIPT_DST} is current ({local_sha[:12]})")
    else:
        fncInfo(f"{SCRIPT_DST}: {pinned_sha[:12]} -> {local_sha[:12]}")
        pinned_sha = fncInstallScript()
        if pinned_sha != local_sha:
            fncErr(f"{SCRIPT_DST} does not match {SCRIPT_SRC} after copying; checker left unchanged.")
            sys.exit(1)

    fncWriteChecker(pinned_sha)

    if auto_restart:
        fncRun(["systemctl", "restart", SERVICE_NAME])
        fncOk(f"{SERVICE_NAME} re-run.")
    else:
        fncInfo("Re-run it with: " + fncColor(f"sudo systemctl restart {SERVICE_NAME}", "white", "bold"))

# ============================
# Entry point
# ============================
def fncMain(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Installer/Updater for user_svc_start")
    parser.add_argument("action", choices=["install", "update", "uninstall", "version"], help="Action to perform")
    parser.add_argument("--restart", action="store_true", help="Re-run the service after update")
    parser.add_argument("--purge", action="store_true", help="Remove env, logs, and state without prompts")
    parser.add_argument("--no-color", action="store_true", help="Plain output")
    args = parser.parse_args(argv)
    fncSetColorMode(args.no_color)

    if args.action == "version":
        fncPrintVersion()
    elif args.action == "install":
        fncPrintVersion()
        fncDoInstall()
    elif args.action == "update":
        fncPrintVersion()
        fncDoUpdate(auto_restart=args.restart)
    elif args.action == "uninstall":
        fncDoUninstall(purge=args.purge)

if __name__ == "__main__":
    fncMain()
