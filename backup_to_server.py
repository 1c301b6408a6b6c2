#!/usr/bin/env python3

"""
backup-to-server — wake a backup server and rsync a directory to it.

Copyright (c) 2025 The backup-to-server authors
Licensed under Apache-2.0 OR MIT
"""

import argparse
import configparser
import getpass
import ipaddress
import logging
import os
import posixpath
import pwd
import re
import shlex
import signal
import socket
import subprocess
import sys
import tempfile
import textwrap
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from shutil import which
from typing import Callable

from jinja2 import Environment, StrictUndefined
from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_exponential

PROG_NAME = "backup-to-server"
VERSION = "1.0.0"

CURRENT_DIR = "current"
OLD_DIR = "old"
MAX_ROTATED_LOGS = 10
NOTIFY_ICON = "drive-harddisk"

WAKE_DELAY = 2  # seconds per wake cycle
PROBE_ATTEMPTS = 3
PROBE_DELAY = 2
SERVICE_TIMEOUT = 2

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_HOUSEKEEPING = 3
EXIT_INTERRUPTED = 130

MAC_RE = re.compile(r"^[0-9a-fA-F]{2}(:[0-9a-fA-F]{2}){5}$")

DEFAULTS = {
    "KEEP_N_BACKUPS": "30",
    "MAX_WAKE_WAIT": "5",
    "SSH_PORT": "22",
    "MULTIPLEX": "1",
    "OLD_BACKUPS_NAME": "daily",
    "WAKE_ON_LAN": "",
    "EXCLUDE_FILE": "",
    "LOG_FILE": "",
    "RSYNC_LOG_FILE": "",
    "SEND_NOTIFICATIONS": "0",
    "USE_SLEEPLOCK": "0",
    "PROGRESS_INTERVAL": "0",
}

SNAPSHOT_FORMATS = {
    "daily": "%Y-%m-%d",
    "hourly": "%Y-%m-%dH%H",
    "monthly": "%Y-%m",
    "yearly": "%Y",
    "timestamp": "%Y-%m-%d_%H%M%S",
}

DEFAULT_CONFIG_PATH = (
    Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")) / PROG_NAME / "config.ini"
)

CONFIG_TEMPLATE = f"""\
[options]
# Number of old/<name> folders to keep on the server
keep_n_backups = {DEFAULTS["KEEP_N_BACKUPS"]}

# Wake-on-LAN: MAC of the server's network device (empty = never wake)
wake_on_lan =
# Extra wake cycles after the first one, each takes about {WAKE_DELAY} seconds
max_wake_wait = {DEFAULTS["MAX_WAKE_WAIT"]}

ssh_port = {DEFAULTS["SSH_PORT"]}
multiplex = true

# daily, hourly, weekly, monthly, yearly, timestamp or a strftime pattern
old_backups_name = {DEFAULTS["OLD_BACKUPS_NAME"]}

exclude_file =
log_file =
rsync_log_file =

send_notifications = false
use_sleeplock = false
# Seconds between progress notifications (0 = off)
progress_interval = {DEFAULTS["PROGRESS_INTERVAL"]}
"""

HELP_EPILOG = f"""
REQUIREMENTS
  Local:  rsync, ssh, ping  (wakeonlan for --wake-on-lan, notify-send for --send-notifications)
  Remote: bash, standard POSIX tools (mkdir, mv, rm, ls); sleep-lock for --use-sleeplock

LAYOUT
  DEST/current         mirror of SOURCE as of the last successful run
  DEST/old/<name>      files changed or deleted by the run that created <name>

  Only the --keep-n-backups most recently modified old/<name> folders are kept.

CONFIG
  Default path: {DEFAULT_CONFIG_PATH}
  Create one:   {PROG_NAME} --init-config
  Precedence:   built-in defaults < config file < BTS_* environment < command line

OLD BACKUP NAMES
  • daily (default): 2025-01-15
  • hourly: 2025-01-15H14
  • weekly: 2025W03
  • monthly: 2025-01
  • yearly: 2025
  • timestamp: 2025-01-15_142501
  • anything containing "%" is used as a strftime pattern, e.g. "%Y-%m-%d_%H%M"

EXIT STATUS
  0  backup finished
  1  backup failed (connection, preparation or rsync)
  2  invalid arguments or configuration
  3  data transferred, but pruning old backups or releasing the sleep-lock failed
  130 interrupted

EXAMPLES
  {PROG_NAME} --wake-on-lan 01:02:03:04:05:06 -l backup.log /home/joe joe@server:/backup/joe
  {PROG_NAME} --dry-run /home/daisy 10.0.0.5:backup/daisy
  {PROG_NAME} --keep-n-backups 7 /srv/data /mnt/usb/data
"""

log = logging.getLogger(PROG_NAME)


class BackupError(Exception):
    exit_code = EXIT_FAILED


class ValidationError(BackupError):
    exit_code = EXIT_INVALID

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class ConnectivityError(BackupError):
    pass


class PreflightError(BackupError):
    pass


class TransferError(BackupError):
    def __init__(self, status: int):
        super().__init__(f"rsync finished with exit status {status}.")
        self.status = status


class PruneError(BackupError):
    exit_code = EXIT_HOUSEKEEPING


class LockReleaseError(BackupError):
    exit_code = EXIT_HOUSEKEEPING


class NotificationError(BackupError):
    pass


# ---------------------------------------------------------------------------
# Logging


class ConsoleFormatter(logging.Formatter):
    def format(self, record):
        message = record.getMessage()
        if record.levelno >= logging.ERROR:
            return f"Error: {message}"
        if record.levelno >= logging.WARNING:
            return f"Warning: {message}"
        return message


class LogFileFormatter(logging.Formatter):
    """Puts the date on the first line of a record only; continuation lines
    are aligned under an empty date column."""

    def format(self, record):
        stamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        lines = record.getMessage().splitlines() or [""]
        if record.levelno >= logging.ERROR:
            lines[0] = f"[ERROR]: {lines[0]}"
        out = []
        for line in lines:
            out.append(f"{stamp:>19} |  {line}")
            stamp = ""
        return "\n".join(out)


class _BelowLevel(logging.Filter):
    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record):
        return record.levelno < self.level


def setup_logging(log_file: Path | None = None, dry_run: bool = False):
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()
    log.setLevel(logging.INFO)

    errors = logging.StreamHandler(sys.stderr)
    errors.setLevel(logging.WARNING)
    errors.setFormatter(ConsoleFormatter())
    log.addHandler(errors)

    if log_file and not dry_run:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(LogFileFormatter())
        log.addHandler(file_handler)
        return

    messages = logging.StreamHandler(sys.stdout)
    messages.addFilter(_BelowLevel(logging.WARNING))
    messages.setFormatter(ConsoleFormatter())
    log.addHandler(messages)
    if log_file:
        log.info(f"Would be written to: {log_file}")


def log_lines(lines: list[str]):
    if lines:
        log.info("\n".join(lines))


# ---------------------------------------------------------------------------
# Notifications


def session_environment() -> dict:
    """Environment for notify-send, borrowing the session of a logged-in
    display user when DISPLAY or the session bus are not set (timer/cron)."""
    env = dict(os.environ)
    if env.get("DISPLAY") and env.get("DBUS_SESSION_BUS_ADDRESS"):
        return env

    displays = sorted(Path("/tmp/.X11-unix").glob("X*"))
    if not displays:
        raise NotificationError("could not find a display for the notification")

    try:
        who = subprocess.run(["who"], check=False, capture_output=True, text=True).stdout or ""
    except OSError as e:
        raise NotificationError(f"could not list logged-in users: {e}") from e

    for socket_path in displays:
        display = ":" + socket_path.name[1:]
        for line in who.splitlines():
            if f"({display})" not in line:
                continue
            user = line.split()[0]
            try:
                uid = pwd.getpwnam(user).pw_uid
            except KeyError:
                continue

            bus = Path(f"/run/user/{uid}/bus")
            session_file = Path(f"/run/user/{uid}/dbus-session")
            if bus.is_socket():
                address = f"unix:path={bus}"
            elif session_file.is_file():
                address = session_file.read_text(encoding="utf-8").strip()
                address = address.removeprefix("DBUS_SESSION_BUS_ADDRESS=")
            else:
                raise NotificationError(f"could not find the session bus of {user}")

            env["DISPLAY"] = display
            env["DBUS_SESSION_BUS_ADDRESS"] = address
            return env

    raise NotificationError("could not determine which display is assigned to a user")


class Notifier:
    """Best-effort desktop popups via notify-send. Never raises."""

    def __init__(self, enabled: bool, icon: str = NOTIFY_ICON):
        self.enabled = enabled
        self.icon = icon

    def notify(self, title: str, body: str, urgency: str = "normal"):
        if not self.enabled:
            return
        try:
            self.send(title, body, urgency)
        except NotificationError as e:
            log.warning(f"Could not send notification: {e}")

    def send(self, title: str, body: str, urgency: str):
        cmd = ["notify-send", f"--urgency={urgency}", f"--icon={self.icon}", title, body]
        try:
            result = subprocess.run(
                cmd, env=session_environment(), check=False, capture_output=True, text=True
            )
        except OSError as e:
            raise NotificationError(str(e)) from e
        if result.returncode != 0:
            raise NotificationError(
                (result.stderr or "").strip() or f"notify-send exited with {result.returncode}"
            )


# ---------------------------------------------------------------------------
# Configuration


def split_remote_base(base: str) -> tuple[bool, str]:
    """Returns (is_tilde_path, rest_of_path)"""
    if base == "~":
        return True, ""
    if base.startswith("~/"):
        return True, base[2:]
    return False, base


def strip_trailing_slashes(path: str) -> str:
    stripped = path.rstrip("/")
    if not stripped and path.startswith("/"):
        return "/"
    return stripped


@dataclass(frozen=True)
class Destination:
    user: str
    host: str
    path: str

    @property
    def is_remote(self) -> bool:
        return bool(self.host)

    @property
    def login(self) -> str:
        return f"{self.user}@{self.host}"

    def subdir(self, *parts: str) -> str:
        return posixpath.join(self.path, *parts) if self.path else posixpath.join(*parts)

    def __str__(self):
        if self.is_remote:
            return f"{self.login}:{self.path}"
        return self.path


def parse_destination(spec: str, default_user: str | None = None) -> Destination:
    """Split "[[user@]host:]path". Without a colon the destination is local.

    Remote paths lose a leading "~/" (ssh starts in the home directory);
    local paths get "~" expanded instead.
    """
    host, path = "", spec
    user = ""
    if ":" in spec:
        host, path = spec.split(":", 1)
        if "@" in host:
            user, host = host.rsplit("@", 1)
    user = user or default_user or getpass.getuser()

    path = strip_trailing_slashes(path)
    if host:
        _is_tilde, path = split_remote_base(path)
    else:
        path = os.path.expanduser(path)
    return Destination(user=user, host=host, path=path)


def is_valid_mac(text: str) -> bool:
    return MAC_RE.fullmatch(text) is not None


def is_ipv4(host: str) -> bool:
    try:
        ipaddress.IPv4Address(host)
    except ValueError:
        return False
    return True


def snapshot_namer(spec: str, now: datetime) -> Callable[[], str]:
    """Naming strategy for old/<name>. The clock is fixed at `now` so every
    call within one run returns the same label."""
    if spec == "weekly":

        def weekly() -> str:
            year, week, _ = now.isocalendar()
            return f"{year}W{week:02d}"

        return weekly

    fmt = SNAPSHOT_FORMATS.get(spec)
    if fmt is None:
        if "%" not in spec:
            valid = ", ".join(["weekly", *SNAPSHOT_FORMATS])
            raise ValidationError(
                "old_backups_name",
                f"Invalid old backups name: {spec!r}. Use one of {valid} or a strftime pattern.",
            )
        fmt = spec
    return lambda: now.strftime(fmt)


@dataclass(frozen=True)
class Config:
    source_path: Path
    destination: Destination
    snapshot_name_fn: Callable[[], str]
    snapshot_name: str = "daily"
    exclude_file: Path | None = None
    server_mac: str | None = None
    max_wake_attempts: int = 5
    retain_count: int = 30
    use_suspend_lock: bool = False
    notify_enabled: bool = False
    log_path: Path | None = None
    remote_log_path: str | None = None
    dry_run: bool = False
    ssh_port: int = 22
    multiplex: bool = True
    progress_interval: int = 0


def load_config_file(path: Path) -> dict:
    """Load the [options] section of the config file"""
    cfg = {}
    if not path.exists():
        return cfg

    # no interpolation: old_backups_name may be a strftime pattern
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(path)
    except configparser.Error as e:
        raise ValidationError("config", f"Error reading config file {path}: {e}") from e

    if parser.has_section("options"):
        for key, value in parser["options"].items():
            if key.upper() in DEFAULTS:
                cfg[key.upper()] = value
            else:
                log.warning(f"Unknown option in {path}: {key}")
    return cfg


def load_env() -> dict:
    envmap = {}
    for key in DEFAULTS:
        value = os.environ.get("BTS_" + key)
        if value is not None:
            envmap[key] = value
    return envmap


def resolve_settings(args: argparse.Namespace, cfg_path: Path) -> dict:
    settings = dict(DEFAULTS)
    settings.update(load_config_file(cfg_path))
    settings.update(load_env())

    cli = {
        "KEEP_N_BACKUPS": args.keep_n_backups,
        "MAX_WAKE_WAIT": args.max_wake_wait,
        "SSH_PORT": args.ssh_port,
        "OLD_BACKUPS_NAME": args.old_backups_name_function,
        "WAKE_ON_LAN": args.wake_on_lan,
        "EXCLUDE_FILE": args.exclude_file,
        "LOG_FILE": args.log_file,
        "RSYNC_LOG_FILE": args.rsync_log_file,
        "SEND_NOTIFICATIONS": args.send_notifications,
        "USE_SLEEPLOCK": args.use_sleeplock,
        "PROGRESS_INTERVAL": args.progress_interval,
        "MULTIPLEX": False if args.no_multiplex else None,
    }
    settings.update({key: value for key, value in cli.items() if value is not None})
    settings["SOURCE"] = args.SOURCE
    settings["DEST"] = args.DEST
    settings["DRY_RUN"] = bool(args.dry_run)
    return settings


def _as_bool(value) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_int(settings: dict, key: str, minimum: int = 0, maximum: int | None = None) -> int:
    name = key.lower()
    try:
        value = int(str(settings.get(key, DEFAULTS.get(key, ""))).strip())
    except ValueError:
        raise ValidationError(name, f"{name} must be an integer.") from None
    if value < minimum or (maximum is not None and value > maximum):
        upper = f" and at most {maximum}" if maximum is not None else ""
        raise ValidationError(name, f"{name} must be at least {minimum}{upper}.")
    return value


def _optional(settings: dict, key: str) -> str | None:
    value = settings.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def check_binaries(destination: Destination, mac: str | None, notify: bool):
    required = [("rsync", "rsync")]
    if destination.is_remote:
        required += [("ssh", "openssh-client"), ("ping", "iputils-ping")]
    if mac:
        required.append(("wakeonlan", "wakeonlan"))
    if notify:
        required.append(("notify-send", "libnotify-bin"))

    for binary, package in required:
        if which(binary) is None:
            raise ValidationError(
                "binaries",
                f"Required program not found: {binary} (install the '{package}' package).",
            )


def validate(settings: dict, now: datetime | None = None) -> Config:
    """Turn merged raw settings into an immutable Config.

    Raises ValidationError naming the offending field on the first problem.
    """
    now = now or datetime.now()
    dry_run = _as_bool(settings.get("DRY_RUN", False))

    # 1) SOURCE
    source = settings.get("SOURCE")
    if not source:
        raise ValidationError("source", "No SOURCE specified, see --help for usage.")
    source_path = Path(source).expanduser()
    if not source_path.is_dir():
        raise ValidationError("source", f"Source dir {source_path} not found.")
    if not os.access(source_path, os.R_OK | os.X_OK):
        raise ValidationError("source", f"No read permission for SOURCE - {source_path}")

    # 2) DEST
    dest_spec = settings.get("DEST")
    if not dest_spec:
        raise ValidationError("destination", "No DEST specified, see --help for usage.")
    destination = parse_destination(dest_spec)
    if not destination.is_remote and not destination.path:
        raise ValidationError("destination", f"Invalid local destination: {dest_spec!r}")

    # 3) Wake-on-LAN
    mac = _optional(settings, "WAKE_ON_LAN")
    if mac and not is_valid_mac(mac):
        raise ValidationError(
            "server_mac", f"The provided MAC address for WakeOnLAN: {mac} is not a valid MAC."
        )

    # 4) Exclude file
    exclude = _optional(settings, "EXCLUDE_FILE")
    exclude_file = Path(exclude).expanduser() if exclude else None
    if exclude_file and not (exclude_file.is_file() and os.access(exclude_file, os.R_OK)):
        raise ValidationError("exclude_file", f"Can't read exclude file: {exclude_file}")

    # 5) Numbers
    retain_count = _as_int(settings, "KEEP_N_BACKUPS")
    max_wake = _as_int(settings, "MAX_WAKE_WAIT")
    ssh_port = _as_int(settings, "SSH_PORT", minimum=1, maximum=65535)
    progress_interval = _as_int(settings, "PROGRESS_INTERVAL")

    # 6) Naming of old backups
    name_spec = _optional(settings, "OLD_BACKUPS_NAME") or DEFAULTS["OLD_BACKUPS_NAME"]
    namer = snapshot_namer(name_spec, now)
    label = namer()
    if (
        not label
        or "/" in label
        or label in (".", "..")
        or not label.isprintable()
    ):
        raise ValidationError(
            "old_backups_name", f"Old backups name {name_spec!r} produced an unusable label: {label!r}"
        )
    if namer() != label:
        raise ValidationError(
            "old_backups_name", f"Old backups name {name_spec!r} is not stable within a run."
        )

    # 7) Switches; a sleep-lock only makes sense for a server that is woken
    notify = _as_bool(settings.get("SEND_NOTIFICATIONS", False))
    use_sleeplock = _as_bool(settings.get("USE_SLEEPLOCK", False))
    if use_sleeplock and not (destination.is_remote and mac):
        log.info("Sleep-lock ignored: only used for remote servers woken via --wake-on-lan.")
        use_sleeplock = False

    # 8) Logs
    log_file = _optional(settings, "LOG_FILE")
    log_path = Path(log_file).expanduser() if log_file else None
    if log_path:
        try:
            log_path.touch(exist_ok=True)
        except OSError as e:
            if not dry_run:
                raise ValidationError(
                    "log_file", f"Can't create or write to logfile: {log_path} ({e})"
                ) from e

    remote_log = _optional(settings, "RSYNC_LOG_FILE")
    if remote_log:
        if destination.is_remote:
            _is_tilde, remote_log = split_remote_base(remote_log)
        else:
            remote_log = os.path.expanduser(remote_log)
        if not remote_log:
            raise ValidationError("rsync_log_file", "The rsync log file path is empty.")

    check_binaries(destination, mac, notify)

    return Config(
        source_path=source_path,
        destination=destination,
        snapshot_name_fn=namer,
        snapshot_name=name_spec,
        exclude_file=exclude_file,
        server_mac=mac,
        max_wake_attempts=max_wake,
        retain_count=retain_count,
        use_suspend_lock=use_sleeplock,
        notify_enabled=notify,
        log_path=log_path,
        remote_log_path=remote_log,
        dry_run=dry_run,
        ssh_port=ssh_port,
        multiplex=_as_bool(settings.get("MULTIPLEX", True)),
        progress_interval=progress_interval,
    )


def format_settings(cfg: Config) -> list[str]:
    dest = cfg.destination

    def state(flag) -> str:
        return "enabled" if flag else "disabled"

    lines = [
        "SETTINGS:",
        f"source directory    = {cfg.source_path}",
        f"dest directory      = {dest.path}",
        f"user                = {dest.user}",
        f"backup server       = {dest.host or '(local)'}",
    ]
    if cfg.server_mac:
        lines.append(f"server mac address  = {cfg.server_mac}")
    if cfg.exclude_file:
        lines.append(f"rsync exclude file  = {cfg.exclude_file}")
    lines.append(f"max wakeup wait     = {cfg.max_wake_attempts}")
    lines.append(">> on server >>")
    lines.append(f"backups to keep     = {cfg.retain_count}")
    lines.append(f"old backups name    = {cfg.snapshot_name}")
    if cfg.remote_log_path:
        lines.append(f"rsync log file      = {cfg.remote_log_path}")
    lines.append(">> other >>")
    lines.append(f"Sending of notifications is: {state(cfg.notify_enabled)}")
    lines.append(f"WakeOnLAN is:                {state(cfg.server_mac)}")
    lines.append(f"Setting a sleep-lock is:     {state(cfg.use_suspend_lock)}")
    return lines


# ---------------------------------------------------------------------------
# Remote command execution


def ssh_base_opts(port: int, multiplex: bool) -> list:
    if not multiplex:
        return ["-p", str(port)]

    control_path = str(Path.home() / f".ssh/{PROG_NAME}-%r@%h-%p")
    return [
        "-p",
        str(port),
        "-o",
        "ControlMaster=auto",
        "-o",
        f"ControlPath={control_path}",
        "-o",
        "ControlPersist=60",
    ]


# Template text is evaluated by bash on the destination; every value given to
# render() is substituted locally and always shell-quoted.
_SCRIPTS = Environment(
    variable_start_string="${{",
    variable_end_string="}}",
    block_start_string="<%",
    block_end_string="%>",
    comment_start_string="<#",
    comment_end_string="#>",
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
    undefined=StrictUndefined,
    finalize=lambda value: shlex.quote(str(value)),
)


class RemoteScript:
    """A bash script run on the destination host.

    Write remote-side expansions ($var, $((...)), loops) as plain template
    text. Local values go in as ``${{ name }}`` placeholders and are quoted,
    so they reach the remote shell as single literal words.
    """

    def __init__(self, source: str):
        self.source = textwrap.dedent(source).lstrip("\n")
        self.template = _SCRIPTS.from_string(self.source)

    def render(self, **values) -> str:
        return self.template.render(**values)


class HostShell:
    """Runs bash scripts on the destination: over ssh when a host is set,
    otherwise on this machine."""

    def __init__(self, destination: Destination, port: int = 22, multiplex: bool = True):
        self.destination = destination
        self.port = port
        self.multiplex = multiplex

    @classmethod
    def from_config(cls, cfg: Config) -> "HostShell":
        return cls(cfg.destination, cfg.ssh_port, cfg.multiplex)

    def argv(self) -> list[str]:
        if self.destination.is_remote:
            return [
                "ssh",
                "-q",
                *ssh_base_opts(self.port, self.multiplex),
                self.destination.login,
                "bash -s",
            ]
        return ["bash", "-s"]

    def run(self, script: str) -> tuple[str, int]:
        """Returns (combined stdout/stderr, exit status)."""
        try:
            result = subprocess.run(
                self.argv(),
                input=script,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except OSError as e:
            return str(e), 127
        return result.stdout or "", result.returncode


SLEEP_LOCK_ENABLE = RemoteScript("sleep-lock enable\n")
SLEEP_LOCK_CHECK = RemoteScript("sleep-lock check ${{ token }}\n")
SLEEP_LOCK_RELEASE = RemoteScript("sleep-lock release ${{ token }}\n")

PREFLIGHT_SCRIPT = RemoteScript(
    """
    ensure_dir() {
        if [[ -e "$1" && ! -d "$1" ]]; then
            echo "Error: $1 does exist but is no directory." >&2
            exit 1
        fi
        mkdir -p -- "$1" || { echo "Error creating directory $1." >&2; exit 1; }
    }

    ensure_dir ${{ current_dir }}
    ensure_dir ${{ old_dir }}
    <% if log_file %>

    log_file=${{ log_file }}
    <% if log_dir %>
    ensure_dir ${{ log_dir }}
    <% endif %>
    if [[ -e "$log_file.${{ max_logs }}" ]]; then
        rm -f -- "$log_file.${{ max_logs }}" ||
            { echo "Error removing logfile $log_file.${{ max_logs }}" >&2; exit 1; }
    fi
    for (( i = ${{ max_logs }} - 1; i >= 0; i-- )); do
        if [[ -e "$log_file.$i" ]]; then
            mv -f -- "$log_file.$i" "$log_file.$((i + 1))" ||
                { echo "Error moving logfile $log_file.$i to .$((i + 1))" >&2; exit 1; }
        fi
    done
    if [[ -e "$log_file" ]]; then
        mv -f -- "$log_file" "$log_file.0" ||
            { echo "Error moving logfile $log_file to .0" >&2; exit 1; }
    fi
    <% endif %>
    """
)

PRUNE_SCRIPT = RemoteScript(
    """
    old_dir=${{ old_dir }}
    keep=${{ keep }}

    if [[ ! -d "$old_dir" ]]; then
        echo "Error: $old_dir is not a directory." >&2
        exit 1
    fi

    # oldest modification time first
    mapfile -t entries < <(cd -- "$old_dir" && ls -1Atr)

    count=${#entries[@]}
    removed=0
    while (( count - removed > keep )); do
        entry=${entries[removed]}
        rm -rf -- "$old_dir/$entry" ||
            { echo "Error removing old backup $old_dir/$entry" >&2; exit 1; }
        echo "DELETED $entry"
        removed=$((removed + 1))
    done
    echo "KEPT $((count - removed))"
    """
)


# ---------------------------------------------------------------------------
# Connectivity


def retry(
    check: Callable[[], bool],
    attempts: int,
    delay: float,
    prepare: Callable[[], object] | None = None,
    backoff: float = 1.0,
    sleep: Callable[[float], object] = time.sleep,
) -> bool:
    """Up to `attempts` rounds of prepare(), wait `delay`, check().

    The delay is multiplied by `backoff` after every failed round.
    Returns True as soon as check() succeeds, False once attempts run out.
    """
    if attempts <= 0:
        return False

    def before_next(retry_state):
        if prepare is not None:
            prepare()

    # the first round waits here, later rounds in Retrying's wait
    before_next(None)
    sleep(delay)
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=delay * backoff, exp_base=backoff),
        retry=retry_if_result(lambda ok: not ok),
        before_sleep=before_next,
        sleep=sleep,
        retry_error_callback=lambda retry_state: False,
    )
    return retrying(check)


def _succeeds(cmd: list[str]) -> bool:
    try:
        result = subprocess.run(
            cmd, check=False, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
        )
    except OSError:
        return False
    return result.returncode == 0


class ConnectivityProber:
    """Makes sure the backup server is up and accepts our ssh login,
    waking it via Wake-on-LAN when needed."""

    def __init__(self, cfg: Config, sleep: Callable[[float], object] = time.sleep):
        self.cfg = cfg
        self.sleep = sleep
        self.last_auth_error = ""

    def ensure_reachable(self):
        host = self.cfg.destination.host
        port = self.cfg.ssh_port

        if not self.local_network_ok():
            raise ConnectivityError("Problem with network settings, can't reach localhost!")

        if not is_ipv4(host) and not self.name_resolves(host):
            raise ConnectivityError(
                f"The server address {host} is not a valid IPv4 address, "
                "and as a host name it can't be resolved."
            )

        if not self.responds(host):
            if not self.cfg.server_mac:
                raise ConnectivityError(f"No reply when pinging server {host}.")
            if not self.wake(host):
                raise ConnectivityError(
                    f"No reply when pinging server {host}, "
                    f"even after {self.cfg.max_wake_attempts + 1} wake attempt(s)."
                )

        def service():
            return self.service_open(host, port)

        if not (service() or retry(service, PROBE_ATTEMPTS, PROBE_DELAY, sleep=self.sleep)):
            raise ConnectivityError(f"No ssh service detected on port {port} of {host}.")

        if not (self.auth_ok() or retry(self.auth_ok, PROBE_ATTEMPTS, PROBE_DELAY, sleep=self.sleep)):
            raise ConnectivityError(f"Can't connect via ssh: {self.last_auth_error}")

    def local_network_ok(self) -> bool:
        return _succeeds(["ping", "-c", "1", "localhost"])

    def resolves(self, host: str) -> bool:
        try:
            socket.getaddrinfo(host, None)
        except (socket.gaierror, UnicodeError):
            return False
        return True

    def resolver_active(self) -> bool:
        return _succeeds(["systemctl", "is-active", "--quiet", "systemd-resolved.service"])

    def start_resolver(self):
        _succeeds(["systemctl", "start", "systemd-resolved.service"])

    def name_resolves(self, host: str) -> bool:
        if self.resolves(host):
            return True
        if which("systemctl") is None or self.resolver_active():
            return False

        log.info("systemd-resolved is not running, trying to start it.")
        started = retry(
            self.resolver_active,
            PROBE_ATTEMPTS,
            PROBE_DELAY,
            prepare=self.start_resolver,
            sleep=self.sleep,
        )
        if not started:
            raise ConnectivityError("Can't get systemd-resolved.service started.")
        return self.resolves(host)

    def responds(self, host: str) -> bool:
        return _succeeds(["ping", "-c", "3", host])

    def send_wake_packet(self):
        _succeeds(["wakeonlan", self.cfg.server_mac])

    def wake(self, host: str) -> bool:
        """Send wake packets until the host answers; max_wake_attempts counts
        the retries after the first packet."""
        log.info("Server not reachable, trying to wake it up.")
        return retry(
            lambda: self.responds(host),
            self.cfg.max_wake_attempts + 1,
            WAKE_DELAY,
            prepare=self.send_wake_packet,
            sleep=self.sleep,
        )

    def service_open(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=SERVICE_TIMEOUT):
                return True
        except OSError:
            return False

    def auth_ok(self) -> bool:
        cmd = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-T",
            *ssh_base_opts(self.cfg.ssh_port, self.cfg.multiplex),
            self.cfg.destination.login,
            "exit",
        ]
        try:
            result = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError as e:
            self.last_auth_error = str(e)
            return False
        if result.returncode == 0:
            return True
        message = ((result.stderr or "") + (result.stdout or "")).strip()
        self.last_auth_error = message or f"ssh exited with {result.returncode}"
        return False


# ---------------------------------------------------------------------------
# Run state, pre-flight and sleep-lock


@dataclass
class RunState:
    snapshot_label: str | None = None
    inhibitor_token: str | None = None
    notes: list[str] = field(default_factory=list)

    def note(self, message: str):
        self.notes.append(message)


def _last_line(output: str) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[-1] if lines else ""


def acquire_sleep_lock(shell: HostShell, state: RunState):
    output, status = shell.run(SLEEP_LOCK_ENABLE.render())
    token = _last_line(output)
    if status != 0 or not token:
        raise PreflightError(f"Could not enable sleep lock for server: {output.strip()}")

    # held from here on, so cleanup releases it even if the check fails
    state.inhibitor_token = token
    lock_state, _ = shell.run(SLEEP_LOCK_CHECK.render(token=token))
    if _last_line(lock_state) != "active":
        raise PreflightError(f"Could not enable sleep lock for server (state: {lock_state.strip()}).")
    log.info(f"Enabled sleep lock on server, code: {token}")


def release_sleep_lock(shell: HostShell, state: RunState):
    token = state.inhibitor_token
    if token is None:
        return

    state.inhibitor_token = None
    shell.run(SLEEP_LOCK_RELEASE.render(token=token))
    lock_state, _ = shell.run(SLEEP_LOCK_CHECK.render(token=token))
    if _last_line(lock_state) != "inactive":
        raise LockReleaseError(f"Could not release sleep lock {token} on server.")
    log.info(f"Released sleep lock on server, code: {token}")


def prepare(cfg: Config, shell: HostShell, state: RunState):
    """Sleep-lock, DEST/current + DEST/old, and rotation of the rsync logs."""
    if cfg.use_suspend_lock:
        acquire_sleep_lock(shell, state)

    dest = cfg.destination
    log_file = cfg.remote_log_path or ""
    script = PREFLIGHT_SCRIPT.render(
        current_dir=dest.subdir(CURRENT_DIR),
        old_dir=dest.subdir(OLD_DIR),
        log_file=log_file,
        log_dir=posixpath.dirname(log_file),
        max_logs=MAX_ROTATED_LOGS,
    )
    output, status = shell.run(script)
    if status != 0:
        raise PreflightError(
            f"while setting up {dest} (exit status {status}): {output.strip() or 'no output'}"
        )
    if output.strip():
        log_lines(output.splitlines())


# ---------------------------------------------------------------------------
# Transfer


def build_rsync_command(cfg: Config, label: str, progress: bool = False) -> list[str]:
    dest = cfg.destination
    rsync_cmd = ["rsync", "-az"]

    if cfg.exclude_file:
        rsync_cmd.append(f"--exclude-from={cfg.exclude_file}")

    # mirror the source; whatever gets replaced or deleted moves to old/<label>
    rsync_cmd += ["--delete", "--delete-excluded", "--delete-delay"]
    rsync_cmd += ["--backup", f"--backup-dir=../{OLD_DIR}/{label}"]

    if dest.is_remote:
        ssh_opts = " ".join(ssh_base_opts(cfg.ssh_port, cfg.multiplex))
        rsync_cmd += ["-e", f"ssh {ssh_opts}"]

    if cfg.remote_log_path:
        if dest.is_remote:
            rsync_cmd.append(f"--remote-option=--log-file={cfg.remote_log_path}")
        else:
            rsync_cmd.append(f"--log-file={cfg.remote_log_path}")

    if progress:
        rsync_cmd.append("--info=progress2")

    rsync_cmd.append(str(cfg.source_path).rstrip("/") + "/")
    target = dest.subdir(CURRENT_DIR)
    rsync_cmd.append(f"{dest.login}:{target}" if dest.is_remote else target)
    return rsync_cmd


def latest_progress(path: Path, tail: int = 4096) -> str:
    """Last progress line rsync wrote (progress lines end in \\r, not \\n)."""
    with path.open("rb") as f:
        f.seek(0, os.SEEK_END)
        f.seek(max(0, f.tell() - tail))
        chunk = f.read().decode("utf-8", errors="replace")
    lines = [line.strip() for line in re.split(r"[\r\n]", chunk) if line.strip()]
    return lines[-1] if lines else ""


class ProgressWatcher(threading.Thread):
    def __init__(self, path: Path, interval: float, notifier: Notifier):
        super().__init__(name=f"{PROG_NAME}-progress", daemon=True)
        self.path = path
        self.interval = interval
        self.notifier = notifier
        self._done = threading.Event()
        self._last = ""

    def run(self):
        while not self._done.wait(self.interval):
            try:
                line = latest_progress(self.path)
                if line and line != self._last:
                    self._last = line
                    self.notifier.notify("Backup in progress", line, "low")
            except Exception as e:  # never let the observer touch the transfer
                log.warning(f"Progress observer: {e}")

    def stop(self):
        self._done.set()
        if self.is_alive():
            self.join()


def cleanup_temp_files(*paths):
    """Clean up temporary files"""
    for path in paths:
        if path:
            try:
                os.unlink(path)
            except OSError:
                pass


def run_transfer(cfg: Config, label: str, notifier: Notifier | None = None) -> int:
    """Run rsync once and return its exit status unchanged."""
    watch = notifier is not None and cfg.notify_enabled and cfg.progress_interval > 0
    rsync_cmd = build_rsync_command(cfg, label, progress=watch)
    log.info(f"Running: {shlex.join(rsync_cmd)}")

    side_channel = None
    watcher = None
    try:
        if watch:
            side_channel = tempfile.NamedTemporaryFile(
                "w", prefix=f"{PROG_NAME}-", suffix=".progress", delete=False, encoding="utf-8"
            )
            watcher = ProgressWatcher(Path(side_channel.name), cfg.progress_interval, notifier)
            watcher.start()
        try:
            result = subprocess.run(rsync_cmd, check=False, stdout=side_channel)
        except OSError as e:
            log.error(f"Could not run rsync: {e}")
            return 127
        return result.returncode
    finally:
        if watcher is not None:
            watcher.stop()
        if side_channel is not None:
            side_channel.close()
            cleanup_temp_files(side_channel.name)


# ---------------------------------------------------------------------------
# Retention


@dataclass
class PruneResult:
    deleted: list[str]
    kept: int


def prune(cfg: Config, shell: HostShell) -> PruneResult:
    """Remove the least recently modified DEST/old/<label> folders beyond
    the retention count."""
    script = PRUNE_SCRIPT.render(
        old_dir=cfg.destination.subdir(OLD_DIR), keep=cfg.retain_count
    )
    output, status = shell.run(script)

    deleted = []
    kept = 0
    other = []
    for line in output.splitlines():
        if line.startswith("DELETED "):
            deleted.append(line[len("DELETED ") :])
        elif line.startswith("KEPT ") and line[len("KEPT ") :].isdigit():
            kept = int(line[len("KEPT ") :])
        elif line.strip():
            other.append(line)

    if deleted:
        log_lines(["Deleted following old backups:", *deleted])
    if status != 0:
        detail = "\n".join(other) or f"exit status {status}"
        raise PruneError(f"Backup data was transferred, but removing old backups failed: {detail}")
    log_lines(other)
    return PruneResult(deleted=deleted, kept=kept)


# ---------------------------------------------------------------------------
# Lifecycle


class Stage(Enum):
    INIT = "init"
    VALIDATED = "validated"
    CONNECTED = "connected"
    PREPARED = "prepared"
    TRANSFERRED = "transferred"
    PRUNED = "pruned"
    DONE = "done"
    ABORTED = "aborted"


class BackupRun:
    """One backup from start to finish.

    The sleep-lock is released and a failure popup is sent on every way out
    of execute(), including Ctrl-C and SIGTERM.
    """

    def __init__(
        self,
        cfg: Config,
        shell: HostShell | None = None,
        notifier: Notifier | None = None,
        prober: ConnectivityProber | None = None,
    ):
        self.cfg = cfg
        self.shell = shell or HostShell.from_config(cfg)
        self.notifier = notifier or Notifier(cfg.notify_enabled)
        self.prober = prober or ConnectivityProber(cfg)
        self.state = RunState()
        self.stage = Stage.INIT
        self.abort_reason = None

    def fail(self, message: str):
        self.state.note(message)
        log.error(message)

    def execute(self) -> int:
        exit_code = EXIT_FAILED
        try:
            exit_code = self.run_stages()
        except BackupError as e:
            self.fail(str(e))
            exit_code = e.exit_code
        except KeyboardInterrupt:
            self.fail("Backup interrupted.")
            exit_code = EXIT_INTERRUPTED
        finally:
            self.cleanup(exit_code)
        return exit_code

    def run_stages(self) -> int:
        cfg = self.cfg
        # cfg is a Config, so validation already passed
        self.stage = Stage.VALIDATED
        self.notifier.notify("Backup started", f"starting backup of {cfg.source_path}", "low")
        if cfg.dry_run or cfg.log_path:
            log_lines(format_settings(cfg))

        if cfg.destination.is_remote:
            self.prober.ensure_reachable()
            log.info("server is reachable")
        self.stage = Stage.CONNECTED

        if cfg.dry_run:
            log.info("Dry run: nothing was transferred.")
            self.stage = Stage.DONE
            return EXIT_OK

        self.state.snapshot_label = cfg.snapshot_name_fn()
        prepare(cfg, self.shell, self.state)
        self.stage = Stage.PREPARED

        status = run_transfer(cfg, self.state.snapshot_label, self.notifier)
        if status != 0:
            raise TransferError(status)
        log.info("Backup: rsync finished successfully.")
        self.stage = Stage.TRANSFERRED

        prune(cfg, self.shell)
        release_sleep_lock(self.shell, self.state)
        self.stage = Stage.PRUNED

        self.notifier.notify(
            "Backup finished", f"Successfully finished backup of {cfg.source_path}", "normal"
        )
        self.stage = Stage.DONE
        return EXIT_OK

    def cleanup(self, exit_code: int):
        if self.state.inhibitor_token is not None:
            try:
                release_sleep_lock(self.shell, self.state)
            except LockReleaseError as e:
                self.fail(str(e))

        if exit_code != EXIT_OK:
            self.abort_reason = "\n".join(self.state.notes) or "unknown error"
            self.stage = Stage.ABORTED
            self.notifier.notify("Error during backup:", self.abort_reason, "critical")


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(f"received signal {signum}")


def install_signal_handlers():
    for sig in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(sig, _raise_interrupt)


# ---------------------------------------------------------------------------
# CLI


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description=(
            "Back up a local directory to a (possibly sleeping) server with rsync,\n"
            "keeping changed and deleted files in DEST/old/<name>."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
        epilog=HELP_EPILOG,
    )
    parser.add_argument("-v", "--version", action="version", version=f"{PROG_NAME} {VERSION}")

    # Configuration
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help=f"Path to config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--init-config", action="store_true", help="Create a template config")

    # Server
    parser.add_argument(
        "-w",
        "--wake-on-lan",
        metavar="MAC",
        help="Wake the server with 'wakeonlan' if it does not answer (MAC of its network device)",
    )
    parser.add_argument(
        "--max-wake-wait",
        type=int,
        metavar="N",
        help=f"Wake retries after the first one, ~{WAKE_DELAY}s each (default: {DEFAULTS['MAX_WAKE_WAIT']})",
    )
    parser.add_argument("--ssh-port", type=int, metavar="PORT", help="SSH port (default: 22)")
    parser.add_argument(
        "--no-multiplex", action="store_true", help="Disable SSH ControlMaster/ControlPersist"
    )
    parser.add_argument(
        "--use-sleeplock",
        action="store_true",
        default=None,
        help="Hold a 'sleep-lock' on the server during the backup (needs --wake-on-lan)",
    )

    # rsync
    parser.add_argument("-e", "--exclude-file", metavar="FILE", help="rsync --exclude-from file")
    parser.add_argument(
        "--keep-n-backups",
        type=int,
        metavar="N",
        help=f"Number of old backups to keep (default: {DEFAULTS['KEEP_N_BACKUPS']})",
    )
    parser.add_argument(
        "--old-backups-name-function",
        metavar="NAME",
        help="How old/<name> folders are named: daily, hourly, weekly, monthly, yearly,\n"
        "timestamp or a strftime pattern (default: daily)",
    )

    # Output
    parser.add_argument("-l", "--log-file", metavar="FILE", help="Write log output to FILE")
    parser.add_argument(
        "--rsync-log-file", metavar="FILE", help="rsync log file on the server (rotated, last 10 kept)"
    )
    parser.add_argument(
        "--send-notifications",
        action="store_true",
        default=None,
        help="Desktop notifications when the backup starts, finishes or fails",
    )
    parser.add_argument(
        "--progress-interval",
        type=int,
        metavar="SECONDS",
        help="With --send-notifications, show rsync progress every SECONDS (default: off)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only show the settings and check the connection to the server",
    )

    parser.add_argument("SOURCE", nargs="?", help="Local directory to back up")
    parser.add_argument("DEST", nargs="?", help="[[USER@]HOST:]PATH of the backup")
    return parser


def write_config_template(cfg_path: Path) -> int:
    if cfg_path.exists():
        log.error(f"Refusing to overwrite existing config: {cfg_path}")
        return EXIT_INVALID

    try:
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        cfg_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    except OSError as e:
        log.error(f"Error writing config file: {e}")
        return EXIT_INVALID
    log.info(f"Wrote template config to: {cfg_path}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()
    if not argv:
        parser.print_help(sys.stderr)
        return EXIT_INVALID

    args = parser.parse_args(argv)
    setup_logging()

    cfg_path = Path(args.config).expanduser() if args.config else DEFAULT_CONFIG_PATH
    if args.init_config:
        return write_config_template(cfg_path)

    settings = {}
    try:
        settings = resolve_settings(args, cfg_path)
        cfg = validate(settings)
    except ValidationError as e:
        log.error(str(e))
        notify = _as_bool(settings.get("SEND_NOTIFICATIONS", args.send_notifications))
        Notifier(notify).notify("Error during backup:", str(e), "critical")
        return e.exit_code

    setup_logging(cfg.log_path, cfg.dry_run)
    install_signal_handlers()
    return BackupRun(cfg).execute()


if __name__ == "__main__":
    sys.exit(main())
