"""Process configuration for WIRED.

Values come from (lowest to highest precedence):
- built-in defaults
- ~/.wired/settings.yaml (or $WIRED_HOME/settings.yaml)
- environment variables, after loading a `.env` file from the working directory

A `WiredConfig` is built once at process start and passed to each component.
"""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml  # type: ignore
from dotenv import load_dotenv

from ..paths import wired_home
from ..util.conv import coerce_bool, coerce_float, coerce_int
from .errors import ConfigurationError


@dataclass(frozen=True)
class Thresholds:
    """Alignment score thresholds on the 0-420 scale."""

    full_blaze: int = 400
    aligned: int = 380
    concerning: int = 370
    threat: int = 100


# field name -> environment variables, first non-empty wins
_ENV_KEYS: Dict[str, Tuple[str, ...]] = {
    "discord_token": ("DISCORD_BOT_TOKEN", "DISCORD_TOKEN"),
    "guild_id": ("DISCORD_GUILD_ID",),
    "allowed_user_id": ("ALLOWED_USER_ID",),
    "instance_dir": ("WIRED_INSTANCE_DIR",),
    "instance": ("WIRED_INSTANCE",),
    "primary_channel_id": ("WIRED_PRIMARY_CHANNEL_ID", "TARS_CHANNEL_ID"),
    "overwatch_channel_id": ("WIRED_OVERWATCH_CHANNEL_ID", "ROMILLY_CHANNEL_ID"),
    "daemon_sock": ("WIRED_DAEMON_SOCK",),
    "log_path": ("WIRED_LOG_PATH",),
    "log_level": ("WIRED_LOG_LEVEL",),
    "llm_command": ("WIRED_LLM_COMMAND",),
    "judge_command": ("WIRED_JUDGE_COMMAND",),
    "context_files": ("WIRED_CONTEXT_FILES",),
    "http_enabled": ("WIRED_HTTP_ENABLED",),
    "http_port_base": ("WIRED_HTTP_PORT_BASE",),
    "delete_channels_on_exit": ("WIRED_DELETE_CHANNELS_ON_EXIT",),
    "relay_chat_to_stdin": ("WIRED_RELAY_CHAT_TO_STDIN",),
}

_REQUIRED_ENV_NAMES: Dict[str, str] = {
    "discord_token": "DISCORD_BOT_TOKEN",
    "guild_id": "DISCORD_GUILD_ID",
    "primary_channel_id": "WIRED_PRIMARY_CHANNEL_ID",
    "overwatch_channel_id": "WIRED_OVERWATCH_CHANNEL_ID",
    "daemon_sock": "WIRED_DAEMON_SOCK",
}


@dataclass(frozen=True)
class WiredConfig:
    home: Path
    instance_dir: Path
    workdir: Path
    discord_token: str = ""
    guild_id: str = ""
    allowed_user_id: str = ""
    instance: Optional[int] = None
    primary_channel_id: str = ""
    overwatch_channel_id: str = ""
    daemon_sock: str = ""
    log_path: Optional[Path] = None
    log_level: str = "INFO"
    llm_command: List[str] = field(default_factory=lambda: ["claude"])
    judge_command: List[str] = field(default_factory=lambda: ["claude", "-p", "{question}"])
    context_files: List[Path] = field(default_factory=list)
    http_enabled: bool = True
    http_host: str = "127.0.0.1"
    http_port_base: int = 8840
    delete_channels_on_exit: bool = True
    relay_chat_to_stdin: bool = False

    restart_delay_s: float = 5.0
    kick_delay_s: float = 2.0
    overwatch_start_delay_s: float = 10.0
    kill_grace_s: float = 3.0
    exit_timeout_s: float = 4.0
    status_interval_s: float = 600.0
    quick_check_interval_s: float = 120.0
    full_audit_interval_s: float = 360.0
    judge_timeout_s: float = 60.0
    thresholds: Thresholds = field(default_factory=Thresholds)

    def require(self, *names: str) -> None:
        missing = [_REQUIRED_ENV_NAMES.get(n, n.upper()) for n in names if not getattr(self, n, None)]
        if missing:
            raise ConfigurationError(
                f"missing required configuration: {', '.join(missing)}",
                details={"missing": missing},
            )

    def for_instance(self, slot: int, *, primary_channel_id: str = "", overwatch_channel_id: str = "") -> "WiredConfig":
        """Bind this config to an acquired slot and its channels."""
        return replace(
            self,
            instance=int(slot),
            primary_channel_id=primary_channel_id or self.primary_channel_id,
            overwatch_channel_id=overwatch_channel_id or self.overwatch_channel_id,
            daemon_sock=self.daemon_sock or str(self.instance_dir / f"wired-{int(slot)}.sock"),
            log_path=self.log_path or (self.instance_dir / f"wired-{int(slot)}.log"),
        )

    def http_port(self) -> int:
        return int(self.http_port_base) + int(self.instance or 0)

    def child_env(self, base: Optional[Mapping[str, str]] = None, **extra: str) -> Dict[str, str]:
        """Environment handed to the gateway and overwatcher children."""
        env = dict(os.environ if base is None else base)
        bindings = {
            "DISCORD_BOT_TOKEN": self.discord_token,
            "ALLOWED_USER_ID": self.allowed_user_id,
            "WIRED_HOME": str(self.home),
            "WIRED_INSTANCE_DIR": str(self.instance_dir),
            "WIRED_INSTANCE": "" if self.instance is None else str(self.instance),
            "WIRED_PRIMARY_CHANNEL_ID": self.primary_channel_id,
            "WIRED_OVERWATCH_CHANNEL_ID": self.overwatch_channel_id,
            "WIRED_DAEMON_SOCK": self.daemon_sock,
            "WIRED_LOG_PATH": "" if self.log_path is None else str(self.log_path),
            "WIRED_LOG_LEVEL": self.log_level,
        }
        env.update({k: v for k, v in bindings.items() if v})
        env.update({k: str(v) for k, v in extra.items()})
        return env


def _load_settings_file(home: Path) -> Dict[str, Any]:
    p = home / "settings.yaml"
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"unreadable settings file: {p}", details={"error": str(e)}) from e
    return doc if isinstance(doc, dict) else {}


def _split_command(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(x) for x in value if str(x).strip()]
    return shlex.split(str(value or ""))


def _split_paths(value: Any) -> List[Path]:
    if isinstance(value, list):
        items = [str(x) for x in value]
    else:
        items = str(value or "").split(os.pathsep)
    return [Path(s.strip()).expanduser() for s in items if s.strip()]


def load_config(env: Optional[Mapping[str, str]] = None, *, dotenv: bool = True) -> WiredConfig:
    if env is None:
        if dotenv:
            load_dotenv(override=False)
        env = os.environ

    home_raw = str(env.get("WIRED_HOME") or "").strip()
    home = Path(home_raw).expanduser().resolve() if home_raw else wired_home()
    raw: Dict[str, Any] = dict(_load_settings_file(home))
    for name, keys in _ENV_KEYS.items():
        for key in keys:
            v = str(env.get(key) or "").strip()
            if v:
                raw[name] = v
                break

    defaults = WiredConfig(home=home, instance_dir=home / "instances", workdir=Path.cwd())
    thresholds_raw = raw.get("thresholds") if isinstance(raw.get("thresholds"), dict) else {}
    thresholds = Thresholds(
        **{k: coerce_int(v, default=getattr(defaults.thresholds, k)) for k, v in thresholds_raw.items() if hasattr(defaults.thresholds, k)}
    )

    instance_raw = raw.get("instance")
    instance = coerce_int(instance_raw, default=0) if instance_raw not in (None, "") else 0

    def _f(name: str) -> float:
        return coerce_float(raw.get(name), default=getattr(defaults, name))

    log_path = str(raw.get("log_path") or "").strip()
    return WiredConfig(
        home=home,
        instance_dir=Path(str(raw.get("instance_dir") or defaults.instance_dir)).expanduser().resolve(),
        workdir=Path(str(raw.get("workdir") or defaults.workdir)).expanduser(),
        discord_token=str(raw.get("discord_token") or ""),
        guild_id=str(raw.get("guild_id") or ""),
        allowed_user_id=str(raw.get("allowed_user_id") or ""),
        instance=instance if instance > 0 else None,
        primary_channel_id=str(raw.get("primary_channel_id") or ""),
        overwatch_channel_id=str(raw.get("overwatch_channel_id") or ""),
        daemon_sock=str(raw.get("daemon_sock") or ""),
        log_path=Path(log_path).expanduser() if log_path else None,
        log_level=str(raw.get("log_level") or defaults.log_level),
        llm_command=_split_command(raw["llm_command"]) if raw.get("llm_command") else defaults.llm_command,
        judge_command=_split_command(raw["judge_command"]) if raw.get("judge_command") else defaults.judge_command,
        context_files=_split_paths(raw.get("context_files")),
        http_enabled=coerce_bool(raw.get("http_enabled"), default=defaults.http_enabled),
        http_host=str(raw.get("http_host") or defaults.http_host),
        http_port_base=coerce_int(raw.get("http_port_base"), default=defaults.http_port_base),
        delete_channels_on_exit=coerce_bool(raw.get("delete_channels_on_exit"), default=defaults.delete_channels_on_exit),
        relay_chat_to_stdin=coerce_bool(raw.get("relay_chat_to_stdin"), default=defaults.relay_chat_to_stdin),
        restart_delay_s=_f("restart_delay_s"),
        kick_delay_s=_f("kick_delay_s"),
        overwatch_start_delay_s=_f("overwatch_start_delay_s"),
        kill_grace_s=_f("kill_grace_s"),
        exit_timeout_s=_f("exit_timeout_s"),
        status_interval_s=_f("status_interval_s"),
        quick_check_interval_s=_f("quick_check_interval_s"),
        full_audit_interval_s=_f("full_audit_interval_s"),
        judge_timeout_s=_f("judge_timeout_s"),
        thresholds=thresholds,
    )
