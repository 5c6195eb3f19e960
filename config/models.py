from pydantic import BaseModel, field_validator, model_validator, ConfigDict, Field
from typing import Optional, List, Dict
from enum import Enum
import re
import signal


class UpstreamRole(str, Enum):
    """Logical upstream roles. Exactly two exist."""
    FRONTEND = "frontend"
    BACKEND = "backend"


class SignalAction(str, Enum):
    """What the supervisor does when a configured signal arrives"""
    GRACEFUL_SHUTDOWN = "graceful-shutdown"
    IGNORE_AND_LOG = "ignore-and-log"


class ServerConfig(BaseModel):
    """Listening socket configuration"""
    host: str = "0.0.0.0"
    port: int = 5000
    alternate_port: Optional[int] = None
    bind_retry_next_port: bool = False
    shutdown_grace: float = 5.0
    backlog: int = 2048

    @field_validator('port', 'alternate_port')
    @classmethod
    def validate_port(cls, v):
        if v is None:
            return v
        if not 0 <= v <= 65535:
            raise ValueError("Port must be between 0 and 65535")
        return v

    @field_validator('shutdown_grace')
    @classmethod
    def validate_grace(cls, v):
        if v < 0:
            raise ValueError("Shutdown grace period must be non-negative")
        return v


class RestartPolicy(BaseModel):
    """Bounded restart policy for crashed upstreams. Disabled when max_retries is 0."""
    max_retries: int = 0
    initial_backoff: float = 1.0
    max_backoff: float = 30.0

    @field_validator('max_retries')
    @classmethod
    def validate_retries(cls, v):
        if v < 0:
            raise ValueError("max_retries must be non-negative")
        return v

    @field_validator('initial_backoff', 'max_backoff')
    @classmethod
    def validate_backoff(cls, v):
        if v <= 0:
            raise ValueError("Backoff values must be positive")
        return v

    @property
    def enabled(self) -> bool:
        return self.max_retries > 0

    def backoff_for(self, attempt: int) -> float:
        """Delay before restart number `attempt` (0-based)"""
        return min(self.initial_backoff * (2 ** attempt), self.max_backoff)


class UpstreamSpec(BaseModel):
    """Declarative launch spec for one supervised child process"""
    model_config = ConfigDict(frozen=True)

    role: UpstreamRole
    command: str
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    host: str = "127.0.0.1"
    port: int
    ready_pattern: Optional[str] = None
    startup_delay: float = 2.0
    required: bool = True
    inject_port: bool = True

    @field_validator('command')
    @classmethod
    def validate_command(cls, v):
        if not v or not v.strip():
            raise ValueError("Upstream command must be a non-empty string")
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Upstream port must be between 1 and 65535")
        return v

    @field_validator('startup_delay')
    @classmethod
    def validate_delay(cls, v):
        if v < 0:
            raise ValueError("startup_delay must be non-negative")
        return v

    @field_validator('ready_pattern')
    @classmethod
    def validate_pattern(cls, v):
        if v is None:
            return v
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid ready_pattern: {e}")
        return v


class UpstreamTarget(BaseModel):
    """Fixed network address of an upstream proxy target"""
    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int
    scheme: str = "http"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def websocket_url(self) -> str:
        ws_scheme = "wss" if self.scheme == "https" else "ws"
        return f"{ws_scheme}://{self.host}:{self.port}"


class ProxyConfig(BaseModel):
    """Reverse proxy settings"""
    api_prefix: str = "/api"
    timeout: float = 5.0
    connect_timeout: float = 2.0
    targets: Dict[UpstreamRole, UpstreamTarget] = Field(default_factory=dict)

    @field_validator('api_prefix')
    @classmethod
    def validate_prefix(cls, v):
        if not v.startswith("/"):
            raise ValueError("api_prefix must start with '/'")
        return v.rstrip("/") or "/"

    @field_validator('timeout', 'connect_timeout')
    @classmethod
    def validate_timeouts(cls, v):
        if v <= 0:
            raise ValueError("Proxy timeouts must be positive")
        return v


class StaticConfig(BaseModel):
    """Static asset server settings"""
    asset_root: str = "dist/public"
    entry_document: str = "index.html"
    immutable_prefixes: List[str] = Field(default_factory=lambda: ["/assets/"])
    immutable_max_age: int = 31536000
    default_max_age: int = 86400

    @field_validator('entry_document')
    @classmethod
    def validate_entry(cls, v):
        if not v or "/" in v or "\\" in v:
            raise ValueError("entry_document must be a plain file name")
        return v


def _resolve_signal(name: str) -> int:
    candidate = name.strip().upper()
    if not candidate.startswith("SIG"):
        candidate = f"SIG{candidate}"
    value = getattr(signal, candidate, None)
    if not isinstance(value, signal.Signals):
        raise ValueError(f"Unknown signal: {name}")
    return int(value)


class SignalPolicy(BaseModel):
    """Immutable mapping of signal name to action"""
    model_config = ConfigDict(frozen=True)

    actions: Dict[str, SignalAction] = Field(default_factory=dict)

    @field_validator('actions')
    @classmethod
    def validate_actions(cls, v):
        normalized = {}
        for name, action in v.items():
            signum = _resolve_signal(name)
            normalized[signal.Signals(signum).name] = action
        return normalized

    @classmethod
    def preset(cls, name: str, drain_signal: str = "SIGUSR2") -> "SignalPolicy":
        """
        Build a named preset.

        availability: termination signals are logged and ignored; only the
        drain signal shuts down.
        standard: SIGTERM and SIGINT shut down gracefully.
        """
        if name == "availability":
            actions = {
                "SIGTERM": SignalAction.IGNORE_AND_LOG,
                "SIGINT": SignalAction.IGNORE_AND_LOG,
                "SIGHUP": SignalAction.IGNORE_AND_LOG,
            }
        elif name == "standard":
            actions = {
                "SIGTERM": SignalAction.GRACEFUL_SHUTDOWN,
                "SIGINT": SignalAction.GRACEFUL_SHUTDOWN,
                "SIGHUP": SignalAction.IGNORE_AND_LOG,
            }
        else:
            raise ValueError(f"Unknown signal policy preset: {name}")
        actions[signal.Signals(_resolve_signal(drain_signal)).name] = SignalAction.GRACEFUL_SHUTDOWN
        # Platforms without SIGHUP/SIGUSR2 (Windows) simply drop them
        return cls(actions={k: a for k, a in actions.items() if hasattr(signal, k)})

    @classmethod
    def parse(cls, value: str, drain_signal: str = "SIGUSR2") -> "SignalPolicy":
        """
        Parse a policy string: a preset name, explicit NAME=action pairs,
        or a preset followed by overrides ("availability,SIGINT=shutdown").
        """
        parts = [p.strip() for p in value.split(",") if p.strip()]
        base = "availability"
        overrides: Dict[str, SignalAction] = {}
        for part in parts:
            if "=" not in part:
                base = part.lower()
                continue
            name, action = (s.strip() for s in part.split("=", 1))
            overrides[name] = _parse_action(action)
        policy = cls.preset(base, drain_signal)
        if overrides:
            merged = dict(policy.actions)
            merged.update(overrides)
            policy = cls(actions=merged)
        return policy

    def signals(self) -> Dict[int, SignalAction]:
        return {_resolve_signal(name): action for name, action in self.actions.items()}

    def action_for(self, signum: int) -> Optional[SignalAction]:
        try:
            return self.actions.get(signal.Signals(signum).name)
        except ValueError:
            return None


def _parse_action(value: str) -> SignalAction:
    aliases = {
        "shutdown": SignalAction.GRACEFUL_SHUTDOWN,
        "graceful": SignalAction.GRACEFUL_SHUTDOWN,
        "graceful-shutdown": SignalAction.GRACEFUL_SHUTDOWN,
        "ignore": SignalAction.IGNORE_AND_LOG,
        "ignore-and-log": SignalAction.IGNORE_AND_LOG,
    }
    try:
        return aliases[value.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown signal action: {value}")


class LoggingConfig(BaseModel):
    """Centralized logging configuration"""
    level: str = "INFO"
    file_path: str = "logs/gateway.log"
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    console_logging: bool = True
    log_format: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator('max_file_size')
    @classmethod
    def validate_max_file_size(cls, v):
        if v <= 0:
            raise ValueError("Max file size must be positive")
        return v

    @field_validator('backup_count')
    @classmethod
    def validate_backup_count(cls, v):
        if v <= 0:
            raise ValueError("Backup count must be positive")
        return v


class SupervisorConfig(BaseModel):
    """Main supervisor configuration"""
    server: ServerConfig = Field(default_factory=ServerConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    static: StaticConfig = Field(default_factory=StaticConfig)
    upstreams: List[UpstreamSpec] = Field(default_factory=list)
    restart: RestartPolicy = Field(default_factory=RestartPolicy)
    signals: SignalPolicy = Field(default_factory=lambda: SignalPolicy.preset("availability"))
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    debug: bool = False

    @model_validator(mode="after")
    def validate_upstreams(self):
        roles = [spec.role for spec in self.upstreams]
        duplicates = {role.value for role in roles if roles.count(role) > 1}
        if duplicates:
            raise ValueError(f"Duplicate upstream roles: {sorted(duplicates)}")
        # A launched upstream is always a proxy target at its own address
        targets = dict(self.proxy.targets)
        for spec in self.upstreams:
            targets.setdefault(spec.role, UpstreamTarget(host=spec.host, port=spec.port))
        self.proxy = self.proxy.model_copy(update={"targets": targets})
        return self

    def upstream_for(self, role: UpstreamRole) -> Optional[UpstreamSpec]:
        for spec in self.upstreams:
            if spec.role == role:
                return spec
        return None

    @property
    def required_roles(self) -> List[UpstreamRole]:
        return [spec.role for spec in self.upstreams if spec.required]
