import json
import logging
import os
import shlex
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from .models import (
    SupervisorConfig, ServerConfig, ProxyConfig, StaticConfig, RestartPolicy,
    SignalPolicy, LoggingConfig, UpstreamSpec, UpstreamTarget, UpstreamRole
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5000
DEFAULT_BACKEND_PORT = 8080
DEFAULT_FRONTEND_PORT = 3000


class ConfigurationError(Exception):
    """Raised when the supervisor configuration cannot be built"""
    pass


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _parse_env_overlay(value: Optional[str]) -> Dict[str, str]:
    """Parse "KEY=value,OTHER=value" into a dict"""
    overlay: Dict[str, str] = {}
    if not value:
        return overlay
    for pair in value.split(","):
        if not pair.strip():
            continue
        if "=" not in pair:
            raise ConfigurationError(f"Invalid env overlay entry: {pair!r} (expected KEY=value)")
        key, val = pair.split("=", 1)
        overlay[key.strip()] = val.strip()
    return overlay


def _upstream_from_env(role: UpstreamRole, default_port: int) -> Optional[UpstreamSpec]:
    """Build a launch spec from <ROLE>_* variables, or None when no command is set"""
    prefix = role.value.upper()
    command_line = os.getenv(f"{prefix}_COMMAND")
    if not command_line:
        return None

    command_parts = shlex.split(command_line)
    extra_args = shlex.split(os.getenv(f"{prefix}_ARGS", ""))

    return UpstreamSpec(
        role=role,
        command=command_parts[0],
        args=command_parts[1:] + extra_args,
        cwd=os.getenv(f"{prefix}_CWD") or None,
        env=_parse_env_overlay(os.getenv(f"{prefix}_ENV")),
        host=os.getenv(f"{prefix}_HOST", "127.0.0.1"),
        port=_env_int(f"{prefix}_PORT", default_port),
        ready_pattern=os.getenv(f"{prefix}_READY_PATTERN") or None,
        startup_delay=_env_float(f"{prefix}_STARTUP_DELAY", 2.0),
        required=_env_bool(f"{prefix}_REQUIRED", True),
        inject_port=_env_bool(f"{prefix}_INJECT_PORT", True),
    )


def load_launch_spec_file(path: str) -> List[UpstreamSpec]:
    """
    Load upstream launch specs from a JSON file.

    The file holds either a list of specs or {"upstreams": [...]}.
    """
    spec_path = Path(path)
    try:
        raw = json.loads(spec_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Launch spec file not found: {spec_path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Launch spec file {spec_path} is not valid JSON: {e}")

    entries = raw.get("upstreams", []) if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ConfigurationError(f"Launch spec file {spec_path} must contain a list of upstreams")

    try:
        return [UpstreamSpec(**entry) for entry in entries]
    except (TypeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid launch spec in {spec_path}: {e}")


def create_config(env_file: Optional[str] = None) -> SupervisorConfig:
    """Create supervisor configuration from the environment"""
    # Platform-supplied variables (PORT in particular) win over .env values
    load_dotenv(env_file, override=False)

    try:
        spec_file = os.getenv("SUPERVISOR_LAUNCH_SPEC")
        if spec_file:
            upstreams = load_launch_spec_file(spec_file)
        else:
            upstreams = [
                spec for spec in (
                    _upstream_from_env(UpstreamRole.BACKEND, DEFAULT_BACKEND_PORT),
                    _upstream_from_env(UpstreamRole.FRONTEND, DEFAULT_FRONTEND_PORT),
                ) if spec is not None
            ]

        targets: Dict[UpstreamRole, UpstreamTarget] = {
            UpstreamRole.BACKEND: UpstreamTarget(
                host=os.getenv("BACKEND_HOST", "127.0.0.1"),
                port=_env_int("BACKEND_PORT", DEFAULT_BACKEND_PORT),
            )
        }
        # The frontend proxy is opt-in: without it the catch-all serves static assets
        frontend_port = _env_int("FRONTEND_PORT", None)
        if frontend_port is not None:
            targets[UpstreamRole.FRONTEND] = UpstreamTarget(
                host=os.getenv("FRONTEND_HOST", "127.0.0.1"),
                port=frontend_port,
            )

        drain_signal = os.getenv("DRAIN_SIGNAL", "SIGUSR2")

        config = SupervisorConfig(
            server=ServerConfig(
                host=os.getenv("HOST", "0.0.0.0"),
                port=_env_int("PORT", DEFAULT_PORT),
                alternate_port=_env_int("ALTERNATE_PORT", None),
                bind_retry_next_port=_env_bool("BIND_RETRY_NEXT_PORT", False),
                shutdown_grace=_env_float("SHUTDOWN_GRACE", 5.0),
            ),
            proxy=ProxyConfig(
                api_prefix=os.getenv("API_PREFIX", "/api"),
                timeout=_env_float("PROXY_TIMEOUT", 5.0),
                connect_timeout=_env_float("PROXY_CONNECT_TIMEOUT", 2.0),
                targets=targets,
            ),
            static=StaticConfig(
                asset_root=os.getenv("ASSET_ROOT", "dist/public"),
                entry_document=os.getenv("ENTRY_DOCUMENT", "index.html"),
            ),
            upstreams=upstreams,
            restart=RestartPolicy(
                max_retries=_env_int("RESTART_MAX_RETRIES", 0),
                initial_backoff=_env_float("RESTART_INITIAL_BACKOFF", 1.0),
                max_backoff=_env_float("RESTART_MAX_BACKOFF", 30.0),
            ),
            signals=SignalPolicy.parse(os.getenv("SIGNAL_POLICY", "availability"), drain_signal),
            logging=LoggingConfig(
                level=os.getenv("LOG_LEVEL", "INFO"),
                file_path=os.getenv("LOG_FILE_PATH", "logs/gateway.log"),
                console_logging=_env_bool("LOG_CONSOLE", True),
            ),
            debug=_env_bool("DEBUG", False),
        )
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(f"Invalid supervisor configuration: {e}")

    logger.info(
        f"CONFIG: port={config.server.port} asset_root={config.static.asset_root} "
        f"upstreams={[spec.role.value for spec in config.upstreams]} "
        f"targets={ {role.value: t.base_url for role, t in config.proxy.targets.items()} }"
    )
    return config


def apply_overrides(
    config: SupervisorConfig,
    host: Optional[str] = None,
    port: Optional[int] = None,
    asset_root: Optional[str] = None,
    signal_policy: Optional[str] = None,
    no_frontend: bool = False,
    debug: bool = False,
) -> SupervisorConfig:
    """Apply command-line overrides and re-validate the whole configuration"""
    data = config.model_dump()

    if host is not None:
        data["server"]["host"] = host
    if port is not None:
        data["server"]["port"] = port
    if asset_root is not None:
        data["static"]["asset_root"] = asset_root
    if signal_policy is not None:
        drain_signal = os.getenv("DRAIN_SIGNAL", "SIGUSR2")
        try:
            data["signals"] = SignalPolicy.parse(signal_policy, drain_signal).model_dump()
        except ValueError as e:
            raise ConfigurationError(f"Invalid signal policy {signal_policy!r}: {e}")
    if no_frontend:
        data["upstreams"] = [spec for spec in data["upstreams"] if spec["role"] != UpstreamRole.FRONTEND]
        data["proxy"]["targets"].pop(UpstreamRole.FRONTEND, None)
    if debug:
        data["debug"] = True
        data["logging"]["level"] = "DEBUG"

    try:
        return SupervisorConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid supervisor configuration: {e}")


def create_test_config(temp_dir: str = None, **overrides) -> SupervisorConfig:
    """Create configuration for testing"""
    if temp_dir is None:
        temp_dir = tempfile.gettempdir()

    temp_path = Path(temp_dir)

    values = dict(
        server=ServerConfig(host="127.0.0.1", port=0, shutdown_grace=1.0),
        proxy=ProxyConfig(
            timeout=1.0,
            connect_timeout=0.5,
            targets={UpstreamRole.BACKEND: UpstreamTarget(host="127.0.0.1", port=DEFAULT_BACKEND_PORT)},
        ),
        static=StaticConfig(asset_root=str(temp_path / "public")),
        restart=RestartPolicy(max_retries=0, initial_backoff=0.05, max_backoff=0.2),
        signals=SignalPolicy.preset("availability"),
        logging=LoggingConfig(
            level="DEBUG",
            file_path=str(temp_path / "test_gateway.log"),
            max_file_size=1024 * 1024,  # 1MB for tests
            backup_count=2,
            console_logging=True,
        ),
        debug=True,
    )
    values.update(overrides)
    return SupervisorConfig(**values)
