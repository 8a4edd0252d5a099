"""
配置加载：config.toml 描述仓库与服务参数，环境变量（可来自 .env）覆盖敏感项。

环境变量：
  DEPLOYHOOK_CONFIG      配置文件路径，默认 config.toml
  GITHUB_WEBHOOK_SECRET  覆盖 secret
  GIT_TOKEN              覆盖 git_token（https 克隆用）
  DEPLOYHOOK_HOST / DEPLOYHOOK_PORT  覆盖监听地址
  LOG_LEVEL              日志级别，默认 INFO
"""
import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.toml"
DEFAULT_REMOTE_HOST = "github.com"


class ConfigError(Exception):
    """配置文件缺失或内容不合法。"""


@dataclass(frozen=True)
class RepositoryRule:
    path: str
    branch: str
    deploy_command: str | None = None


@dataclass(frozen=True)
class TlsConfig:
    cert_path: str
    key_path: str


@dataclass(frozen=True)
class Settings:
    secret: str
    host: str = "0.0.0.0"
    port: int = 8080
    git_token: str | None = None
    remote_host: str = DEFAULT_REMOTE_HOST
    command_timeout: float | None = None
    tls: TlsConfig | None = None
    log_level: str = "INFO"
    repos: Mapping[str, RepositoryRule] = field(default_factory=lambda: MappingProxyType({}))


def _require_str(table: Mapping[str, Any], key: str, where: str) -> str:
    value = table.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{where}: '{key}' 必须是非空字符串")
    return value


def _optional_str(value: Any, key: str, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or not value:
        raise ConfigError(f"'{key}' 必须是非空字符串")
    return value


def _parse_rule(name: str, table: Any) -> RepositoryRule:
    where = f"repos.{name}"
    if not isinstance(table, dict):
        raise ConfigError(f"{where}: 必须是表")
    deploy_command = table.get("deploy_command")
    if deploy_command is not None and not isinstance(deploy_command, str):
        raise ConfigError(f"{where}: 'deploy_command' 必须是字符串")
    return RepositoryRule(
        path=_require_str(table, "path", where),
        branch=_require_str(table, "branch", where),
        deploy_command=deploy_command or None,
    )


def _parse_port(value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"port 不合法: {value!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"port 超出范围: {port}")
    return port


def settings_from_mapping(data: Mapping[str, Any], env: Mapping[str, str] | None = None) -> Settings:
    """由已解析的 TOML 数据与环境变量构造 Settings，校验失败抛 ConfigError。"""
    env = os.environ if env is None else env

    secret = env.get("GITHUB_WEBHOOK_SECRET") or data.get("secret") or ""
    if not isinstance(secret, str) or not secret:
        raise ConfigError("secret 未配置（config.toml 或 GITHUB_WEBHOOK_SECRET）")

    tls = None
    tls_table = data.get("tls")
    if tls_table is not None:
        if not isinstance(tls_table, dict):
            raise ConfigError("tls: 必须是表")
        tls = TlsConfig(
            cert_path=_require_str(tls_table, "cert_path", "tls"),
            key_path=_require_str(tls_table, "key_path", "tls"),
        )

    timeout = data.get("command_timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"command_timeout 不合法: {timeout!r}")
        timeout = float(timeout)

    repos_table = data.get("repos", {})
    if not isinstance(repos_table, dict):
        raise ConfigError("repos: 必须是表")
    repos = {name: _parse_rule(name, table) for name, table in repos_table.items()}

    log_level = str(env.get("LOG_LEVEL") or data.get("log_level", "INFO")).upper()
    if log_level not in logging.getLevelNamesMapping():
        raise ConfigError(f"LOG_LEVEL 不合法: {log_level}")

    git_token = env.get("GIT_TOKEN") or data.get("git_token") or None
    return Settings(
        secret=secret,
        host=env.get("DEPLOYHOOK_HOST") or _optional_str(data.get("host"), "host", "0.0.0.0"),
        port=_parse_port(env.get("DEPLOYHOOK_PORT") or data.get("port", 8080)),
        git_token=git_token,
        remote_host=_optional_str(data.get("remote_host"), "remote_host", DEFAULT_REMOTE_HOST),
        command_timeout=timeout,
        tls=tls,
        log_level=log_level,
        repos=MappingProxyType(repos),
    )


def load_settings(path: str | Path | None = None) -> Settings:
    """读取 TOML 配置文件并结合环境变量得到只读的 Settings 快照。"""
    config_path = Path(path or os.environ.get("DEPLOYHOOK_CONFIG", DEFAULT_CONFIG_PATH))
    try:
        with config_path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"配置文件不存在: {config_path}") from None
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"配置文件解析失败 {config_path}: {e}") from e

    settings = settings_from_mapping(data)
    logger.info(
        "已加载配置 path=%s repos=%s tls=%s",
        config_path,
        list(settings.repos),
        settings.tls is not None,
    )
    return settings
