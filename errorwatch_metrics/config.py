"""
Agent 配置加载模块。

定义配置数据类，支持从 YAML 文件加载、METRICS_* 环境变量覆盖、
配置文件自动发现，以及时间间隔简写（如 '15s'、'1m'）。
采集与发送核心只接收解析完成的 AgentConfig，不直接读取文件或环境变量。
"""
import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from errorwatch_metrics.exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:3333"
DEFAULT_INTERVAL = 10
DEFAULT_CONFIG_FILE = "sdk-metrics.yaml"

DEFAULT_CONFIG_TEMPLATE = """\
endpoint: "http://localhost:3333"
api_key: "your_api_key_here"
host_id: ""
hostname: ""
collection_interval: 10
tags:
  env: production
transport:
  use_sse: false
  retry_interval: 5
  max_retries: 10
  buffer_size: 100
"""

# config reset 时提示的环境变量
ENV_HELP = {
    "METRICS_API_KEY": "Your API key",
    "METRICS_ENDPOINT": "ErrorWatch endpoint",
    "METRICS_HOST_ID": "Unique host identifier",
    "METRICS_TAGS": "Comma-separated tags",
}


@dataclass
class TransportConfig:
    """发送通道配置（仅为兼容配置文件而解析，当前不参与发送逻辑）。"""
    use_sse: bool = False
    retry_interval: int = 5
    max_retries: int = 10
    buffer_size: int = 100


@dataclass
class AgentConfig:
    """Agent 主配置。"""
    endpoint: str = DEFAULT_ENDPOINT
    api_key: str = ""
    host_id: str = ""
    hostname: str = ""
    collection_interval: int = DEFAULT_INTERVAL  # 采集间隔（秒）
    tags: Dict[str, str] = field(default_factory=dict)
    transport: TransportConfig = field(default_factory=TransportConfig)


def _parse_interval(val) -> int:
    """解析时间间隔，支持 '15s'、'1m' 等简写格式。"""
    if isinstance(val, int):
        return val
    s = str(val).strip().lower()
    if s.endswith("s"):
        return int(s[:-1])
    if s.endswith("m"):
        return int(s[:-1]) * 60
    return int(s)


def _int_or(val, default: int) -> int:
    try:
        return _parse_interval(val)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid integer value %r, using %d", val, default)
        return default


def _as_bool(val: str) -> bool:
    return val.strip().lower() in ("true", "1")


def parse_tags(tags: str) -> Dict[str, str]:
    """解析 'key1:value1,key2:value2' 格式的标签字符串，格式不正确的项被忽略。"""
    result: Dict[str, str] = {}
    if not tags:
        return result
    for pair in tags.split(","):
        kv = [p.strip() for p in pair.split(":") if p.strip()]
        if len(kv) == 2:
            result[kv[0]] = kv[1]
    return result


def apply_defaults(cfg: AgentConfig) -> AgentConfig:
    """为缺失、为零或为负的字段填充默认值。"""
    if not cfg.collection_interval or cfg.collection_interval < 0:
        cfg.collection_interval = DEFAULT_INTERVAL
    if not cfg.transport.retry_interval:
        cfg.transport.retry_interval = 5
    if not cfg.transport.max_retries:
        cfg.transport.max_retries = 10
    if not cfg.transport.buffer_size:
        cfg.transport.buffer_size = 100
    if cfg.tags is None:
        cfg.tags = {}
    cfg.endpoint = cfg.endpoint.rstrip("/")
    return cfg


def load_config(path: str) -> AgentConfig:
    """从 YAML 文件加载 Agent 配置。

    Args:
        path: 配置文件路径。

    Returns:
        填充默认值后的 AgentConfig 实例（未合并环境变量）。

    Raises:
        ConfigError: 文件不存在、无法解析或顶层不是映射时抛出。
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(p) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    cfg = AgentConfig()
    cfg.endpoint = str(data.get("endpoint") or DEFAULT_ENDPOINT)
    cfg.api_key = str(data.get("api_key") or "")
    cfg.host_id = str(data.get("host_id") or "")
    cfg.hostname = str(data.get("hostname") or "")
    cfg.collection_interval = _int_or(data.get("collection_interval") or 0, DEFAULT_INTERVAL)

    tags = data.get("tags") or {}
    if not isinstance(tags, dict):
        raise ConfigError(f"'tags' in {path} must be a mapping")
    cfg.tags = {str(k): str(v) for k, v in tags.items()}

    t = data.get("transport") or {}
    if not isinstance(t, dict):
        raise ConfigError(f"'transport' in {path} must be a mapping")
    use_sse = t.get("use_sse", False)
    cfg.transport = TransportConfig(
        use_sse=use_sse if isinstance(use_sse, bool) else _as_bool(str(use_sse)),
        retry_interval=_int_or(t.get("retry_interval") or 0, 5),
        max_retries=_int_or(t.get("max_retries") or 0, 10),
        buffer_size=_int_or(t.get("buffer_size") or 0, 100),
    )

    return apply_defaults(cfg)


def load_from_env(environ: Optional[Mapping[str, str]] = None) -> AgentConfig:
    """仅从 METRICS_* 环境变量构建配置。"""
    env = os.environ if environ is None else environ

    def get(key: str, default: str = "") -> str:
        return env.get(key) or default

    cfg = AgentConfig(
        endpoint=get("METRICS_ENDPOINT", DEFAULT_ENDPOINT),
        api_key=get("METRICS_API_KEY"),
        host_id=get("METRICS_HOST_ID"),
        hostname=get("METRICS_HOSTNAME"),
        collection_interval=_int_or(get("METRICS_COLLECTION_INTERVAL", str(DEFAULT_INTERVAL)), DEFAULT_INTERVAL),
        tags=parse_tags(get("METRICS_TAGS")),
        transport=TransportConfig(
            use_sse=_as_bool(get("METRICS_USE_SSE", "false")),
            retry_interval=_int_or(get("METRICS_RETRY_INTERVAL", "5"), 5),
            max_retries=_int_or(get("METRICS_MAX_RETRIES", "10"), 10),
            buffer_size=_int_or(get("METRICS_BUFFER_SIZE", "100"), 100),
        ),
    )
    return apply_defaults(cfg)


def merge_with_env(cfg: AgentConfig, environ: Optional[Mapping[str, str]] = None) -> AgentConfig:
    """用非空环境变量覆盖文件中的配置项。"""
    env = os.environ if environ is None else environ
    cfg = apply_defaults(cfg)

    if env.get("METRICS_ENDPOINT"):
        cfg.endpoint = env["METRICS_ENDPOINT"].rstrip("/")
    if env.get("METRICS_API_KEY"):
        cfg.api_key = env["METRICS_API_KEY"]
    if env.get("METRICS_HOST_ID"):
        cfg.host_id = env["METRICS_HOST_ID"]
    if env.get("METRICS_HOSTNAME"):
        cfg.hostname = env["METRICS_HOSTNAME"]
    if env.get("METRICS_COLLECTION_INTERVAL"):
        cfg.collection_interval = _int_or(env["METRICS_COLLECTION_INTERVAL"], cfg.collection_interval)
    if env.get("METRICS_TAGS"):
        cfg.tags = parse_tags(env["METRICS_TAGS"])

    return apply_defaults(cfg)


def load_with_defaults(path: str, environ: Optional[Mapping[str, str]] = None) -> AgentConfig:
    """加载配置文件并合并环境变量；文件不可用时退回纯环境变量配置。"""
    try:
        cfg = load_config(path)
    except ConfigError as e:
        logger.warning(f"{e}; falling back to environment variables")
        return load_from_env(environ)
    return merge_with_env(cfg, environ)


def config_paths() -> List[str]:
    """按优先级返回配置文件搜索路径。"""
    return [
        "/etc/sdk-metrics/config.yaml",
        str(Path.home() / ".sdk-metrics" / "config.yaml"),
        os.path.join(".", DEFAULT_CONFIG_FILE),
    ]


def find_config_file(paths: Optional[List[str]] = None) -> str:
    """返回第一个存在的配置文件路径，找不到时返回空字符串。"""
    for path in paths if paths is not None else config_paths():
        expanded = os.path.expandvars(os.path.expanduser(path))
        if os.path.isfile(expanded):
            return expanded
    return ""


def resolve_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> AgentConfig:
    """解析最终生效的配置：显式路径 > 自动发现的文件 > 纯环境变量。

    host_id 与 hostname 未配置时使用本机主机名。
    """
    if path:
        cfg = load_with_defaults(path, environ)
    else:
        found = find_config_file()
        if found:
            logger.debug(f"Using config file {found}")
            cfg = load_with_defaults(found, environ)
        else:
            cfg = load_from_env(environ)

    if not cfg.host_id or not cfg.hostname:
        local = socket.gethostname()
        cfg.host_id = cfg.host_id or local
        cfg.hostname = cfg.hostname or local
    return cfg


def write_default_config(path: str = DEFAULT_CONFIG_FILE, force: bool = False) -> Path:
    """写入示例配置文件。

    Raises:
        ConfigError: 文件已存在且未指定 force 时抛出。
    """
    p = Path(path)
    if p.exists() and not force:
        raise ConfigError(f"{path} already exists (use --force to overwrite)")
    p.write_text(DEFAULT_CONFIG_TEMPLATE)
    return p


def reset_config_files(paths: Optional[List[str]] = None) -> List[str]:
    """删除已存在的配置文件，返回被删除的路径列表。"""
    removed = []
    for path in paths if paths is not None else config_paths():
        expanded = os.path.expandvars(os.path.expanduser(path))
        if not os.path.isfile(expanded):
            continue
        try:
            os.remove(expanded)
        except OSError as e:
            logger.warning(f"Could not remove {expanded}: {e}")
            continue
        removed.append(expanded)
    return removed


def mask_api_key(key: str) -> str:
    """仅保留 API Key 前 8 位用于展示。"""
    if len(key) <= 8:
        return "***"
    return key[:8] + "***"
