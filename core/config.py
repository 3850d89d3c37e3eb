"""
core/config.py: YAML 配置

    from core.config import cfg
    timeout = cfg.get("payment.timeout_seconds", 10)

字符串值可引用环境变量 ``${NAME}`` 或 ``${NAME:default}``，加载时展开。
配置文件路径取环境变量 CONFIG_FILE，默认 config.yaml。
"""

import os
import re
from typing import Any, Dict, Optional

import yaml

VERSION = "1.0.0"
API_BASE = "/api/v1"

DEFAULT_CONFIG_FILE = "config.yaml"

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}")


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


class Config:
    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.environ.get("CONFIG_FILE", DEFAULT_CONFIG_FILE)
        self.config: Dict[str, Any] = {}
        self.reload()

    def reload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        self.config = _expand_env(data) if isinstance(data, dict) else {}
        return self.config

    def get(self, key: str, default: Any = None) -> Any:
        """按点号路径取值，例如 ``qiniu.bucket``；缺失或空值返回 default。"""
        cursor: Any = self.config
        for part in str(key or "").split("."):
            if not isinstance(cursor, dict) or part not in cursor:
                return default
            cursor = cursor[part]
        if cursor is None or cursor == "":
            return default
        return cursor


cfg = Config()

