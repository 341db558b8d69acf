#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
配置管理器 - 处理清理引擎配置的读取和写入
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger


DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"


class ConfigManager:
    """配置管理器类"""

    def __init__(self, config_path=None, user_config_dir=None):
        """初始化配置管理器

        Args:
            config_path: 配置文件路径，如果为None则使用用户配置
            user_config_dir: 用户配置目录，如果为None则使用 ~/.safeclean
        """
        self.default_config_path = DEFAULT_CONFIG_PATH
        self.user_config_dir = Path(user_config_dir) if user_config_dir else Path.home() / ".safeclean"
        self.user_config_path = self.user_config_dir / "config.yaml"
        self.config_path = Path(config_path) if config_path else None

        # 加载配置
        self.config = self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """加载配置

        显式指定的配置文件优先；否则使用用户配置，不存在时从默认配置复制一份。
        """
        try:
            if self.config_path is not None:
                logger.info(f"从 {self.config_path} 加载配置")
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    return yaml.safe_load(f) or {}

            # 如果用户配置不存在，复制默认配置
            if not self.user_config_path.exists():
                logger.info(f"用户配置不存在，创建默认配置: {self.user_config_path}")
                default_config = self._load_default()
                self.user_config_dir.mkdir(parents=True, exist_ok=True)
                with open(self.user_config_path, 'w', encoding='utf-8') as f:
                    yaml.safe_dump(default_config, f, allow_unicode=True, default_flow_style=False)
                return default_config

            with open(self.user_config_path, 'r', encoding='utf-8') as f:
                logger.info(f"从 {self.user_config_path} 加载配置")
                return yaml.safe_load(f) or {}

        except (OSError, yaml.YAMLError) as e:
            logger.error(f"加载配置失败: {e}")
            # 如果出错，尝试加载默认配置
            try:
                return self._load_default()
            except (OSError, yaml.YAMLError) as e2:
                logger.error(f"加载默认配置也失败: {e2}")
                return {}

    def _load_default(self) -> Dict[str, Any]:
        with open(self.default_config_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "ConfigManager":
        """基于默认配置创建实例，并用给定字典覆盖（不读写用户目录）

        Args:
            config_dict: 点号路径或嵌套字典形式的覆盖项
        """
        manager = cls(config_path=DEFAULT_CONFIG_PATH)
        manager.update(config_dict)
        return manager

    def save_config(self) -> bool:
        """保存配置到用户配置文件"""
        target = self.config_path or self.user_config_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, 'w', encoding='utf-8') as f:
                yaml.safe_dump(self.config, f, allow_unicode=True, default_flow_style=False)
            logger.info(f"配置已保存至 {target}")
            return True
        except OSError as e:
            logger.error(f"保存配置失败: {e}")
            return False

    def get(self, key: str, default=None):
        """获取配置项

        支持使用点号分隔的路径，如 'scanner.batch_size'

        Args:
            key: 配置键或路径
            default: 如果配置不存在时的默认值

        Returns:
            配置值或默认值
        """
        if not isinstance(self.config, dict):
            self.config = {}
            return default
        if '.' not in key:
            return self.config.get(key, default)

        current = self.config
        for part in key.split('.'):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default

        return current

    def set(self, key: str, value) -> bool:
        """设置配置项

        支持使用点号分隔的路径，如 'classifier.old_file_days'

        Args:
            key: 配置键或路径
            value: 要设置的值

        Returns:
            操作是否成功
        """
        if '.' not in key:
            self.config[key] = value
            return True

        parts = key.split('.')
        current = self.config

        # 遍历路径直到倒数第二个部分
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = value
        return True

    def update(self, config_dict: Dict[str, Any]):
        """更新多个配置项

        Args:
            config_dict: 包含配置项的字典
        """
        for key, value in config_dict.items():
            self.set(key, value)

    def get_config(self) -> Dict[str, Any]:
        """获取完整配置字典"""
        return self.config

    def get_path(self, key: str, default: Optional[str] = None) -> Optional[Path]:
        """获取路径类型的配置项，展开 ~ 与环境变量"""
        value = self.get(key, default)
        if not value:
            return None
        return Path(os.path.expandvars(os.path.expanduser(str(value))))
