#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
日志服务 - 配置 loguru 输出目标
"""

import os
import sys
from typing import Optional

from loguru import logger

from safeclean.config.manager import ConfigManager


class LoggerService:
    """日志服务类，配置控制台与滚动文件日志"""

    def __init__(self, config_manager=None, log_file: Optional[str] = None, level: Optional[str] = None):
        """初始化日志服务

        Args:
            config_manager: 配置管理器实例，如果为None则创建新实例
            log_file: 日志文件路径，None 时使用 logging.file
            level: 日志级别，None 时使用 logging.level
        """
        self.config = config_manager or ConfigManager()
        if log_file is None:
            log_file = self.config.get_path('logging.file', None)
        self.log_file = os.fspath(log_file) if log_file else None
        self.level = level or self.config.get('logging.level', 'INFO')

        logger.remove()
        logger.add(sys.stderr, level=self.level, colorize=True, enqueue=True)
        if self.log_file:
            os.makedirs(os.path.dirname(self.log_file) or '.', exist_ok=True)
            logger.add(
                self.log_file,
                level=self.level,
                rotation=self.config.get('logging.rotation', '10 MB'),
                retention=self.config.get('logging.retention', '10 days'),
                encoding="utf-8",
                enqueue=True,
            )
        self.logger = logger

    def get_logger(self, name: str):
        """返回绑定了组件名的 logger"""
        return self.logger.bind(component=name)

    def info(self, msg: str):
        self.logger.info(msg)

    def warning(self, msg: str):
        self.logger.warning(msg)

    def error(self, msg: str):
        self.logger.error(msg)

    def debug(self, msg: str):
        self.logger.debug(msg)

    def shutdown(self):
        """等待队列中的日志写完"""
        logger.complete()
