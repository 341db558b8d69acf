#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
config模块初始化文件
"""
from safeclean.config.manager import ConfigManager

__all__ = ['ConfigManager']
