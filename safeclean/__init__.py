#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
safeclean - 可回滚的磁盘缓存与重复文件清理引擎
"""

__version__ = "0.1.0"
