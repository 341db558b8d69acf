#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os
import tempfile
import unittest

from loguru import logger

from safeclean.services.logger import LoggerService

from support import make_config


class TestLoggerService(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name

    def tearDown(self):
        logger.remove()
        self._tmp.cleanup()

    def test_file_sink_receives_messages(self):
        log_file = os.path.join(self.root, "logs", "safeclean.log")
        service = LoggerService(config_manager=make_config(self.root), log_file=log_file, level="DEBUG")
        service.get_logger("executor").info("清理开始")
        service.debug("调试信息")
        service.shutdown()

        with open(log_file, encoding="utf-8") as f:
            content = f.read()
        self.assertIn("清理开始", content)
        self.assertIn("调试信息", content)

    def test_level_comes_from_config(self):
        config = make_config(self.root, {'logging.level': 'WARNING',
                                         'logging.file': os.path.join(self.root, "out.log")})
        service = LoggerService(config_manager=config)
        service.info("不会写入")
        service.warning("会写入")
        service.shutdown()

        with open(service.log_file, encoding="utf-8") as f:
            content = f.read()
        self.assertNotIn("不会写入", content)
        self.assertIn("会写入", content)


if __name__ == "__main__":
    unittest.main()
