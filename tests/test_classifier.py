#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os
import tempfile
import threading
import unittest
from datetime import datetime, timedelta

from safeclean.core.classifier import (
    Classifier, clamp_age_threshold, downloads_type_for, log_application_name,
)
from safeclean.core.guard import PathGuard
from safeclean.core.scanner import Scanner
from safeclean.data.errors import DuplicateSearchCancelled
from safeclean.data.models import (
    CategoryTag, DownloadsFileType, FileKind, FilePermissions, FileRecord, ScanResult,
)

from support import MB, make_config, record_for, write_file

NOW = datetime(2024, 6, 1, 12, 0, 0)


def fake_record(path, size=10, accessed_days=0, modified_days=None, kind=FileKind.OTHER, extension=""):
    accessed = NOW - timedelta(days=accessed_days)
    modified = NOW - timedelta(days=accessed_days if modified_days is None else modified_days)
    return FileRecord(
        path=path, size=size, created_time=modified, modified_time=modified, accessed_time=accessed,
        kind=kind, extension=extension, permissions=FilePermissions(),
    )


class TestThresholdClamp(unittest.TestCase):
    def test_clamp_bounds(self):
        for value in (-10**9, -1, 0, 5, 29):
            self.assertEqual(clamp_age_threshold(value), 30)
        for value in (1096, 5000, 10**9):
            self.assertEqual(clamp_age_threshold(value), 1095)
        for value in (30, 31, 365, 1095):
            self.assertEqual(clamp_age_threshold(value), value)

    def test_configured_old_threshold_is_clamped(self):
        config = make_config(tempfile.gettempdir(), {'classifier.old_file_days': 2})
        self.assertEqual(Classifier(config_manager=config).old_file_days, 30)


class TestClassify(unittest.TestCase):
    def setUp(self):
        self.guard = PathGuard(os_version="10.15")
        config = make_config(tempfile.gettempdir(), {
            'classifier.system_cache_roots': ['/Library/Caches'],
            'classifier.temp_markers': ['/tmp/'],
        })
        self.classifier = Classifier(guard=self.guard, config_manager=config, now=lambda: NOW)

    def test_cache_flavours(self):
        c = self.classifier
        self.assertEqual(c.classify(fake_record("/Library/Caches/com.apple.x/blob")), {CategoryTag.SYSTEM_CACHE})
        self.assertEqual(c.classify(fake_record("/Users/u/Library/Caches/com.example.app/blob")),
                         {CategoryTag.APP_CACHE})
        self.assertEqual(c.classify(fake_record("/Users/u/Library/Caches/Google/Chrome/Default/Cache/f_0001")),
                         {CategoryTag.BROWSER_CACHE})
        self.assertEqual(c.classify(fake_record("/home/u/.cache/mozilla/firefox/x/cache2/entry")),
                         {CategoryTag.BROWSER_CACHE})

    def test_multiple_tags(self):
        record = fake_record("/Users/u/Library/Caches/com.example/huge.log", size=200 * MB, accessed_days=500)
        self.assertEqual(self.classifier.classify(record),
                         {CategoryTag.APP_CACHE, CategoryTag.LOG, CategoryTag.LARGE, CategoryTag.OLD})

    def test_temp_downloads_and_logs(self):
        c = self.classifier
        self.assertIn(CategoryTag.TEMP, c.classify(fake_record("/Users/u/work/file.swp")))
        self.assertIn(CategoryTag.TEMP, c.classify(fake_record("/tmp/session/x")))
        self.assertEqual(c.classify(fake_record("/Users/u/Downloads/setup.dmg")), {CategoryTag.DOWNLOADS})
        self.assertEqual(c.classify(fake_record("/Users/u/Library/Logs/App/out.txt")), {CategoryTag.LOG})
        self.assertEqual(c.classify(fake_record("/Users/u/Documents/report.pdf")), set())

    def test_old_excludes_protected_and_bundles(self):
        c = self.classifier
        self.assertIn(CategoryTag.OLD, c.classify(fake_record("/Users/u/Documents/old.pdf", accessed_days=400)))
        self.assertNotIn(CategoryTag.OLD, c.classify(fake_record("/Users/u/Documents/new.pdf", accessed_days=364)))
        self.assertNotIn(CategoryTag.OLD, c.classify(fake_record("/usr/bin/ancient", accessed_days=4000)))
        bundle = fake_record("/Users/u/Applications/Tool.app/Contents/MacOS/Tool", accessed_days=900,
                             kind=FileKind.APPLICATION)
        self.assertNotIn(CategoryTag.OLD, c.classify(bundle))


class TestCachedTempAndOldLog(unittest.TestCase):
    """缓存目录下的临时文件与旧日志"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        self.caches = os.path.join(self.root, "Caches")
        write_file(os.path.join(self.caches, "cache", "a.tmp"), size=10 * MB, age_days=2)
        write_file(os.path.join(self.caches, "cache", "b.log"), size=5 * MB, age_days=40)

    def tearDown(self):
        self._tmp.cleanup()

    def _classify(self, old_days):
        config = make_config(self.root, {
            'classifier.system_cache_roots': [self.caches],
            'classifier.old_file_days': old_days,
        })
        guard = PathGuard(os_version="10.15")
        result = Scanner(guard=guard, config_manager=config).scan([self.caches])
        classifier = Classifier(guard=guard, config_manager=config)
        return {f.name: classifier.classify(f) for f in result.files}

    def test_old_threshold_below_age(self):
        tags = self._classify(30)
        self.assertIn(CategoryTag.TEMP, tags["a.tmp"])
        self.assertNotIn(CategoryTag.OLD, tags["a.tmp"])
        self.assertNotIn(CategoryTag.LOG, tags["a.tmp"])
        self.assertEqual(tags["b.log"], {CategoryTag.SYSTEM_CACHE, CategoryTag.LOG, CategoryTag.OLD})

    def test_old_threshold_above_age(self):
        tags = self._classify(365)
        self.assertEqual(tags["b.log"], {CategoryTag.SYSTEM_CACHE, CategoryTag.LOG})


class TestDuplicates(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        self.config = make_config(self.root)
        self.classifier = Classifier(guard=PathGuard(os_version="10.15"), config_manager=self.config)

    def tearDown(self):
        self._tmp.cleanup()

    def test_identical_content_forms_one_group(self):
        """两个内容相同的 2MB 文件组成一组"""
        content = os.urandom(2 * MB)
        a = write_file(os.path.join(self.root, "one", "photo.jpg"), content=content)
        b = write_file(os.path.join(self.root, "two", "photo-copy.jpg"), content=content)
        groups = self.classifier.find_duplicates([record_for(a), record_for(b)])
        self.assertEqual(len(groups), 1)
        self.assertEqual(len(groups[0].files), 2)
        self.assertEqual(groups[0].wasted_space, 2 * MB)
        self.assertEqual(len(groups[0].hash), 64)

    def test_same_size_different_content_is_not_duplicate(self):
        a = write_file(os.path.join(self.root, "a.bin"), size=2 * MB)
        b = write_file(os.path.join(self.root, "b.bin"), size=2 * MB)
        self.assertEqual(self.classifier.find_duplicates([record_for(a), record_for(b)]), [])

    def test_small_files_are_ignored(self):
        content = b"x" * 1024
        a = write_file(os.path.join(self.root, "a.txt"), content=content)
        b = write_file(os.path.join(self.root, "b.txt"), content=content)
        self.assertEqual(self.classifier.find_duplicates([record_for(a), record_for(b)]), [])

    def test_three_way_group_and_progress(self):
        content = os.urandom(MB + 1)
        paths = [write_file(os.path.join(self.root, f"d{i}.bin"), content=content) for i in range(3)]
        progress = []
        groups = self.classifier.find_duplicates([record_for(p) for p in paths],
                                                 on_progress=lambda done, total: progress.append((done, total)))
        self.assertEqual(len(groups), 1)
        self.assertEqual(groups[0].wasted_space, 2 * (MB + 1))
        self.assertEqual(progress[-1], (3, 3))

    def test_cancel_stops_hashing(self):
        first, second = os.urandom(2 * MB), os.urandom(2 * MB)
        paths = [write_file(os.path.join(self.root, f"c{i}.bin"), content=content)
                 for i, content in enumerate((first, first, second, second))]
        classifier = self.classifier

        def on_progress(done, total):
            if done == 2:
                classifier.cancel()

        with self.assertRaises(DuplicateSearchCancelled) as ctx:
            classifier.find_duplicates([record_for(p) for p in paths], on_progress=on_progress)
        # 取消前已确认的组随异常返回
        partial = ctx.exception.partial_groups
        self.assertEqual(len(partial), 1)
        self.assertEqual([f.path for f in partial[0].files], paths[:2])

    def test_cancel_before_search_is_honoured(self):
        content = os.urandom(2 * MB)
        records = [record_for(write_file(os.path.join(self.root, f"e{i}.bin"), content=content))
                   for i in range(2)]
        self.classifier.cancel()
        with self.assertRaises(DuplicateSearchCancelled) as ctx:
            self.classifier.find_duplicates(records)
        self.assertEqual(ctx.exception.partial_groups, [])

        # 取消只作用于一次检测
        self.assertEqual(len(self.classifier.find_duplicates(records)), 1)

        stop = threading.Event()
        stop.set()
        with self.assertRaises(DuplicateSearchCancelled):
            self.classifier.analyze(ScanResult(files=records), stop_event=stop)

    def test_analyze_buckets_and_savings(self):
        content = os.urandom(2 * MB)
        write_file(os.path.join(self.root, "scan", "x.bin"), content=content)
        write_file(os.path.join(self.root, "scan", "y.bin"), content=content)
        write_file(os.path.join(self.root, "scan", "run.log"), content=b"log")
        result = Scanner(guard=self.classifier.guard, config_manager=self.config).scan(
            [os.path.join(self.root, "scan")])
        analysis = self.classifier.analyze(result)
        self.assertEqual(analysis.total_size, 4 * MB + 3)
        self.assertEqual(len(analysis.duplicate_groups), 1)
        self.assertEqual([f.name for f in analysis.categorized[CategoryTag.DUPLICATE]], ["y.bin"])
        self.assertEqual([f.name for f in analysis.categorized[CategoryTag.LOG]], ["run.log"])


class TestFiltersAndSorting(unittest.TestCase):
    def setUp(self):
        config = make_config(tempfile.gettempdir())
        self.classifier = Classifier(guard=PathGuard(os_version="10.15"), config_manager=config, now=lambda: NOW)
        self.records = [
            fake_record("/data/recent.txt", size=300, accessed_days=10, kind=FileKind.OTHER, extension="txt"),
            fake_record("/data/month.pdf", size=100, accessed_days=31, kind=FileKind.DOCUMENT, extension="pdf"),
            fake_record("/data/Year.PNG", size=200, accessed_days=400, kind=FileKind.MEDIA, extension="png"),
            fake_record("/data/edge.csv", size=50, accessed_days=30, kind=FileKind.OTHER, extension="csv"),
        ]

    def test_filter_by_age_clamps_threshold(self):
        """阈值 5 天被提升到 30 天，只返回访问超过 30 天的文件"""
        result = self.classifier.filter_by_age(self.records, 5)
        self.assertEqual([r.name for r in result], ["month.pdf", "Year.PNG"])

    def test_filter_by_size_and_type(self):
        c = self.classifier
        self.assertEqual([r.name for r in c.filter_by_size(self.records, 200)], ["recent.txt", "Year.PNG"])
        self.assertEqual([r.name for r in c.filter_by_type(self.records, FileKind.MEDIA)], ["Year.PNG"])
        self.assertEqual([r.name for r in c.filter_by_type(self.records, "other", extension=".csv")], ["edge.csv"])
        self.assertEqual(len(c.filter_by_type(self.records, FileKind.OTHER)), 2)

    def test_filter_by_name(self):
        c = self.classifier
        self.assertEqual([r.name for r in c.filter_by_name(self.records, "year.*")], ["Year.PNG"])
        self.assertEqual(c.filter_by_name(self.records, "year.*", case_sensitive=True), [])
        self.assertEqual([r.name for r in c.filter_by_name(self.records, "????.csv")], ["edge.csv"])

    def test_sorting_and_savings(self):
        c = self.classifier
        self.assertEqual([r.size for r in c.sort_by_size(self.records)], [300, 200, 100, 50])
        self.assertEqual([r.size for r in c.sort_by_size(self.records, descending=False)], [50, 100, 200, 300])
        self.assertEqual([r.name for r in c.sort_by_name(self.records)],
                         ["edge.csv", "month.pdf", "recent.txt", "Year.PNG"])
        self.assertEqual(c.sort_by_age(self.records)[0].name, "Year.PNG")
        self.assertEqual(c.calculate_savings(self.records), 650)

    def test_apply_filters(self):
        result = self.classifier.apply_filters(self.records, [lambda r: r.size >= 100, lambda r: r.extension != "png"])
        self.assertEqual([r.name for r in result], ["recent.txt", "month.pdf"])


class TestLogAndDownloadInsights(unittest.TestCase):
    def setUp(self):
        config = make_config(tempfile.gettempdir())
        self.classifier = Classifier(guard=PathGuard(os_version="10.15"), config_manager=config, now=lambda: NOW)

    def test_log_application_name(self):
        self.assertEqual(log_application_name("/var/log/system.log.0.gz"), "System (system)")
        self.assertEqual(log_application_name("/Users/u/Library/Logs/Slack/app.log"), "Slack")
        self.assertEqual(log_application_name("/Users/u/Library/Application Support/Code/logs/main.log"), "Code")
        self.assertEqual(log_application_name("/home/u/.local/state/nvim/log"), "nvim")
        self.assertEqual(log_application_name("/opt/thing/out.log"), "Unknown")

    def test_categorize_logs_by_application(self):
        records = [
            fake_record("/Users/u/Library/Logs/Slack/a.log", modified_days=3),
            fake_record("/Users/u/Library/Logs/Slack/b.log", modified_days=40),
            fake_record("/opt/x/c.log"),
        ]
        grouped = self.classifier.categorize_logs_by_application(records)
        self.assertEqual(sorted(grouped), ["Slack", "Unknown"])
        self.assertEqual([i.age_days for i in grouped["Slack"]], [3, 40])

    def test_downloads(self):
        self.assertEqual(downloads_type_for("/d/x.PDF"), DownloadsFileType.DOCUMENT)
        self.assertEqual(downloads_type_for("/d/x.heic"), DownloadsFileType.IMAGE)
        self.assertEqual(downloads_type_for("/d/x.7z"), DownloadsFileType.ARCHIVE)
        self.assertEqual(downloads_type_for("/d/x.dmg"), DownloadsFileType.INSTALLER)
        self.assertEqual(downloads_type_for("/d/x"), DownloadsFileType.OTHER)

        records = [
            fake_record("/Users/u/Downloads/old.zip", accessed_days=91),
            fake_record("/Users/u/Downloads/new.zip", accessed_days=90),
            fake_record("/Users/u/Downloads/pic.png", accessed_days=200),
        ]
        grouped = self.classifier.categorize_downloads_by_type(records)
        self.assertEqual(len(grouped[DownloadsFileType.ARCHIVE]), 2)
        self.assertEqual([r.name for r in self.classifier.filter_old_downloads(records)], ["old.zip", "pic.png"])


if __name__ == "__main__":
    unittest.main()
