#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os
import threading
import unittest

from safeclean.config.manager import ConfigManager
from safeclean.core.guard import DEFAULT_PROTECTED_PATHS, DEFAULT_PROTECTED_USER_PATHS, PathGuard


class TestPathGuard(unittest.TestCase):
    def setUp(self):
        self.guard = PathGuard(os_version="10.15")

    def test_protected_prefixes_and_descendants(self):
        """受保护前缀本身及其所有子路径都受保护"""
        for prefix in DEFAULT_PROTECTED_PATHS:
            self.assertTrue(self.guard.is_protected(prefix), prefix)
            self.assertTrue(self.guard.is_protected(prefix + "/some/nested/file.txt"), prefix)

    def test_user_paths_are_tilde_expanded(self):
        home = os.path.expanduser("~")
        self.assertTrue(self.guard.is_protected(os.path.join(home, "Library/Keychains/login.keychain-db")))
        self.assertTrue(self.guard.is_protected("~/Library/Mail/V10/INBOX"))
        self.assertTrue(self.guard.is_protected("~/.ssh/id_ed25519"))
        for prefix in DEFAULT_PROTECTED_USER_PATHS:
            self.assertTrue(self.guard.is_protected(prefix + "/x"), prefix)

    def test_paths_outside_prefixes(self):
        for path in ("/Users/alice/Library/Caches/com.example/cache.db",
                     "/tmp/build/output.o",
                     "/Applications/Example.app/Contents/MacOS/Example",
                     "/var/tmp/session.tmp"):
            self.assertFalse(self.guard.is_protected(path), path)

    def test_prefix_match_respects_component_boundaries(self):
        self.assertFalse(self.guard.is_protected("/Systemic/file"))
        self.assertFalse(self.guard.is_protected("/usr/binaries/tool"))
        self.assertTrue(self.guard.is_protected("/usr/bin/../bin/ls"))

    def test_first_party_application_bundles(self):
        self.assertTrue(self.guard.is_protected("/Applications/Safari.app"))
        self.assertTrue(self.guard.is_protected("/Applications/Safari.app/Contents/Info.plist"))
        self.assertTrue(self.guard.is_protected("/System/Applications/Notes.app"))
        self.assertFalse(self.guard.is_protected("/Applications/Firefox.app/Contents/Info.plist"))
        self.assertFalse(self.guard.is_protected("/Users/alice/Downloads/Safari.app"))

    def test_update_for_version_is_additive(self):
        guard = PathGuard(os_version="10.15")
        before = guard.protected_paths
        self.assertNotIn("/System/Volumes/Data", before)
        self.assertNotIn("/Library/Apple/System", before)

        guard.update_for_version("13.4")
        after_13 = guard.protected_paths
        self.assertEqual(after_13[:len(before)], before)
        for prefix in ("/System/Volumes/Data", "/System/Volumes/Preboot",
                       "/System/Library/CoreServices", "/Library/Apple/System"):
            self.assertIn(prefix, after_13)

        # 降低版本不会移除已有规则
        guard.update_for_version("11.0")
        self.assertEqual(after_13, guard.protected_paths)

    def test_version_update_changes_protection(self):
        guard = PathGuard(protected_paths=["/usr/bin"], protected_user_paths=[], os_version="10.15")
        self.assertFalse(guard.is_protected("/System/Volumes/Data/private/x"))
        self.assertFalse(guard.is_protected("/System/Library/CoreServices/Finder.app"))

        guard.update_for_version("11.2")
        self.assertTrue(guard.is_protected("/System/Volumes/Data/private/x"))
        self.assertFalse(guard.is_protected("/System/Library/CoreServices/Finder.app"))

        guard.update_for_version(12)
        self.assertTrue(guard.is_protected("/System/Library/CoreServices/Finder.app"))
        self.assertTrue(guard.is_protected("/System/Volumes/Data/private/x"))
        self.assertTrue(guard.is_protected("/usr/bin/env"))
        self.assertFalse(guard.is_protected("/Library/Apple/System/Library/x"))

    def test_unparseable_version_is_ignored(self):
        guard = PathGuard(os_version="10.15")
        before = guard.protected_paths
        guard.update_for_version("not-a-version")
        self.assertEqual(before, guard.protected_paths)

    def test_custom_and_configured_prefixes(self):
        config = ConfigManager.from_dict({
            'guard.extra_protected_paths': ['/data/keep'],
            'guard.extra_protected_user_paths': ['~/Projects/important'],
        })
        guard = PathGuard(protected_paths=[], protected_user_paths=[], config_manager=config, os_version="10.15")
        self.assertTrue(guard.is_protected("/data/keep/a.bin"))
        self.assertTrue(guard.is_protected("~/Projects/important/notes.md"))
        self.assertFalse(guard.is_protected("/System/Library/Caches/x"))

        guard.add_protected_path("/data/also")
        self.assertTrue(guard.is_protected("/data/also/b"))

    def test_concurrent_reads_during_update(self):
        guard = PathGuard(os_version="10.15")
        failures = []

        def reader():
            for _ in range(2000):
                if not guard.is_protected("/usr/bin/env"):
                    failures.append("lost rule")

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for major in range(11, 15):
            guard.update_for_version(major)
        for t in threads:
            t.join()
        self.assertEqual(failures, [])


if __name__ == "__main__":
    unittest.main()
