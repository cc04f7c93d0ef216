import logging
import unittest

from flagrank.logging_config import setup_logging


class TestSetupLogging(unittest.TestCase):
    def setUp(self):
        root = logging.getLogger()
        self._saved = (root.level, list(root.handlers))

    def tearDown(self):
        root = logging.getLogger()
        root.handlers[:] = self._saved[1]
        root.setLevel(self._saved[0])

    def test_installs_single_handler(self):
        setup_logging("debug")
        root = setup_logging("warning")

        self.assertEqual(len(root.handlers), 1)
        self.assertEqual(root.level, logging.WARNING)
        self.assertIn("%(levelname).1s", root.handlers[0].formatter._fmt)

    def test_unknown_level_name_falls_back_to_info(self):
        root = setup_logging("chatty")

        self.assertEqual(root.level, logging.INFO)


if __name__ == "__main__":
    unittest.main()
