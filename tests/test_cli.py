"""Tests for argument parsing, configuration and startup validation."""

import contextlib
import io
import json
import logging
import shutil
import tempfile
import unittest
from pathlib import Path

from mirror_daemon import (
    DEFAULT_INTERVAL_SEC,
    DEFAULT_MMAP_THRESHOLD,
    LOGGER_NAME,
    Ansi,
    ColorizingFormatter,
    build_effective_config,
    main,
    parse_args,
    validate_paths,
)


def _quiet_exit(argv: list) -> int:
    with contextlib.redirect_stderr(io.StringIO()):
        try:
            parse_args(argv)
        except SystemExit as e:
            return e.code
    return 0


class ParseArgsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = build_effective_config(parse_args(["src", "dst"]))

        self.assertFalse(cfg.sync.recursive)
        self.assertEqual(cfg.sync.interval_sec, DEFAULT_INTERVAL_SEC)
        self.assertEqual(cfg.sync.mmap_threshold, DEFAULT_MMAP_THRESHOLD)
        self.assertEqual(cfg.sync.excludes, ())
        self.assertIsNone(cfg.log_dir)
        self.assertFalse(cfg.foreground)

    def test_numbers_are_interval_then_threshold(self) -> None:
        cfg = build_effective_config(parse_args(["src", "dst", "-R", "30", "4096"]))

        self.assertTrue(cfg.sync.recursive)
        self.assertEqual(cfg.sync.interval_sec, 30)
        self.assertEqual(cfg.sync.mmap_threshold, 4096)

    def test_recursive_flag_can_follow_numbers(self) -> None:
        cfg = build_effective_config(parse_args(["src", "dst", "45", "-R"]))

        self.assertTrue(cfg.sync.recursive)
        self.assertEqual(cfg.sync.interval_sec, 45)
        self.assertEqual(cfg.sync.mmap_threshold, DEFAULT_MMAP_THRESHOLD)

    def test_usage_errors_exit_non_zero(self) -> None:
        self.assertEqual(_quiet_exit(["src"]), 2)
        self.assertEqual(_quiet_exit(["src", "dst", "1", "2", "3"]), 2)
        self.assertEqual(_quiet_exit(["src", "dst", "soon"]), 2)

    def test_non_positive_interval_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            build_effective_config(parse_args(["src", "dst", "0"]))

    def test_negative_threshold_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            build_effective_config(parse_args(["src", "dst", "10", "-1"]))


class ConfigFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self.root = Path(tempfile.mkdtemp())

    def tearDown(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)

    def test_file_supplies_defaults_and_cli_wins(self) -> None:
        path = self.root / "mirror.json"
        path.write_text(json.dumps({
            "recursive": True,
            "interval_sec": 120,
            "mmap_threshold": 1024,
            "excludes": ["*.tmp"],
            "log_dir": "logs",
        }))

        cfg = build_effective_config(parse_args(["src", "dst", "15", "--config", str(path), "--exclude", "*.bak"]))

        self.assertTrue(cfg.sync.recursive)
        self.assertEqual(cfg.sync.interval_sec, 15)
        self.assertEqual(cfg.sync.mmap_threshold, 1024)
        self.assertEqual(cfg.sync.excludes, ("*.tmp", "*.bak"))
        self.assertEqual(cfg.log_dir, Path("logs"))

    def test_unreadable_file_is_a_config_error(self) -> None:
        bad = self.root / "bad.json"
        bad.write_text("[1, 2]")

        with self.assertRaises(ValueError):
            build_effective_config(parse_args(["src", "dst", "--config", str(bad)]))
        with self.assertRaises(ValueError):
            build_effective_config(parse_args(["src", "dst", "--config", str(self.root / "missing.json")]))


class ValidatePathsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.root = Path(tempfile.mkdtemp()).resolve()
        self.src = self.root / "src"
        self.src.mkdir()

    def tearDown(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)

    def test_missing_destination_is_created(self) -> None:
        dst = self.root / "new" / "dst"

        source, destination = validate_paths(self.src, dst)

        self.assertEqual(source, self.src)
        self.assertEqual(destination, dst)
        self.assertTrue(dst.is_dir())

    def test_source_must_be_a_directory(self) -> None:
        (self.root / "file").write_text("x")
        with self.assertRaises(ValueError):
            validate_paths(self.root / "file", self.root / "dst")
        with self.assertRaises(ValueError):
            validate_paths(self.root / "missing", self.root / "dst")

    def test_destination_file_is_rejected(self) -> None:
        (self.root / "dst").write_text("x")
        with self.assertRaises(ValueError):
            validate_paths(self.src, self.root / "dst")

    def test_nested_roots_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            validate_paths(self.src, self.src)
        with self.assertRaises(ValueError):
            validate_paths(self.src, self.src / "inside")
        with self.assertRaises(ValueError):
            validate_paths(self.src, self.root)


class MainTests(unittest.TestCase):
    def setUp(self) -> None:
        self.root = Path(tempfile.mkdtemp())

    def tearDown(self) -> None:
        logger = logging.getLogger(LOGGER_NAME)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True
        shutil.rmtree(self.root, ignore_errors=True)

    def test_bad_number_exits_before_logging_setup(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()) as err:
            code = main([str(self.root), str(self.root / "dst"), "0"])

        self.assertEqual(code, 2)
        self.assertIn("Config error", err.getvalue())

    def test_uncreatable_log_dir_is_a_config_error(self) -> None:
        src = self.root / "src"
        src.mkdir()
        blocker = self.root / "blocker"
        blocker.write_text("not a directory")

        with contextlib.redirect_stderr(io.StringIO()) as err, contextlib.redirect_stdout(io.StringIO()):
            code = main([str(src), str(self.root / "dst"), "--foreground", "--log-dir", str(blocker / "logs")])

        self.assertEqual(code, 2)
        self.assertIn("Config error", err.getvalue())
        self.assertEqual(logging.getLogger(LOGGER_NAME).handlers, [])

    def test_missing_source_exits_with_error(self) -> None:
        with contextlib.redirect_stdout(io.StringIO()):
            code = main([str(self.root / "missing"), str(self.root / "dst"), "--foreground"])

        self.assertEqual(code, 2)
        self.assertFalse((self.root / "dst").exists())


class ColorizingFormatterTests(unittest.TestCase):
    def _record(self, level: int, action: str) -> logging.LogRecord:
        record = logging.LogRecord(LOGGER_NAME, level, __file__, 1, f"{action} | /x", None, None)
        record.action = action
        return record

    def test_action_is_colored(self) -> None:
        fmt = ColorizingFormatter(use_color=True, fmt="%(message)s")
        self.assertEqual(fmt.format(self._record(logging.INFO, "COPY")), f"{Ansi.GREEN}COPY{Ansi.RESET} | /x")

    def test_errors_are_red(self) -> None:
        fmt = ColorizingFormatter(use_color=True, fmt="%(message)s")
        self.assertTrue(fmt.format(self._record(logging.ERROR, "COPY")).startswith(Ansi.RED))

    def test_plain_when_color_disabled(self) -> None:
        fmt = ColorizingFormatter(use_color=False, fmt="%(message)s")
        self.assertEqual(fmt.format(self._record(logging.INFO, "COPY")), "COPY | /x")


if __name__ == "__main__":
    unittest.main()
