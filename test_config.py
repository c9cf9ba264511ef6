#!/usr/bin/env python3
"""
Tests for process configuration: Settings resolution, the detector
configuration file, path filters and the per-kind SourceConfig builders.

USAGE:
    pytest test_config.py -v
"""

import json
import tempfile
import unittest
from argparse import Namespace
from pathlib import Path

from trufflescan.config import (
    CircleCIOptions,
    FilesystemOptions,
    GitHubOptions,
    GitLabOptions,
    GitOptions,
    OutputMode,
    S3Options,
    Settings,
    SyslogOptions,
    read_detector_config,
)
from trufflescan.errors import ConfigurationError
from trufflescan.filters import PathFilter, filter_from_files, match_repo_globs
from trufflescan.sources import (
    build_filesystem_config,
    build_git_config,
    build_github_config,
    build_gitlab_config,
    build_s3_config,
    build_syslog_config,
    circleci_token,
)


def make_args(command, **values):
    """Namespace shaped like the parsed command line."""
    defaults = dict(
        command=command,
        concurrency=None,
        json=False,
        json_legacy=False,
        debug=False,
        trace=False,
        no_verification=False,
        only_verified=False,
        filter_unverified=False,
        config=None,
        print_avg_detector_time=False,
        no_update=False,
        fail=False,
    )
    defaults.update(values)
    return Namespace(**defaults)


def git_args(**values):
    values.setdefault("uri", "file:///tmp/repo")
    for name in ("include_paths", "exclude_paths", "since_commit", "branch"):
        values.setdefault(name, None)
    values.setdefault("max_depth", 0)
    return make_args("git", **values)


# ===================================================================
# SETTINGS TESTS
# ===================================================================

class TestSettings(unittest.TestCase):
    """Test Settings.from_args."""

    def test_defaults(self):
        """Plain output, verification on, concurrency from the CPU count."""
        settings = Settings.from_args(git_args(), environ={})

        self.assertEqual(settings.command, "git")
        self.assertIsInstance(settings.options, GitOptions)
        self.assertEqual(settings.output_mode, OutputMode.PLAIN)
        self.assertTrue(settings.verify)
        self.assertGreaterEqual(settings.concurrency, 1)
        self.assertEqual(settings.log_format, "text")

    def test_since_commit_forces_single_worker(self):
        """A starting commit pins concurrency to 1."""
        settings = Settings.from_args(git_args(since_commit="abc123", concurrency=8), environ={})
        self.assertEqual(settings.concurrency, 1)

    def test_concurrency_below_one_rejected(self):
        with self.assertRaises(ConfigurationError):
            Settings.from_args(git_args(concurrency=0), environ={})

    def test_legacy_json_wins(self):
        """Legacy JSON is chosen when both JSON flags are given."""
        settings = Settings.from_args(git_args(json=True, json_legacy=True), environ={})
        self.assertEqual(settings.output_mode, OutputMode.LEGACY_JSON)

    def test_json_output_selects_json_logs(self):
        settings = Settings.from_args(git_args(json=True), environ={})
        self.assertEqual(settings.output_mode, OutputMode.JSON)
        self.assertEqual(settings.log_format, "json")

    def test_log_format_from_environment(self):
        settings = Settings.from_args(git_args(), environ={"TRUFFLESCAN_LOG_FORMAT": "json"})
        self.assertEqual(settings.log_format, "json")

    def test_github_token_fallback(self):
        """GITHUB_TOKEN is used only when --token is empty."""
        args = make_args(
            "github", endpoint="https://api.github.com", repo=None, org=["acme"], token=None,
            include_forks=False, include_members=False, include_repos=None, exclude_repos=None,
        )
        settings = Settings.from_args(args, environ={"GITHUB_TOKEN": "env-token"})
        self.assertEqual(settings.options.token, "env-token")
        self.assertEqual(settings.options.orgs, ("acme",))

        args.token = "flag-token"
        settings = Settings.from_args(args, environ={"GITHUB_TOKEN": "env-token"})
        self.assertEqual(settings.options.token, "flag-token")

    def test_s3_credential_fallback(self):
        args = make_args("s3", key=None, secret=None, cloud_environment=False, bucket=["logs"])
        settings = Settings.from_args(args, environ={
            "AWS_ACCESS_KEY_ID": "AKIAEXAMPLE",
            "AWS_SECRET_ACCESS_KEY": "secret",
        })
        self.assertEqual(settings.options.key, "AKIAEXAMPLE")
        self.assertEqual(settings.options.secret, "secret")
        self.assertEqual(settings.options.buckets, ("logs",))

    def test_circleci_token_fallback(self):
        settings = Settings.from_args(make_args("circleci", token=None), environ={"CIRCLECI_TOKEN": "ci"})
        self.assertEqual(settings.options, CircleCIOptions(token="ci"))

    def test_unknown_command(self):
        with self.assertRaises(ConfigurationError):
            Settings.from_args(make_args("ftp"), environ={})


# ===================================================================
# DETECTOR CONFIGURATION TESTS
# ===================================================================

class TestDetectorConfig(unittest.TestCase):
    """Test read_detector_config."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "config.json"

    def tearDown(self):
        self.tmpdir.cleanup()

    def write(self, content):
        self.path.write_text(content if isinstance(content, str) else json.dumps(content))
        return str(self.path)

    def test_valid_detectors(self):
        specs = read_detector_config(self.write({
            "detectors": [
                {"name": "ACME", "regex": "acme_[0-9a-f]{32}", "keywords": ["acme_"], "description": "ACME key"}
            ]
        }))
        self.assertEqual(len(specs), 1)
        self.assertEqual(specs[0].name, "ACME")
        self.assertEqual(specs[0].keywords, ("acme_",))

    def test_patterns_alias(self):
        specs = read_detector_config(self.write({"patterns": [{"regex": "tok_[0-9]{8}"}]}))
        self.assertEqual(specs[0].name, "CUSTOM_DETECTOR_0")

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError):
            read_detector_config(str(Path(self.tmpdir.name) / "missing.json"))

    def test_invalid_json(self):
        with self.assertRaises(ConfigurationError):
            read_detector_config(self.write("{broken"))

    def test_not_an_object(self):
        with self.assertRaises(ConfigurationError):
            read_detector_config(self.write([1, 2, 3]))

    def test_missing_regex(self):
        with self.assertRaises(ConfigurationError):
            read_detector_config(self.write({"detectors": [{"name": "NOPE"}]}))

    def test_malformed_shapes(self):
        """Wrongly shaped entries are configuration errors, not crashes."""
        cases = {
            "bare strings": {"detectors": ["myapi_[a-z]+"]},
            "object instead of list": {"detectors": {"name": "ACME", "regex": "acme"}},
            "string instead of list": {"detectors": "acme_[0-9]+"},
            "non-string regex": {"detectors": [{"name": "ACME", "regex": 42}]},
            "keywords not a list": {"detectors": [{"name": "ACME", "regex": "acme", "keywords": "acme"}]},
        }
        for label, payload in cases.items():
            with self.subTest(label):
                with self.assertRaises(ConfigurationError):
                    read_detector_config(self.write(payload))

    def test_invalid_regex(self):
        with self.assertRaises(ConfigurationError) as ctx:
            read_detector_config(self.write({"detectors": [{"name": "BAD", "regex": "[unclosed"}]}))
        self.assertIn("BAD", str(ctx.exception))


# ===================================================================
# FILTER TESTS
# ===================================================================

class TestPathFilters(unittest.TestCase):
    """Test include/exclude path filters."""

    def test_filter_files(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            include = Path(tmpdir) / "include.txt"
            exclude = Path(tmpdir) / "exclude.txt"
            include.write_text("^src/\n\n\\.env$\n")
            exclude.write_text("test_\n")

            path_filter = filter_from_files(str(include), str(exclude))

        self.assertTrue(path_filter)
        self.assertTrue(path_filter.passes("src/app.py"))
        self.assertTrue(path_filter.passes("deploy/.env"))
        self.assertFalse(path_filter.passes("src/test_app.py"))
        self.assertFalse(path_filter.passes("docs/index.md"))

    def test_empty_filter_passes_everything(self):
        path_filter = filter_from_files()
        self.assertFalse(path_filter)
        self.assertTrue(path_filter.passes("anything/at/all"))

    def test_unreadable_filter_file(self):
        with self.assertRaises(ConfigurationError):
            filter_from_files("/nonexistent/include.txt")

    def test_invalid_filter_regex(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            include = Path(tmpdir) / "include.txt"
            include.write_text("ok\n(broken\n")
            with self.assertRaises(ConfigurationError) as ctx:
                filter_from_files(str(include))
        self.assertIn("line 2", str(ctx.exception))

    def test_repo_globs(self):
        self.assertTrue(match_repo_globs("acme/api", [], []))
        self.assertTrue(match_repo_globs("acme/api", ["acme/a*"], []))
        self.assertFalse(match_repo_globs("acme/web", ["acme/a*"], []))
        self.assertFalse(match_repo_globs("acme/api", [], ["acme/*"]))
        self.assertFalse(match_repo_globs("acme/api", ["acme/*"], ["*/api"]))


# ===================================================================
# SOURCE CONFIG BUILDER TESTS
# ===================================================================

class TestSourceBuilders(unittest.TestCase):
    """Test the per-kind SourceConfig builders."""

    def test_git_config(self):
        path_filter = PathFilter()
        config = build_git_config(
            GitOptions(uri="file:///tmp/repo", since_commit="abc", branch="main", max_depth=10),
            "/tmp/repo",
            path_filter,
        )
        self.assertEqual(config.repo_path, "/tmp/repo")
        self.assertEqual(config.base_ref, "abc")
        self.assertEqual(config.head_ref, "main")
        self.assertEqual(config.max_depth, 10)
        self.assertIs(config.filter, path_filter)
        self.assertEqual(config.token, "")

    def test_git_negative_depth(self):
        with self.assertRaises(ConfigurationError):
            build_git_config(GitOptions(uri="file:///tmp/repo", max_depth=-1), "/tmp/repo", PathFilter())

    def test_github_needs_target(self):
        with self.assertRaises(ConfigurationError):
            build_github_config(GitHubOptions(), 4)

    def test_github_org_only(self):
        config = build_github_config(GitHubOptions(orgs=("acme",), include_forks=True), 4)
        self.assertEqual(config.orgs, ("acme",))
        self.assertTrue(config.include_forks)
        self.assertEqual(config.concurrency, 4)

    def test_gitlab_requires_token(self):
        with self.assertRaises(ConfigurationError):
            build_gitlab_config(GitLabOptions())

    def test_gitlab_config(self):
        config = build_gitlab_config(GitLabOptions(token="glpat", repos=("https://gitlab.com/a/b.git",)))
        self.assertEqual(config.token, "glpat")
        self.assertEqual(config.endpoint, "https://gitlab.com")
        self.assertIsNotNone(config.filter)

    def test_filesystem_requires_directory(self):
        with self.assertRaises(ConfigurationError):
            build_filesystem_config(FilesystemOptions())

    def test_s3_key_pair(self):
        config = build_s3_config(S3Options(key="AKIA", secret="shh"))
        self.assertEqual((config.key, config.secret), ("AKIA", "shh"))
        self.assertFalse(config.cloud_environment)

    def test_s3_half_key_pair(self):
        with self.assertRaises(ConfigurationError):
            build_s3_config(S3Options(key="AKIA"))

    def test_s3_anonymous(self):
        config = build_s3_config(S3Options(buckets=("public",)))
        self.assertEqual(config.key, "")
        self.assertEqual(config.buckets, ("public",))

    def test_syslog_validation(self):
        valid = dict(address="0.0.0.0:514", protocol="tcp", format="rfc3164")
        self.assertEqual(build_syslog_config(SyslogOptions(**valid), 2).protocol, "tcp")

        for override in ({"address": ""}, {"protocol": "sctp"}, {"format": "cef"}, {"cert_path": "c.pem"}):
            with self.subTest(override=override):
                with self.assertRaises(ConfigurationError):
                    build_syslog_config(SyslogOptions(**dict(valid, **override)), 2)

    def test_circleci_token(self):
        self.assertEqual(circleci_token(CircleCIOptions(token="t")), "t")
        with self.assertRaises(ConfigurationError):
            circleci_token(CircleCIOptions())


if __name__ == '__main__':
    unittest.main(verbosity=2)
