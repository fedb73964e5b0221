"""Readiness report for --validate-config."""

from __future__ import annotations

import pytest

from rss_digest.deployment.validator import ConfigReadinessValidator, print_report


CONFIG_YAML = """\
timezone: Europe/Paris
digest:
  hour: 6
  minute: 0
paths:
  content_dir: out
"""

FEEDS_YAML = """\
feeds:
  - title: Alpha
    url: https://alpha.example.com/rss
  - title: Beta
    url: https://alpha.example.com/rss
"""


@pytest.mark.asyncio
async def test_valid_files_are_ready_with_warnings(tmp_path, capsys):
    (tmp_path / "config.yml").write_text(CONFIG_YAML, encoding="utf-8")
    (tmp_path / "feeds.yml").write_text(FEEDS_YAML, encoding="utf-8")
    validator = ConfigReadinessValidator(
        str(tmp_path / "config.yml"), str(tmp_path / "feeds.yml"), env={}, base_dir=tmp_path,
    )

    report = await validator.validate_all()

    assert report.ready
    assert any("2 feeds configured" in w for w in report.warnings)
    assert any("appear more than once" in w for w in report.warnings)
    assert (tmp_path / "out" / "editions").is_dir()
    print_report(report)
    assert "READY" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_missing_files_fail(tmp_path):
    validator = ConfigReadinessValidator(str(tmp_path / "config.yml"), str(tmp_path / "feeds.yml"), env={})

    report = await validator.validate_all()

    assert not report.ready
    assert report.failed_checks == 2
    assert all(issue.startswith("configuration:") for issue in report.critical_issues)
