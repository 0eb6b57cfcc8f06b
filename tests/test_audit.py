"""Tests for the audit manifest, run summary and failure issues."""

import json

import pytest

from repo_agents.audit import (
    build_manifest,
    build_record,
    failure_issue_title,
    file_failure_issue,
    parse_skip_message,
    read_manifest,
    render_summary,
    verdict_from_outputs,
    write_manifest,
)
from repo_agents.models import (
    AuditManifest,
    DispatchVerdict,
    InstanceReport,
    KindReport,
    KindStatus,
    OutputKind,
    SkipReason,
    ValidationVerdict,
)
from repo_agents.outputs import OutputsResult


@pytest.fixture
def triage(make_spec):
    return make_spec("Issue Triage", outputs=["add-label"])


@pytest.fixture
def weekly(make_spec):
    return make_spec("Weekly Report", audit={"labels": ["agent-failure", "reports"], "assignees": ["alice"]})


def _rejected_labels() -> OutputsResult:
    return OutputsResult(
        agent="Issue Triage",
        reports=[
            KindReport(
                kind=OutputKind.ADD_LABEL,
                status=KindStatus.REJECTED,
                instances=[
                    InstanceReport(
                        ordinal=1,
                        source="add-label.json",
                        validation=ValidationVerdict.from_reasons(
                            ["label 'wontfix' does not exist in this repository"]
                        ),
                    )
                ],
            )
        ],
    )


class TestVerdictsFromOutputs:
    def test_skip_message_round_trip(self):
        verdict = DispatchVerdict.skip("A", SkipReason.BLOCKING_ITEM_OPEN, "#42 is blocked by #3")
        assert parse_skip_message(verdict.skip_message) == (
            SkipReason.BLOCKING_ITEM_OPEN,
            "#42 is blocked by #3",
        )

    def test_unknown_reason(self):
        assert parse_skip_message("something else") == (None, "something else")

    def test_skipped(self, triage):
        verdict = verdict_from_outputs(
            triage,
            {
                "agent-issue-triage-should-run": "false",
                "agent-issue-triage-skip-reason": "rate_limited: Rate limit: 3 minutes remaining",
                "agent-issue-triage-target": "42",
            },
        )
        assert not verdict.admitted
        assert verdict.reason == SkipReason.RATE_LIMITED
        assert verdict.detail == "Rate limit: 3 minutes remaining"
        assert verdict.target_number == 42

    def test_admitted(self, triage):
        verdict = verdict_from_outputs(
            triage,
            {"agent-issue-triage-should-run": "true", "agent-issue-triage-target": ""},
        )
        assert verdict.admitted
        assert verdict.target_number is None

    def test_missing(self, triage):
        assert verdict_from_outputs(triage, {}) is None


class TestBuildRecord:
    def test_output_failures(self, triage):
        record = build_record(triage, None, "success", _rejected_labels(), {})
        assert record.failed
        assert [(f.category, f.message) for f in record.failures] == [
            ("output", "add-label #1: label 'wontfix' does not exist in this repository")
        ]

    def test_undeclared_kind_is_permission_failure(self, make_spec):
        spec = make_spec("Issue Triage")
        record = build_record(spec, None, "success", _rejected_labels(), {})
        assert record.failures[0].category == "permission"

    def test_job_failure_uses_metrics(self, weekly):
        record = build_record(
            weekly, None, "failure", None, {"is_error": True, "result": "API overloaded"}
        )
        assert [(f.category, f.message) for f in record.failures] == [
            ("execution", "agent job failed: API overloaded")
        ]

    def test_cancelled_is_warning(self, weekly):
        record = build_record(weekly, None, "cancelled", None, {})
        assert record.failures[0].severity == "warning"
        assert not record.failed

    def test_skipped_is_clean(self, weekly):
        verdict = DispatchVerdict.skip("Weekly Report", SkipReason.NO_TRIGGER_MATCH)
        record = build_record(weekly, verdict, "skipped", None, {})
        assert record.failures == []


class TestBuildManifest:
    def test_combines_sources(self, tmp_path, triage, weekly):
        triage_dir = tmp_path / "audit-issue-triage"
        triage_dir.mkdir()
        (triage_dir / "outputs.json").write_text(_rejected_labels().model_dump_json())
        weekly_dir = tmp_path / "audit-weekly-report"
        weekly_dir.mkdir()
        (weekly_dir / "metrics.json").write_text(json.dumps({"is_error": True, "result": "boom"}))

        job_results = {
            "dispatcher": {
                "result": "success",
                "outputs": {
                    "agent-issue-triage-should-run": "true",
                    "agent-issue-triage-target": "42",
                    "agent-weekly-report-should-run": "true",
                },
            },
            "agent-issue-triage": {"result": "failure"},
            "agent-weekly-report": {"result": "failure"},
        }
        manifest = build_manifest(
            [triage, weekly], job_results, tmp_path, run_id="9001", run_url="https://x/9001"
        )

        assert manifest.failed_agents == ["Issue Triage", "Weekly Report"]
        triage_record = manifest.record_for("issue-triage")
        assert triage_record.verdict.target_number == 42
        assert [f.category for f in triage_record.failures] == ["output"]
        assert manifest.record_for("Weekly Report").failures[0].message == "agent job failed: boom"
        assert manifest.platform_errors == []

    def test_dispatcher_failure_is_platform_error(self, tmp_path, triage):
        manifest = build_manifest([triage], {"dispatcher": {"result": "failure"}}, tmp_path)
        assert manifest.platform_errors == ["dispatcher job failure: no agent was evaluated"]
        assert manifest.records[0].verdict is None
        assert manifest.records[0].job_result == "skipped"

    def test_unreadable_artifact_is_ignored(self, tmp_path, triage):
        agent_dir = tmp_path / "audit-issue-triage"
        agent_dir.mkdir()
        (agent_dir / "outputs.json").write_text("{broken")
        manifest = build_manifest([triage], {"agent-issue-triage": {"result": "success"}}, tmp_path)
        assert manifest.records[0].outputs == []

    def test_write_read(self, tmp_path, triage):
        manifest = build_manifest([triage], {}, tmp_path, run_id="1")
        path = tmp_path / "out" / "manifest.json"
        write_manifest(manifest, path)
        assert read_manifest(path) == manifest


class TestRenderSummary:
    def test_table_and_failures(self, triage, weekly):
        manifest = AuditManifest(
            run_id="9001",
            run_url="https://github.com/acme/widgets/actions/runs/9001",
            event="issues.opened",
            records=[
                build_record(triage, DispatchVerdict.admit("Issue Triage", 42), "success", _rejected_labels(), {}),
                build_record(
                    weekly,
                    DispatchVerdict.skip("Weekly Report", SkipReason.NO_TRIGGER_MATCH, "issues.opened not in triggers"),
                    "skipped",
                    None,
                    {},
                ),
            ],
        )
        text = render_summary(manifest)

        assert "| Issue Triage | admitted (#42) | success | add-label: rejected (1) |" in text
        assert "skipped: `no_trigger_match` (issues.opened not in triggers)" in text
        assert "### Failures" in text
        assert "#### Issue Triage" in text
        assert "#### Weekly Report" not in text

    def test_platform_errors(self):
        text = render_summary(AuditManifest(platform_errors=["dispatcher job failure"]))
        assert "> [!CAUTION]\n> dispatcher job failure" in text


class TestFailureIssues:
    @pytest.fixture
    def failed_manifest(self, weekly):
        return AuditManifest(
            run_id="9001",
            run_url="https://github.com/acme/widgets/actions/runs/9001",
            records=[build_record(weekly, None, "failure", None, {})],
        )

    async def test_creates_issue(self, fake_github, weekly, failed_manifest):
        result = await file_failure_issue(fake_github, "acme", "widgets", weekly, failed_manifest)

        assert result == {"action": "created", "number": 101}
        title, body, labels, assignees = fake_github.called("create_issue")[0]
        assert title == "Weekly Report: Agent Execution Failed"
        assert body.startswith("> [!CAUTION]")
        assert "- **execution**: agent job failed" in body
        assert labels == ["agent-failure", "reports"]
        assert assignees == ["alice"]

    async def test_comments_on_open_issue(self, fake_github, weekly, failed_manifest):
        fake_github.issues[12] = {
            "number": 12,
            "title": failure_issue_title(weekly),
            "state": "open",
            "labels": [{"name": "agent-failure"}, {"name": "reports"}],
        }
        result = await file_failure_issue(fake_github, "acme", "widgets", weekly, failed_manifest)

        assert result == {"action": "commented", "number": 12}
        assert fake_github.called("create_issue") == []
        number, body = fake_github.called("comment_on_issue")[0]
        assert number == 12
        assert body.startswith("Failed again in workflow run [#9001]")

    async def test_closed_issue_not_reused(self, fake_github, weekly, failed_manifest):
        fake_github.issues[12] = {
            "number": 12,
            "title": failure_issue_title(weekly),
            "state": "closed",
            "labels": [{"name": "agent-failure"}, {"name": "reports"}],
        }
        result = await file_failure_issue(fake_github, "acme", "widgets", weekly, failed_manifest)
        assert result["action"] == "created"

    async def test_repeated_failures_dedupe(self, fake_github, weekly, failed_manifest):
        first = await file_failure_issue(fake_github, "acme", "widgets", weekly, failed_manifest)
        second = await file_failure_issue(fake_github, "acme", "widgets", weekly, failed_manifest)

        assert first["action"] == "created"
        assert second == {"action": "commented", "number": first["number"]}
        assert len(fake_github.called("create_issue")) == 1

    async def test_nothing_to_file(self, fake_github, triage, weekly):
        manifest = AuditManifest(records=[build_record(weekly, None, "success", None, {})])
        assert await file_failure_issue(fake_github, "acme", "widgets", weekly, manifest) is None
        assert await file_failure_issue(fake_github, "acme", "widgets", triage, manifest) is None
        assert fake_github.calls == []

    async def test_disabled(self, fake_github, make_spec):
        spec = make_spec("Weekly Report", audit={"create_issues": False})
        manifest = AuditManifest(records=[build_record(spec, None, "failure", None, {})])
        assert await file_failure_issue(fake_github, "acme", "widgets", spec, manifest) is None
        assert fake_github.calls == []
