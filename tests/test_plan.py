"""Tests for plan parsing and downtime assessment."""

from __future__ import annotations

from tf_workflows.models import ChangeAction, PlanOutcome, PlanSummary
from tf_workflows.plan import (
    assess_downtime,
    parse_plan_json,
    parse_plan_text,
    plan_headline,
    summary_lines,
)

from helpers import PLAN_JSON, PLAN_TEXT, REPLACE_FORMS_TEXT


class TestPlanOutcome:
    def test_exit_codes(self):
        assert PlanOutcome.from_exit_code(0) == PlanOutcome.NO_CHANGES
        assert PlanOutcome.from_exit_code(2) == PlanOutcome.CHANGES
        assert PlanOutcome.from_exit_code(1) == PlanOutcome.ERROR
        assert PlanOutcome.from_exit_code(-1) == PlanOutcome.ERROR


class TestParsePlanJson:
    def test_counts(self):
        s = parse_plan_json(PLAN_JSON)
        # replace counts as one add and one destroy
        assert (s.to_add, s.to_change, s.to_destroy) == (2, 0, 2)
        assert s.addresses(ChangeAction.REPLACE) == ["aws_security_group.web"]

    def test_no_op_skipped(self):
        s = parse_plan_json(PLAN_JSON)
        assert "aws_vpc.main" not in [c.address for c in s.changes]

    def test_imports_counted(self):
        doc = {"resource_changes": [
            {"address": "aws_s3_bucket.a", "change": {"actions": ["no-op"], "importing": {"id": "a"}}},
        ]}
        s = parse_plan_json(doc)
        assert s.to_import == 1
        assert s.has_changes
        assert s.headline == "Plan: 1 to import, 0 to add, 0 to change, 0 to destroy."

    def test_empty_document(self):
        s = parse_plan_json({})
        assert not s.has_changes
        assert s.headline == "Plan: 0 to add, 0 to change, 0 to destroy."


class TestParsePlanText:
    def test_headers_and_counts(self):
        s = parse_plan_text(PLAN_TEXT)
        assert (s.to_add, s.to_change, s.to_destroy) == (2, 0, 2)
        assert s.addresses(ChangeAction.CREATE) == ["aws_instance.web"]
        assert s.addresses(ChangeAction.DELETE) == ["aws_s3_bucket.logs"]
        assert s.addresses(ChangeAction.REPLACE) == ["aws_security_group.web"]

    def test_ansi_codes_stripped(self):
        text = "\x1b[1m  # aws_instance.web\x1b[0m will be created\n\x1b[1mPlan:\x1b[0m 1 to add, 0 to change, 0 to destroy."
        s = parse_plan_text(text)
        assert s.to_add == 1

    def test_import_count(self):
        s = parse_plan_text("Plan: 3 to import, 0 to add, 1 to change, 0 to destroy.")
        assert s.to_import == 3
        assert s.to_change == 1

    def test_counts_from_headers_without_plan_line(self):
        text = "  # aws_instance.a will be updated in-place\n  # aws_instance.b must be replaced\n"
        s = parse_plan_text(text)
        assert (s.to_add, s.to_change, s.to_destroy) == (1, 1, 1)

    def test_no_changes(self):
        s = parse_plan_text("No changes. Your infrastructure matches the configuration.")
        assert not s.has_changes


class TestHelpers:
    def test_plan_headline(self):
        assert plan_headline(PLAN_TEXT) == "Plan: 2 to add, 0 to change, 2 to destroy."
        assert plan_headline("No changes.") == ""

    def test_summary_lines(self):
        lines = summary_lines(PLAN_TEXT)
        assert any("will be created" in line for line in lines)
        assert lines[-1].startswith("Plan:")
        assert not any("ami" in line for line in lines)

    def test_summary_lines_include_every_replacement_form(self):
        lines = summary_lines(REPLACE_FORMS_TEXT)
        assert any("is tainted, so must be replaced" in line for line in lines)
        assert any("will be replaced, as requested" in line for line in lines)
        assert any("replace_triggered_by" in line for line in lines)

    def test_summary_lines_limit(self):
        text = "\n".join(f"  # aws_instance.i{n} will be created" for n in range(50))
        assert len(summary_lines(text, limit=20)) == 20


class TestAssessDowntime:
    def test_unsafe_plan(self):
        report = assess_downtime(parse_plan_text(PLAN_TEXT), plan_headline(PLAN_TEXT))
        assert not report.safe
        assert report.destroyed == ["aws_s3_bucket.logs"]
        assert report.replaced == ["aws_security_group.web"]
        assert report.created == ["aws_instance.web"]
        assert report.headline.startswith("Plan: 2 to add")

    def test_safe_plan(self):
        summary = parse_plan_text("  # aws_instance.a will be created\n")
        report = assess_downtime(summary)
        assert report.safe
        assert report.headline == PlanSummary(to_add=1).headline

    def test_every_replacement_form_is_unsafe(self):
        summary = parse_plan_text(REPLACE_FORMS_TEXT)
        assert summary.addresses(ChangeAction.REPLACE) == [
            "aws_instance.web",
            "aws_db_instance.main",
            "aws_lb.front",
        ]
        report = assess_downtime(summary, plan_headline(REPLACE_FORMS_TEXT))
        assert not report.safe
        assert report.to_destroy == 3

    def test_destroy_count_alone_is_unsafe(self):
        text = (
            "  # aws_instance.web has moved to aws_instance.app\n"
            "\nPlan: 1 to add, 0 to change, 1 to destroy.\n"
        )
        report = assess_downtime(parse_plan_text(text))
        assert report.replaced == []
        assert report.destroyed == []
        assert not report.safe
