"""
Tests for the shared verdict mapping and CSV tokenizing.
"""

import pytest

from models.validation import Verdict
from services.verdicts import (
    bucket_counts,
    classify,
    classify_single_result,
    parse_csv,
    parse_csv_line,
)


@pytest.mark.unit
class TestBucketCounts:

    def test_documented_example(self):
        status = {
            "email_count": 20,
            "ok_count": 10,
            "failed_syntax_check_count": 2,
            "failed_mx_check_count": 1,
            "failed_no_mailbox_count": 1,
            "ok_for_all_count": 3,
            "disposable_count": 1,
            "role_count": 0,
            "unknown_count": 2,
        }

        counts = bucket_counts(status)

        assert counts == {
            "deliverable_count": 10,
            "undeliverable_count": 4,
            "risky_count": 4,
            "unknown_count": 2,
        }
        assert sum(counts.values()) == status["email_count"]

    @pytest.mark.parametrize("status", [
        {"ok_count": 5, "unknown_count": 5},
        {"failed_mx_check_count": 7, "role_count": 2, "disposable_count": 1},
        {"ok_count": 1, "failed_syntax_check_count": 1, "failed_no_mailbox_count": 1,
         "ok_for_all_count": 1, "unknown_count": 1},
        {},
    ])
    def test_buckets_sum_to_provider_total(self, status):
        provider_keys = (
            "ok_count", "failed_syntax_check_count", "failed_mx_check_count",
            "failed_no_mailbox_count", "ok_for_all_count", "disposable_count",
            "role_count", "unknown_count",
        )
        total = sum(status.get(k, 0) for k in provider_keys)

        assert sum(bucket_counts(status).values()) == total

    def test_missing_and_null_counters_are_zero(self):
        counts = bucket_counts({"ok_count": None})
        assert counts == {
            "deliverable_count": 0,
            "undeliverable_count": 0,
            "risky_count": 0,
            "unknown_count": 0,
        }


@pytest.mark.unit
class TestClassify:

    @pytest.mark.parametrize("state,sub_state,verdict", [
        ("ok", "email_ok", Verdict.DELIVERABLE),
        ("ok", "", Verdict.DELIVERABLE),
        ("email_invalid", "failed_syntax_check", Verdict.UNDELIVERABLE),
        ("email_invalid", "failed_mx_check", Verdict.UNDELIVERABLE),
        ("email_invalid", "failed_no_mailbox", Verdict.UNDELIVERABLE),
        ("invalid", "", Verdict.UNDELIVERABLE),
        ("accept_all", "", Verdict.RISKY),
        ("risky", "ok_for_all", Verdict.RISKY),
        ("risky", "is_disposable", Verdict.RISKY),
        ("risky", "is_role", Verdict.RISKY),
        ("unknown", "unknown_error", Verdict.UNKNOWN),
        ("", "", Verdict.UNKNOWN),
        (None, None, Verdict.UNKNOWN),
        ("something_new", "", Verdict.UNKNOWN),
    ])
    def test_verdicts(self, state, sub_state, verdict):
        assert classify(state, sub_state).verdict == verdict

    def test_sub_state_wins_over_state(self):
        assert classify("ok", "failed_mx_check").verdict == Verdict.UNDELIVERABLE

    def test_state_strings_are_case_insensitive(self):
        assert classify(" OK ", "").verdict == Verdict.DELIVERABLE

    def test_flags(self):
        ok = classify("ok", "email_ok")
        assert ok.deliverable and ok.smtp_valid and ok.format_valid and ok.domain_valid

        syntax = classify("email_invalid", "failed_syntax_check")
        assert syntax.format_valid is False
        assert syntax.deliverable is False

        mx = classify("email_invalid", "failed_mx_check")
        assert mx.domain_valid is False

        catch_all = classify("risky", "ok_for_all")
        assert catch_all.catch_all is True

        disposable = classify("risky", "is_disposable")
        assert disposable.disposable is True

    def test_aggregate_and_per_email_policies_agree(self):
        # 集計カウンタ名と同じ状態文字列は同じ区分に分類される
        pairs = {
            "ok": "deliverable_count",
            "failed_syntax_check": "undeliverable_count",
            "failed_mx_check": "undeliverable_count",
            "failed_no_mailbox": "undeliverable_count",
            "ok_for_all": "risky_count",
            "disposable": "risky_count",
            "role": "risky_count",
            "unknown": "unknown_count",
        }
        for state, column in pairs.items():
            assert classify(state).verdict.counter_column == column
            counts = bucket_counts({f"{state}_count": 1})
            assert counts[column] == 1


@pytest.mark.unit
class TestSingleResult:

    def test_deliverable(self):
        assert classify_single_result({"deliverable": True, "disposable": True}) == Verdict.DELIVERABLE

    @pytest.mark.parametrize("data", [
        {"disposable": True, "format_valid": True, "domain_valid": True},
        {"format_valid": False, "domain_valid": True},
        {"format_valid": True, "domain_valid": False},
    ])
    def test_undeliverable(self, data):
        assert classify_single_result(data) == Verdict.UNDELIVERABLE

    @pytest.mark.parametrize("data", [
        {"format_valid": True, "domain_valid": True, "smtp_valid": True, "catch_all": True},
        {"format_valid": True, "domain_valid": True, "smtp_valid": False},
    ])
    def test_risky(self, data):
        assert classify_single_result(data) == Verdict.RISKY

    def test_unknown(self):
        data = {"format_valid": True, "domain_valid": True, "smtp_valid": True, "deliverable": False}
        assert classify_single_result(data) == Verdict.UNKNOWN


@pytest.mark.unit
class TestCsv:

    def test_quoted_field_keeps_delimiter(self):
        line = '"Smith, John",smith@example.com,"ok_for_all"'
        assert parse_csv_line(line) == ["Smith, John", "smith@example.com", "ok_for_all"]

    def test_doubled_quotes_are_literal(self):
        assert parse_csv_line('"He said ""hi""",x') == ['He said "hi"', "x"]

    def test_fields_are_trimmed(self):
        assert parse_csv_line(" a , b ,c ") == ["a", "b", "c"]

    def test_empty_line(self):
        assert parse_csv_line("") == []

    def test_parse_csv_skips_blank_lines(self):
        text = "Email,State\r\njane@acme.io,ok\r\n\r\nbob@acme.io,invalid\r\n"
        assert parse_csv(text) == [
            ["Email", "State"],
            ["jane@acme.io", "ok"],
            ["bob@acme.io", "invalid"],
        ]
