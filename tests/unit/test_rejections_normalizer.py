# tests/unit/test_rejections_normalizer.py
import json

import pytest

from leadboard.dashboard.rejections import (
    OpaqueRejection,
    StructuredRejection,
    is_excluded_category,
    normalize_rejection,
    parse_rejection,
)


@pytest.mark.parametrize("raw", [None, "", "   ", "N/A"])
def test_missing_reason_is_not_available(raw):
    assert normalize_rejection(raw) == "N/A"


def test_failed_fields_email():
    assert normalize_rejection('{"failed_fields":["email"]}') == "Invalid Email"


def test_failed_fields_first_mapped_wins_case_insensitive():
    raw = json.dumps({"failed_fields": ["favorite_color", "LinkedIn", "email"]})
    assert normalize_rejection(raw) == "Invalid LinkedIn"


def test_failed_fields_unmapped_uses_title_case_of_first():
    raw = json.dumps({"failed_fields": ["employee_count"]})
    assert normalize_rejection(raw) == "Invalid Employee Count"


def test_dict_payload_is_accepted():
    assert normalize_rejection({"failed_fields": ["website"]}) == "Invalid Website"


def test_check_name_mapping():
    raw = json.dumps({"check_name": "check_mx_record", "message": "no MX"})
    assert normalize_rejection(raw) == "Invalid Email"


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Region check failed: unknown state", "Invalid Region"),
        ("Role FAILED for this contact", "Invalid Role"),
        ("industry failed", "Invalid Industry"),
        ("something else", "Role/Region/Industry Failed"),
    ],
)
def test_unified_stage5_check(message, expected):
    raw = json.dumps({"check_name": "check_stage5_unified", "message": message})
    assert normalize_rejection(raw) == expected


def test_stage_cues():
    assert normalize_rejection(json.dumps({"stage": "Stage 2: DNS Layer"})) == "Invalid Website"
    assert normalize_rejection(json.dumps({"stage": "Stage 4: LinkedIn/GSE"})) == "Invalid LinkedIn"
    assert normalize_rejection(json.dumps({"stage": "TrueList batch"})) == "Invalid Email"
    assert normalize_rejection(json.dumps({"stage": "Source Provenance"})) == "Invalid Source URL"


def test_legacy_failed_field():
    assert normalize_rejection(json.dumps({"failed_field": "site"})) == "Invalid Website"
    assert normalize_rejection(json.dumps({"failed_field": "zip"})) == "Invalid zip"


def test_reason_text_truncated_to_50():
    reason = "x" * 80
    assert normalize_rejection(json.dumps({"reason": reason})) == "x" * 50


def test_non_json_keyword_duplicate():
    assert normalize_rejection("duplicate entry found") == "Duplicate Lead"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Marked as SPAM by filter", "Spam Detected"),
        ("disposable provider", "Disposable Email"),
        ("domain is catch-all", "Catch-all Email"),
        ("hard bounce", "Email Bounced"),
    ],
)
def test_keyword_categories(raw, expected):
    assert normalize_rejection(raw) == expected


def test_cleanup_fallback_truncates_with_ellipsis():
    raw = "  weird   [thing]: {that} 'cannot' be \"classified\" at all by any rule "
    out = normalize_rejection(raw)
    assert out.endswith("...")
    assert len(out) == 43
    assert not any(c in out for c in '{}[]"\':')


def test_malformed_json_degrades_without_raising():
    assert normalize_rejection('{"failed_fields": [') == "failed_fields"


def test_parse_rejection_variants():
    assert isinstance(parse_rejection('{"check_name": "x"}'), StructuredRejection)
    assert isinstance(parse_rejection("[1, 2]"), OpaqueRejection)
    assert isinstance(parse_rejection("plain text"), OpaqueRejection)
    assert parse_rejection("N/A") is None


@pytest.mark.parametrize(
    "category,excluded",
    [
        ("LLM Error", True),
        ("Validation Error", True),
        ("no_validation", True),
        ("Unknown", True),
        ("Invalid Email", False),
        ("Duplicate Lead", False),
    ],
)
def test_exclusion_list_is_separate_from_normalization(category, excluded):
    assert is_excluded_category(category) is excluded


def test_normalizer_keeps_excluded_categories():
    assert normalize_rejection(json.dumps({"failed_fields": ["llm_error"]})) == "LLM Error"
