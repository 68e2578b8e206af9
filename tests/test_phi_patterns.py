"""Tests for PHI pattern tables and field-name classification.

HIPAA Reference: 164.514(b)(2) - Safe Harbor identifiers
"""

import re

import pytest

from healthmint_compliance.phi.patterns import (
    BUILTIN_PATTERNS,
    DIRECT_IDENTIFIERS,
    INDIRECT_IDENTIFIERS,
    PHIPattern,
    WORD_MATCH_MAX_LENGTH,
    PHIPatternRegistry,
    field_words,
    match_identifier,
)


class TestPHIPattern:
    def test_invalid_severity_rejected(self):
        with pytest.raises(ValueError, match="Invalid severity"):
            PHIPattern(name="x", pattern=re.compile("x"), severity="urgent", description="")

    def test_from_dict_case_insensitive(self):
        pattern = PHIPattern.from_dict(
            {
                "name": "patient_id",
                "pattern": r"PT-\d{6}",
                "severity": "high",
                "case_insensitive": True,
            }
        )
        assert pattern.pattern.search("pt-123456")
        assert pattern.false_positive_hints == ()


class TestBuiltinPatterns:
    def test_builtin_names(self):
        names = {p.name for p in BUILTIN_PATTERNS}
        assert names == {"ssn", "email", "phone", "dob", "medicalRecordNumber", "zipCode"}


class TestFieldWords:
    @pytest.mark.parametrize(
        "field_name,expected",
        [
            ("firstName", ["first", "name"]),
            ("first_name", ["first", "name"]),
            ("patient-email", ["patient", "email"]),
            ("ZIP", ["zip"]),
            ("medicalRecordNumber", ["medical", "record", "number"]),
        ],
    )
    def test_splits_field_names(self, field_name, expected):
        assert field_words(field_name) == expected


class TestMatchIdentifier:
    def test_long_token_matches_substring(self):
        assert match_identifier("patientName", DIRECT_IDENTIFIERS) == "name"
        assert match_identifier("home_address", DIRECT_IDENTIFIERS) == "address"

    def test_separators_are_ignored(self):
        assert match_identifier("medical_record_number", DIRECT_IDENTIFIERS) is not None

    def test_short_indirect_token_requires_whole_word(self):
        def indirect(field_name):
            return match_identifier(field_name, INDIRECT_IDENTIFIERS, WORD_MATCH_MAX_LENGTH)

        assert indirect("age") == "age"
        assert indirect("patientAge") == "age"
        assert indirect("page") is None
        assert indirect("message") is None

    @pytest.mark.parametrize(
        "field_name,expected",
        [
            ("patientssn", "ssn"),
            ("SSNumber", "ssn"),
            ("PatientMRN", "mrn"),
            ("homefax", "fax"),
            ("profileurl", "url"),
        ],
    )
    def test_short_direct_token_matches_inside_compounds(self, field_name, expected):
        assert match_identifier(field_name, DIRECT_IDENTIFIERS) == expected

    def test_no_match(self):
        assert match_identifier("score", DIRECT_IDENTIFIERS) is None
        assert match_identifier("score", INDIRECT_IDENTIFIERS) is None


class TestPHIPatternRegistry:
    def test_builtins_loaded(self):
        registry = PHIPatternRegistry()
        assert registry.get_pattern("ssn") is not None
        assert len(registry.patterns) == len(BUILTIN_PATTERNS)

    def test_patterns_by_severity(self):
        registry = PHIPatternRegistry()
        critical = {p.name for p in registry.get_patterns_by_severity("critical")}
        assert {"ssn", "dob", "medicalRecordNumber"} <= critical

    def test_add_and_remove_pattern(self):
        registry = PHIPatternRegistry()
        registry.add_pattern(
            PHIPattern(
                name="member_id",
                pattern=re.compile(r"MBR\d{8}"),
                severity="high",
                description="Member ID",
            )
        )
        assert registry.get_pattern("member_id") is not None
        assert registry.remove_pattern("member_id") is True
        assert registry.remove_pattern("member_id") is False

    def test_load_custom_patterns(self, tmp_path):
        config = tmp_path / "patterns.toml"
        config.write_text(
            """
[[patterns]]
name = "member_id"
pattern = 'MBR\\d{8}'
severity = "high"
description = "Health plan member ID"
"""
        )
        registry = PHIPatternRegistry()
        assert registry.load_custom_patterns(config) == 1
        assert registry.get_pattern("member_id").pattern.search("MBR12345678")

    def test_load_custom_patterns_missing_file(self, tmp_path):
        registry = PHIPatternRegistry()
        with pytest.raises(FileNotFoundError):
            registry.load_custom_patterns(tmp_path / "missing.toml")

    def test_clear_custom_patterns_keeps_builtins(self):
        registry = PHIPatternRegistry()
        registry.add_pattern(
            PHIPattern(name="custom", pattern=re.compile("x"), severity="low", description="")
        )
        registry.clear_custom_patterns()
        assert registry.get_pattern("custom") is None
        assert len(registry.patterns) == len(BUILTIN_PATTERNS)
