"""Tests for core.types module."""

from core.types import ErrorCategory, ErrorClassifier
from cnab_ingest.persistence import SqlErrorClassifier


class TestErrorCategory:
    def test_values(self):
        assert ErrorCategory.TRANSIENT.value == "transient"
        assert ErrorCategory.PERMANENT.value == "permanent"
        assert ErrorCategory.DUPLICATE.value == "duplicate"
        assert ErrorCategory.UNKNOWN.value == "unknown"

    def test_all_members(self):
        expected = {"TRANSIENT", "PERMANENT", "DUPLICATE", "UNKNOWN"}
        assert set(ErrorCategory.__members__.keys()) == expected

    def test_from_value(self):
        assert ErrorCategory("duplicate") is ErrorCategory.DUPLICATE


class TestErrorClassifier:
    def test_is_protocol(self):
        assert hasattr(ErrorClassifier, "classify_error")
        assert hasattr(ErrorClassifier, "is_transient")

    def test_sql_classifier_satisfies_protocol(self):
        classifier: ErrorClassifier = SqlErrorClassifier()
        assert classifier.classify_error(ValueError("bad")) == ErrorCategory.PERMANENT
