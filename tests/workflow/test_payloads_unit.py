"""Unit tests for stage payload schemas and quality signals."""

import pytest
from pydantic import ValidationError

from stageflow.payloads import (
    STAGE_SCHEMAS,
    extract_artifacts,
    has_failed_checks,
    has_high_severity_issue,
    validate_stage_payload,
)
from stageflow.state.models import Stage


class TestSchemas:
    def test_every_stage_has_a_schema(self):
        assert set(STAGE_SCHEMAS) == set(Stage)

    def test_validate_fills_defaults(self):
        payload = validate_stage_payload(Stage.BUILD, {"summary": "built"})
        assert payload["created_files"] == []
        assert payload["notes"] is None

    def test_validate_json_string(self):
        payload = validate_stage_payload(
            Stage.VERIFY, '{"passed": 4, "failed": 1, "new_tests": ["t.py"]}'
        )
        assert payload["failed"] == 1

    def test_invalid_review_severity(self):
        with pytest.raises(ValidationError):
            validate_stage_payload(
                Stage.REVIEW,
                {
                    "summary": "x",
                    "score": 50,
                    "issues": [{"kind": "bug", "message": "m", "severity": "fatal"}],
                },
            )

    def test_negative_check_count_rejected(self):
        with pytest.raises(ValidationError):
            validate_stage_payload(Stage.VERIFY, {"passed": -1, "failed": 0})


class TestHasFailedChecks:
    @pytest.mark.parametrize(
        "payload, expected",
        [
            ({"passed": 3, "failed": 1}, True),
            ({"passed": 3, "failed": 0}, False),
            ({"passed": 3}, False),
            ({"failed": "2"}, False),
            ({"failed": True}, False),
            (None, False),
            ("failed", False),
        ],
    )
    def test_payloads(self, payload, expected):
        assert has_failed_checks(payload) is expected


class TestHasHighSeverityIssue:
    def test_error_issue(self):
        payload = {"issues": [{"severity": "warn"}, {"severity": "error"}]}
        assert has_high_severity_issue(payload)

    def test_lower_severities(self):
        payload = {"issues": [{"severity": "info"}, {"severity": "warn"}]}
        assert not has_high_severity_issue(payload)

    @pytest.mark.parametrize(
        "payload",
        [None, {}, {"issues": "error"}, {"issues": ["error"]}, []],
    )
    def test_malformed_payloads(self, payload):
        assert not has_high_severity_issue(payload)


class TestExtractArtifacts:
    def test_build_files(self):
        payload = {"created_files": ["a.py", ""], "modified_files": ["b.py"]}
        assert extract_artifacts(Stage.BUILD, payload) == {
            "generated_files": ["a.py"],
            "modified_files": ["b.py"],
        }

    def test_verify_and_publish(self):
        assert extract_artifacts(Stage.VERIFY, {"new_tests": ["t.py"]}) == {
            "test_files": ["t.py"]
        }
        assert extract_artifacts(Stage.PUBLISH, {"files": ["README.md"]}) == {
            "document_files": ["README.md"]
        }

    def test_stage_without_artifacts(self):
        assert extract_artifacts(Stage.REVIEW, {"created_files": ["a.py"]}) == {}

    def test_malformed_payload(self):
        assert extract_artifacts(Stage.BUILD, None) == {}
        assert extract_artifacts(Stage.BUILD, {"created_files": "a.py"}) == {}
