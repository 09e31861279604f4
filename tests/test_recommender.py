"""Tests for prompt building, JSON extraction and suggestion validation."""

import json

import pytest

from backlog_cleaner.cleaner.recommender import (
    ActionRecommender,
    build_prompt,
    extract_json_object,
    validate_suggestion,
)
from backlog_cleaner.errors import SuggestionFormatError, SuggestionValidationError
from backlog_cleaner.models import (
    DeleteOneSuggestion,
    IgnoreSuggestion,
    MakeSubtaskSuggestion,
    MergeIntoNewSuggestion,
)

from conftest import FakeClassifier, make_issue


class TestBuildPrompt:
    def test_includes_issue_details_and_subtasks(self):
        prompt = build_prompt([
            make_issue("BUG-1", summary="Login button broken", issue_type="Bug", subtasks=["BUG-3"]),
            make_issue("BUG-2", summary="Login fails on click", description="Steps to reproduce..."),
        ])
        assert "Key: BUG-1" in prompt
        assert "Type: Bug" in prompt
        assert "Subtasks: BUG-3 (Subtask BUG-3)" in prompt
        assert "Description: Steps to reproduce..." in prompt
        assert "Description: (none)" in prompt
        assert "Subtasks cannot have child issues" in prompt


class TestExtractJsonObject:
    def test_plain_object(self):
        assert extract_json_object('{"action": 4, "description": "x"}') == {"action": 4, "description": "x"}

    def test_surrounding_prose_and_fences(self):
        text = 'Here you go:\n```json\n{"action": 4, "description": "ok"}\n```\nThanks!'
        assert extract_json_object(text)["action"] == 4

    def test_braces_inside_strings(self):
        text = '{"action": 4, "description": "use {curly} and \\"quoted }\\" text"} trailing {'
        assert extract_json_object(text)["description"] == 'use {curly} and "quoted }" text'

    def test_takes_first_object(self):
        text = '{"action": 4, "description": "a"} {"action": 1}'
        assert extract_json_object(text) == {"action": 4, "description": "a"}

    def test_no_object(self):
        with pytest.raises(SuggestionFormatError, match="Failed to extract JSON"):
            extract_json_object("I think you should delete BUG-2.")

    def test_unbalanced(self):
        with pytest.raises(SuggestionFormatError, match="unbalanced"):
            extract_json_object('{"action": 4, "description": "x"')

    def test_invalid_json(self):
        with pytest.raises(SuggestionFormatError, match="parse"):
            extract_json_object("{action: 4}")


class TestValidateSuggestion:
    KEYS = {"BUG-1", "BUG-2"}

    def test_action_one(self):
        s = validate_suggestion(
            {"action": 1, "description": "d", "keepIssueKey": "BUG-1", "deleteIssueKey": "BUG-2"},
            self.KEYS,
        )
        assert isinstance(s, DeleteOneSuggestion)
        assert s.keep_issue_key == "BUG-1"

    def test_action_two(self):
        s = validate_suggestion({
            "action": 2, "description": "d", "deleteIssueKeys": ["BUG-1", "BUG-2"],
            "createIssueSummary": "Login broken", "createIssueDescription": "Combined",
        }, self.KEYS)
        assert isinstance(s, MergeIntoNewSuggestion)
        assert s.to_wire()["deleteIssueKeys"] == ["BUG-1", "BUG-2"]

    def test_action_three(self):
        s = validate_suggestion(
            {"action": 3, "description": "d", "parentIssueKey": "BUG-1", "subtaskIssueKey": "BUG-2"},
            self.KEYS,
        )
        assert isinstance(s, MakeSubtaskSuggestion)

    def test_action_four(self):
        assert isinstance(validate_suggestion({"action": 4, "description": "d"}), IgnoreSuggestion)

    def test_foreign_field_rejected_by_name(self):
        with pytest.raises(SuggestionValidationError, match="parentIssueKey") as exc_info:
            validate_suggestion({
                "action": 1, "description": "d", "keepIssueKey": "BUG-1",
                "deleteIssueKey": "BUG-2", "parentIssueKey": "BUG-1",
            })
        assert exc_info.value.field == "parentIssueKey"
        assert "should not be provided for Action 1" in str(exc_info.value)

    def test_unknown_field(self):
        with pytest.raises(SuggestionValidationError, match="Unknown field 'confidence'"):
            validate_suggestion({"action": 4, "description": "d", "confidence": 0.9})

    @pytest.mark.parametrize("action", [0, 5, "1", None, True, 1.0])
    def test_invalid_action(self, action):
        with pytest.raises(SuggestionValidationError, match="Invalid action number"):
            validate_suggestion({"action": action, "description": "d"})

    def test_missing_description(self):
        with pytest.raises(SuggestionValidationError, match="description"):
            validate_suggestion({"action": 4})

    def test_missing_required_field(self):
        with pytest.raises(SuggestionValidationError, match="deleteIssueKey must be provided for Action 1"):
            validate_suggestion({"action": 1, "description": "d", "keepIssueKey": "BUG-1"})

    def test_empty_required_field(self):
        with pytest.raises(SuggestionValidationError, match="subtaskIssueKey must be provided"):
            validate_suggestion({"action": 3, "description": "d", "parentIssueKey": "BUG-1", "subtaskIssueKey": ""})

    def test_action_two_needs_two_keys(self):
        with pytest.raises(SuggestionValidationError, match="At least two deleteIssueKeys"):
            validate_suggestion({
                "action": 2, "description": "d", "deleteIssueKeys": ["BUG-1"],
                "createIssueSummary": "s", "createIssueDescription": "d",
            })

    def test_action_two_repeated_key(self):
        with pytest.raises(SuggestionValidationError, match="repeat"):
            validate_suggestion({
                "action": 2, "description": "d", "deleteIssueKeys": ["BUG-1", "BUG-1"],
                "createIssueSummary": "s", "createIssueDescription": "d",
            })

    def test_keep_and_delete_must_differ(self):
        with pytest.raises(SuggestionValidationError, match="different"):
            validate_suggestion({"action": 1, "description": "d", "keepIssueKey": "BUG-1", "deleteIssueKey": "BUG-1"})

    def test_key_outside_pair(self):
        with pytest.raises(SuggestionValidationError, match="BUG-9"):
            validate_suggestion(
                {"action": 1, "description": "d", "keepIssueKey": "BUG-1", "deleteIssueKey": "BUG-9"},
                self.KEYS,
            )


class TestActionRecommender:
    @pytest.mark.asyncio
    async def test_keeps_the_detailed_issue(self):
        stub = make_issue("BUG-2", summary="Login fails")
        detailed = make_issue(
            "BUG-1",
            summary="Login button broken",
            description="Clicking the login button on Safari 17 does nothing. Console shows a CSP error.",
        )
        classifier = FakeClassifier(json.dumps({
            "action": 1,
            "description": "BUG-1 is fully specified; BUG-2 is a stub.",
            "keepIssueKey": "BUG-1",
            "deleteIssueKey": "BUG-2",
        }))

        suggestion = await ActionRecommender(classifier).recommend([detailed, stub])

        assert suggestion.action == 1
        assert suggestion.keep_issue_key == "BUG-1"
        assert suggestion.delete_issue_key == "BUG-2"
        assert len(classifier.prompts) == 1

    @pytest.mark.asyncio
    async def test_contradictory_response_rejected(self):
        classifier = FakeClassifier(json.dumps({
            "action": 1, "description": "d",
            "keepIssueKey": "BUG-1", "deleteIssueKey": "BUG-2", "parentIssueKey": "BUG-1",
        }))

        with pytest.raises(SuggestionValidationError, match="parentIssueKey"):
            await ActionRecommender(classifier).recommend([make_issue("BUG-1"), make_issue("BUG-2")])

        assert len(classifier.prompts) == 1

    @pytest.mark.asyncio
    async def test_prose_response_is_format_error(self):
        classifier = FakeClassifier("These look like duplicates to me.")

        with pytest.raises(SuggestionFormatError):
            await ActionRecommender(classifier).recommend([make_issue("BUG-1"), make_issue("BUG-2")])

    @pytest.mark.asyncio
    async def test_needs_two_issues(self):
        classifier = FakeClassifier("{}")
        with pytest.raises(ValueError):
            await ActionRecommender(classifier).recommend([make_issue("BUG-1")])
        assert classifier.prompts == []
