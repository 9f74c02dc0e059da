"""Tests for the canonical request/response contract."""

import pytest

from llm_gateway.gateway.types import (
    CanonicalMessage,
    LlmRequest,
    LlmResponse,
    Role,
    TextContent,
    ToolCallNormalized,
    ToolResultContent,
    ToolSpec,
)


class TestToolCallNormalized:
    """Tool calls always carry one well-formed JSON document."""

    def test_valid_arguments(self):
        call = ToolCallNormalized("c1", "read_file", '{"path": "a.py"}')
        assert call.parsed_arguments() == {"path": "a.py"}

    def test_default_arguments_are_empty_object(self):
        call = ToolCallNormalized("c1", "list_files")
        assert call.parsed_arguments() == {}

    def test_partial_json_is_rejected(self):
        with pytest.raises(ValueError, match="invalid JSON"):
            ToolCallNormalized("c1", "read_file", '{"path": "a.')

    def test_empty_name_is_rejected(self):
        with pytest.raises(ValueError):
            ToolCallNormalized("c1", "", "{}")


class TestLlmRequest:
    """Request construction and copy helpers."""

    def test_from_prompt(self):
        request = LlmRequest.from_prompt("Hello", system="Be brief")
        assert request.system == "Be brief"
        assert request.messages[0].role == Role.USER
        assert request.messages[0].text_content() == "Hello"

    def test_duplicate_tool_names_rejected(self):
        with pytest.raises(ValueError, match="duplicate tool names"):
            LlmRequest.from_prompt("x", tools=(ToolSpec("a"), ToolSpec("a")))

    def test_non_positive_max_output_rejected(self):
        with pytest.raises(ValueError):
            LlmRequest.from_prompt("x", max_output_tokens=0)

    def test_with_messages_returns_copy(self):
        request = LlmRequest.from_prompt("x")
        extended = request.with_messages(CanonicalMessage.text(Role.ASSISTANT, "y"))
        assert len(request.messages) == 1
        assert len(extended.messages) == 2

    def test_tool_names(self):
        request = LlmRequest.from_prompt("x", tools=(ToolSpec("a"), ToolSpec("b")))
        assert request.tool_names == ("a", "b")


class TestLlmResponse:
    def test_to_message_carries_tool_calls(self):
        call = ToolCallNormalized("c1", "run", "{}")
        response = LlmResponse(text="Running", tool_calls=(call,))
        message = response.to_message()
        assert message.role == Role.ASSISTANT
        assert message.content == (TextContent("Running"),)
        assert message.tool_calls == (call,)
        assert response.has_tool_calls

    def test_tool_result_message(self):
        result = ToolResultContent("c1", "run", "ok")
        message = CanonicalMessage.tool_result(result)
        assert message.role == Role.TOOL
        assert message.content == (result,)
