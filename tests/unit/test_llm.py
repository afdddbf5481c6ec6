"""Unit tests for the model client: message conversion, context window and tool-call parsing."""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from sidecar.errors import ErrorKind, ModelClientError
from sidecar.llm import ChatModelClient, build_context_window, estimate_tokens, split_thoughts, to_langchain_messages
from sidecar.state.conversation import Role, ToolCallRequest, ToolResult, Turn
from sidecar.testing.mock_llm import create_mock_llm


def _conversation():
    call = ToolCallRequest("call_1", "read_file", {"path": "a.txt"})
    return [
        Turn.user("read a.txt"),
        Turn.assistant("", (call,)),
        Turn.tool("read_file", ToolResult.success("call_1", "hello")),
        Turn.system("Cancelled."),
        Turn.assistant("It says hello."),
    ]


class TestToLangchainMessages:

    def test_conversion(self):
        messages = to_langchain_messages(_conversation(), "be brief")
        assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage, ToolMessage, AIMessage]
        assert messages[2].tool_calls[0]["id"] == "call_1"
        assert messages[2].tool_calls[0]["args"] == {"path": "a.txt"}
        assert messages[3].tool_call_id == "call_1"
        assert messages[3].status == "success"

    def test_failed_tool_status(self):
        turn = Turn.tool("read_file", ToolResult.failure("c", ErrorKind.TIMED_OUT, "Error: slow"))
        [message] = to_langchain_messages([turn])
        assert message.status == "error"


class TestContextWindow:

    def test_everything_fits(self):
        window = build_context_window(_conversation(), 10_000)
        assert [t.role for t in window] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]

    def test_cuts_at_user_turns(self):
        turns = []
        for i in range(5):
            turns.append(Turn.user(f"question {i} " + "x" * 400))
            turns.append(Turn.assistant(f"answer {i} " + "y" * 400))
        budget = 3 * (estimate_tokens("x" * 410) * 2)
        window = build_context_window(turns, budget)
        assert window[0].role == Role.USER
        assert window[-1] is turns[-1]
        assert len(window) < len(turns)

    def test_latest_user_turn_always_kept(self):
        turns = [Turn.user("old"), Turn.user("z" * 10_000)]
        window = build_context_window(turns, 10)
        assert window == [turns[1]]


class TestChatModelClient:

    def test_text_reply(self):
        client = ChatModelClient(create_mock_llm(["Hi!"]), system_prompt="be brief")
        response = client.complete([Turn.user("hello")], [])
        assert response.content == "Hi!"
        assert response.tool_calls == []

    def test_thought_split_from_reply(self):
        reply = "<thought>The user wants a greeting.</thought>Hi!"
        response = ChatModelClient(create_mock_llm([reply])).complete([Turn.user("hello")], [])
        assert response.content == "Hi!"
        assert response.thought == "The user wants a greeting."

    def test_tool_calls_parsed(self):
        reply = AIMessage(content="", tool_calls=[{"name": "read_file", "args": {"path": "x"}, "id": "t1"}])
        llm = create_mock_llm([reply])
        client = ChatModelClient(llm)
        schema = {"type": "function", "function": {"name": "read_file", "description": "", "parameters": {}}}
        response = client.complete([Turn.user("read x")], [schema])
        assert [(c.name, c.arguments) for c in response.tool_calls] == [("read_file", {"path": "x"})]
        assert llm.bound_tools == [schema]

    def test_invalid_tool_call_kept(self):
        reply = AIMessage(
            content="",
            invalid_tool_calls=[{"name": "read_file", "args": "{broken", "id": "t1", "error": "bad json", "type": "invalid_tool_call"}],
        )
        response = ChatModelClient(create_mock_llm([reply])).complete([Turn.user("x")], [])
        [draft] = response.tool_calls
        assert draft.name == "read_file"
        assert draft.arguments == "{broken"

    def test_failure_raises_model_client_error(self):
        class Broken:
            def bind_tools(self, tools):
                return self

            def invoke(self, messages):
                raise ConnectionError("refused")

        with pytest.raises(ModelClientError, match="refused"):
            ChatModelClient(Broken()).complete([Turn.user("x")], [{"type": "function"}])


class TestSplitThoughts:

    def test_no_thought(self):
        assert split_thoughts("plain reply") == ("plain reply", "")

    def test_thought_before_reply(self):
        assert split_thoughts("<thought>look at main.py</thought>\nIt is in main.py.") == ("It is in main.py.", "look at main.py")

    def test_several_thoughts_joined(self):
        content, thought = split_thoughts("<thought>one</thought>A<thought>two</thought>")
        assert content == "A"
        assert thought == "one\n\ntwo"

    def test_unclosed_thought_runs_to_end(self):
        assert split_thoughts("Done.<thought>maybe also") == ("Done.", "maybe also")

    def test_empty_thought_dropped(self):
        assert split_thoughts("<thought> </thought>ok") == ("ok", "")
