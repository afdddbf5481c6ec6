"""Model client for an OpenAI-compatible local endpoint (Ollama, text-generation-webui).

Converts the transcript to LangChain messages, binds tool schemas and turns
the reply into text plus tool-call drafts. Failures surface as
ModelClientError; there is no retry.
"""

import os
import re
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

from langchain_core.globals import set_debug
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI

from .errors import ModelClientError
from .logging_config import get_logger
from .state.conversation import Role, Turn
from .workspace import get_workspace_root

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4

# An unclosed block runs to the end of the reply.
_THOUGHT_BLOCK = re.compile(r"<thought>(.*?)(?:</thought>|\Z)", re.DOTALL)


@dataclass
class ToolCallDraft:
    """A tool call as returned by the model, before the orchestrator assigns an id."""
    name: str
    arguments: Any = field(default_factory=dict)


@dataclass
class ModelResponse:
    content: str
    tool_calls: list[ToolCallDraft] = field(default_factory=list)
    # Inner monologue the model wrapped in <thought> tags, kept out of the transcript.
    thought: str = ""


class ModelClient(Protocol):
    def complete(self, turns: Sequence[Turn], tools: Sequence[dict]) -> ModelResponse:
        ...


def get_llm(settings) -> ChatOpenAI:
    """Get a configured ChatOpenAI instance for the local endpoint.

    Args:
        settings: Application settings; ``settings.llm`` holds the endpoint.

    Returns:
        ChatOpenAI instance that returns tool calls natively.
    """
    llm = ChatOpenAI(
        model=settings.llm.model,
        base_url=settings.llm.base_url,
        api_key=settings.llm.api_key,
        temperature=settings.llm.temperature,
        max_tokens=settings.llm.max_tokens,
        timeout=settings.llm.request_timeout,
        max_retries=0,
    )
    if settings.log_level == "DEBUG":
        set_debug(True)
        logger.info("LangChain debug logging enabled")
    return llm


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN + MESSAGE_OVERHEAD_TOKENS


def _turn_tokens(turn: Turn) -> int:
    size = estimate_tokens(turn.content)
    for call in turn.tool_calls:
        size += estimate_tokens(f"{call.name}{call.arguments}")
    return size


def build_context_window(turns: Sequence[Turn], token_limit: int) -> list[Turn]:
    """Newest turns that fit ``token_limit``, cut only at user turns.

    Cutting at a user turn keeps every tool call next to its result. The most
    recent user turn and everything after it are always kept.
    """
    visible = [t for t in turns if t.role != Role.SYSTEM]
    if not visible:
        return []
    user_indexes = [i for i, t in enumerate(visible) if t.role == Role.USER]
    if not user_indexes:
        return visible

    start = user_indexes[-1]
    used = sum(_turn_tokens(t) for t in visible[start:])
    for candidate in reversed(user_indexes[:-1]):
        extra = sum(_turn_tokens(t) for t in visible[candidate:start])
        if used + extra > token_limit:
            break
        used += extra
        start = candidate
    if start > 0:
        logger.debug("Context window dropped %d older turns", start)
    return visible[start:]


def system_context() -> str:
    return (
        f"Operating system: {platform.system()} {platform.release()}\n"
        f"Home directory: {Path.home()}\n"
        f"Working directory: {get_workspace_root()}\n"
        f"Shell: {os.environ.get('SHELL', 'sh')}"
    )


def to_langchain_messages(turns: Sequence[Turn], system_prompt: Optional[str] = None) -> list[BaseMessage]:
    """Convert turns to LangChain messages. System notices are not sent."""
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    for turn in turns:
        if turn.role == Role.USER:
            messages.append(HumanMessage(content=turn.content))
        elif turn.role == Role.ASSISTANT:
            messages.append(
                AIMessage(
                    content=turn.content,
                    tool_calls=[
                        {"name": c.name, "args": dict(c.arguments), "id": c.id, "type": "tool_call"}
                        for c in turn.tool_calls
                    ],
                )
            )
        elif turn.role == Role.TOOL and turn.tool_result is not None:
            result = turn.tool_result
            messages.append(
                ToolMessage(
                    content=result.payload,
                    tool_call_id=result.call_id,
                    name=turn.tool_name,
                    status="success" if result.ok else "error",
                )
            )
    return messages


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content or "")


def split_thoughts(text: str) -> tuple[str, str]:
    """Separate ``<thought>...</thought>`` blocks from the visible reply.

    Returns:
        (content, thought): the reply without thought blocks, and the
        thought blocks joined by blank lines.
    """
    thoughts = [m.group(1).strip() for m in _THOUGHT_BLOCK.finditer(text)]
    if not thoughts:
        return text, ""
    content = _THOUGHT_BLOCK.sub("", text).strip()
    return content, "\n\n".join(t for t in thoughts if t)


class ChatModelClient:
    """ModelClient backed by a LangChain chat model.

    Args:
        llm: Chat model supporting ``bind_tools``.
        system_prompt: Instructions prepended to every request.
        context_token_limit: Token budget for the transcript part of a request.
    """

    def __init__(self, llm: BaseChatModel, system_prompt: str = "", context_token_limit: int = 32768):
        self.llm = llm
        self.system_prompt = system_prompt
        self.context_token_limit = context_token_limit

    @classmethod
    def from_settings(cls, settings) -> "ChatModelClient":
        return cls(get_llm(settings), settings.system_prompt, settings.llm.context_token_limit)

    def complete(self, turns: Sequence[Turn], tools: Sequence[dict]) -> ModelResponse:
        prompt = f"{self.system_prompt}\n\n{system_context()}" if self.system_prompt else system_context()
        budget = max(self.context_token_limit - estimate_tokens(prompt), 0)
        messages = to_langchain_messages(build_context_window(turns, budget), prompt)
        try:
            model = self.llm.bind_tools(list(tools)) if tools else self.llm
            reply = model.invoke(messages)
        except Exception as e:
            logger.error("Model request failed: %s", e)
            raise ModelClientError(f"Model request failed: {e}") from e

        drafts = [ToolCallDraft(name=c["name"], arguments=c.get("args") or {}) for c in reply.tool_calls or []]
        for bad in getattr(reply, "invalid_tool_calls", None) or []:
            # Unparseable arguments reach the dispatcher as-is and fail validation there.
            logger.warning("Model produced an invalid tool call: %s", bad.get("error"))
            drafts.append(ToolCallDraft(name=bad.get("name") or "", arguments=bad.get("args")))
        content, thought = split_thoughts(_content_text(reply.content))
        return ModelResponse(content=content, tool_calls=drafts, thought=thought)
