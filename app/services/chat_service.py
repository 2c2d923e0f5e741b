"""
CHAT SERVICE MODULE
===================

Runs one assistant turn: sends the conversation to the Groq LLM with the
available tools bound, executes whatever tools the model calls, feeds the
results back, and streams everything to the client as events.

TOOLS:
  - searchMemories                 (when a Supermemory key is configured)
  - moondreamQuery / Detect / Point / Caption   (when MOONDREAM_API_KEY is set)

IMAGES:
  Attached images are named in the prompt as short handles ("attachment://1")
  so the model never has to echo a base64 blob back. When the model passes a
  handle as a tool's imageUrl, it is swapped for the real data URI / URL
  before the tool runs, and swapped back in the result.

EVENTS (yielded by stream_reply, one dict each):
  {"type": "text", "delta": "..."}
  {"type": "tool-call", "id", "name", "args"}
  {"type": "tool-result", "id", "name", "output"}
  {"type": "error", "error": "..."}
  {"type": "finish", "steps": n}

ROUND-ROBIN API KEYS:
  Every model step starts from the next key in GROQ_API_KEYS. If a key fails
  before any output was streamed, the next key is tried; once text has been
  sent the error is reported instead, since it can't be taken back.
"""

import json
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.tools import BaseTool, ToolException
from langchain_groq import ChatGroq

from app.models import ChatMessage
from app.services.memory_service import MemoryService, memory_tools
from app.services.moondream_tools import moondream_tools
from config import GROQ_MODEL, MAX_TOOL_STEPS, SYSTEM_PROMPT


logger = logging.getLogger("PocketSenpai")

ATTACHMENT_PREFIX = "attachment://"

# User-friendly message when Groq rate limit (daily token quota) is exceeded.
RATE_LIMIT_MESSAGE = (
    "You've reached your daily API limit for this assistant. "
    "Please try again in a few hours."
)
GENERIC_ERROR_MESSAGE = "Sorry, something went wrong while generating a reply. Please try again."


def is_rate_limit_error(exc: Exception) -> bool:
    """True if the exception is a Groq rate limit (429 / tokens per day)."""
    msg = str(exc).lower()
    return "429" in msg or "rate limit" in msg or "tokens per day" in msg


def mask_key(key: str) -> str:
    """Show only the tail of an API key in logs."""
    return f"...{key[-4:]}" if len(key) > 4 else "****"


# ==============================================================================
# CHAT SERVICE CLASS
# ==============================================================================

class ChatService:
    """
    Stateless per turn: the client sends the whole conversation each time and
    a fresh set of tools is built for every reply.
    """

    # Shared across instances so all requests walk the same key rotation.
    _shared_key_index = 0

    def __init__(
        self,
        api_keys: Sequence[str],
        memory_service: Optional[MemoryService] = None,
        moondream_api_key: str = "",
        model: str = GROQ_MODEL,
        max_steps: int = MAX_TOOL_STEPS,
        llm_factory: Optional[Callable[[str], Any]] = None,
    ):
        if not api_keys:
            raise ValueError("At least one GROQ_API_KEY is required")
        self.api_keys = list(api_keys)
        self.memory_service = memory_service
        self.moondream_api_key = moondream_api_key
        self.model = model
        self.max_steps = max_steps
        self.llm_factory = llm_factory or self._default_llm
        logger.info(
            "Chat service ready: model=%s, %d key(s), memory=%s, moondream=%s",
            model,
            len(self.api_keys),
            "on" if memory_service else "off",
            "on" if moondream_api_key else "off",
        )

    def _default_llm(self, api_key: str) -> ChatGroq:
        return ChatGroq(model=self.model, api_key=api_key, temperature=0.3)

    # ------------------------------------------------------------------------------
    # TOOLS AND PROMPT
    # ------------------------------------------------------------------------------

    def build_tools(self) -> Dict[str, BaseTool]:
        tools: Dict[str, BaseTool] = {}
        if self.memory_service:
            tools.update(memory_tools(self.memory_service))
        if self.moondream_api_key:
            tools.update(moondream_tools(self.moondream_api_key))
        return tools

    def build_messages(self, messages: List[ChatMessage]) -> Tuple[List[BaseMessage], Dict[str, str]]:
        """
        Convert client messages into LangChain messages, replacing attached
        images with handles. Returns (messages, handle -> real image reference).

        Only the latest user image is also sent to the model as an image part;
        earlier ones stay reachable through their handles.
        """
        attachments: Dict[str, str] = {}
        last_image_index = max(
            (i for i, m in enumerate(messages) if m.role == "user" and m.imageUrl),
            default=-1,
        )

        history: List[BaseMessage] = [SystemMessage(content=SYSTEM_PROMPT)]
        for i, message in enumerate(messages):
            if message.role == "assistant":
                history.append(AIMessage(content=message.content))
                continue

            if not message.imageUrl:
                history.append(HumanMessage(content=message.content))
                continue

            handle = f"{ATTACHMENT_PREFIX}{len(attachments) + 1}"
            attachments[handle] = message.imageUrl
            text = f"{message.content}\n\n[Attached image: {handle}]".strip()
            if i == last_image_index:
                history.append(HumanMessage(content=[
                    {"type": "text", "text": text},
                    {"type": "image_url", "image_url": {"url": message.imageUrl}},
                ]))
            else:
                history.append(HumanMessage(content=text))

        return history, attachments

    # ------------------------------------------------------------------------------
    # TOOL EXECUTION
    # ------------------------------------------------------------------------------

    def run_tool(
        self,
        tools: Dict[str, BaseTool],
        name: str,
        args: Dict[str, Any],
        attachments: Dict[str, str],
    ) -> Dict[str, Any]:
        """Invoke one tool call; problems come back as {"error": ...}, never raised."""
        selected = tools.get(name)
        if selected is None:
            return {"error": f"Unknown tool: {name}"}

        args = dict(args or {})
        handle = args.get("imageUrl")
        attached = isinstance(handle, str) and handle in attachments
        if attached:
            args["imageUrl"] = attachments[handle]
        elif isinstance(handle, str) and handle.startswith(ATTACHMENT_PREFIX):
            return {"error": f"No image attached as {handle}"}

        try:
            output = selected.invoke(args)
        except (ValueError, ToolException) as e:
            logger.warning("Tool %s rejected arguments: %s", name, e)
            return {"error": f"Invalid arguments for {name}: {e}"}

        if not isinstance(output, dict):
            output = {"result": output}
        if attached and "imageUrl" in output:
            output = {**output, "imageUrl": handle}
        return output

    # ------------------------------------------------------------------------------
    # LLM STEP
    # ------------------------------------------------------------------------------

    def _next_key_order(self) -> List[str]:
        """Keys starting from the next one in the shared rotation."""
        start = ChatService._shared_key_index % len(self.api_keys)
        ChatService._shared_key_index += 1
        return self.api_keys[start:] + self.api_keys[:start]

    def _stream_step(self, history: List[BaseMessage], tools: Dict[str, BaseTool]) -> Iterator[Any]:
        """Stream one model response, falling back to the next key on early failure."""
        last_error: Optional[Exception] = None
        for key in self._next_key_order():
            started = False
            try:
                llm = self.llm_factory(key)
                if tools:
                    llm = llm.bind_tools(list(tools.values()))
                for chunk in llm.stream(history):
                    started = True
                    yield chunk
                return
            except Exception as e:
                if started:
                    raise
                last_error = e
                logger.warning("Groq key %s failed, trying next key: %s", mask_key(key), e)
        raise last_error

    # ------------------------------------------------------------------------------
    # TURN
    # ------------------------------------------------------------------------------

    def stream_reply(self, messages: List[ChatMessage]) -> Iterator[Dict[str, Any]]:
        """Run the model -> tools -> model loop (at most max_steps model calls)."""
        history, attachments = self.build_messages(messages)
        tools = self.build_tools()
        steps = 0

        try:
            while steps < self.max_steps:
                steps += 1
                aggregate = None
                for chunk in self._stream_step(history, tools):
                    if isinstance(chunk.content, str) and chunk.content:
                        yield {"type": "text", "delta": chunk.content}
                    aggregate = chunk if aggregate is None else aggregate + chunk

                if aggregate is None:
                    break
                tool_calls = list(getattr(aggregate, "tool_calls", None) or [])
                history.append(AIMessage(content=aggregate.content, tool_calls=tool_calls))
                if not tool_calls:
                    break

                for call in tool_calls:
                    logger.info("Step %d: model called %s", steps, call["name"])
                    yield {"type": "tool-call", "id": call["id"], "name": call["name"], "args": call["args"]}
                    output = self.run_tool(tools, call["name"], call["args"], attachments)
                    yield {"type": "tool-result", "id": call["id"], "name": call["name"], "output": output}
                    history.append(
                        ToolMessage(content=json.dumps(output), tool_call_id=call["id"], name=call["name"])
                    )
        except Exception as e:
            if is_rate_limit_error(e):
                logger.warning("Rate limit hit: %s", e)
                yield {"type": "error", "error": RATE_LIMIT_MESSAGE}
            else:
                logger.error("Error generating reply: %s", e, exc_info=True)
                yield {"type": "error", "error": GENERIC_ERROR_MESSAGE}

        yield {"type": "finish", "steps": steps}
