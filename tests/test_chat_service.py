from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from langchain_core.messages import AIMessageChunk, HumanMessage, ToolMessage

from app.models import ChatMessage
from app.services.chat_service import RATE_LIMIT_MESSAGE, ChatService
from app.services.moondream_tools import RequestOk

IMAGE = "data:image/png;base64,iVBORw0KGgo="


class FakeLLM:
    """Scripted stand-in for ChatGroq: each stream() call plays the next step."""

    def __init__(self, steps):
        self.steps = list(steps)
        self.calls = []
        self.bound = None

    def bind_tools(self, tools):
        self.bound = [t.name for t in tools]
        return self

    def stream(self, messages):
        self.calls.append(list(messages))
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        yield from step


def text(*parts):
    return [AIMessageChunk(content=p) for p in parts]


def tool_call(name, args, call_id="call_1"):
    return [
        AIMessageChunk(
            content="",
            tool_call_chunks=[{"name": name, "args": json.dumps(args), "id": call_id, "index": 0}],
        )
    ]


@pytest.fixture(autouse=True)
def reset_rotation():
    ChatService._shared_key_index = 0


def make_service(llm, **kw):
    return ChatService(["key-a"], llm_factory=lambda key: llm, **kw)


def test_plain_reply_streams_text():
    llm = FakeLLM([text("Hello", " there")])

    events = list(make_service(llm).stream_reply([ChatMessage(role="user", content="hi")]))

    assert events == [
        {"type": "text", "delta": "Hello"},
        {"type": "text", "delta": " there"},
        {"type": "finish", "steps": 1},
    ]
    assert llm.bound is None


@patch("app.services.moondream_tools.perform_moondream_request")
def test_tool_call_resolves_attachment_and_loops(mock_request):
    mock_request.return_value = RequestOk(
        data={"objects": [{"x_min": 0.1, "y_min": 0.1, "x_max": 0.5, "y_max": 0.5}], "request_id": "r1"}
    )
    llm = FakeLLM([
        tool_call("moondreamDetect", {"imageUrl": "attachment://1", "object": "cat"}),
        text("Found one cat."),
    ])
    service = make_service(llm, moondream_api_key="md-key")

    events = list(service.stream_reply([ChatMessage(role="user", content="Where is the cat?", imageUrl=IMAGE)]))

    assert [e["type"] for e in events] == ["tool-call", "tool-result", "text", "finish"]
    result = events[1]["output"]
    assert result["count"] == 1
    assert result["imageUrl"] == "attachment://1"
    # The gateway receives the real image, not the handle.
    assert mock_request.call_args.args[1] == {"image_url": IMAGE, "object": "cat"}
    assert events[-1] == {"type": "finish", "steps": 2}

    second_history = llm.calls[1]
    assert isinstance(second_history[-1], ToolMessage)
    assert json.loads(second_history[-1].content)["count"] == 1
    assert "moondreamDetect" in llm.bound


def test_tool_errors_are_fed_back_not_raised():
    llm = FakeLLM([
        tool_call("moondreamPoint", {"imageUrl": "attachment://7", "object": "cat"}),
        text("I couldn't analyze that image."),
    ])
    service = make_service(llm, moondream_api_key="md-key")

    events = list(service.stream_reply([ChatMessage(role="user", content="point", imageUrl=IMAGE)]))

    assert events[1]["output"] == {"error": "No image attached as attachment://7"}
    assert events[-1]["type"] == "finish"


def test_unknown_tool_reported():
    service = make_service(FakeLLM([]))

    assert service.run_tool({}, "launchRocket", {}, {}) == {"error": "Unknown tool: launchRocket"}


def test_step_limit_stops_loop():
    steps = [tool_call("moondreamQuery", {"imageUrl": "attachment://1", "question": ""}, f"c{i}") for i in range(5)]
    llm = FakeLLM(steps)
    service = make_service(llm, moondream_api_key="md-key", max_steps=3)

    events = list(service.stream_reply([ChatMessage(role="user", content="?", imageUrl=IMAGE)]))

    assert len(llm.calls) == 3
    assert events[-1] == {"type": "finish", "steps": 3}
    assert all("error" in e["output"] for e in events if e["type"] == "tool-result")


def test_falls_back_to_next_key_before_output():
    failing = FakeLLM([RuntimeError("invalid api key")])
    working = FakeLLM([text("ok")])
    llms = {"key-a": failing, "key-b": working}
    service = ChatService(["key-a", "key-b"], llm_factory=llms.__getitem__)

    events = list(service.stream_reply([ChatMessage(role="user", content="hi")]))

    assert events[0] == {"type": "text", "delta": "ok"}
    assert len(failing.calls) == 1 and len(working.calls) == 1


def test_rate_limit_becomes_error_event():
    llm = FakeLLM([RuntimeError("Error code: 429 - rate limit reached")])

    events = list(make_service(llm).stream_reply([ChatMessage(role="user", content="hi")]))

    assert events == [
        {"type": "error", "error": RATE_LIMIT_MESSAGE},
        {"type": "finish", "steps": 1},
    ]


def test_keys_rotate_between_requests():
    used = []

    def factory(key):
        used.append(key)
        return FakeLLM([text("x")])

    service = ChatService(["key-a", "key-b"], llm_factory=factory)
    for _ in range(3):
        list(service.stream_reply([ChatMessage(role="user", content="hi")]))

    assert used == ["key-a", "key-b", "key-a"]


def test_build_messages_only_latest_image_is_sent_inline():
    service = make_service(FakeLLM([]))
    messages = [
        ChatMessage(role="user", content="first", imageUrl="https://example.com/a.jpg"),
        ChatMessage(role="assistant", content="A dog."),
        ChatMessage(role="user", content="and this?", imageUrl=IMAGE),
    ]

    history, attachments = service.build_messages(messages)

    assert attachments == {"attachment://1": "https://example.com/a.jpg", "attachment://2": IMAGE}
    assert history[1].content == "first\n\n[Attached image: attachment://1]"
    last = history[-1]
    assert isinstance(last, HumanMessage)
    assert last.content[0]["text"].endswith("attachment://2]")
    assert last.content[1]["image_url"]["url"] == IMAGE


def test_requires_api_key():
    with pytest.raises(ValueError):
        ChatService([])


def test_falls_back_when_client_cannot_be_built():
    working = FakeLLM([text("ok")])

    def factory(key):
        if key == "key-a":
            raise ValueError("malformed api key")
        return working

    service = ChatService(["key-a", "key-b"], llm_factory=factory)

    events = list(service.stream_reply([ChatMessage(role="user", content="hi")]))

    assert events == [{"type": "text", "delta": "ok"}, {"type": "finish", "steps": 1}]
