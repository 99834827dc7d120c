from dataclasses import dataclass

import pytest

from vision_pilot import model_client
from vision_pilot.config import ModelConfig
from vision_pilot.model_client import AnthropicReasoningClient, Conversation, ModelCallError
from vision_pilot.models import EncodedImage


@dataclass
class _Block:
    type: str
    text: str = ""


class _Response:
    def __init__(self, blocks):
        self.content = blocks


class _FakeMessages:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _FakeAnthropic:
    def __init__(self, outcomes):
        self.messages = _FakeMessages(outcomes)


def _image(tag: str) -> EncodedImage:
    return EncodedImage(data=tag)


def test_complete_sends_history_image_and_text(monkeypatch):
    fake = _FakeAnthropic([_Response([_Block("text", '{"a": 1}'), _Block("tool_use")])])
    client = AnthropicReasoningClient(ModelConfig(model="test-model"), client=fake)

    history = [{"role": "user", "content": [{"type": "text", "text": "earlier"}]}]
    reply = client.complete("system", history, _image("img1"), "what next?")

    assert reply == '{"a": 1}'
    request = fake.messages.requests[0]
    assert request["model"] == "test-model"
    assert request["system"] == "system"
    assert request["messages"][0] == history[0]
    last = request["messages"][-1]
    assert last["role"] == "user"
    assert last["content"][0]["type"] == "image"
    assert last["content"][0]["source"]["data"] == "img1"
    assert last["content"][1] == {"type": "text", "text": "what next?"}


def test_complete_sends_several_images_in_order():
    fake = _FakeAnthropic([_Response([_Block("text", "ok")])])
    client = AnthropicReasoningClient(ModelConfig(), client=fake)

    client.complete("system", [], [_image("baseline"), _image("current")], "compare")

    content = fake.messages.requests[0]["messages"][-1]["content"]
    assert [block["type"] for block in content] == ["image", "image", "text"]
    assert [block["source"]["data"] for block in content[:2]] == ["baseline", "current"]


def test_complete_retries_then_succeeds(monkeypatch):
    sleeps = []
    monkeypatch.setattr(model_client.time, "sleep", sleeps.append)
    fake = _FakeAnthropic([RuntimeError("overloaded"), _Response([_Block("text", "ok")])])
    client = AnthropicReasoningClient(ModelConfig(retries=3), client=fake)

    assert client.complete("s", [], None, "hi") == "ok"
    assert sleeps == [1]


def test_complete_raises_after_bounded_retries(monkeypatch):
    sleeps = []
    monkeypatch.setattr(model_client.time, "sleep", sleeps.append)
    fake = _FakeAnthropic([RuntimeError("down")] * 3)
    client = AnthropicReasoningClient(ModelConfig(retries=3), client=fake)

    with pytest.raises(ModelCallError, match="after 3 attempts"):
        client.complete("s", [], None, "hi")
    assert sleeps == [1, 2]


def test_conversation_keeps_only_newest_images():
    conversation = Conversation()
    for i in range(4):
        conversation.append_user(f"step {i}", _image(f"img{i}"))
        conversation.append_assistant(f"reply {i}")

    rendered = conversation.messages(max_images=2)

    assert len(rendered) == 8
    kinds = [turn["content"][0]["type"] for turn in rendered if turn["role"] == "user"]
    assert kinds == ["text", "text", "image", "image"]
    assert rendered[0]["content"][0]["text"] == "[earlier screenshot omitted]"
    assert rendered[0]["content"][1]["text"] == "step 0"
    # The stored turns are untouched.
    assert conversation.turns[0]["content"][0]["type"] == "image"


def test_conversation_without_limit_and_empty_assistant_reply():
    conversation = Conversation()
    conversation.append_user("hello", _image("x"))
    conversation.append_assistant("")
    rendered = conversation.messages()
    assert rendered[0]["content"][0]["type"] == "image"
    assert rendered[1]["content"][0]["text"] == "(no reply)"
    assert len(conversation) == 2
