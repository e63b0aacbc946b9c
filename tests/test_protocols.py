"""Tests for completion accessors."""

import pytest

from resilient_llm.llm.protocols import completion_to_dict, first_message, message_text


@pytest.mark.parametrize(
    "message, expected",
    [
        ({"role": "assistant", "content": "hi"}, "hi"),
        ({"role": "assistant", "content": ""}, ""),
        ({"role": "assistant", "content": None}, None),
        ({"role": "assistant", "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}, "ab"),
        ({"role": "assistant", "content": [{"type": "image_url", "image_url": {"url": "x"}}]}, None),
        ({"role": "assistant", "content": 42}, None),
        ({"role": "assistant", "content": {"text": "hi"}}, None),
        (None, None),
    ],
)
def test_message_text(message, expected):
    assert message_text(message) == expected


def test_first_message():
    completion = {"choices": [{"message": {"role": "assistant", "content": "hi"}}]}
    message = first_message(completion)
    assert message == {"role": "assistant", "content": "hi"}
    assert message is not completion["choices"][0]["message"]
    assert first_message({"choices": []}) is None


def test_completion_to_dict():
    class Completion:
        def model_dump(self):
            return {"choices": []}

    assert completion_to_dict(Completion()) == {"choices": []}
    with pytest.raises(TypeError):
        completion_to_dict("text")
