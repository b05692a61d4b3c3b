"""Tests for the Llama 3 chat template."""

import pytest

from llama_gguf.chat_format import ChatFormat, Message, Role
from llama_gguf.errors import TokenizerValidationError
from llama_gguf.tokenizer import Tokenizer, bytes_to_unicode
from tiny_model import BEGIN_OF_TEXT_ID, END_HEADER_ID, END_OF_TEXT_ID, END_OF_TURN_ID, START_HEADER_ID


@pytest.fixture(scope="module")
def chat_format(tokenizer):
    return ChatFormat(tokenizer)


def test_special_ids(chat_format):
    assert chat_format.begin_of_text == BEGIN_OF_TEXT_ID
    assert chat_format.start_header == START_HEADER_ID
    assert chat_format.end_header == END_HEADER_ID
    assert chat_format.end_of_turn == END_OF_TURN_ID
    assert chat_format.stop_tokens == {END_OF_TEXT_ID, END_OF_TURN_ID}


def test_encode_message(chat_format, tokenizer):
    tokens = chat_format.encode_message(Message(Role.USER, "  hello world \n"))

    assert tokens == (
        [START_HEADER_ID]
        + tokenizer.encode("user")
        + [END_HEADER_ID]
        + tokenizer.encode("\n")
        + tokenizer.encode("hello world")
        + [END_OF_TURN_ID]
    )


def test_encode_dialog_prompt(chat_format, tokenizer):
    tokens = chat_format.encode_dialog_prompt([
        Message(Role.SYSTEM, "You are a helpful assistant."),
        Message(Role.USER, "hello"),
    ])

    assert tokens[0] == BEGIN_OF_TEXT_ID
    assert tokens.count(START_HEADER_ID) == 3
    assert tokens.count(END_HEADER_ID) == 3
    assert tokens.count(END_OF_TURN_ID) == 2
    # the prompt ends with an open assistant header
    assert tokens[-len(tokenizer.encode("assistant")) - 3:] == (
        [START_HEADER_ID] + tokenizer.encode("assistant") + [END_HEADER_ID] + tokenizer.encode("\n")
    )
    assert tokenizer.decode(tokens) == (
        "<|begin_of_text|>"
        "<|start_header_id|>system<|end_header_id|>\nYou are a helpful assistant.<|eot_id|>"
        "<|start_header_id|>user<|end_header_id|>\nhello<|eot_id|>"
        "<|start_header_id|>assistant<|end_header_id|>\n"
    )


def test_dialog_accepts_dicts(chat_format):
    as_dicts = chat_format.encode_dialog_prompt([
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hello"},
    ])
    as_messages = chat_format.encode_dialog_prompt([
        Message(Role.SYSTEM, "Be brief."),
        Message(Role.USER, "hello"),
    ])

    assert as_dicts == as_messages


def test_empty_dialog(chat_format, tokenizer):
    assert chat_format.encode_dialog_prompt([]) == (
        [BEGIN_OF_TEXT_ID, START_HEADER_ID] + tokenizer.encode("assistant") + [END_HEADER_ID, 10]
    )


def test_unknown_role():
    with pytest.raises(ValueError):
        Message.from_dict({"role": "narrator", "content": "hi"})


def test_missing_special_tokens():
    byte_encoder = bytes_to_unicode()
    tokenizer = Tokenizer([byte_encoder[b] for b in range(256)], [])

    with pytest.raises(TokenizerValidationError, match="begin_of_text"):
        ChatFormat(tokenizer)


def test_joke_dialog(chat_format):
    tokens = chat_format.encode_dialog_prompt([
        {"role": "system", "content": "You are a helpful assistant."},
        {"role": "user", "content": "Tell a joke about programming"},
    ])

    assert tokens[0] == BEGIN_OF_TEXT_ID
    assert START_HEADER_ID in tokens
    assert END_HEADER_ID in tokens
