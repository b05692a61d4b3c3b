"""
Llama 3 Instruct Chat Template

Produces token sequences of the form:
    <|begin_of_text|><|start_header_id|>system<|end_header_id|>\\n{content}<|eot_id|>
    <|start_header_id|>user<|end_header_id|>\\n{content}<|eot_id|>
    <|start_header_id|>assistant<|end_header_id|>\\n
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, List, Union

from .errors import TokenizerValidationError
from .tokenizer import Tokenizer


BEGIN_OF_TEXT = "<|begin_of_text|>"
END_OF_TEXT = "<|end_of_text|>"
START_HEADER = "<|start_header_id|>"
END_HEADER = "<|end_header_id|>"
END_OF_TURN = "<|eot_id|>"


class Role(Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    @classmethod
    def from_dict(cls, message: dict) -> "Message":
        """Create from a {"role": ..., "content": ...} dict."""
        return cls(Role(message.get("role", "user")), message.get("content", ""))


class ChatFormat:
    """Encodes dialogs with the Llama 3 special tokens."""

    def __init__(self, tokenizer: Tokenizer):
        """
        Raises:
            TokenizerValidationError: If the vocabulary lacks a template token
        """
        self.tokenizer = tokenizer
        special = tokenizer.special_tokens

        def lookup(token: str) -> int:
            if token not in special:
                raise TokenizerValidationError(f"Special token {token} not in vocabulary")
            return special[token]

        self.begin_of_text = lookup(BEGIN_OF_TEXT)
        self.start_header = lookup(START_HEADER)
        self.end_header = lookup(END_HEADER)
        self.end_of_turn = lookup(END_OF_TURN)
        self.end_of_text = lookup(END_OF_TEXT)
        self.stop_tokens: FrozenSet[int] = frozenset({self.end_of_text, self.end_of_turn})

    def encode_header(self, message: Message) -> List[int]:
        tokens = [self.start_header]
        tokens.extend(self.tokenizer.encode(message.role.value))
        tokens.append(self.end_header)
        tokens.extend(self.tokenizer.encode("\n"))
        return tokens

    def encode_message(self, message: Message) -> List[int]:
        tokens = self.encode_header(message)
        tokens.extend(self.tokenizer.encode(message.content.strip()))
        tokens.append(self.end_of_turn)
        return tokens

    def encode_dialog_prompt(self, dialog: Iterable[Union[Message, dict]]) -> List[int]:
        """Encode a dialog and prime an assistant turn for the model to complete."""
        tokens = [self.begin_of_text]
        for message in dialog:
            if isinstance(message, dict):
                message = Message.from_dict(message)
            tokens.extend(self.encode_message(message))
        tokens.extend(self.encode_header(Message(Role.ASSISTANT, "")))
        return tokens
