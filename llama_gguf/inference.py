"""
Llama Inference Engine

End-to-end greedy inference for Llama 3.2 1B Instruct GGUF files:
- Embedding lookup -> transformer layers -> final RMSNorm -> classifier -> logits
- Prefill/decode generation loop with per-layer KV caches
- Llama 3 chat template with <|eot_id|> / <|end_of_text|> stop tokens
- Interactive multi-turn chat
- Pluggable kernel backends (numpy, threaded, torch)
"""

import argparse
import logging
import time
from pathlib import Path
from typing import Collection, Generator, Iterable, List, Optional, Sequence, Union

import numpy as np
from tqdm import tqdm

from .chat_format import ChatFormat, Message, Role
from .config import InferenceConfig, ModelConfig, load_config
from .kernels import Kernels, NumpyKernels, create_kernels
from .model import LlamaModel, WeightStorageMode
from .tokenizer import Tokenizer
from .transformer import TransformerBlock

logger = logging.getLogger(__name__)


END_OF_TEXT_ID = 128001


class LlamaInference:
    """Greedy text generation over a loaded Llama model."""

    def __init__(
        self,
        model: LlamaModel,
        kernels: Optional[Kernels] = None,
        weight_mode: Union[str, WeightStorageMode] = WeightStorageMode.F16,
        tokenizer: Optional[Tokenizer] = None,
    ):
        """Build the engine.

        Args:
            model: Loaded model
            kernels: Kernel provider (defaults to NumpyKernels)
            weight_mode: Storage mode for projection and embedding weights
            tokenizer: Tokenizer (defaults to one built from the model metadata)
        """
        self.model = model
        self.config = model.config
        self.kernels = kernels or NumpyKernels()
        self.weight_mode = WeightStorageMode.parse(weight_mode)
        cfg = self.config

        # Llama 3.2 1B ties the classifier to token_embd.weight
        self.token_embedding = model.map_weight("token_embd.weight", self.weight_mode)
        self.output_norm = model.map_tensor("output_norm.weight")
        if model.has_tensor("output.weight"):
            self.output_weight = model.map_weight("output.weight", self.weight_mode)
        else:
            self.output_weight = self.token_embedding

        expected = (cfg.vocab_size, cfg.hidden_size)
        for name, weight in (("token_embd", self.token_embedding), ("output", self.output_weight)):
            if weight.shape != expected:
                raise ValueError(f"{name}.weight has shape {weight.shape}, expected {expected}")

        self.layers = [
            TransformerBlock(model, i, self.kernels, self.weight_mode)
            for i in range(cfg.num_layers)
        ]

        self.tokenizer = tokenizer or Tokenizer.from_metadata(model.metadata.metadata)
        self.chat_format = ChatFormat(self.tokenizer)

        self._x = np.zeros(cfg.hidden_size, dtype=np.float32)
        self._logits = np.zeros(cfg.vocab_size, dtype=np.float32)

        logger.info(
            f"Engine ready: {cfg.num_layers} layers, {self.kernels.name} kernels, "
            f"{self.weight_mode.value} weights"
        )

    @classmethod
    def from_file(
        cls,
        model_path: Union[str, Path],
        model_config: Optional[ModelConfig] = None,
        inference_config: Optional[InferenceConfig] = None,
        strict: bool = True,
    ) -> "LlamaInference":
        """Load an engine from a GGUF file.

        Args:
            model_path: Path to the .gguf file
            model_config: Architecture constants (defaults to Llama 3.2 1B)
            inference_config: Backend and storage options
            strict: Reject files with fewer than 100 tensors

        Returns:
            Initialized LlamaInference
        """
        inference_config = inference_config or InferenceConfig()
        model = LlamaModel(model_path, model_config, strict=strict)
        kernels = create_kernels(
            inference_config.backend,
            num_threads=inference_config.num_threads,
            device=inference_config.device,
        )
        return cls(model, kernels, inference_config.weight_mode)

    def forward(self, token: int, position: int) -> np.ndarray:
        """Run one token through the model.

        Args:
            token: Token ID
            position: Sequence position (0-based)

        Returns:
            float32 logits [vocab_size]
        """
        cfg = self.config
        if not 0 <= token < cfg.vocab_size:
            raise IndexError(f"Token id {token} out of range [0, {cfg.vocab_size})")
        if not 0 <= position < cfg.max_seq_len:
            raise ValueError(f"Position {position} out of range [0, {cfg.max_seq_len})")

        x = self._x
        x[:] = self.token_embedding[token]

        for layer in self.layers:
            layer.forward(x, position)

        self.kernels.rmsnorm(x, self.output_norm, cfg.norm_eps)
        self.kernels.matvec(self.output_weight, x, self._logits)

        return self._logits.copy()

    @staticmethod
    def argmax(values: Sequence[float]) -> int:
        """Index of the maximum value; ties resolve to the lowest index."""
        return int(np.argmax(np.asarray(values)))

    def reset(self):
        """Clear all KV caches."""
        for layer in self.layers:
            layer.reset()

    def generate_stream(
        self,
        prompt_ids: Sequence[int],
        max_new_tokens: int,
        stop_tokens: Optional[Collection[int]] = None,
        show_progress: bool = False,
    ) -> Generator[int, None, None]:
        """Greedy generation, yielding token IDs as they are produced.

        A stop token is yielded before generation ends.

        Args:
            prompt_ids: Prompt token IDs
            max_new_tokens: Maximum tokens to generate
            stop_tokens: Token IDs that end generation (default: <|end_of_text|>)
            show_progress: Show a prefill progress bar

        Yields:
            Generated token IDs
        """
        if max_new_tokens <= 0:
            return
        prompt_ids = list(prompt_ids)
        if not prompt_ids:
            raise ValueError("Prompt must contain at least one token")

        max_seq_len = self.config.max_seq_len
        if len(prompt_ids) > max_seq_len:
            raise ValueError(f"Prompt of {len(prompt_ids)} tokens exceeds context of {max_seq_len}")

        # The first token comes from the prefill logits, so n tokens need n - 1 decode steps
        budget = max_seq_len - len(prompt_ids) + 1
        if max_new_tokens > budget:
            logger.warning(f"max_new_tokens {max_new_tokens} truncated to {budget} by context length")
            max_new_tokens = budget

        stop_tokens = frozenset(stop_tokens if stop_tokens is not None else {END_OF_TEXT_ID})

        self.reset()

        logits = None
        prefill = tqdm(prompt_ids, desc="Prefill", unit="tok", disable=not show_progress, leave=False)
        for position, token in enumerate(prefill):
            logits = self.forward(token, position)

        next_token = self.argmax(logits)
        generated = 1
        yield next_token

        while generated < max_new_tokens and next_token not in stop_tokens:
            logits = self.forward(next_token, len(prompt_ids) + generated - 1)
            next_token = self.argmax(logits)
            generated += 1
            yield next_token

    def generate(
        self,
        prompt_ids: Sequence[int],
        max_new_tokens: int,
        stop_tokens: Optional[Collection[int]] = None,
        show_progress: bool = False,
    ) -> List[int]:
        """Greedy generation.

        Args:
            prompt_ids: Prompt token IDs
            max_new_tokens: Maximum tokens to generate
            stop_tokens: Token IDs that end generation (default: <|end_of_text|>)
            show_progress: Show prefill/decode progress bars

        Returns:
            Generated token IDs (excluding the prompt), including a trailing
            stop token if one was produced
        """
        start_time = time.time()
        stream = self.generate_stream(prompt_ids, max_new_tokens, stop_tokens, show_progress)
        generated = list(tqdm(
            stream,
            desc="Generating",
            unit="tok",
            total=max(max_new_tokens, 0),
            disable=not show_progress,
        ))
        elapsed = time.time() - start_time

        if generated:
            logger.info(
                f"Generated {len(generated)} tokens from {len(prompt_ids)} prompt tokens "
                f"in {elapsed:.2f}s ({len(generated) / max(elapsed, 1e-9):.1f} tok/s)"
            )
        return generated

    def _decode_response(self, generated: Iterable[int]) -> str:
        """Decode tokens up to the first stop token."""
        response = []
        for token in generated:
            if token in self.chat_format.stop_tokens:
                break
            response.append(token)
        return self.tokenizer.decode(response)

    def chat_dialog(
        self,
        messages: Iterable[Union[Message, dict]],
        max_new_tokens: int = 256,
        show_progress: bool = False,
    ) -> str:
        """Generate the assistant reply to a dialog.

        Args:
            messages: Messages (or {"role", "content"} dicts) in order
            max_new_tokens: Maximum tokens to generate

        Returns:
            Decoded reply, without stop tokens
        """
        prompt_ids = self.chat_format.encode_dialog_prompt(messages)
        generated = self.generate(
            prompt_ids, max_new_tokens, self.chat_format.stop_tokens, show_progress
        )
        return self._decode_response(generated)

    def chat(
        self,
        system_prompt: Optional[str],
        user_prompt: str,
        max_new_tokens: int = 256,
        show_progress: bool = False,
    ) -> str:
        """Generate a reply to a single user message.

        Args:
            system_prompt: System instructions (skipped if empty)
            user_prompt: The user's message
            max_new_tokens: Maximum tokens to generate

        Returns:
            Decoded reply, without stop tokens
        """
        dialog = []
        if system_prompt:
            dialog.append(Message(Role.SYSTEM, system_prompt))
        dialog.append(Message(Role.USER, user_prompt))
        return self.chat_dialog(dialog, max_new_tokens, show_progress)

    def close(self):
        self.kernels.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def interactive_chat(
    engine: LlamaInference,
    system_prompt: Optional[str] = None,
    max_new_tokens: int = 256,
    show_progress: bool = False,
):
    """Run interactive chat session.

    Args:
        engine: Initialized LlamaInference
        system_prompt: System instructions for every conversation
        max_new_tokens: Maximum tokens per reply
    """
    print("\n" + "=" * 50)
    print("Interactive Chat Mode")
    print("Type 'quit' or 'exit' to end the session")
    print("Type 'clear' to start a new conversation")
    print("=" * 50 + "\n")

    def new_conversation() -> List[Message]:
        return [Message(Role.SYSTEM, system_prompt)] if system_prompt else []

    messages = new_conversation()

    while True:
        try:
            user_input = input("You: ").strip()
        except EOFError:
            print()
            break
        except KeyboardInterrupt:
            print("\n\nInterrupted. Type 'quit' to exit.")
            continue

        if not user_input:
            continue

        if user_input.lower() in ["quit", "exit"]:
            print("Goodbye!")
            break

        if user_input.lower() == "clear":
            messages = new_conversation()
            print("\n[Conversation cleared]\n")
            continue

        messages.append(Message(Role.USER, user_input))

        try:
            response = engine.chat_dialog(messages, max_new_tokens, show_progress)
        except KeyboardInterrupt:
            messages.pop()
            print("\n\nInterrupted. Type 'quit' to exit.")
            continue
        except ValueError as e:
            # Conversation no longer fits the context window
            messages.pop()
            logger.error(f"Error: {e}")
            continue

        print(f"Assistant: {response}\n")
        messages.append(Message(Role.ASSISTANT, response))


def main():
    """CLI entry point."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    parser = argparse.ArgumentParser(description="Chat with a Llama 3.2 1B Instruct GGUF model")
    parser.add_argument("--model", "-m", type=str, required=True, help="Path to .gguf file")
    parser.add_argument("--config", "-c", type=str, help="Path to config YAML")

    # Mode
    mode_group = parser.add_mutually_exclusive_group(required=True)
    mode_group.add_argument("--interactive", action="store_true", help="Interactive chat mode")
    mode_group.add_argument("--prompt", "-p", type=str, help="Single user message")

    # Overrides for the config file
    parser.add_argument("--backend", choices=["numpy", "threaded", "torch"], help="Kernel backend")
    parser.add_argument("--weight-mode", choices=["f16", "f32"], help="In-memory weight precision")
    parser.add_argument("--threads", type=int, help="Worker threads for the threaded backend")
    parser.add_argument("--device", type=str, help="Torch device, e.g. cuda or cpu")
    parser.add_argument("--max-tokens", type=int, help="Maximum tokens to generate")
    parser.add_argument("--system", type=str, help="System prompt")
    parser.add_argument("--progress", action="store_true", help="Show progress bars")

    args = parser.parse_args()

    if args.config:
        model_config, inference_config = load_config(args.config)
    else:
        model_config, inference_config = ModelConfig(), InferenceConfig()

    overrides = {
        "backend": args.backend,
        "weight_mode": args.weight_mode,
        "num_threads": args.threads,
        "device": args.device,
        "max_new_tokens": args.max_tokens,
        "system_prompt": args.system,
    }
    settings = inference_config.to_dict()
    settings.update({k: v for k, v in overrides.items() if v is not None})
    if args.progress:
        settings["show_progress"] = True
    inference_config = InferenceConfig.from_dict(settings)

    logger.info("Loading model...")
    with LlamaInference.from_file(args.model, model_config, inference_config) as engine:
        if args.interactive:
            interactive_chat(
                engine,
                system_prompt=inference_config.system_prompt,
                max_new_tokens=inference_config.max_new_tokens,
                show_progress=inference_config.show_progress,
            )
        else:
            start_time = time.time()
            response = engine.chat(
                inference_config.system_prompt,
                args.prompt,
                max_new_tokens=inference_config.max_new_tokens,
                show_progress=inference_config.show_progress,
            )
            elapsed = time.time() - start_time

            print(response)
            logger.info(f"Generated in {elapsed:.2f}s")


if __name__ == "__main__":
    main()
