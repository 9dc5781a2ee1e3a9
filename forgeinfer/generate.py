"""Greedy autoregressive token generation over a graph that maps token ids to logits."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .graph import Graph
from .ops import GraphError, Tensor

_log = logging.getLogger(__name__)


@dataclass
class GenerateConfig:
    """Settings for a generation run.

    ``eos_token_id`` below zero disables the end-of-sequence check.
    """

    max_new_tokens: int
    eos_token_id: int = -1
    verbose: bool = False
    use_cuda: bool = True


def _argmax(row: np.ndarray) -> int:
    return int(np.argmax(row))


def _io_tensors(graph: Graph) -> tuple[Tensor, Tensor]:
    if not graph.input_node_ids or not graph.output_node_ids:
        raise GraphError("graph needs at least one input and one output node")
    input_node = graph.nodes[graph.input_node_ids[0]]
    output_node = graph.nodes[graph.output_node_ids[0]]
    if not input_node.outputs or not output_node.inputs:
        raise GraphError("input node writes no tensor or output node reads none")
    input_tid = input_node.outputs[0]
    output_tid = output_node.inputs[0]
    for tid in (input_tid, output_tid):
        if not 0 <= tid < len(graph.tensors):
            raise GraphError(f"no tensor with id {tid}")
    input_tensor = graph.tensors[input_tid].tensor
    output_tensor = graph.tensors[output_tid].tensor
    if input_tensor is None or output_tensor is None:
        raise GraphError("graph input or output tensor is missing")
    if len(input_tensor.shape) < 2:
        raise GraphError("input tensor must have shape (batch, seq_len, ...)")
    if not output_tensor.shape:
        raise GraphError("output tensor has no vocabulary dimension")
    return input_tensor, output_tensor


def _fill_window(input_tensor: Tensor, tokens: Sequence[int]) -> None:
    flat = input_tensor.data.reshape(-1)
    flat[:] = 0
    flat[: len(tokens)] = tokens


def _say(config: GenerateConfig, message: str) -> None:
    if config.verbose:
        print(f"generate: {message}", file=sys.stderr)


def generate_tokens(graph: Graph, prompt: Sequence[int], config: GenerateConfig) -> list[int]:
    """Generate up to ``config.max_new_tokens`` tokens after ``prompt`` by greedy argmax.

    The graph's first input tensor is filled with the most recent ``seq_len``
    tokens (zero padded) and the model is re-run for every new token; the
    logits at the last valid position choose the next one.  Generation stops
    early at the end-of-sequence token or when a decode step fails.
    """
    prompt = [int(t) for t in prompt]
    if not prompt:
        raise ValueError("prompt must not be empty")
    if config.max_new_tokens <= 0:
        raise ValueError("max_new_tokens must be positive")

    input_tensor, output_tensor = _io_tensors(graph)
    vocab_size = output_tensor.shape[-1]
    seq_len = input_tensor.shape[1]
    if vocab_size <= 0 or seq_len <= 0:
        raise GraphError("model has an empty sequence or vocabulary dimension")

    used = min(len(prompt), seq_len)
    _fill_window(input_tensor, prompt[:used])

    def logits_at(pos: int) -> np.ndarray:
        flat = output_tensor.data.reshape(-1)
        return flat[pos * vocab_size : (pos + 1) * vocab_size]

    graph.execute([input_tensor], [output_tensor], config.use_cuda)
    next_token = _argmax(logits_at(used - 1))
    _say(config, f"prompt {len(prompt)} tokens, first predicted token = {next_token}")

    all_tokens = list(prompt)
    generated: list[int] = []
    for step in range(config.max_new_tokens):
        generated.append(next_token)
        all_tokens.append(next_token)

        if config.eos_token_id >= 0 and next_token == config.eos_token_id:
            _say(config, f"EOS token {next_token} at step {step}")
            break

        window = all_tokens[-seq_len:]
        _fill_window(input_tensor, window)
        try:
            graph.execute([input_tensor], [output_tensor], config.use_cuda)
        except GraphError as exc:
            _log.warning("decode step %d failed: %s", step, exc)
            _say(config, f"decode step {step} failed ({exc})")
            break

        next_token = _argmax(logits_at(min(len(window), seq_len) - 1))
        _say(config, f"step {step}, token = {next_token}")

    return generated