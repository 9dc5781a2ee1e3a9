"""Core types for the inference graph: tensors, operator types and the operator registry."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Sequence

import numpy as np


class DataType(enum.Enum):
    """Element types a tensor can hold."""

    F32 = "f32"
    F16 = "f16"
    I64 = "i64"

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(_NUMPY_DTYPES[self])

    @property
    def size(self) -> int:
        """Size of one element in bytes."""
        return self.numpy_dtype.itemsize


_NUMPY_DTYPES = {
    DataType.F32: np.float32,
    DataType.F16: np.float16,
    DataType.I64: np.int64,
}


@dataclass(eq=False)
class Tensor:
    """A dense host tensor backed by a numpy array of the declared shape."""

    dtype: DataType
    shape: Sequence[int]
    data: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.shape = tuple(int(dim) for dim in self.shape)
        if any(dim < 0 for dim in self.shape):
            raise ValueError(f"negative dimension in shape {self.shape}")
        if self.data is None:
            self.data = np.zeros(self.shape, dtype=self.dtype.numpy_dtype)
            return
        array = np.array(self.data, dtype=self.dtype.numpy_dtype, copy=True)
        if array.size != self.numel:
            raise ValueError(
                f"data holds {array.size} elements, shape {self.shape} needs {self.numel}"
            )
        self.data = array.reshape(self.shape)

    @property
    def numel(self) -> int:
        """Number of elements."""
        return math.prod(self.shape)


class OpType(enum.IntEnum):
    """Operator kinds a graph node can hold."""

    RELU = 0
    SIGMOID = 1
    GELU = 2
    MATMUL = 3
    CONV2D = 4
    MAXPOOL2D = 5
    AVGPOOL2D = 6
    BATCHNORM = 7
    ADD = 8
    RESHAPE = 9
    GLOBALAVGPOOL = 10
    SOFTMAX = 11
    SILU = 12
    MUL = 13
    CONCAT = 14
    RESIZE = 15
    TRANSPOSE = 16
    SUB = 17
    DIV = 18
    SLICE = 19
    SPLIT = 20
    LAYERNORM = 21
    GATHER = 22
    SQUEEZE_UNSQUEEZE = 23
    EXP = 24
    REDUCE = 25
    CAST = 26
    ARGMAX = 27
    MHA_FUSED = 28
    MHA_DECODE = 29
    CAUSAL_MASK = 30
    ROPE = 31
    PAD = 32
    CLIP = 33
    WHERE = 34
    TANH = 35
    INPUT = 36
    OUTPUT = 37


_NO_KERNEL = frozenset({OpType.INPUT, OpType.OUTPUT})


def op_name(op_type: int) -> Optional[str]:
    """Base registry name of an operator type, or None if it has no kernel."""
    try:
        kind = OpType(op_type)
    except ValueError:
        return None
    if kind in _NO_KERNEL:
        return None
    return f"{kind.name.lower()}_f32"


@dataclass(eq=False)
class Node:
    """A node of the computation graph; tensor references are graph tensor ids."""

    op_type: OpType
    inputs: list[int] = field(default_factory=list)
    outputs: list[int] = field(default_factory=list)
    weights: list[Optional[Tensor]] = field(default_factory=list)
    params: Any = None


@dataclass(eq=False)
class TensorSlot:
    """A tensor in the graph together with the nodes that write and read it."""

    tensor: Tensor
    producer: int = -1
    consumer: int = -1


OperatorFunc = Callable[[list, list, Any], None]


@dataclass(frozen=True)
class Operator:
    """A named kernel. The function writes into the output arrays and raises on failure."""

    name: str
    func: OperatorFunc

    def __call__(self, inputs: list, outputs: list, params: Any = None) -> None:
        self.func(inputs, outputs, params)


class OperatorRegistry:
    """Kernels looked up by name; a later registration replaces an earlier one."""

    def __init__(self) -> None:
        self._operators: dict[str, Operator] = {}

    def register(self, name: str, func: OperatorFunc) -> Operator:
        if not name:
            raise ValueError("operator name must not be empty")
        if not callable(func):
            raise TypeError(f"operator {name!r} is not callable")
        operator = Operator(name, func)
        self._operators[name] = operator
        return operator

    def find(self, name: str) -> Optional[Operator]:
        return self._operators.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._operators

    def __len__(self) -> int:
        return len(self._operators)

    def __iter__(self) -> Iterator[str]:
        return iter(self._operators)


class GraphError(Exception):
    """Base error for graph construction and execution."""


class CycleError(GraphError):
    """The graph has a cycle and cannot be ordered."""


class OperatorNotFoundError(GraphError):
    """No kernel is registered for a node."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"no operator registered as {name!r}")


class OperatorFailedError(GraphError):
    """A kernel raised while a node was executed."""

    def __init__(self, node_id: int, operator: str, reason: str = "") -> None:
        self.node_id = node_id
        self.operator = operator
        message = f"operator {operator!r} failed at node {node_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)