"""Parameter records for operators that the graph builds or inspects."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

MAX_DIMS = 8


@dataclass
class TransposeParams:
    """Axis permutation of a tensor of up to eight dimensions."""

    perm: Sequence[int]
    shape: Sequence[int]
    out_shape: tuple[int, ...] = field(init=False)

    def __post_init__(self) -> None:
        self.perm = tuple(int(p) for p in self.perm)
        self.shape = tuple(int(d) for d in self.shape)
        if len(self.perm) > MAX_DIMS:
            raise ValueError(f"at most {MAX_DIMS} dimensions are supported")
        if len(self.perm) != len(self.shape):
            raise ValueError("perm and shape differ in length")
        if sorted(self.perm) != list(range(len(self.perm))):
            raise ValueError(f"{self.perm} is not a permutation")
        self.out_shape = tuple(self.shape[p] for p in self.perm)

    @property
    def ndim(self) -> int:
        return len(self.perm)


@dataclass
class WhereParams:
    """Element counts for a broadcasting select; input counts default to the output's."""

    numel: int
    cond_numel: Optional[int] = None
    x_numel: Optional[int] = None
    y_numel: Optional[int] = None

    def __post_init__(self) -> None:
        if self.cond_numel is None:
            self.cond_numel = self.numel
        if self.x_numel is None:
            self.x_numel = self.numel
        if self.y_numel is None:
            self.y_numel = self.numel
        if min(self.numel, self.cond_numel, self.x_numel, self.y_numel) < 0:
            raise ValueError("element counts must not be negative")


@dataclass
class MhaFusedParams:
    """Dimensions of a fused multi-head self-attention block."""

    batch_size: int
    seq_len: int
    hidden_size: int
    num_heads: int
    head_dim: int
    scale: Optional[float] = None
    has_residual: bool = False

    def __post_init__(self) -> None:
        if self.head_dim <= 0:
            raise ValueError("head_dim must be positive")
        if self.scale is None:
            self.scale = float(np.float32(1.0) / np.float32(math.sqrt(self.head_dim)))