"""A computation graph of operator nodes, ordered topologically and executed in place."""

from __future__ import annotations

import copy
from collections import deque
from typing import Any, Iterable, Optional, Sequence

import numpy as np

from .fusion import FUSABLE_ACTIVATIONS, NodeSnapshot, detect_and_fuse_mha, fuse_activations
from .ops import (
    DataType,
    GraphError,
    CycleError,
    Node,
    Operator,
    OperatorFailedError,
    OperatorNotFoundError,
    OperatorRegistry,
    OpType,
    Tensor,
    TensorSlot,
    op_name,
)

# Layout operators always run their f32 kernel, whatever the element type.
_NO_F16_VARIANT = frozenset(
    {
        OpType.CAST,
        OpType.RESHAPE,
        OpType.TRANSPOSE,
        OpType.SLICE,
        OpType.SPLIT,
        OpType.SQUEEZE_UNSQUEEZE,
    }
)

# Activations whose output a folded compute node writes directly.
_REDIRECTED_ACTIVATIONS = frozenset({OpType.RELU, OpType.SIGMOID, OpType.GELU})


def _copy_into(dst: Tensor, src: Tensor) -> None:
    if dst.numel != src.numel:
        raise GraphError(f"tensor of {src.numel} elements cannot fill one of {dst.numel}")
    dst.data.reshape(-1)[:] = np.asarray(src.data).reshape(-1)


class Graph:
    """Nodes connected through tensors, executed with kernels from a registry."""

    def __init__(self, registry: Optional[OperatorRegistry] = None) -> None:
        self.registry = registry if registry is not None else OperatorRegistry()
        self.nodes: list[Node] = []
        self.tensors: list[TensorSlot] = []
        self.topo_order: Optional[list[int]] = None
        self.input_node_ids: list[int] = []
        self.output_node_ids: list[int] = []
        self.kv_cache_k_tid = -1
        self.kv_cache_v_tid = -1
        self.permanent_fusion = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    def _valid_tid(self, tid: int) -> bool:
        return 0 <= tid < len(self.tensors)

    def add_tensor(self, tensor: Tensor) -> int:
        """Add a tensor and return its id."""
        if not isinstance(tensor, Tensor):
            raise TypeError(f"expected a Tensor, got {type(tensor).__name__}")
        self.tensors.append(TensorSlot(tensor))
        return len(self.tensors) - 1

    def add_node(
        self,
        op_type: OpType,
        inputs: Iterable[int] = (),
        outputs: Iterable[int] = (),
        weights: Iterable[Optional[Tensor]] = (),
        params: Any = None,
    ) -> int:
        """Add a node reading and writing the given tensor ids and return its id.

        The params record is copied; the weight tensors are shared.
        """
        node = Node(
            op_type=OpType(op_type),
            inputs=[int(t) for t in inputs],
            outputs=[int(t) for t in outputs],
            weights=list(weights),
            params=copy.copy(params) if params is not None else None,
        )
        node_id = len(self.nodes)
        self.nodes.append(node)
        for tid in node.inputs:
            if self._valid_tid(tid):
                self.tensors[tid].consumer = node_id
        for tid in node.outputs:
            if self._valid_tid(tid):
                self.tensors[tid].producer = node_id
        return node_id

    def _check_node(self, node_id: int) -> int:
        if not 0 <= node_id < len(self.nodes):
            raise GraphError(f"no node with id {node_id}")
        return node_id

    def set_input(self, node_id: int) -> None:
        """Mark a node as a graph input; inputs are fed in the order they are set."""
        self.input_node_ids.append(self._check_node(node_id))

    def set_output(self, node_id: int) -> None:
        """Mark a node as a graph output; outputs are collected in the order they are set."""
        self.output_node_ids.append(self._check_node(node_id))

    def set_kv_cache(self, k_tensor_id: int, v_tensor_id: int) -> None:
        """Mark the tensors that hold the attention key and value cache."""
        self.kv_cache_k_tid = k_tensor_id
        self.kv_cache_v_tid = v_tensor_id

    def build(self) -> None:
        """Compute the execution order; raises CycleError if the graph has a cycle."""
        in_degree = [
            sum(
                1
                for tid in node.inputs
                if self._valid_tid(tid) and self.tensors[tid].producer >= 0
            )
            for node in self.nodes
        ]
        queue = deque(nid for nid, degree in enumerate(in_degree) if degree == 0)
        order: list[int] = []
        while queue:
            nid = queue.popleft()
            order.append(nid)
            for tid in self.nodes[nid].outputs:
                if not self._valid_tid(tid):
                    continue
                # A tensor may feed several nodes, e.g. a residual connection.
                for k, other in enumerate(self.nodes):
                    if in_degree[k] > 0 and tid in other.inputs:
                        in_degree[k] -= 1
                        if in_degree[k] == 0:
                            queue.append(k)
        if len(order) != len(self.nodes):
            raise CycleError(
                f"only {len(order)} of {len(self.nodes)} nodes could be ordered"
            )
        self.topo_order = order

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _feed_inputs(self, inputs: Optional[Sequence[Tensor]]) -> None:
        for i, node_id in enumerate(self.input_node_ids):
            node = self.nodes[node_id]
            if not node.outputs or not self._valid_tid(node.outputs[0]):
                continue
            if inputs is None or i >= len(inputs):
                raise GraphError(f"graph input {i} was not given")
            dst = self.tensors[node.outputs[0]].tensor
            src = inputs[i]
            if dst.data is not src.data:
                _copy_into(dst, src)

    def _collect_outputs(self, outputs: Optional[Sequence[Tensor]]) -> None:
        for i, node_id in enumerate(self.output_node_ids):
            node = self.nodes[node_id]
            if node.op_type is not OpType.OUTPUT or not node.inputs:
                continue
            tid = node.inputs[0]
            if not self._valid_tid(tid):
                continue
            if outputs is None or i >= len(outputs):
                raise GraphError(f"graph output {i} was not given")
            src = self.tensors[tid].tensor
            dst = outputs[i]
            if dst.data is not src.data:
                _copy_into(dst, src)

    def _resolve(self, node_id: int, node: Node, use_cuda: bool) -> Operator:
        base = op_name(node.op_type)
        if base is None:
            raise GraphError(f"unknown op type {int(node.op_type)} at node {node_id}")
        suffix = "_cuda" if use_cuda else ""
        candidates: list[str] = []
        if node.outputs and self._valid_tid(node.outputs[0]):
            out = self.tensors[node.outputs[0]].tensor
            if out.dtype is DataType.F16 and node.op_type not in _NO_F16_VARIANT:
                f16 = base[:-3] + "f16" if base.endswith("f32") else base
                candidates.append(f16 + suffix)
        candidates.append(base + suffix)
        if use_cuda:
            candidates.append(base)
        for name in candidates:
            operator = self.registry.find(name)
            if operator is not None:
                return operator
        raise OperatorNotFoundError(base + suffix)

    def _gather_inputs(self, node: Node) -> list:
        values: list = [
            self.tensors[tid].tensor.data if self._valid_tid(tid) else None
            for tid in node.inputs
        ]
        values += [w.data if w is not None else None for w in node.weights]
        max_idx = max(len(values) - 1, 0)
        if node.op_type in FUSABLE_ACTIVATIONS:
            max_idx = max(max_idx, 1)
        elif node.op_type in (OpType.CONV2D, OpType.MATMUL):
            max_idx = max(max_idx, 2)  # slot for an optional bias
        elif node.op_type is OpType.BATCHNORM:
            max_idx = max(max_idx, 5)
        values += [None] * (max_idx + 1 - len(values))

        first = node.inputs[0] if node.inputs else -1
        if self._valid_tid(first):
            numel = self.tensors[first].tensor.numel
            if node.op_type in FUSABLE_ACTIVATIONS:
                values[1] = numel
            elif node.op_type is OpType.BATCHNORM:
                values[5] = numel
        return values

    def _output_tids(self, node: Node, position: int, skip: set[int]) -> list[int]:
        tids = list(node.outputs)
        order = self.topo_order or []
        if tids and position + 1 < len(order):
            follower_id = order[position + 1]
            follower = self.nodes[follower_id]
            if (
                follower_id in skip
                and follower.inputs
                and follower.outputs
                and follower.inputs[0] == node.outputs[0]
                and follower.op_type in _REDIRECTED_ACTIVATIONS
            ):
                tids[0] = follower.outputs[0]
        return tids

    def execute(
        self,
        inputs: Optional[Sequence[Tensor]] = None,
        outputs: Optional[Sequence[Tensor]] = None,
        use_cuda: bool = False,
    ) -> None:
        """Run every node in order, feeding ``inputs`` and filling ``outputs``.

        With ``use_cuda`` the accelerated kernel names are preferred and the
        fusion passes run first; an attention fusion is undone afterwards
        unless permanent fusion is enabled.
        """
        if self.topo_order is None:
            raise GraphError("graph has not been built")
        self._feed_inputs(inputs)

        skip: set[int] = set()
        snapshot: Optional[NodeSnapshot] = None
        try:
            if use_cuda and len(self.nodes) > 1:
                fuse_activations(self, skip)
                fused = detect_and_fuse_mha(self, skip)
                if not self.permanent_fusion:
                    snapshot = fused

            for position, node_id in enumerate(self.topo_order):
                if node_id in skip:
                    continue
                node = self.nodes[node_id]
                if node.op_type in (OpType.INPUT, OpType.OUTPUT):
                    continue
                operator = self._resolve(node_id, node, use_cuda)
                op_inputs = self._gather_inputs(node)
                op_outputs = [
                    self.tensors[tid].tensor.data if self._valid_tid(tid) else None
                    for tid in self._output_tids(node, position, skip)
                ]
                try:
                    operator(op_inputs, op_outputs, node.params)
                except Exception as exc:
                    raise OperatorFailedError(node_id, operator.name, str(exc)) from exc

            self._collect_outputs(outputs)
        finally:
            if snapshot is not None:
                snapshot.restore(self)