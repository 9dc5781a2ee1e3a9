"""Graph rewrites applied before execution: activation folding and attention fusion.

The functions work on any graph object that exposes ``nodes`` (a list of
:class:`~forgeinfer.ops.Node`), ``tensors`` (a list of
:class:`~forgeinfer.ops.TensorSlot`) and, for activation folding,
``topo_order`` (node ids in execution order).  Skipped nodes are tracked
in a set of node ids that the caller owns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from .ops import Node, OpType, Tensor
from .params import MhaFusedParams

FUSABLE_ACTIVATIONS = frozenset(
    {OpType.RELU, OpType.SIGMOID, OpType.GELU, OpType.SILU, OpType.EXP}
)

MIN_MHA_NODES = 20
MIN_MHA_SKIPPED = 18
MAX_MHA_SKIPPED = 32


@dataclass
class NodeSnapshot:
    """The state of a node before it was rewritten, so the rewrite can be undone."""

    node_id: int
    op_type: OpType
    inputs: list[int]
    outputs: list[int]
    weights: list[Optional[Tensor]]
    params: Any = None

    @classmethod
    def capture(cls, graph: Any, node_id: int) -> "NodeSnapshot":
        node: Node = graph.nodes[node_id]
        return cls(
            node_id=node_id,
            op_type=node.op_type,
            inputs=list(node.inputs),
            outputs=list(node.outputs),
            weights=list(node.weights),
            params=node.params,
        )

    def restore(self, graph: Any) -> None:
        """Put the saved state back into the graph's node."""
        node: Node = graph.nodes[self.node_id]
        node.op_type = self.op_type
        node.inputs = list(self.inputs)
        node.outputs = list(self.outputs)
        node.weights = list(self.weights)
        node.params = self.params


def _input_occurrences(graph: Any, tid: int) -> int:
    return sum(node.inputs.count(tid) for node in graph.nodes)


def fuse_activations(graph: Any, skip: set[int]) -> int:
    """Fold an activation that directly follows a convolution into it.

    The activation node is added to ``skip`` and the convolution's params get
    ``fuse_activation`` set to the activation's op type plus one.  Returns the
    number of activations folded.
    """
    order = list(graph.topo_order or [])
    fused = 0
    for nid, next_nid in zip(order, order[1:]):
        node = graph.nodes[nid]
        follower = graph.nodes[next_nid]
        if node.op_type not in (OpType.CONV2D, OpType.MATMUL):
            continue
        if len(follower.inputs) != 1 or len(node.outputs) != 1:
            continue
        if follower.inputs[0] != node.outputs[0]:
            continue
        if follower.op_type not in FUSABLE_ACTIVATIONS:
            continue
        # The compute output must feed the activation alone.
        if _input_occurrences(graph, node.outputs[0]) > 1:
            continue
        if node.op_type is OpType.CONV2D and hasattr(node.params, "fuse_activation"):
            node.params.fuse_activation = int(follower.op_type) + 1
            skip.add(next_nid)
            fused += 1
    return fused


def _consumers(graph: Any, tid: int, skip: set[int]) -> Iterator[int]:
    for nid, node in enumerate(graph.nodes):
        if nid not in skip and tid in node.inputs:
            yield nid


def _unique_consumer(graph: Any, tid: int, skip: set[int]) -> Optional[int]:
    found = list(_consumers(graph, tid, skip))
    return found[0] if len(found) == 1 else None


def _follow(graph: Any, tid: int, skip: set[int], op_type: OpType) -> Optional[int]:
    nid = _unique_consumer(graph, tid, skip)
    if nid is None:
        return None
    node = graph.nodes[nid]
    if node.op_type is not op_type or not node.outputs:
        return None
    return nid


def _leading_add(graph: Any, tid: int, skip: set[int]) -> Optional[int]:
    """An Add that is the only consumer of ``tid`` and takes it as first input."""
    nid = _unique_consumer(graph, tid, skip)
    if nid is None:
        return None
    node = graph.nodes[nid]
    if node.op_type is not OpType.ADD or len(node.inputs) < 2 or not node.outputs:
        return None
    if node.inputs[0] != tid:
        return None
    return nid


def _first_weight(node: Node) -> Optional[Tensor]:
    return node.weights[0] if node.weights else None


@dataclass
class _Projection:
    matmul: int
    reshape: int
    transpose: int
    out_tid: int
    add: Optional[int] = None
    weight: Optional[Tensor] = None
    bias: Optional[Tensor] = None


def _trace_projection(graph: Any, mm_nid: int, skip: set[int]) -> Optional[_Projection]:
    """Follow MatMul -> (Add) -> Reshape -> Transpose from one projection."""
    mm = graph.nodes[mm_nid]
    weight = _first_weight(mm)
    cur = mm.outputs[0]
    add = _leading_add(graph, cur, skip)
    bias = None
    if add is not None:
        bias = _first_weight(graph.nodes[add])
        cur = graph.nodes[add].outputs[0]
    reshape = _follow(graph, cur, skip, OpType.RESHAPE)
    if reshape is None:
        return None
    transpose = _follow(graph, graph.nodes[reshape].outputs[0], skip, OpType.TRANSPOSE)
    if transpose is None:
        return None
    return _Projection(
        matmul=mm_nid,
        reshape=reshape,
        transpose=transpose,
        out_tid=graph.nodes[transpose].outputs[0],
        add=add,
        weight=weight,
        bias=bias,
    )


@dataclass
class _AttentionMatch:
    anchor_tid: int
    q: _Projection
    k: _Projection
    v: _Projection
    wo: Optional[Tensor]
    bo: Optional[Tensor]
    residual_tid: int
    final_tid: int
    params: MhaFusedParams
    skipped: list[int] = field(default_factory=list)


def _match_attention(graph: Any, anchor: int, skip: set[int]) -> Optional[_AttentionMatch]:
    nodes = graph.nodes
    matmuls = [
        nid
        for nid, node in enumerate(nodes)
        if nid not in skip
        and node.op_type is OpType.MATMUL
        and node.inputs
        and node.outputs
        and anchor in node.inputs
    ]
    if len(matmuls) != 3:
        return None

    chains = []
    for nid in matmuls:
        chain = _trace_projection(graph, nid, skip)
        if chain is None:
            return None
        chains.append(chain)

    # Q feeds the score MatMul as its first input, K as its second.
    q_idx = attn = None
    for ci, chain in enumerate(chains):
        attn = next(
            (
                nid
                for nid, node in enumerate(nodes)
                if nid not in skip
                and node.op_type is OpType.MATMUL
                and len(node.inputs) >= 2
                and node.inputs[0] == chain.out_tid
            ),
            None,
        )
        if attn is not None:
            q_idx = ci
            break
    if q_idx is None or attn is None:
        return None
    attn_node = nodes[attn]
    if not attn_node.outputs:
        return None
    k_idx = next(
        (ci for ci, c in enumerate(chains) if ci != q_idx and c.out_tid == attn_node.inputs[1]),
        None,
    )
    if k_idx is None:
        return None
    v_idx = next(ci for ci in range(3) if ci not in (q_idx, k_idx))
    q, k, v = chains[q_idx], chains[k_idx], chains[v_idx]

    mul = _follow(graph, attn_node.outputs[0], skip, OpType.MUL)
    if mul is None:
        return None
    softmax = _follow(graph, nodes[mul].outputs[0], skip, OpType.SOFTMAX)
    if softmax is None:
        return None
    probs = nodes[softmax].outputs[0]
    v_mm = _follow(graph, probs, skip, OpType.MATMUL)
    if v_mm is None or len(nodes[v_mm].inputs) < 2:
        return None
    if nodes[v_mm].inputs[0] != probs or nodes[v_mm].inputs[1] != v.out_tid:
        return None

    merge_tr = _follow(graph, nodes[v_mm].outputs[0], skip, OpType.TRANSPOSE)
    if merge_tr is None:
        return None
    merge_rs = _follow(graph, nodes[merge_tr].outputs[0], skip, OpType.RESHAPE)
    if merge_rs is None:
        return None
    out_mm = _follow(graph, nodes[merge_rs].outputs[0], skip, OpType.MATMUL)
    if out_mm is None:
        return None
    wo = _first_weight(nodes[out_mm])
    proj_tid = nodes[out_mm].outputs[0]

    out_add = _leading_add(graph, proj_tid, skip)
    bo = None
    if out_add is not None:
        bo = _first_weight(nodes[out_add])
        proj_tid = nodes[out_add].outputs[0]

    res_add = _leading_add(graph, proj_tid, skip)
    residual_tid = -1
    final_tid = proj_tid
    if res_add is not None:
        residual_tid = nodes[res_add].inputs[1]
        final_tid = nodes[res_add].outputs[0]

    anchor_tensor = graph.tensors[anchor].tensor
    if anchor_tensor is None or len(anchor_tensor.shape) < 3:
        return None
    q_tensor = graph.tensors[q.out_tid].tensor
    if q_tensor is None or len(q_tensor.shape) < 4:
        return None
    batch, seq_len, hidden = anchor_tensor.shape[:3]
    num_heads, head_dim = q_tensor.shape[1], q_tensor.shape[3]
    if head_dim <= 0:
        return None

    skipped: list[int] = []
    for chain in chains:
        if chain.matmul != q.matmul:
            skipped.append(chain.matmul)
        if chain.add is not None:
            skipped.append(chain.add)
        skipped += [chain.reshape, chain.transpose]
    skipped += [attn, mul, softmax, v_mm, merge_tr, merge_rs, out_mm]
    if out_add is not None:
        skipped.append(out_add)
    if res_add is not None:
        skipped.append(res_add)
    if not MIN_MHA_SKIPPED <= len(skipped) <= MAX_MHA_SKIPPED:
        return None

    params = MhaFusedParams(
        batch_size=batch,
        seq_len=seq_len,
        hidden_size=hidden,
        num_heads=num_heads,
        head_dim=head_dim,
        has_residual=residual_tid >= 0,
    )
    return _AttentionMatch(
        anchor_tid=anchor,
        q=q,
        k=k,
        v=v,
        wo=wo,
        bo=bo,
        residual_tid=residual_tid,
        final_tid=final_tid,
        params=params,
        skipped=skipped,
    )


def detect_and_fuse_mha(graph: Any, skip: set[int]) -> Optional[NodeSnapshot]:
    """Find one self-attention block and collapse it into a fused node.

    The Q projection MatMul becomes an ``MHA_FUSED`` node taking the block
    input and the residual, and the other nodes of the block are added to
    ``skip``.  Returns a snapshot of the rewritten node, or None when no
    block was found.
    """
    if len(graph.nodes) < MIN_MHA_NODES:
        return None
    for anchor in range(len(graph.tensors)):
        match = _match_attention(graph, anchor, skip)
        if match is None:
            continue
        target_id = match.q.matmul
        snapshot = NodeSnapshot.capture(graph, target_id)
        target: Node = graph.nodes[target_id]
        target.op_type = OpType.MHA_FUSED
        target.inputs = [match.anchor_tid, match.residual_tid]
        target.outputs = [match.final_tid]
        target.weights = [
            match.q.weight, match.q.bias,
            match.k.weight, match.k.bias,
            match.v.weight, match.v.bias,
            match.wo, match.bo,
        ]
        target.params = match.params
        if 0 <= match.final_tid < len(graph.tensors):
            graph.tensors[match.final_tid].producer = target_id
        skip.update(match.skipped)
        return snapshot
    return None