from dataclasses import dataclass, field

import pytest

from forgeinfer.fusion import NodeSnapshot, detect_and_fuse_mha, fuse_activations
from forgeinfer.ops import DataType, Node, OpType, Tensor, TensorSlot
from forgeinfer.params import MhaFusedParams


class _Graph:
    def __init__(self):
        self.nodes = []
        self.tensors = []
        self.topo_order = []

    def tensor(self, *shape):
        self.tensors.append(TensorSlot(Tensor(DataType.F32, shape)))
        return len(self.tensors) - 1

    def node(self, op_type, inputs, outputs, weights=(), params=None):
        nid = len(self.nodes)
        self.nodes.append(Node(op_type, list(inputs), list(outputs), list(weights), params))
        for tid in inputs:
            self.tensors[tid].consumer = nid
        for tid in outputs:
            self.tensors[tid].producer = nid
        self.topo_order.append(nid)
        return nid


@dataclass
class _Attention:
    graph: _Graph
    x: int
    r: int
    final: int
    matmuls: dict = field(default_factory=dict)
    mm_outs: dict = field(default_factory=dict)
    weights: dict = field(default_factory=dict)
    softmax: int = -1
    wo: Tensor = None
    bo: Tensor = None


def _build_attention(order=("q", "k", "v"), residual=True):
    g = _Graph()
    x = g.tensor(1, 4, 8)
    r = g.tensor(1, 4, 8)
    att = _Attention(graph=g, x=x, r=r, final=-1)
    outs = {}
    for name in order:
        w = Tensor(DataType.F32, (8, 8))
        b = Tensor(DataType.F32, (8,))
        att.weights[name] = (w, b)
        mm_out = g.tensor(1, 4, 8)
        att.matmuls[name] = g.node(OpType.MATMUL, [x], [mm_out], [w])
        att.mm_outs[name] = mm_out
        bias_tid = g.tensor(8)
        add_out = g.tensor(1, 4, 8)
        g.node(OpType.ADD, [mm_out, bias_tid], [add_out], [b])
        rs = g.tensor(1, 4, 2, 4)
        g.node(OpType.RESHAPE, [add_out], [rs])
        tr = g.tensor(1, 2, 4, 4)
        g.node(OpType.TRANSPOSE, [rs], [tr])
        outs[name] = tr
    scores = g.tensor(1, 2, 4, 4)
    g.node(OpType.MATMUL, [outs["q"], outs["k"]], [scores])
    scale = g.tensor(1)
    scaled = g.tensor(1, 2, 4, 4)
    g.node(OpType.MUL, [scores, scale], [scaled])
    probs = g.tensor(1, 2, 4, 4)
    att.softmax = g.node(OpType.SOFTMAX, [scaled], [probs])
    ctx = g.tensor(1, 2, 4, 4)
    g.node(OpType.MATMUL, [probs, outs["v"]], [ctx])
    merged_t = g.tensor(1, 4, 2, 4)
    g.node(OpType.TRANSPOSE, [ctx], [merged_t])
    merged = g.tensor(1, 4, 8)
    g.node(OpType.RESHAPE, [merged_t], [merged])
    att.wo = Tensor(DataType.F32, (8, 8))
    att.bo = Tensor(DataType.F32, (8,))
    o = g.tensor(1, 4, 8)
    g.node(OpType.MATMUL, [merged], [o], [att.wo])
    bo_tid = g.tensor(8)
    proj = g.tensor(1, 4, 8)
    g.node(OpType.ADD, [o, bo_tid], [proj], [att.bo])
    att.final = proj
    if residual:
        final = g.tensor(1, 4, 8)
        g.node(OpType.ADD, [proj, r], [final])
        att.final = final
    return att


@pytest.mark.parametrize("order", [("q", "k", "v"), ("v", "q", "k"), ("k", "v", "q")])
def test_mha_fusion_rewrites_q_projection(order):
    att = _build_attention(order)
    g = att.graph
    skip = set()
    snapshot = detect_and_fuse_mha(g, skip)
    target = att.matmuls["q"]
    assert snapshot.node_id == target
    node = g.nodes[target]
    assert node.op_type is OpType.MHA_FUSED
    assert node.inputs == [att.x, att.r]
    assert node.outputs == [att.final]
    wq, bq = att.weights["q"]
    wk, bk = att.weights["k"]
    wv, bv = att.weights["v"]
    assert node.weights == [wq, bq, wk, bk, wv, bv, att.wo, att.bo]
    assert g.tensors[att.final].producer == target
    assert skip == set(range(len(g.nodes))) - {target}


def test_mha_fusion_params_come_from_shapes():
    att = _build_attention()
    detect_and_fuse_mha(att.graph, set())
    params = att.graph.nodes[att.matmuls["q"]].params
    assert isinstance(params, MhaFusedParams)
    assert (params.batch_size, params.seq_len, params.hidden_size) == (1, 4, 8)
    assert (params.num_heads, params.head_dim) == (2, 4)
    assert params.scale == pytest.approx(0.5)
    assert params.has_residual is True


def test_mha_fusion_without_residual():
    att = _build_attention(residual=False)
    g = att.graph
    skip = set()
    snapshot = detect_and_fuse_mha(g, skip)
    target = att.matmuls["q"]
    assert snapshot.node_id == target
    node = g.nodes[target]
    assert node.inputs == [att.x, -1]
    assert node.outputs == [att.final]
    assert node.params.has_residual is False
    assert skip == set(range(len(g.nodes))) - {target}


def test_snapshot_restore_undoes_fusion():
    att = _build_attention()
    g = att.graph
    target = att.matmuls["q"]
    wq, _ = att.weights["q"]
    snapshot = detect_and_fuse_mha(g, set())
    assert isinstance(snapshot, NodeSnapshot)
    snapshot.restore(g)
    node = g.nodes[target]
    assert node.op_type is OpType.MATMUL
    assert node.inputs == [att.x]
    assert node.outputs == [att.mm_outs["q"]]
    assert node.weights == [wq]
    assert node.params is None


def test_broken_pattern_is_left_alone():
    att = _build_attention()
    g = att.graph
    g.nodes[att.softmax].op_type = OpType.RELU
    skip = set()
    assert detect_and_fuse_mha(g, skip) is None
    assert skip == set()
    assert g.nodes[att.matmuls["q"]].op_type is OpType.MATMUL


def test_skipped_projection_prevents_fusion():
    att = _build_attention()
    skip = {att.matmuls["k"]}
    assert detect_and_fuse_mha(att.graph, skip) is None
    assert skip == {att.matmuls["k"]}


def test_small_graph_is_not_scanned():
    g = _Graph()
    x = g.tensor(1, 4, 8)
    y = g.tensor(1, 4, 8)
    g.node(OpType.MATMUL, [x], [y], [Tensor(DataType.F32, (8, 8))])
    skip = set()
    assert detect_and_fuse_mha(g, skip) is None
    assert g.nodes[0].op_type is OpType.MATMUL


@dataclass
class _ConvParams:
    fuse_activation: int = 0


def _conv_then(activation, params=None, extra_consumer=False, compute=OpType.CONV2D):
    g = _Graph()
    x = g.tensor(1, 1, 3, 3)
    c = g.tensor(1, 1, 2, 2)
    y = g.tensor(1, 1, 2, 2)
    g.node(compute, [x], [c], [Tensor(DataType.F32, (1, 1, 2, 2))], params)
    act = g.node(activation, [c], [y])
    if extra_consumer:
        z = g.tensor(1, 1, 2, 2)
        g.node(OpType.MUL, [c, y], [z])
    return g, act


@pytest.mark.parametrize(
    "activation",
    [OpType.RELU, OpType.SIGMOID, OpType.GELU, OpType.SILU, OpType.EXP],
)
def test_conv_activation_is_folded(activation):
    params = _ConvParams()
    g, act = _conv_then(activation, params)
    skip = set()
    assert fuse_activations(g, skip) == 1
    assert skip == {act}
    assert params.fuse_activation == int(activation) + 1


def test_non_activation_is_not_folded():
    params = _ConvParams()
    g, _ = _conv_then(OpType.TANH, params)
    skip = set()
    assert fuse_activations(g, skip) == 0
    assert skip == set()
    assert params.fuse_activation == 0


def test_shared_output_is_not_folded():
    params = _ConvParams()
    g, _ = _conv_then(OpType.SIGMOID, params, extra_consumer=True)
    skip = set()
    assert fuse_activations(g, skip) == 0
    assert skip == set()
    assert params.fuse_activation == 0


def test_matmul_activation_is_not_folded():
    params = _ConvParams()
    g, _ = _conv_then(OpType.RELU, params, compute=OpType.MATMUL)
    skip = set()
    assert fuse_activations(g, skip) == 0
    assert skip == set()
    assert params.fuse_activation == 0


def test_conv_without_params_is_not_folded():
    g, _ = _conv_then(OpType.RELU, None)
    skip = set()
    assert fuse_activations(g, skip) == 0
    assert skip == set()