# forgeinfer

forgeinfer is a small engine for running computation graphs. It has these parts:

- **`forgeinfer.ops`** holds the core types:
  - `Tensor`, a numpy-backed tensor of type `DataType.F32`, `F16` or `I64`.
  - `OpType`, the operator kinds.
  - `Node` and `TensorSlot`.
  - `OperatorRegistry`, which maps kernel names to Python functions.
  - The error classes.
- **`forgeinfer.graph.Graph`** lets you add tensors and nodes, mark input and output nodes, and sort the nodes topologically with `build()`. `execute()` then runs the nodes.
- **`forgeinfer.fusion`** rewrites a graph before it runs:
  - `fuse_activations` folds an activation node that directly follows a Conv2D node into that node's params.
  - `detect_and_fuse_mha` collapses a BERT-style self-attention subgraph into a single `OpType.MHA_FUSED` node. It returns a `NodeSnapshot` that can undo the rewrite.
- **`forgeinfer.params`** holds the parameter records `TransposeParams`, `WhereParams` and `MhaFusedParams`.
- **`forgeinfer.generate`** provides `generate_tokens` and `GenerateConfig`, a greedy autoregressive loop over a graph that maps token ids to logits.

## Installation

```
pip install forgeinfer
```

To install the test dependencies too:

```
pip install "forgeinfer[test]"
```

## Building and running a graph

forgeinfer has no kernels of its own. You register every operator function in the graph's registry. An operator is called as `func(inputs, outputs, params)`. It receives these arguments:

- `inputs`: a list holding the input arrays, then the weight arrays, then extra slots.
- `outputs`: a list of output arrays, which the function writes into.
- `params`: the node's params.

The extra slots depend on the operator kind:

- Element-wise activations (ReLU, Sigmoid, GELU, SiLU, Exp) get the element count of their input in slot 1.
- BatchNorm gets it in slot 5.
- Conv2D and MatMul always have at least three input slots. Empty slots are `None`.

The function signals a failure by raising.

```python
import numpy as np

from forgeinfer.graph import Graph
from forgeinfer.ops import DataType, OpType, Tensor


def relu(inputs, outputs, params):
    np.maximum(inputs[0], 0, out=outputs[0])


g = Graph()
g.registry.register("relu_f32", relu)

x = Tensor(DataType.F32, (4,))
y = Tensor(DataType.F32, (4,))
tx = g.add_tensor(x)
ty = g.add_tensor(y)

n_in = g.add_node(OpType.INPUT, [], [tx])
g.add_node(OpType.RELU, [tx], [ty])
n_out = g.add_node(OpType.OUTPUT, [ty], [])

g.set_input(n_in)
g.set_output(n_out)
g.build()

x.data[:] = [-1.0, 0.0, 2.0, -3.0]
g.execute([x], [y], use_cuda=False)
print(y.data)  # [0. 0. 2. 0.]
```

### How a node's kernel is chosen

Kernel names are taken from `forgeinfer.ops.op_name`, for example `relu_f32` or `matmul_f32`. `execute` looks up names in this order:

1. If the node's output tensor is `F16`, it first tries the `_f16` name. Layout operators are the exception: Cast, Reshape, Transpose, Slice, Split and Squeeze/Unsqueeze always use the `_f32` name.
2. It then tries the `_f32` name.
3. With `use_cuda=True`, a `_cuda` suffix is preferred at each step (for example `relu_f32_cuda`), and the plain name is the last fallback.

### What `use_cuda=True` changes

With `use_cuda=True`, `execute` runs the fusion passes before it runs the nodes:

- An activation folded into a Conv2D node is skipped. The Conv2D kernel writes to the activation's output tensor when that activation is ReLU, Sigmoid or GELU.
- A fused attention node is restored to its original MatMul after the run, unless `graph.permanent_fusion` is set to `True`.

## Errors

All errors derive from `forgeinfer.ops.GraphError`.

`Graph.build()` raises `CycleError` if the nodes cannot be ordered.

`Graph.set_input()` and `Graph.set_output()` raise `GraphError` when given an unknown node id.

`Graph.execute()` raises:

- `GraphError` if the graph has not been built, or if a graph input or output tensor is missing.
- `OperatorNotFoundError` if no kernel is registered for a node.
- `OperatorFailedError` if a kernel raises. It carries the node id and the operator name.

## Generation

```python
from forgeinfer.generate import GenerateConfig, generate_tokens

tokens = generate_tokens(graph, [42, 100, 7], GenerateConfig(max_new_tokens=4, use_cuda=False))
```

The graph's first input tensor has shape `(batch, seq_len, ...)`. `generate_tokens` fills it with the last `seq_len` tokens and pads the rest with zeros. It then runs the graph and takes the arg-max of the logits at the last valid position. The vocabulary size is the last dimension of the output tensor.

Generation stops in any of these cases:

- `max_new_tokens` tokens have been produced.
- `eos_token_id` (when it is 0 or more) is produced. The EOS token is included in the result.
- A decode step raises `GraphError`. The step is logged and the tokens produced so far are returned.

Other behaviour:

- An empty prompt or a `max_new_tokens` that is not positive raises `ValueError`.
- `verbose=True` prints progress to standard error.
- `use_cuda` defaults to `True`.

## What forgeinfer does not do

forgeinfer has no operator kernels, no model file loader and no command-line tool. Every kernel is supplied by the caller through `OperatorRegistry`.

All computation runs on the host with numpy. `use_cuda=True` only selects kernel names and turns on the fusion passes; forgeinfer does not talk to any GPU.

Generation re-runs the whole graph for every token. It keeps no key/value cache. `Graph.set_kv_cache` only records which tensors hold the cache.