"""Load TensorFlow.js graph models exported as ``model.json`` + weight shards.

The topology descriptor holds a ``GraphDef`` in JSON form whose ``Const``
nodes have had their values stripped; the values live in binary shards
described by ``weightsManifest``. Shards of one manifest group are a single
byte stream split across files, read back in order.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import numpy as np

from ..errors import ModelLoadError


logger = logging.getLogger(__name__)

_DTYPES: Dict[str, Any] = {
    "float32": np.float32,
    "int32": np.int32,
    "bool": np.bool_,
}

_QUANTIZED_DTYPES: Dict[str, Any] = {
    "uint8": np.uint8,
    "uint16": np.uint16,
    "float16": np.float16,
}


@dataclass
class GraphModel:
    function: Callable[[Any], Any]
    convert: Callable[[np.ndarray], Any] = lambda value: value
    metadata: Dict[str, Any] = field(default_factory=dict)

    def predict(self, tensor: np.ndarray) -> np.ndarray:
        outputs = self.function(self.convert(tensor))
        if isinstance(outputs, (list, tuple)):
            outputs = outputs[0]
        return np.asarray(outputs)


def read_topology(path: Path) -> Dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ModelLoadError(f"Model topology not found: {path}") from exc
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ModelLoadError(f"Model topology is not valid JSON: {path}") from exc

    if not isinstance(payload, dict):
        raise ModelLoadError(f"Model topology must be a JSON object: {path}")
    model_format = payload.get("format", "graph-model")
    if model_format != "graph-model":
        raise ModelLoadError(f"Unsupported model format '{model_format}' in {path}")
    if not isinstance(payload.get("modelTopology"), dict):
        raise ModelLoadError(f"Model topology missing 'modelTopology': {path}")
    if not isinstance(payload.get("weightsManifest"), list):
        raise ModelLoadError(f"Model topology missing 'weightsManifest': {path}")
    return payload


def read_weights(model_dir: Path, manifest: List[Any]) -> Dict[str, np.ndarray]:
    weights: Dict[str, np.ndarray] = {}
    for index, group in enumerate(manifest):
        if not isinstance(group, dict):
            raise ModelLoadError(f"Weight group {index} is not an object")
        buffer = _read_group_buffer(model_dir, group.get("paths") or [])
        offset = 0
        for entry in group.get("weights") or []:
            name, values, consumed = _decode_weight(entry, buffer, offset)
            weights[name] = values
            offset += consumed
        if offset != len(buffer):
            raise ModelLoadError(
                f"Weight group {index} has {len(buffer) - offset} unexpected trailing bytes"
            )
    return weights


def signature_tensors(payload: Dict[str, Any]) -> Tuple[List[str], List[str]]:
    signature = payload.get("signature") or {}
    if not isinstance(signature, dict):
        signature = {}
    inputs = _tensor_names(signature.get("inputs"))
    outputs = _tensor_names(signature.get("outputs"))
    if not inputs:
        nodes = payload.get("modelTopology", {}).get("node") or []
        inputs = [
            f"{node['name']}:0"
            for node in nodes
            if isinstance(node, dict) and node.get("op") == "Placeholder"
        ]
    if not inputs:
        raise ModelLoadError("Model graph has no input tensors")
    if not outputs:
        raise ModelLoadError("Model signature does not declare output tensors")
    return inputs, outputs


def load_model(topology_path: Path) -> GraphModel:
    payload = read_topology(topology_path)
    weights = read_weights(topology_path.parent, payload["weightsManifest"])
    inputs, outputs = signature_tensors(payload)
    function, convert = _build_function(payload["modelTopology"], weights, inputs, outputs)
    metadata = {
        "topology": topology_path.name,
        "format": payload.get("format", "graph-model"),
        "generatedBy": payload.get("generatedBy"),
        "convertedBy": payload.get("convertedBy"),
    }
    logger.info(
        "Loaded graph model path=%s weights=%d inputs=%s outputs=%s converted_by=%s",
        topology_path,
        len(weights),
        inputs,
        outputs,
        metadata["convertedBy"],
    )
    return GraphModel(function=function, convert=convert, metadata=metadata)


def _read_group_buffer(model_dir: Path, paths: List[Any]) -> bytes:
    chunks: List[bytes] = []
    for name in paths:
        shard = model_dir / str(name)
        if not shard.is_file():
            raise ModelLoadError(f"Weight shard missing: {shard}")
        try:
            chunks.append(shard.read_bytes())
        except OSError as exc:
            raise ModelLoadError(f"Failed to read weight shard {shard}: {exc}") from exc
    return b"".join(chunks)


def _decode_weight(
    entry: Any, buffer: bytes, offset: int
) -> Tuple[str, np.ndarray, int]:
    try:
        name = str(entry["name"])
        dtype = str(entry["dtype"])
        shape = [int(dim) for dim in entry.get("shape", [])]
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ModelLoadError(f"Malformed weight entry: {entry!r}") from exc

    target = _DTYPES.get(dtype)
    if target is None:
        raise ModelLoadError(f"Unsupported weight dtype '{dtype}' for {name}")

    quantization = entry.get("quantization")
    if quantization:
        stored = _QUANTIZED_DTYPES.get(str(quantization.get("dtype")))
        if stored is None:
            raise ModelLoadError(
                f"Unsupported quantization {quantization.get('dtype')!r} for {name}"
            )
    else:
        stored = target

    count = int(np.prod(shape, dtype=np.int64)) if shape else 1
    nbytes = count * np.dtype(stored).itemsize
    if offset + nbytes > len(buffer):
        raise ModelLoadError(f"Weight shards are too short for {name}")
    raw = np.frombuffer(buffer, dtype=stored, count=count, offset=offset)

    if not quantization:
        values = raw
    elif stored is np.float16:
        values = raw.astype(np.float32)
    else:
        try:
            scale = float(quantization["scale"])
            minimum = float(quantization["min"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ModelLoadError(f"Quantized weight {name} lacks scale/min") from exc
        values = raw.astype(np.float32) * scale + minimum
        if target is np.int32:
            values = np.rint(values)
    return name, values.astype(target, copy=False).reshape(shape), nbytes


def _tensor_names(section: Any) -> List[str]:
    if not isinstance(section, dict):
        return []
    names: List[str] = []
    for key, entry in section.items():
        name = str((entry.get("name") if isinstance(entry, dict) else None) or key)
        names.append(name if ":" in name else f"{name}:0")
    return names


def _build_function(
    topology: Dict[str, Any],
    weights: Dict[str, np.ndarray],
    inputs: List[str],
    outputs: List[str],
) -> Tuple[Callable[[Any], Any], Callable[[np.ndarray], Any]]:
    import tensorflow as tf
    from google.protobuf.json_format import ParseDict, ParseError

    graph_def = tf.compat.v1.GraphDef()
    try:
        ParseDict(topology, graph_def, ignore_unknown_fields=True)
    except ParseError as exc:
        raise ModelLoadError(f"Model topology is not a valid graph: {exc}") from exc

    for node in graph_def.node:
        values = weights.get(node.name)
        if values is None or node.op != "Const":
            continue
        node.attr["value"].tensor.CopyFrom(tf.make_tensor_proto(values))
        node.attr["dtype"].type = tf.as_dtype(values.dtype).as_datatype_enum

    def _import_graph() -> None:
        tf.compat.v1.import_graph_def(graph_def, name="")

    try:
        wrapped = tf.compat.v1.wrap_function(_import_graph, [])
        graph = wrapped.graph
        function = wrapped.prune(
            [graph.as_graph_element(name) for name in inputs],
            [graph.as_graph_element(name) for name in outputs],
        )
    except (ValueError, KeyError, TypeError, tf.errors.OpError) as exc:
        raise ModelLoadError(f"Failed to build inference graph: {exc}") from exc

    def _convert(tensor: np.ndarray) -> Any:
        return tf.constant(tensor)

    return function, _convert


__all__ = [
    "GraphModel",
    "load_model",
    "read_topology",
    "read_weights",
    "signature_tensors",
]
