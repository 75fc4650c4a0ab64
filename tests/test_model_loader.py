from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pytest

from oncoscan.ai import graph_model
from oncoscan.ai.graph_model import (
    GraphModel,
    load_model,
    read_topology,
    read_weights,
    signature_tensors,
)
from oncoscan.errors import ModelLoadError, StartupError


def _write_shards(model_dir: Path, payload: bytes, parts: int) -> list[str]:
    size = -(-len(payload) // parts)
    names = []
    for index in range(parts):
        name = f"group1-shard{index + 1}of{parts}.bin"
        (model_dir / name).write_bytes(payload[index * size:(index + 1) * size])
        names.append(name)
    return names


def _topology(manifest: list, **extra) -> dict:
    payload = {
        "format": "graph-model",
        "generatedBy": "2.15.0",
        "convertedBy": "TensorFlow.js Converter v4.17.0",
        "modelTopology": {
            "node": [
                {"name": "input_1", "op": "Placeholder"},
                {"name": "dense/kernel", "op": "Const"},
                {"name": "Identity", "op": "Identity", "input": ["dense/kernel"]},
            ]
        },
        "weightsManifest": manifest,
    }
    payload.update(extra)
    return payload


class ReadWeightsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.model_dir = Path(self.tmp.name)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_weights_span_shard_boundaries(self) -> None:
        kernel = np.arange(6, dtype=np.float32).reshape(2, 3)
        bias = np.array([7, -8], dtype=np.int32)
        flags = np.array([True, False, True], dtype=np.bool_)
        paths = _write_shards(
            self.model_dir, kernel.tobytes() + bias.tobytes() + flags.tobytes(), parts=3
        )
        manifest = [
            {
                "paths": paths,
                "weights": [
                    {"name": "dense/kernel", "shape": [2, 3], "dtype": "float32"},
                    {"name": "dense/bias", "shape": [2], "dtype": "int32"},
                    {"name": "mask", "shape": [3], "dtype": "bool"},
                ],
            }
        ]

        weights = read_weights(self.model_dir, manifest)

        np.testing.assert_array_equal(weights["dense/kernel"], kernel)
        np.testing.assert_array_equal(weights["dense/bias"], bias)
        np.testing.assert_array_equal(weights["mask"], flags)
        self.assertEqual(weights["dense/kernel"].dtype, np.float32)

    def test_scalar_weight_has_empty_shape(self) -> None:
        paths = _write_shards(self.model_dir, np.float32(2.5).tobytes(), parts=1)
        manifest = [
            {"paths": paths, "weights": [{"name": "scale", "shape": [], "dtype": "float32"}]}
        ]

        weights = read_weights(self.model_dir, manifest)

        self.assertEqual(weights["scale"].shape, ())
        self.assertEqual(float(weights["scale"]), 2.5)

    def test_uint8_quantized_weights_are_dequantized(self) -> None:
        raw = np.array([0, 10, 255], dtype=np.uint8)
        paths = _write_shards(self.model_dir, raw.tobytes(), parts=1)
        manifest = [
            {
                "paths": paths,
                "weights": [
                    {
                        "name": "q",
                        "shape": [3],
                        "dtype": "float32",
                        "quantization": {"dtype": "uint8", "scale": 0.5, "min": -1.0},
                    }
                ],
            }
        ]

        weights = read_weights(self.model_dir, manifest)

        np.testing.assert_allclose(weights["q"], [-1.0, 4.0, 126.5])
        self.assertEqual(weights["q"].dtype, np.float32)

    def test_float16_quantized_weights_are_widened(self) -> None:
        raw = np.array([0.5, -2.0], dtype=np.float16)
        paths = _write_shards(self.model_dir, raw.tobytes(), parts=1)
        manifest = [
            {
                "paths": paths,
                "weights": [
                    {
                        "name": "h",
                        "shape": [2],
                        "dtype": "float32",
                        "quantization": {"dtype": "float16"},
                    }
                ],
            }
        ]

        weights = read_weights(self.model_dir, manifest)

        np.testing.assert_array_equal(weights["h"], [0.5, -2.0])
        self.assertEqual(weights["h"].dtype, np.float32)

    def test_missing_shard_fails(self) -> None:
        manifest = [
            {
                "paths": ["group1-shard1of1.bin"],
                "weights": [{"name": "w", "shape": [1], "dtype": "float32"}],
            }
        ]

        with self.assertRaises(ModelLoadError):
            read_weights(self.model_dir, manifest)

    def test_short_buffer_fails(self) -> None:
        paths = _write_shards(self.model_dir, b"\x00" * 8, parts=1)
        manifest = [
            {"paths": paths, "weights": [{"name": "w", "shape": [4], "dtype": "float32"}]}
        ]

        with self.assertRaises(ModelLoadError):
            read_weights(self.model_dir, manifest)

    def test_trailing_bytes_fail(self) -> None:
        paths = _write_shards(self.model_dir, b"\x00" * 12, parts=1)
        manifest = [
            {"paths": paths, "weights": [{"name": "w", "shape": [2], "dtype": "float32"}]}
        ]

        with self.assertRaises(ModelLoadError):
            read_weights(self.model_dir, manifest)

    def test_unsupported_dtype_fails(self) -> None:
        paths = _write_shards(self.model_dir, b"\x00" * 8, parts=1)
        manifest = [
            {"paths": paths, "weights": [{"name": "w", "shape": [1], "dtype": "complex64"}]}
        ]

        with self.assertRaises(ModelLoadError):
            read_weights(self.model_dir, manifest)


def test_read_topology_rejects_malformed_json(tmp_path) -> None:
    path = tmp_path / "model.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ModelLoadError):
        read_topology(path)


def test_read_topology_rejects_layers_models(tmp_path) -> None:
    path = tmp_path / "model.json"
    path.write_text(json.dumps(_topology([], format="layers-model")), encoding="utf-8")

    with pytest.raises(ModelLoadError):
        read_topology(path)


def test_read_topology_requires_weights_manifest(tmp_path) -> None:
    payload = _topology([])
    del payload["weightsManifest"]
    path = tmp_path / "model.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(ModelLoadError):
        read_topology(path)


def test_missing_topology_is_a_startup_error(tmp_path) -> None:
    with pytest.raises(StartupError):
        read_topology(tmp_path / "model.json")


def test_signature_tensors_from_signature() -> None:
    payload = _topology(
        [],
        signature={
            "inputs": {"input_1:0": {"name": "input_1:0", "dtype": "DT_FLOAT"}},
            "outputs": {"Identity:0": {"name": "Identity:0", "dtype": "DT_FLOAT"}},
        },
    )

    assert signature_tensors(payload) == (["input_1:0"], ["Identity:0"])


def test_signature_inputs_fall_back_to_placeholders() -> None:
    payload = _topology([], signature={"outputs": {"Identity": {}}})

    assert signature_tensors(payload) == (["input_1:0"], ["Identity:0"])


def test_signature_without_outputs_fails() -> None:
    with pytest.raises(ModelLoadError):
        signature_tensors(_topology([]))


def test_graph_model_returns_first_output_as_array() -> None:
    seen = []

    def _function(value):
        seen.append(value)
        return [[[0.75]], [[0.1]]]

    model = GraphModel(function=_function, convert=lambda tensor: tensor * 2)
    tensor = np.ones((1, 2, 2, 3), dtype=np.float32)

    scores = model.predict(tensor)

    assert isinstance(scores, np.ndarray)
    np.testing.assert_allclose(scores, [[0.75]])
    np.testing.assert_array_equal(seen[0], tensor * 2)


def test_load_model_wires_weights_and_metadata(tmp_path, monkeypatch) -> None:
    kernel = np.array([[0.25]], dtype=np.float32)
    paths = _write_shards(tmp_path, kernel.tobytes(), parts=1)
    manifest = [
        {"paths": paths, "weights": [{"name": "dense/kernel", "shape": [1, 1], "dtype": "float32"}]}
    ]
    payload = _topology(
        manifest,
        signature={"inputs": {"input_1:0": {}}, "outputs": {"Identity:0": {}}},
    )
    (tmp_path / "model.json").write_text(json.dumps(payload), encoding="utf-8")
    captured = {}

    def _fake_build(topology, weights, inputs, outputs):
        captured.update(topology=topology, weights=weights, inputs=inputs, outputs=outputs)
        return (lambda value: value), (lambda tensor: tensor)

    monkeypatch.setattr(graph_model, "_build_function", _fake_build)

    model = load_model(tmp_path / "model.json")

    assert captured["inputs"] == ["input_1:0"]
    assert captured["outputs"] == ["Identity:0"]
    np.testing.assert_array_equal(captured["weights"]["dense/kernel"], kernel)
    assert model.metadata == {
        "topology": "model.json",
        "format": "graph-model",
        "generatedBy": "2.15.0",
        "convertedBy": "TensorFlow.js Converter v4.17.0",
    }
