from __future__ import annotations

from .types import Classification, ModelHandle

__all__ = [
    "Classification",
    "ModelHandle",
    "GraphModel",
    "load_model",
    "classify",
    "classify_image",
    "decode_image",
]


def __getattr__(name: str):
    if name in {"GraphModel", "load_model"}:
        from . import graph_model

        return getattr(graph_model, name)
    if name in {"classify", "classify_image"}:
        from . import classifier

        return getattr(classifier, name)
    if name == "decode_image":
        from .preprocess import decode_image

        return decode_image
    raise AttributeError(f"module 'oncoscan.ai' has no attribute {name!r}")
