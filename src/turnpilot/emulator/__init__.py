"""Emulator core seam, evidence capture, and ground-truth snapshots."""

import importlib

from .base import GBA_KEY_BITS, CoreInputSink, EmulatorCore, key_mask
from .evidence import EvidenceCaptureError, GameEvidence, capture_evidence
from .ground_truth import GroundTruth, GroundTruthFile


def load_core(reference: str) -> EmulatorCore:
    """Build a core from a ``package.module:factory`` reference."""
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        msg = f"Core reference must look like 'module:factory', got: {reference}"
        raise ValueError(msg)
    target = getattr(importlib.import_module(module_name), attribute)
    core = target if isinstance(target, EmulatorCore) else target()
    if not isinstance(core, EmulatorCore):
        msg = f"{reference} did not produce an EmulatorCore (got {type(core).__name__})"
        raise TypeError(msg)
    return core


__all__ = [
    "GBA_KEY_BITS",
    "CoreInputSink",
    "EmulatorCore",
    "EvidenceCaptureError",
    "GameEvidence",
    "GroundTruth",
    "GroundTruthFile",
    "capture_evidence",
    "key_mask",
    "load_core",
]
