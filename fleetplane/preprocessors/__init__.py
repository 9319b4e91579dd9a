"""Preprocessors that derive the effective configuration from a manifest."""

from fleetplane.preprocessors.base import DEFAULT_PRIORITY, Preprocessor, PreprocessorContext
from fleetplane.preprocessors.delegation import DelegationConfigPreprocessor
from fleetplane.preprocessors.pipeline import PreprocessorPipeline
from fleetplane.preprocessors.vault import VaultConfigPreprocessor


def default_pipeline() -> PreprocessorPipeline:
    """Pipeline with the built-in preprocessors registered."""
    return PreprocessorPipeline([VaultConfigPreprocessor(), DelegationConfigPreprocessor()])


__all__ = [
    "DEFAULT_PRIORITY",
    "DelegationConfigPreprocessor",
    "Preprocessor",
    "PreprocessorContext",
    "PreprocessorPipeline",
    "VaultConfigPreprocessor",
    "default_pipeline",
]
