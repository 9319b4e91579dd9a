"""PreprocessorPipeline — derives the effective configuration.

Every registered preprocessor runs, in ascending priority order, over one
working copy of the configuration. A preprocessor that raises is logged
and skipped: the working copy is restored to the snapshot taken before
that step, and the remaining preprocessors still run. The caller's input
dict is never mutated.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from fleetplane.models.reconcile import ChainResult, PipelineStep, PreprocessorResult
from fleetplane.preprocessors.base import DEFAULT_PRIORITY, Preprocessor, PreprocessorContext

logger = logging.getLogger(__name__)


class PreprocessorPipeline:
    """Ordered collection of preprocessors.

    Usage
    -----
    >>> pipeline = PreprocessorPipeline()
    >>> pipeline.register(VaultConfigPreprocessor())
    >>> pipeline.register(DelegationConfigPreprocessor())
    >>> result = pipeline.run(raw_config, context)
    >>> result.config  # effective configuration
    """

    def __init__(self, preprocessors: list[Preprocessor] | None = None) -> None:
        self._preprocessors: list[Preprocessor] = []
        for preprocessor in preprocessors or []:
            self.register(preprocessor)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, preprocessor: Preprocessor) -> None:
        """Register a preprocessor, replacing any existing one with the same name."""
        self._preprocessors = [p for p in self._preprocessors if p.name != preprocessor.name]
        self._preprocessors.append(preprocessor)
        logger.info(
            "Registered preprocessor %s (priority %d)",
            preprocessor.name,
            self._priority(preprocessor),
        )

    def unregister(self, name: str) -> None:
        self._preprocessors = [p for p in self._preprocessors if p.name != name]

    def ordered(self) -> list[Preprocessor]:
        """Preprocessors in execution order; ties keep registration order."""
        return sorted(self._preprocessors, key=self._priority)

    def registered(self) -> list[tuple[str, int]]:
        """(name, priority) pairs in execution order."""
        return [(p.name, self._priority(p)) for p in self.ordered()]

    @staticmethod
    def _priority(preprocessor: Preprocessor) -> int:
        return getattr(preprocessor, "priority", DEFAULT_PRIORITY)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, config: dict[str, Any], context: PreprocessorContext) -> ChainResult:
        """Apply every preprocessor to a copy of *config*.

        Returns the effective configuration together with one step record
        per preprocessor. Never raises because of a preprocessor failure.
        """
        working = copy.deepcopy(config)
        steps: list[PipelineStep] = []

        for preprocessor in self.ordered():
            snapshot = copy.deepcopy(working)
            priority = self._priority(preprocessor)
            try:
                result = preprocessor.process(working, context)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Preprocessor %s failed for instance %s, skipping: %s",
                    preprocessor.name,
                    context.instance_id,
                    exc,
                )
                working = snapshot
                steps.append(
                    PipelineStep(
                        name=preprocessor.name,
                        priority=priority,
                        result=PreprocessorResult(modified=False, description=f"Error: {exc}"),
                        failed=True,
                    )
                )
                continue

            if result.modified:
                logger.debug("Preprocessor %s: %s", preprocessor.name, result.description)
            steps.append(PipelineStep(name=preprocessor.name, priority=priority, result=result))

        chain = ChainResult(config=working, steps=steps)
        if chain.modification_count:
            logger.info(
                "Preprocessor pipeline applied %d modification(s) for instance %s",
                chain.modification_count,
                context.instance_id,
            )
        return chain
