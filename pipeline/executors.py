"""
Stage executor contract.

Every stage is run the same way by the job processor:
``execute(report_id, job_id, processing_data, account=None) -> StageResult``.
The success payload becomes the next stage's ``processing_data``.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from django.core.exceptions import ImproperlyConfigured

from .stages import PROCESSING_STAGES, Stage


class NonRetryableStageError(Exception):
    """Raised by an executor when retrying cannot help (bad input, misconfiguration)."""


class StageTimeout(Exception):
    """The executor did not return before the job deadline."""


@dataclass
class StageResult:
    success: bool
    data: dict = field(default_factory=dict)
    error: str = None
    retryable: bool = True

    @classmethod
    def ok(cls, data=None):
        return cls(success=True, data=data or {})

    @classmethod
    def failed(cls, error, retryable=True):
        return cls(success=False, error=error, retryable=retryable)


class StageExecutor(ABC):
    stage = None

    @abstractmethod
    def execute(self, report_id, job_id, processing_data, account=None) -> StageResult:
        raise NotImplementedError


def validate_registry(executors):
    """Every processing stage needs exactly one executor, keyed by ``Stage``."""
    registry = {Stage(stage): executor for stage, executor in executors.items()}
    missing = [stage.value for stage in PROCESSING_STAGES if stage not in registry]
    if missing:
        raise ImproperlyConfigured(f"No stage executor registered for: {', '.join(missing)}")
    extra = [stage.value for stage in registry if stage not in PROCESSING_STAGES]
    if extra:
        raise ImproperlyConfigured(f"Executors registered for non-processing stages: {', '.join(extra)}")
    return registry


def default_executors():
    from .classify_stage import ClassifyStage
    from .extract_stage import ExtractStage
    from .query_stage import QueryStage

    return {
        Stage.QUERY: QueryStage(),
        Stage.CLASSIFY: ClassifyStage(),
        Stage.EXTRACT: ExtractStage(),
    }
