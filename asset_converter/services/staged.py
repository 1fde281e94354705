# asset_converter/services/staged.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence
import logging, time

from asset_converter.core.errors import ConversionError, PipelineStageError

log = logging.getLogger(__name__)

# on_stage(completed_index, total, stage_name)
StageObserver = Callable[[int, int, str], None]


@dataclass(frozen=True)
class Stage:
    name: str
    fn: Callable[[Any], Any]


def stage_progress(index: int, total: int) -> float:
    return round(index / total * 100, 2)


def run_stages(stages: Sequence[Stage], state: Any, on_stage: Optional[StageObserver] = None) -> Any:
    """
    Feed ``state`` through each stage in order. After every stage the observer
    is called synchronously with its 1-based index, so the last call always
    reports ``total / total``.
    """
    total = len(stages)
    for index, stage in enumerate(stages, start=1):
        t0 = time.perf_counter()
        try:
            state = stage.fn(state)
        except ConversionError:
            raise
        except Exception as e:
            raise PipelineStageError(str(e) or e.__class__.__name__, stage=stage.name) from e
        log.info("stage %s (%d/%d) took %.1f ms", stage.name, index, total, (time.perf_counter() - t0) * 1000)
        if on_stage is not None:
            on_stage(index, total, stage.name)
    return state
