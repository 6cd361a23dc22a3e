"""Reflection loop tool: grade, correct and finalize translated verses using LLMs."""

from .engine import ReflectionEngine, LoadedRun, load_run
from .evaluator import EvaluationService, ReflectionEvaluator
from .models import Grade, ReflectionComment, ReflectionLoop, Segment, SegmentStatus
from .settings import ReflectionSettings, resolve_config, resolve_line_range

__all__ = [
    'ReflectionEngine',
    'LoadedRun',
    'load_run',
    'EvaluationService',
    'ReflectionEvaluator',
    'Grade',
    'ReflectionComment',
    'ReflectionLoop',
    'Segment',
    'SegmentStatus',
    'ReflectionSettings',
    'resolve_config',
    'resolve_line_range',
]
