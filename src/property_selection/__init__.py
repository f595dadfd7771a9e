"""Package initializer for `property_selection`."""

from .models import MapPoint, PipelineResult, SelectionRow
from .pipeline import SelectionPipeline, run_selection_pipeline

__all__ = ["MapPoint", "PipelineResult", "SelectionPipeline", "SelectionRow", "run_selection_pipeline"]
