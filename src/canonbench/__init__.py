"""
canonbench - Canonical text reproduction benchmarks.

Normalize, score, align and aggregate model recitations of a reference corpus.
"""

from canonbench.aggregation import AggregationEngine
from canonbench.aligner import VerseAligner
from canonbench.coordinator import RunCoordinator
from canonbench.scoring import FidelityScorer
from canonbench.tasks import RunHandle, submit
from canonbench.transforms import TransformPipeline

__version__ = "0.1.0"
__all__ = [
    "AggregationEngine",
    "FidelityScorer",
    "RunCoordinator",
    "RunHandle",
    "TransformPipeline",
    "VerseAligner",
    "__version__",
    "submit",
]
