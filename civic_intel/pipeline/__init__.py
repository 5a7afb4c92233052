from civic_intel.pipeline.hotspots import HotspotDetector, HotspotScheduler
from civic_intel.pipeline.normalizer import ClassificationNormalizer, NormalizerInput
from civic_intel.pipeline.priority import PriorityScorer, compute_priority
from civic_intel.pipeline.routing import RoutingEngine

__all__ = [
    "ClassificationNormalizer",
    "NormalizerInput",
    "PriorityScorer",
    "compute_priority",
    "RoutingEngine",
    "HotspotDetector",
    "HotspotScheduler",
]
