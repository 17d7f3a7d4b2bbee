from .aggregate_scenario import AggregateScenario
from .projection_scenario import ProjectionScenario, recorded

__all__ = [
    "AggregateScenario",
    "ProjectionScenario",
    "recorded",
]
