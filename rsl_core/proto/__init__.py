"""
Protocol Module: Reading and estimate schemas.

Readings are the inputs of every solver and estimator; estimates,
inlier diagnostics and lifecycle events are their outputs.
"""

from .readings import (
    RadioSource,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    as_position,
)
from .estimates import (
    EstimatorState,
    EventType,
    EstimationEvent,
    InliersData,
    PositionEstimate,
    RadioSourceEstimate,
)

__all__ = [
    # Inputs
    'RadioSource',
    'RangingReading',
    'RssiReading',
    'RangingAndRssiReading',
    'as_position',
    # Outputs
    'EstimatorState',
    'EventType',
    'EstimationEvent',
    'InliersData',
    'PositionEstimate',
    'RadioSourceEstimate',
]
