"""
Telemetry module: periodic sampling into a time-bounded buffer.
"""

from .sampler import RetentionBuffer, TelemetrySampler

__all__ = ["RetentionBuffer", "TelemetrySampler"]
