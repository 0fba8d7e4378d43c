"""Output sinks for run summaries and change batches."""

from .dispatch_sink import DispatchSink
from .json_sink import JsonFileSink

__all__ = ["DispatchSink", "JsonFileSink"]
