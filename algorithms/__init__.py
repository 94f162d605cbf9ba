from .weight_converter import WeightConverter
from .records import RecordTracker

__all__ = ["WeightConverter", "RecordTracker"]
