from .base import TargetAdapter
from .stackdriver import StackdriverAdapter

__all__ = [
    "StackdriverAdapter",
    "TargetAdapter",
]
