"""Classification and response caches."""

from signalflow.cache.classification import ClassificationCache
from signalflow.cache.response import ResponseCache, ResponseKey

__all__ = ["ClassificationCache", "ResponseCache", "ResponseKey"]
