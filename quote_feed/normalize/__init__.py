from .halts import HaltFeedParser
from .quotes import ResponseNormalizer

__all__ = ["HaltFeedParser", "ResponseNormalizer"]
