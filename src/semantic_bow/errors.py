"""Exception types raised by the bag-of-words engine.

Every error derives from BowError so callers can catch the whole family,
and from the built-in exception it refines so ``except ValueError`` keeps
working for callers that do not know about this package.
"""


class BowError(Exception):
    """Base class for all semantic_bow errors."""


class DimensionMismatch(BowError, ValueError):
    """Descriptor or label array shape disagrees with the configured layout."""


class UntrainedVocabulary(BowError, RuntimeError):
    """A transform or query was attempted before the vocabulary was built or loaded."""


class MalformedPersistedData(BowError, ValueError):
    """A persisted vocabulary, database or descriptor string could not be parsed."""


class InvalidConfiguration(BowError, ValueError):
    """A configuration value is out of range or names an unknown option."""
