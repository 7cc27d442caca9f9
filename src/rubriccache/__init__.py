"""rubric-cache: versioned cache and invalidation engine for the evaluation form."""

__version__ = "0.1.0"
