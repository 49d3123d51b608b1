"""binflow: bounded multi-criteria batching of item streams into bins."""

__version__ = "0.1.0"
