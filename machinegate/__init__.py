"""Machine Gate: policy evaluation and approval workflows for machine records."""

__version__ = "0.1.0"
