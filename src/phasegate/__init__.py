"""Phase orchestration engine for gated, critic-reviewed agent pipelines."""

__version__ = "0.3.0"
