"""EventFlow: branching interactive narrative authoring engine."""

__version__ = "0.3.0"
