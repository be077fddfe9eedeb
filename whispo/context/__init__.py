# Lazy import keeps ``whispo.context.snapshot`` free of the protocol stack
from whispo.context.snapshot import ContextSnapshot, classify_context

__all__ = ["ContextAggregator", "ContextSnapshot", "GlossaryEnhancer", "classify_context"]


def __getattr__(name):
    if name == "ContextAggregator":
        from whispo.context.aggregator import ContextAggregator
        return ContextAggregator
    if name == "GlossaryEnhancer":
        from whispo.context.enhancer import GlossaryEnhancer
        return GlossaryEnhancer
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
